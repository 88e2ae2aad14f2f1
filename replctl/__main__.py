import sys

from replctl.cli import main

sys.exit(main())
