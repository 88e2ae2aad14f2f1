"""Logging setup and coloured console output helpers for the replctl CLI."""
import logging
import os
import sys

LOG_DIR = "logs"
LOG_FORMAT = '%(asctime)s - %(levelname)s - %(funcName)s - L%(lineno)d - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# --- Color Codes for Output ---
GREEN_TICK = "\033[92m✔\033[0m"
RED_X = "\033[91m✘\033[0m"
YELLOW_WARN = "\033[93m"
RESET_COLOR = "\033[0m"

logger = logging.getLogger("replctl")


def setup_logging(log_dir: str = LOG_DIR, verbose: bool = False, console: bool = False) -> str:
    """
    Configures the 'replctl' logger with a file handler and, optionally, a console handler.

    Args:
        log_dir (str): Directory for replctl.log. Created if missing.
        verbose (bool): Log at DEBUG instead of INFO.
        console (bool): Also log to stderr (used by the long running 'run' command).

    Returns:
        str: Path of the log file.
    """
    os.makedirs(log_dir, exist_ok=True)
    log_file = os.path.join(log_dir, "replctl.log")
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    if not logger.handlers:
        handler = logging.FileHandler(log_file)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        if console:
            stream = logging.StreamHandler(sys.stderr)
            stream.setFormatter(formatter)
            logger.addHandler(stream)
        logger.propagate = False
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    return log_file


def print_success(message):
    print(f"{GREEN_TICK} {message}")
    logger.info(f"SUCCESS: {message}")


def print_failure(message):
    print(f"{RED_X} {message}")
    logger.error(f"FAILURE: {message}")


def print_info(message):
    print(message)
    logger.info(message)


def print_warning(message):
    """Prints a warning message."""
    print(f"{YELLOW_WARN}WARN:{RESET_COLOR} {message}")
    logger.warning(message)
