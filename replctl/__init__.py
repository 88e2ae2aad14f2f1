"""PostgreSQL streaming replication lifecycle controller."""

__version__ = "0.1.0"
