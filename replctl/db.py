"""psycopg2 connection helpers."""
import logging
import math

import psycopg2
import psycopg2.extensions

logger = logging.getLogger(__name__)


def connect_to_postgresql(dbname: str, user: str, password: str | None, host: str = "localhost",
                          port: str = "5432", timeout: float | None = None) -> psycopg2.extensions.connection:
    """
    Connects to a PostgreSQL database using the provided parameters.

    Args:
        dbname (str): The name of the database to connect to.
        user (str): The username for the connection.
        password (str | None): The password for the user. Can be None if using other auth methods.
        host (str, optional): The database server host. Defaults to "localhost".
        port (str, optional): The database server port. Defaults to "5432".
        timeout (float | None, optional): Bounds both connection establishment and every
                                          statement on the session, in seconds.

    Returns:
        psycopg2.extensions.connection: An autocommit connection.

    Raises:
        psycopg2.Error: If the connection cannot be established.
    """
    kwargs = {"dbname": dbname, "user": user, "password": password, "host": host, "port": port}
    if timeout:
        # libpq only accepts whole seconds for connect_timeout (minimum 2).
        kwargs["connect_timeout"] = max(2, math.ceil(timeout))
        kwargs["options"] = f"-c statement_timeout={int(timeout * 1000)}"
    try:
        conn = psycopg2.connect(**kwargs)
    except psycopg2.OperationalError as e:
        logger.debug(f"Error connecting to PostgreSQL database {dbname} on {host}:{port}: {e}")
        raise
    conn.autocommit = True
    logger.debug(f"Connected to PostgreSQL database: {dbname} on {host}:{port}")
    return conn
