"""DoltDB client.

Thread-local connection reuse for DoltDB (MySQL-compatible protocol).
Each thread gets a persistent connection that reconnects on failure.
"""

import logging
import os
import threading
from contextlib import contextmanager
from functools import lru_cache
from typing import Any, Generator

import pymysql
from pymysql.cursors import DictCursor

logger = logging.getLogger(__name__)

_thread_local = threading.local()


@lru_cache(maxsize=1)
def _get_config() -> dict:
    """Get connection configuration.

    Environment variables:
        DOLT_HOST: Database host (default: 127.0.0.1)
        DOLT_PORT: Database port (default: 3306)
        DOLT_USER: Database user (default: root)
        DOLT_PASSWORD: Database password (default: empty)
        DOLT_DATABASE: Database name (default: campaign_ledger)

    Returns:
        Connection config dict
    """
    return {
        "host": os.environ.get("DOLT_HOST", "127.0.0.1"),
        "port": int(os.environ.get("DOLT_PORT", "3306")),
        "user": os.environ.get("DOLT_USER", "root"),
        "password": os.environ.get("DOLT_PASSWORD", ""),
        "database": os.environ.get("DOLT_DATABASE", "campaign_ledger"),
        "autocommit": True,
        "charset": "utf8mb4",
        "cursorclass": DictCursor,
    }


def get_connection() -> pymysql.Connection:
    """Get a thread-local database connection, reusing if alive.

    Returns:
        PyMySQL connection (reused per thread, reconnects on failure)
    """
    conn = getattr(_thread_local, "conn", None)
    if conn is not None:
        try:
            conn.ping(reconnect=False)
            return conn
        except pymysql.Error:
            logger.debug("Stale DoltDB connection, reconnecting")
            try:
                conn.close()
            except pymysql.Error:
                pass
    conn = pymysql.connect(**_get_config())
    _thread_local.conn = conn
    return conn


@contextmanager
def get_cursor() -> Generator[Any, None, None]:
    """Context manager for a database cursor.

    Each statement runs in autocommit mode; compare-and-swap updates rely on
    single-statement atomicity, not on SQL transactions.

    Yields:
        PyMySQL DictCursor
    """
    conn = get_connection()
    with conn.cursor() as cursor:
        yield cursor


def execute_query(sql: str, params: tuple | None = None, fetch: str = "all") -> list[dict] | dict | None:
    """Execute a query and return results.

    Args:
        sql: SQL query with %s placeholders
        params: Query parameters
        fetch: 'all' for fetchall(), 'one' for fetchone(), 'none' for no fetch

    Returns:
        Query results as list of dicts, single dict, or None
    """
    with get_cursor() as cursor:
        cursor.execute(sql, params or ())

        if fetch == "all":
            return cursor.fetchall()
        elif fetch == "one":
            return cursor.fetchone()
        return None


def execute_write(sql: str, params: tuple | None = None) -> int:
    """Execute an INSERT/UPDATE/DELETE and return the affected row count.

    Example:
        updated = execute_write(
            "UPDATE ledger_documents SET version = version + 1 WHERE doc_key = %s AND version = %s",
            (key, expected),
        )
    """
    with get_cursor() as cursor:
        cursor.execute(sql, params or ())
        return cursor.rowcount


def check_connection() -> bool:
    """Test database connectivity.

    Returns:
        True if connection succeeds, False otherwise
    """
    try:
        with get_cursor() as cursor:
            cursor.execute("SELECT 1")
            return True
    except pymysql.Error as e:
        logger.warning(f"DoltDB connection check failed: {e}")
        return False
