"""
Database Utilities

Retry logic and connection setup for the aggregator's SQLite store, which
is written from a thread pool while stats queries run alongside.
"""

import functools
import logging
import sqlite3
import time
from typing import Any, Callable

from .config import DB_CONNECTION_TIMEOUT, DB_MAX_RETRIES, DB_RETRY_BASE_DELAY, DB_RETRY_MAX_DELAY

log = logging.getLogger("TruMonitor.DbUtils")

RETRYABLE_ERRORS = ("locked", "busy", "unable to open")


def retry_on_db_lock(max_attempts: int = DB_MAX_RETRIES, base_delay: float = DB_RETRY_BASE_DELAY,
                     max_delay: float = DB_RETRY_MAX_DELAY):
    """
    Decorator to retry database operations on lock/busy errors with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            delay = base_delay

            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except sqlite3.OperationalError as e:
                    if not any(err in str(e).lower() for err in RETRYABLE_ERRORS):
                        raise
                    if attempt == max_attempts:
                        log.error(f"{func.__name__} failed after {max_attempts} attempts: {e}", exc_info=True)
                        raise
                    log.warning(
                        f"{func.__name__} hit a locked database (attempt {attempt}/{max_attempts}): {e}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    time.sleep(delay)
                    # Exponential backoff with a little jitter
                    delay = min(delay * 2 + (time.time() % 0.1), max_delay)

        return wrapper

    return decorator


def get_optimized_connection(db_path: str, timeout: float = DB_CONNECTION_TIMEOUT) -> sqlite3.Connection:
    """Open a connection tuned for one writer with concurrent readers (WAL)."""
    conn = sqlite3.connect(db_path, timeout=timeout, detect_types=0)
    conn.row_factory = sqlite3.Row
    cursor = conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA synchronous=NORMAL;")
    cursor.execute("PRAGMA temp_store=MEMORY;")
    cursor.execute(f"PRAGMA busy_timeout={int(timeout * 1000)};")
    log.debug(f"Opened SQLite connection to {db_path} (timeout={timeout}s)")
    return conn
