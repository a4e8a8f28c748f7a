import logging
import os
from contextlib import contextmanager
from typing import Optional

from psycopg2.pool import SimpleConnectionPool

from tablecrm.errors import ConfigurationError
from tablecrm.settings import POSTGRES_DSN

log = logging.getLogger("database")

_sync_pool: Optional[SimpleConnectionPool] = None


def _get_sync_pool() -> SimpleConnectionPool:
    global _sync_pool
    if _sync_pool is None:
        if not POSTGRES_DSN:
            raise ConfigurationError("POSTGRES_DSN is not set")
        max_conn = int(os.getenv("DB_MAX_CONN", "4"))
        # Short connect timeout so DNS/host issues fail fast in dev
        try:
            _timeout = int(float(os.getenv("PG_CONNECT_TIMEOUT_S", "3") or 3))
        except ValueError:
            _timeout = 3
        _sync_pool = SimpleConnectionPool(1, max_conn, dsn=POSTGRES_DSN, connect_timeout=_timeout)
    return _sync_pool


@contextmanager
def get_conn():
    """Context-managed pooled psycopg2 connection.

    Usage:
        with get_conn() as conn, conn.cursor() as cur:
            ...

    Commits when the block exits cleanly, rolls back and re-raises on error,
    and always returns the connection to the shared pool.
    """
    pool = _get_sync_pool()
    conn = pool.getconn()
    try:
        try:
            yield conn
            if not conn.closed:
                conn.commit()
        except Exception:
            if not conn.closed:
                try:
                    conn.rollback()
                except Exception:
                    log.warning("rollback failed", exc_info=True)
            raise
    finally:
        pool.putconn(conn, close=False)


def close_pool() -> None:
    """Close every pooled connection; the next get_conn() opens a fresh pool."""
    global _sync_pool
    if _sync_pool is not None:
        _sync_pool.closeall()
        _sync_pool = None
        log.info("postgres pool closed")
