"""
Database Connection Management
One short transaction per unit of work: the query store, the sync state row
and the linkage reads each open a connection, run, and commit or roll back.
"""

import logging
from contextlib import contextmanager
from pathlib import Path

import psycopg2
from psycopg2.extras import RealDictCursor

from crmsync.config import config

logger = logging.getLogger(__name__)

SCHEMA_FILE = Path(__file__).parent / "schema.sql"
APPLICATION_NAME = "crmsync"


def _connect():
    return psycopg2.connect(
        config.DATABASE_URL,
        connect_timeout=config.DB_CONNECT_TIMEOUT,
        application_name=APPLICATION_NAME,
    )


@contextmanager
def get_db_connection():
    """
    Yield a connection inside a transaction.
    Commits when the block succeeds, rolls back when it raises, always closes.

    Usage:
        with get_db_connection() as conn:
            cur = conn.cursor()
            cur.execute("SELECT * FROM queries WHERE state = 'TODO'")
    """
    conn = None
    try:
        conn = _connect()
        yield conn
        conn.commit()
    except Exception as e:
        if conn:
            conn.rollback()
            pgcode = getattr(e, 'pgcode', None)
            logger.error(f"Transaction rolled back ({pgcode or type(e).__name__}): {e}")
        raise
    finally:
        if conn:
            conn.close()


@contextmanager
def get_db_cursor(dict_cursor=True):
    """
    Cursor in its own transaction. Rows are dicts (RealDictCursor) unless
    dict_cursor is False.
    """
    with get_db_connection() as conn:
        cur = conn.cursor(cursor_factory=RealDictCursor if dict_cursor else None)
        try:
            yield cur
        finally:
            cur.close()


def init_schema() -> None:
    """Apply schema.sql: tables are created if missing and the sync_state row is seeded."""
    ddl = SCHEMA_FILE.read_text(encoding="utf-8")
    with get_db_cursor(dict_cursor=False) as cur:
        cur.execute(ddl)
    logger.info(f"Schema applied from {SCHEMA_FILE.name}")
