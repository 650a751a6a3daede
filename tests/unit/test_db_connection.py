"""
Unit tests for crmsync/db/connection.py.
psycopg2.connect is patched; no database is reached.
"""

from unittest.mock import MagicMock, patch

import pytest
from psycopg2.extras import RealDictCursor

from crmsync.db.connection import get_db_connection, get_db_cursor, init_schema, SCHEMA_FILE


@pytest.fixture
def conn():
    connection = MagicMock()
    with patch('crmsync.db.connection.psycopg2.connect', return_value=connection) as connect:
        connection.connect = connect
        yield connection


def test_connects_with_application_name(conn):
    with get_db_connection():
        pass
    kwargs = conn.connect.call_args[1]
    assert kwargs['application_name'] == 'crmsync'
    assert kwargs['connect_timeout'] > 0


def test_commits_and_closes_on_success(conn):
    with get_db_connection():
        pass
    conn.commit.assert_called_once()
    conn.rollback.assert_not_called()
    conn.close.assert_called_once()


def test_rolls_back_and_reraises(conn):
    with pytest.raises(RuntimeError, match='deadlock'):
        with get_db_connection():
            raise RuntimeError('deadlock')
    conn.rollback.assert_called_once()
    conn.commit.assert_not_called()
    conn.close.assert_called_once()


def test_failed_connect_has_nothing_to_close():
    with patch('crmsync.db.connection.psycopg2.connect', side_effect=RuntimeError('refused')):
        with pytest.raises(RuntimeError, match='refused'):
            with get_db_connection():
                pass


def test_cursor_is_dict_cursor_by_default(conn):
    with get_db_cursor() as cur:
        assert cur is conn.cursor.return_value
    conn.cursor.assert_called_once_with(cursor_factory=RealDictCursor)
    cur.close.assert_called_once()


def test_plain_cursor(conn):
    with get_db_cursor(dict_cursor=False):
        pass
    conn.cursor.assert_called_once_with(cursor_factory=None)


def test_init_schema_runs_schema_file(conn):
    init_schema()
    ddl = conn.cursor.return_value.execute.call_args[0][0]
    assert ddl == SCHEMA_FILE.read_text(encoding='utf-8')
    assert 'CREATE TABLE IF NOT EXISTS queries' in ddl
    assert 'INSERT INTO sync_state' in ddl
    conn.commit.assert_called_once()
