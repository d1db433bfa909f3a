"""
Database Connection Module

Opens SQLite databases shared between concurrent CLI invocations and the
long-running dashboard server, and applies schema migrations.
"""

import logging
import sqlite3
import time
from pathlib import Path
from typing import Callable, List, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')

BUSY_TIMEOUT_MS = 5000


def open_database(db_path: Path, migrations: List[Tuple[int, str]]) -> sqlite3.Connection:
    """
    Open a SQLite database in WAL mode and bring its schema up to date.

    Args:
        db_path: Location of the database file (parent is created)
        migrations: Ordered (version, sql) pairs

    Returns:
        sqlite3.Connection in autocommit mode with Row factory
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    # isolation_level=None: transactions are opened explicitly with BEGIN
    conn = sqlite3.connect(
        str(db_path),
        timeout=BUSY_TIMEOUT_MS / 1000,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute('PRAGMA journal_mode = WAL')
    conn.execute('PRAGMA synchronous = NORMAL')
    conn.execute(f'PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}')
    conn.execute('PRAGMA foreign_keys = ON')

    _apply_migrations(conn, migrations)
    return conn


def _apply_migrations(conn: sqlite3.Connection, migrations: List[Tuple[int, str]]) -> None:
    """Apply every migration newer than the recorded schema version."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS _migrations (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
        )
    """)

    row = conn.execute('SELECT MAX(version) AS version FROM _migrations').fetchone()
    current = row['version'] or 0

    for version, sql in migrations:
        if version <= current:
            continue
        with_retry(lambda: _apply_one(conn, version, sql))
        logger.debug(f"Applied migration {version}")


def _apply_one(conn: sqlite3.Connection, version: int, sql: str) -> None:
    conn.execute('BEGIN IMMEDIATE')
    try:
        # A concurrent process may have applied it while we waited for the lock
        exists = conn.execute(
            'SELECT 1 FROM _migrations WHERE version = ?', (version,)
        ).fetchone()
        if not exists:
            for statement in _split_statements(sql):
                conn.execute(statement)
            conn.execute('INSERT INTO _migrations (version) VALUES (?)', (version,))
        conn.execute('COMMIT')
    except Exception:
        conn.execute('ROLLBACK')
        raise


def _split_statements(sql: str) -> List[str]:
    """Split a migration script into statements, keeping trigger bodies intact."""
    statements = []
    buffer = ''
    for line in sql.splitlines():
        buffer += line + '\n'
        if sqlite3.complete_statement(buffer):
            if buffer.strip():
                statements.append(buffer.strip())
            buffer = ''
    if buffer.strip():
        statements.append(buffer.strip())
    return statements


def is_busy_error(error: Exception) -> bool:
    """True for SQLITE_BUSY / SQLITE_LOCKED contention errors."""
    if not isinstance(error, sqlite3.OperationalError):
        return False
    message = str(error).lower()
    return 'database is locked' in message or 'database is busy' in message


def with_retry(fn: Callable[[], T], max_retries: int = 3, delay: float = 0.1) -> T:
    """
    Run a database operation, retrying on lock contention.

    The busy_timeout pragma absorbs most contention; this covers the rest.

    Args:
        fn: Operation to run
        max_retries: Total attempts before the error propagates
        delay: Base delay between attempts in seconds

    Returns:
        The operation's result
    """
    for attempt in range(max_retries):
        try:
            return fn()
        except sqlite3.OperationalError as e:
            if is_busy_error(e) and attempt < max_retries - 1:
                logger.warning(f"Database busy, retrying ({attempt + 1}/{max_retries})...")
                time.sleep(delay * (attempt + 1))
                continue
            raise
    raise RuntimeError('unreachable')
