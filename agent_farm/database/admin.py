"""
Database Admin Module

Read-only inspection and reset of the per-project state database and the
global port registry, for debugging from the command line.
"""

import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, List

from ..core.errors import AgentFarmError, PreconditionError, UserInputError

logger = logging.getLogger(__name__)

SIDECAR_SUFFIXES = ('-wal', '-shm')


def open_readonly(db_path: Path) -> sqlite3.Connection:
    """
    Open an existing database without the ability to write to it.

    Raises:
        PreconditionError: If the file does not exist
    """
    db_path = Path(db_path)
    if not db_path.exists():
        raise PreconditionError(f"No database found at {db_path}")
    conn = sqlite3.connect(f"{db_path.resolve().as_uri()}?mode=ro", uri=True)
    conn.row_factory = sqlite3.Row
    return conn


def list_tables(conn: sqlite3.Connection, include_migrations: bool = True) -> List[str]:
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
    ).fetchall()
    names = [row['name'] for row in rows]
    if not include_migrations:
        names = [name for name in names if name != '_migrations']
    return names


def dump_tables(db_path: Path) -> Dict[str, List[Dict[str, Any]]]:
    """Every row of every table except the migration ledger, keyed by table."""
    conn = open_readonly(db_path)
    try:
        return {
            table: [dict(row) for row in conn.execute(f'SELECT * FROM "{table}"')]
            for table in list_tables(conn, include_migrations=False)
        }
    finally:
        conn.close()


def run_select(db_path: Path, sql: str) -> List[Dict[str, Any]]:
    """
    Run one SELECT statement and return its rows.

    Raises:
        UserInputError: For anything but a SELECT
        AgentFarmError: If SQLite rejects the query
    """
    if not sql.strip().lower().startswith('select'):
        raise UserInputError(
            "Only SELECT queries are allowed",
            hint="Use 'af db reset' to start over"
        )

    conn = open_readonly(db_path)
    try:
        return [dict(row) for row in conn.execute(sql).fetchall()]
    except sqlite3.Error as e:
        raise AgentFarmError(f"Query failed: {e}") from e
    finally:
        conn.close()


def database_stats(db_path: Path) -> Dict[str, Any]:
    """
    Row counts per table plus page and journal information.

    Returns:
        Dict with tables (name -> count), journal_mode, page_size,
        page_count and size_kb
    """
    conn = open_readonly(db_path)
    try:
        counts = {
            table: conn.execute(f'SELECT COUNT(*) FROM "{table}"').fetchone()[0]
            for table in list_tables(conn)
        }
        page_count = conn.execute('PRAGMA page_count').fetchone()[0]
        page_size = conn.execute('PRAGMA page_size').fetchone()[0]
        journal_mode = conn.execute('PRAGMA journal_mode').fetchone()[0]
    finally:
        conn.close()

    return {
        'tables': counts,
        'journal_mode': str(journal_mode).upper(),
        'page_size': page_size,
        'page_count': page_count,
        'size_kb': round(page_count * page_size / 1024),
    }


def reset_database(db_path: Path) -> List[Path]:
    """
    Delete a database file together with its WAL and shared-memory files.

    Returns:
        List of files that were deleted (empty if none existed)
    """
    db_path = Path(db_path)
    deleted = []
    for path in [db_path] + [Path(f"{db_path}{suffix}") for suffix in SIDECAR_SUFFIXES]:
        if path.exists():
            path.unlink()
            logger.info(f"Deleted {path}")
            deleted.append(path)
    return deleted
