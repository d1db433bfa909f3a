"""
Port Registry

Assigns every project instance on this machine a stable 100-port block,
persisted in a global SQLite database keyed by the resolved project path.
"""

import logging
import os
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import psutil

from .errors import PortRegistryError
from .models import PortBlock
from ..database.connection import open_database, with_retry
from ..database.schema import GLOBAL_MIGRATIONS
from ..utils.system_utils import SystemUtils

logger = logging.getLogger(__name__)

BASE_PORT = 4200
PORT_BLOCK_SIZE = 100
MAX_BLOCKS = 58
GLOBAL_DB_NAME = 'global.db'

# Offsets within a block
ARCHITECT_OFFSET = 1
BUILDER_RANGE = (10, 29)
UTIL_RANGE = (30, 49)
ANNOTATION_RANGE = (50, 69)


def default_home() -> Path:
    """Directory holding global.db (AGENT_FARM_HOME or ~/.agent-farm)."""
    home = os.environ.get('AGENT_FARM_HOME')
    return Path(home).expanduser() if home else Path.home() / '.agent-farm'


def port_layout(base_port: int) -> Dict[str, object]:
    """
    Derive every port and sub-range from a block's base port.

    Returns:
        Dict with dashboard, architect and (start, end) ranges for builders,
        utils and annotations
    """
    return {
        'dashboard': base_port,
        'architect': base_port + ARCHITECT_OFFSET,
        'builders': (base_port + BUILDER_RANGE[0], base_port + BUILDER_RANGE[1]),
        'utils': (base_port + UTIL_RANGE[0], base_port + UTIL_RANGE[1]),
        'annotations': (base_port + ANNOTATION_RANGE[0], base_port + ANNOTATION_RANGE[1]),
    }


def resolve_project_path(project_path) -> str:
    """Canonical key for a project: absolute path with symlinks resolved."""
    return os.path.realpath(os.path.abspath(str(project_path)))


class PortRegistry:
    """
    Global port-block registry shared by all project instances.

    Features:
    - Stable block per project path across restarts
    - Reclaims blocks whose dashboard is down and whose pid is dead
    - Allocation under BEGIN IMMEDIATE with UNIQUE(base_port) as the
      arbiter between concurrent first launches
    """

    def __init__(self, home: Optional[Path] = None):
        self.home = Path(home) if home else default_home()
        self.db_path = self.home / GLOBAL_DB_NAME
        try:
            self._conn = open_database(self.db_path, GLOBAL_MIGRATIONS)
        except sqlite3.Error as e:
            raise PortRegistryError(
                f"Port registry unavailable at {self.db_path}: {e}",
                hint=f"Check permissions on {self.home} or set AGENT_FARM_HOME"
            ) from e

    def close(self) -> None:
        self._conn.close()

    def get_or_assign_block(self, project_path) -> int:
        """
        Return the base port for a project, allocating one if needed.

        Args:
            project_path: Project root (symlinks are resolved)

        Returns:
            int: Base port of the project's block

        Raises:
            PortRegistryError: If the registry fails or every block is taken
        """
        key = resolve_project_path(project_path)
        try:
            for _ in range(3):
                base = with_retry(lambda: self._allocate(key))
                if base is not None:
                    return base
        except sqlite3.Error as e:
            raise PortRegistryError(f"Port allocation failed for {key}: {e}") from e

        raise PortRegistryError(
            f"No free port block for {key} (all {MAX_BLOCKS} blocks in use)",
            hint="Run 'af ports cleanup' or stop other projects"
        )

    def _allocate(self, key: str) -> Optional[int]:
        """One allocation attempt. Returns None when a concurrent insert won."""
        conn = self._conn
        conn.execute('BEGIN IMMEDIATE')
        try:
            row = conn.execute(
                'SELECT base_port FROM port_allocations WHERE project_path = ?', (key,)
            ).fetchone()
            if row:
                conn.execute(
                    "UPDATE port_allocations SET last_used_at = strftime('%Y-%m-%dT%H:%M:%f', 'now') "
                    'WHERE project_path = ?', (key,)
                )
                conn.execute('COMMIT')
                return row['base_port']

            taken = {
                r['base_port']: r
                for r in conn.execute('SELECT * FROM port_allocations').fetchall()
            }
            chosen = None
            for i in range(MAX_BLOCKS):
                base = BASE_PORT + i * PORT_BLOCK_SIZE
                other = taken.get(base)
                if other is None:
                    chosen = base
                    break
                if self._is_stale(other['base_port'], other['pid']):
                    logger.info(f"Reclaiming stale port block {base} from {other['project_path']}")
                    conn.execute(
                        'DELETE FROM port_allocations WHERE project_path = ?',
                        (other['project_path'],)
                    )
                    chosen = base
                    break

            if chosen is None:
                conn.execute('ROLLBACK')
                raise PortRegistryError(
                    f"No free port block for {key} (all {MAX_BLOCKS} blocks in use)",
                    hint="Run 'af ports cleanup' or stop other projects"
                )

            conn.execute(
                'INSERT INTO port_allocations (project_path, base_port) VALUES (?, ?)',
                (key, chosen)
            )
            conn.execute('COMMIT')
            logger.info(f"Assigned port block {chosen} to {key}")
            return chosen
        except sqlite3.IntegrityError:
            conn.execute('ROLLBACK')
            logger.warning(f"Port block race for {key}, retrying")
            return None
        except sqlite3.Error:
            if conn.in_transaction:
                conn.execute('ROLLBACK')
            raise

    def touch(self, project_path, pid: Optional[int] = None) -> None:
        """Mark a block as used now and record the pid that owns it."""
        key = resolve_project_path(project_path)
        try:
            with_retry(lambda: self._conn.execute(
                "UPDATE port_allocations SET last_used_at = strftime('%Y-%m-%dT%H:%M:%f', 'now'), "
                'pid = COALESCE(?, pid) WHERE project_path = ?',
                (pid, key)
            ))
        except sqlite3.Error as e:
            raise PortRegistryError(f"Cannot update port registry for {key}: {e}") from e

    def cleanup_stale_entries(self) -> Dict[str, int]:
        """
        Delete blocks that are no longer in use.

        A block is stale when its project directory is gone, or when nothing
        listens on its dashboard port and its pid is missing or dead.

        Returns:
            Dict with 'removed' and 'remaining' counts
        """
        removed = 0
        try:
            rows = with_retry(lambda: self._conn.execute(
                'SELECT * FROM port_allocations'
            ).fetchall())
            for row in rows:
                missing = not Path(row['project_path']).exists()
                if missing or self._is_stale(row['base_port'], row['pid']):
                    cursor = with_retry(lambda: self._conn.execute(
                        'DELETE FROM port_allocations WHERE project_path = ? AND base_port = ?',
                        (row['project_path'], row['base_port'])
                    ))
                    if cursor.rowcount:
                        removed += 1
                        logger.info(f"Removed stale port block {row['base_port']} ({row['project_path']})")
            remaining = with_retry(lambda: self._conn.execute(
                'SELECT COUNT(*) AS n FROM port_allocations'
            ).fetchone()['n'])
        except sqlite3.Error as e:
            raise PortRegistryError(f"Port registry cleanup failed: {e}") from e

        return {'removed': removed, 'remaining': remaining}

    def list_allocations(self) -> List[PortBlock]:
        """Every registered block with a liveness flag."""
        try:
            rows = with_retry(lambda: self._conn.execute(
                'SELECT * FROM port_allocations ORDER BY base_port'
            ).fetchall())
        except sqlite3.Error as e:
            raise PortRegistryError(f"Cannot read port registry: {e}") from e

        return [
            PortBlock(
                project_path=row['project_path'],
                base_port=row['base_port'],
                pid=row['pid'],
                registered_at=row['registered_at'],
                last_used_at=row['last_used_at'],
                live=not self._is_stale(row['base_port'], row['pid']),
            )
            for row in rows
        ]

    def remove_allocation(self, project_path) -> bool:
        key = resolve_project_path(project_path)
        try:
            cursor = with_retry(lambda: self._conn.execute(
                'DELETE FROM port_allocations WHERE project_path = ?', (key,)
            ))
        except sqlite3.Error as e:
            raise PortRegistryError(f"Cannot remove allocation for {key}: {e}") from e
        return cursor.rowcount > 0

    @staticmethod
    def _is_stale(base_port: int, pid: Optional[int]) -> bool:
        if SystemUtils.is_port_listening(base_port):
            return False
        if pid and psutil.pid_exists(pid):
            return False
        return True


def last_used_display(block: PortBlock) -> str:
    """Human-friendly last-used timestamp for tables."""
    try:
        return datetime.fromisoformat(block.last_used_at).strftime('%Y-%m-%d %H:%M')
    except ValueError:
        return block.last_used_at
