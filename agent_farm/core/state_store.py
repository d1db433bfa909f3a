"""
Session State Store

Durable record of the architect, builders, utility shells and annotations for
one project instance. Backed by SQLite in WAL mode so the CLI and the
dashboard server can read and write concurrently. Nothing is cached between
calls; every operation goes to the database.
"""

import logging
import sqlite3
import threading
from pathlib import Path
from typing import List, Optional

from .errors import StateStoreError
from .models import (
    Annotation, ArchitectState, Builder, BuilderStatus, BuilderType,
    DashboardState, ParentType, UtilTerminal
)
from ..database.connection import open_database, with_retry
from ..database.migrate import migrate_legacy_state
from ..database.schema import STATE_MIGRATIONS

logger = logging.getLogger(__name__)

STATE_DB_NAME = 'state.db'


class StateStore:
    """
    Per-project session state backed by .agent-farm/state.db.

    Features:
    - Per-record upserts (concurrent writers never clobber each other)
    - Sentinel returns for unknown ids instead of exceptions
    - Optional dead-process pruning on load
    - One-time import of a legacy state.json
    """

    def __init__(self, state_dir: Path, process_manager=None):
        """
        Initialize state store.

        Args:
            state_dir: The project's .agent-farm directory
            process_manager: ProcessManager used for pruning dead sessions
        """
        self.state_dir = Path(state_dir)
        self.db_path = self.state_dir / STATE_DB_NAME
        self.process_manager = process_manager
        self._lock = threading.RLock()

        try:
            self._conn = open_database(self.db_path, STATE_MIGRATIONS)
            migrate_legacy_state(self._conn, self.state_dir / 'state.json')
        except sqlite3.Error as e:
            raise StateStoreError(
                f"Cannot open state database {self.db_path}: {e}",
                hint=f"If the file is corrupt, stop all sessions and delete {self.db_path}"
            ) from e

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def load(self, prune: bool = False) -> DashboardState:
        """
        Return the current state snapshot.

        Args:
            prune: Remove records whose process has exited before reading

        Returns:
            DashboardState with every recorded session
        """
        if prune:
            self.prune_dead_sessions()

        return DashboardState(
            architect=self.get_architect(),
            builders=self.get_builders(),
            utils=self.get_utils(),
            annotations=self.get_annotations(),
        )

    def prune_dead_sessions(self) -> int:
        """
        Drop utils and annotations whose pid is gone, and builders whose pid
        and tmux session are both gone. Lingering tmux sessions are killed.

        Returns:
            int: Number of records removed
        """
        if self.process_manager is None:
            return 0

        pm = self.process_manager
        removed = 0

        for util in self.get_utils():
            if not pm.is_process_running(util.pid):
                logger.info(f"Auto-closing shell tab {util.name} (process {util.pid} exited)")
                if util.tmux_session:
                    pm.kill_session(util.tmux_session)
                self.remove_util(util.id)
                removed += 1

        for annotation in self.get_annotations():
            if not pm.is_process_running(annotation.pid):
                logger.info(f"Auto-closing file tab {annotation.file} (process {annotation.pid} exited)")
                self.remove_annotation(annotation.id)
                removed += 1

        for builder in self.get_builders():
            if pm.is_process_running(builder.pid):
                continue
            if builder.tmux_session and pm.session_exists(builder.tmux_session):
                continue
            logger.info(f"Dropping builder {builder.id} (process {builder.pid} and session gone)")
            self.remove_builder(builder.id)
            removed += 1

        return removed

    def clear_state(self) -> None:
        """Remove every record in a single transaction."""
        def _clear():
            self._conn.execute('BEGIN IMMEDIATE')
            try:
                for table in ('architect', 'builders', 'utils', 'annotations'):
                    self._conn.execute(f'DELETE FROM {table}')
                self._conn.execute('COMMIT')
            except Exception:
                self._conn.execute('ROLLBACK')
                raise

        with self._lock:
            with_retry(_clear)

    # ------------------------------------------------------------------
    # Architect
    # ------------------------------------------------------------------

    def get_architect(self) -> Optional[ArchitectState]:
        row = self._fetchone('SELECT * FROM architect WHERE id = 1')
        if not row:
            return None
        return ArchitectState(
            port=row['port'],
            pid=row['pid'],
            cmd=row['cmd'],
            started_at=row['started_at'],
            tmux_session=row['tmux_session'],
        )

    def set_architect(self, architect: Optional[ArchitectState]) -> None:
        """Record the architect, or delete it when None."""
        if architect is None:
            self._execute('DELETE FROM architect')
            return

        self._execute(
            'INSERT OR REPLACE INTO architect (id, pid, port, cmd, started_at, tmux_session) '
            'VALUES (1, ?, ?, ?, ?, ?)',
            (architect.pid, architect.port, architect.cmd, architect.started_at,
             architect.tmux_session),
        )

    # ------------------------------------------------------------------
    # Builders
    # ------------------------------------------------------------------

    def upsert_builder(self, builder: Builder) -> None:
        """Insert or update one builder record by id."""
        self._execute(
            """
            INSERT INTO builders (
                id, name, port, pid, status, phase, worktree, branch,
                tmux_session, type, task_text, protocol_name, issue_number
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                port = excluded.port,
                pid = excluded.pid,
                status = excluded.status,
                phase = excluded.phase,
                worktree = excluded.worktree,
                branch = excluded.branch,
                tmux_session = excluded.tmux_session,
                type = excluded.type,
                task_text = excluded.task_text,
                protocol_name = excluded.protocol_name,
                issue_number = excluded.issue_number
            """,
            (builder.id, builder.name, builder.port, builder.pid, builder.status.value,
             builder.phase, builder.worktree, builder.branch, builder.tmux_session,
             builder.type.value, builder.task_text, builder.protocol_name,
             builder.issue_number),
        )

    def try_upsert_builder(self, builder: Builder) -> bool:
        """
        Upsert a builder unless another record already holds its port.

        Returns:
            bool: False on a port conflict
        """
        try:
            self.upsert_builder(builder)
            return True
        except sqlite3.IntegrityError as e:
            logger.info(f"Builder {builder.id} not recorded: {e}")
            return False

    def remove_builder(self, builder_id: str) -> None:
        self._execute('DELETE FROM builders WHERE id = ?', (builder_id,))

    def get_builder(self, builder_id: str) -> Optional[Builder]:
        row = self._fetchone('SELECT * FROM builders WHERE id = ?', (builder_id,))
        return self._row_to_builder(row) if row else None

    def get_builders(self) -> List[Builder]:
        rows = self._fetchall('SELECT * FROM builders ORDER BY started_at, rowid')
        return [self._row_to_builder(row) for row in rows]

    def get_builders_by_status(self, status: BuilderStatus) -> List[Builder]:
        rows = self._fetchall(
            'SELECT * FROM builders WHERE status = ? ORDER BY started_at, rowid',
            (status.value,),
        )
        return [self._row_to_builder(row) for row in rows]

    def update_builder_status(self,
                              builder_id: str,
                              status: BuilderStatus,
                              phase: Optional[str] = None) -> bool:
        """
        Set a builder's advisory status.

        Args:
            builder_id: Builder to update
            status: New status (any transition is accepted)
            phase: Optional free-form phase label

        Returns:
            bool: False if no builder has this id
        """
        if phase is None:
            cursor = self._execute(
                'UPDATE builders SET status = ? WHERE id = ?',
                (status.value, builder_id),
            )
        else:
            cursor = self._execute(
                'UPDATE builders SET status = ?, phase = ? WHERE id = ?',
                (status.value, phase, builder_id),
            )
        return cursor.rowcount > 0

    def rename_builder(self, builder_id: str, name: str) -> Optional[str]:
        """Rename a builder. Returns the old name, or None if not found."""
        return self._rename('builders', builder_id, name)

    # ------------------------------------------------------------------
    # Utility terminals
    # ------------------------------------------------------------------

    def add_util(self, util: UtilTerminal) -> None:
        """
        Insert a util record. Existing records are never replaced.

        Raises:
            sqlite3.IntegrityError: If the id or port is already recorded
        """
        self._execute(
            'INSERT INTO utils (id, name, port, pid, tmux_session, worktree_path) '
            'VALUES (?, ?, ?, ?, ?, ?)',
            (util.id, util.name, util.port, util.pid, util.tmux_session, util.worktree_path),
        )

    def try_add_util(self, util: UtilTerminal) -> bool:
        """
        Insert a util unless its port is already taken.

        Returns:
            bool: False on a port or id conflict
        """
        try:
            self.add_util(util)
            return True
        except sqlite3.IntegrityError as e:
            logger.info(f"Util {util.id} not added: {e}")
            return False

    def remove_util(self, util_id: str) -> None:
        self._execute('DELETE FROM utils WHERE id = ?', (util_id,))

    def get_util(self, util_id: str) -> Optional[UtilTerminal]:
        row = self._fetchone('SELECT * FROM utils WHERE id = ?', (util_id,))
        return self._row_to_util(row) if row else None

    def get_utils(self) -> List[UtilTerminal]:
        rows = self._fetchall('SELECT * FROM utils ORDER BY started_at, rowid')
        return [self._row_to_util(row) for row in rows]

    def rename_util(self, util_id: str, name: str) -> Optional[str]:
        return self._rename('utils', util_id, name)

    # ------------------------------------------------------------------
    # Annotations
    # ------------------------------------------------------------------

    def add_annotation(self, annotation: Annotation) -> None:
        """
        Insert an annotation record. Existing records are never replaced.

        Raises:
            sqlite3.IntegrityError: If the id, file or port is already recorded
        """
        self._execute(
            'INSERT INTO annotations (id, file, port, pid, parent_type, parent_id) '
            'VALUES (?, ?, ?, ?, ?, ?)',
            (annotation.id, annotation.file, annotation.port, annotation.pid,
             annotation.parent_type.value, annotation.parent_id),
        )

    def try_add_annotation(self, annotation: Annotation) -> bool:
        """
        Insert an annotation unless its file or port is already recorded.

        Returns:
            bool: False on a file, port or id conflict
        """
        try:
            self.add_annotation(annotation)
            return True
        except sqlite3.IntegrityError as e:
            logger.info(f"Annotation {annotation.id} not added: {e}")
            return False

    def remove_annotation(self, annotation_id: str) -> None:
        self._execute('DELETE FROM annotations WHERE id = ?', (annotation_id,))

    def get_annotations(self) -> List[Annotation]:
        rows = self._fetchall('SELECT * FROM annotations ORDER BY started_at, rowid')
        return [
            Annotation(
                id=row['id'],
                file=row['file'],
                port=row['port'],
                pid=row['pid'],
                parent_type=ParentType(row['parent_type']),
                parent_id=row['parent_id'],
            )
            for row in rows
        ]

    def find_annotation_by_file(self, file_path: str) -> Optional[Annotation]:
        for annotation in self.get_annotations():
            if annotation.file == file_path:
                return annotation
        return None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _rename(self, table: str, record_id: str, name: str) -> Optional[str]:
        with self._lock:
            row = self._fetchone(f'SELECT name FROM {table} WHERE id = ?', (record_id,))
            if not row:
                return None
            self._execute(f'UPDATE {table} SET name = ? WHERE id = ?', (name, record_id))
            return row['name']

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            return with_retry(lambda: self._conn.execute(sql, params))

    def _fetchone(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return with_retry(lambda: self._conn.execute(sql, params).fetchone())

    def _fetchall(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return with_retry(lambda: self._conn.execute(sql, params).fetchall())

    @staticmethod
    def _row_to_builder(row: sqlite3.Row) -> Builder:
        return Builder(
            id=row['id'],
            name=row['name'],
            port=row['port'],
            pid=row['pid'],
            status=BuilderStatus(row['status']),
            phase=row['phase'],
            worktree=row['worktree'],
            branch=row['branch'],
            type=BuilderType(row['type']),
            tmux_session=row['tmux_session'],
            task_text=row['task_text'],
            protocol_name=row['protocol_name'],
            issue_number=row['issue_number'],
        )

    @staticmethod
    def _row_to_util(row: sqlite3.Row) -> UtilTerminal:
        return UtilTerminal(
            id=row['id'],
            name=row['name'],
            port=row['port'],
            pid=row['pid'],
            tmux_session=row['tmux_session'],
            worktree_path=row['worktree_path'],
        )
