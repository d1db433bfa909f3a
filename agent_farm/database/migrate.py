"""
Legacy State Migration

Moves a pre-SQLite state.json into state.db once, keeping a .bak copy of the
original file.
"""

import json
import logging
import shutil
import sqlite3
from pathlib import Path

from rich.console import Console

console = Console()
logger = logging.getLogger(__name__)


def migrate_legacy_state(conn: sqlite3.Connection, json_path: Path) -> bool:
    """
    Import a legacy state.json into an empty state database.

    Args:
        conn: Open state database connection
        json_path: Path to the legacy state.json

    Returns:
        bool: True if a migration was performed
    """
    if not json_path.exists():
        return False

    already = conn.execute(
        'SELECT (SELECT COUNT(*) FROM builders) + (SELECT COUNT(*) FROM utils) '
        '+ (SELECT COUNT(*) FROM annotations) + (SELECT COUNT(*) FROM architect) AS n'
    ).fetchone()['n']
    if already:
        logger.info(f"State database already populated, skipping migration of {json_path}")
        return False

    with open(json_path, 'r', encoding='utf-8') as f:
        state = json.load(f)

    conn.execute('BEGIN IMMEDIATE')
    try:
        architect = state.get('architect')
        if architect:
            conn.execute(
                'INSERT INTO architect (id, pid, port, cmd, started_at, tmux_session) '
                'VALUES (1, ?, ?, ?, ?, ?)',
                (architect['pid'], architect['port'], architect.get('cmd', ''),
                 architect.get('startedAt', ''), architect.get('tmuxSession')),
            )

        for builder in state.get('builders') or []:
            conn.execute(
                'INSERT OR IGNORE INTO builders (id, name, port, pid, status, phase, worktree, '
                'branch, tmux_session, type, task_text, protocol_name) '
                'VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)',
                (builder['id'], builder.get('name', builder['id']), builder['port'],
                 builder['pid'], builder.get('status', 'spawning'), builder.get('phase', ''),
                 builder.get('worktree', ''), builder.get('branch', ''),
                 builder.get('tmuxSession'), builder.get('type', 'spec'),
                 builder.get('taskText'), builder.get('protocolName')),
            )

        for util in state.get('utils') or []:
            conn.execute(
                'INSERT OR IGNORE INTO utils (id, name, port, pid, tmux_session) '
                'VALUES (?, ?, ?, ?, ?)',
                (util['id'], util.get('name', util['id']), util['port'], util['pid'],
                 util.get('tmuxSession')),
            )

        for annotation in state.get('annotations') or []:
            parent = annotation.get('parent') or {}
            conn.execute(
                'INSERT OR IGNORE INTO annotations (id, file, port, pid, parent_type, parent_id) '
                'VALUES (?, ?, ?, ?, ?, ?)',
                (annotation['id'], annotation['file'], annotation['port'], annotation['pid'],
                 parent.get('type', 'architect'), parent.get('id')),
            )

        conn.execute('COMMIT')
    except Exception:
        conn.execute('ROLLBACK')
        console.print(f"[red]❌ Migration of {json_path} failed. JSON file preserved.[/red]")
        console.print("[red]   Manual recovery: delete state.db and restart[/red]")
        raise

    backup = json_path.with_name(json_path.name + '.bak')
    shutil.move(str(json_path), str(backup))
    console.print(f"[green]✅ Migrated {json_path.name} to SQLite (backup: {backup.name})[/green]")
    return True
