"""
Database Schemas

DDL for the per-project state database and the machine-wide port registry.
Migrations are applied in order and recorded in the _migrations table.
"""

from typing import List, Tuple

STATE_MIGRATIONS: List[Tuple[int, str]] = [
    (1, """
    CREATE TABLE IF NOT EXISTS architect (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        pid INTEGER NOT NULL,
        port INTEGER NOT NULL,
        cmd TEXT NOT NULL,
        started_at TEXT NOT NULL,
        tmux_session TEXT
    );

    CREATE TABLE IF NOT EXISTS builders (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        port INTEGER NOT NULL UNIQUE,
        pid INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'spawning'
            CHECK (status IN ('spawning', 'implementing', 'blocked', 'pr-ready', 'complete')),
        phase TEXT NOT NULL DEFAULT '',
        worktree TEXT NOT NULL DEFAULT '',
        branch TEXT NOT NULL DEFAULT '',
        tmux_session TEXT,
        type TEXT NOT NULL DEFAULT 'spec'
            CHECK (type IN ('spec', 'task', 'protocol', 'shell', 'worktree', 'bugfix')),
        task_text TEXT,
        protocol_name TEXT,
        issue_number INTEGER,
        started_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),
        updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
    );

    CREATE TABLE IF NOT EXISTS utils (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        port INTEGER NOT NULL UNIQUE,
        pid INTEGER NOT NULL,
        tmux_session TEXT,
        worktree_path TEXT,
        started_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
    );

    CREATE TABLE IF NOT EXISTS annotations (
        id TEXT PRIMARY KEY,
        file TEXT NOT NULL UNIQUE,
        port INTEGER NOT NULL UNIQUE,
        pid INTEGER NOT NULL,
        parent_type TEXT NOT NULL CHECK (parent_type IN ('architect', 'builder', 'util')),
        parent_id TEXT,
        started_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
    );

    CREATE INDEX IF NOT EXISTS idx_builders_status ON builders(status);
    CREATE INDEX IF NOT EXISTS idx_builders_port ON builders(port);

    CREATE TRIGGER IF NOT EXISTS builders_updated_at
        AFTER UPDATE ON builders
        FOR EACH ROW
        BEGIN
            UPDATE builders SET updated_at = strftime('%Y-%m-%dT%H:%M:%f', 'now')
            WHERE id = NEW.id;
        END;
    """),
]

GLOBAL_MIGRATIONS: List[Tuple[int, str]] = [
    (1, """
    CREATE TABLE IF NOT EXISTS port_allocations (
        project_path TEXT PRIMARY KEY,
        base_port INTEGER NOT NULL UNIQUE
            CHECK (base_port >= 4200 AND base_port % 100 = 0),
        pid INTEGER,
        registered_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),
        last_used_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
    );

    CREATE INDEX IF NOT EXISTS idx_port_allocations_base ON port_allocations(base_port);
    """),
]
