"""
Session Models

Dataclasses for every session kind tracked by a project instance: the
architect, builders, utility shells and file annotations.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional


class BuilderStatus(Enum):
    """Advisory builder status. Any transition between values is allowed."""
    SPAWNING = "spawning"
    IMPLEMENTING = "implementing"
    BLOCKED = "blocked"
    PR_READY = "pr-ready"
    COMPLETE = "complete"

    @classmethod
    def values(cls) -> List[str]:
        return [member.value for member in cls]


class BuilderType(Enum):
    """How a builder was provisioned."""
    SPEC = "spec"
    TASK = "task"
    PROTOCOL = "protocol"
    SHELL = "shell"
    WORKTREE = "worktree"
    BUGFIX = "bugfix"


class ParentType(Enum):
    """Session that opened an annotation."""
    ARCHITECT = "architect"
    BUILDER = "builder"
    UTIL = "util"


@dataclass
class ArchitectState:
    """The single controlling session of a project instance."""
    port: int
    pid: int
    cmd: str
    started_at: str
    tmux_session: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'port': self.port,
            'pid': self.pid,
            'cmd': self.cmd,
            'startedAt': self.started_at,
            'tmuxSession': self.tmux_session,
        }


@dataclass
class Builder:
    """
    An isolated agent session with its own worktree and branch.

    Shell builders are the exception: they have no worktree and no branch.
    """
    id: str
    name: str
    port: int
    pid: int
    status: BuilderStatus
    phase: str
    worktree: str
    branch: str
    type: BuilderType
    tmux_session: Optional[str] = None
    task_text: Optional[str] = None
    protocol_name: Optional[str] = None
    issue_number: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert builder to the JSON shape consumed by the dashboard."""
        data = {
            'id': self.id,
            'name': self.name,
            'port': self.port,
            'pid': self.pid,
            'status': self.status.value,
            'phase': self.phase,
            'worktree': self.worktree,
            'branch': self.branch,
            'type': self.type.value,
            'tmuxSession': self.tmux_session,
        }
        if self.task_text is not None:
            data['taskText'] = self.task_text
        if self.protocol_name is not None:
            data['protocolName'] = self.protocol_name
        if self.issue_number is not None:
            data['issueNumber'] = self.issue_number
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Builder':
        """Create builder from a dashboard-shaped or legacy state.json dict."""
        return cls(
            id=data['id'],
            name=data.get('name', data['id']),
            port=int(data.get('port') or 0),
            pid=int(data.get('pid') or 0),
            status=BuilderStatus(data.get('status', 'spawning')),
            phase=data.get('phase', ''),
            worktree=data.get('worktree', ''),
            branch=data.get('branch', ''),
            type=BuilderType(data.get('type', 'spec')),
            tmux_session=data.get('tmuxSession'),
            task_text=data.get('taskText'),
            protocol_name=data.get('protocolName'),
            issue_number=data.get('issueNumber'),
        )


@dataclass
class UtilTerminal:
    """A bare shell session with no git isolation."""
    id: str
    name: str
    port: int
    pid: int
    tmux_session: Optional[str] = None
    worktree_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'name': self.name,
            'port': self.port,
            'pid': self.pid,
            'tmuxSession': self.tmux_session,
        }
        if self.worktree_path:
            data['worktreePath'] = self.worktree_path
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UtilTerminal':
        return cls(
            id=data['id'],
            name=data.get('name', data['id']),
            port=int(data['port']),
            pid=int(data['pid']),
            tmux_session=data.get('tmuxSession'),
            worktree_path=data.get('worktreePath'),
        )


@dataclass
class Annotation:
    """A file viewer process. At most one exists per absolute file path."""
    id: str
    file: str
    port: int
    pid: int
    parent_type: ParentType = ParentType.ARCHITECT
    parent_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        parent: Dict[str, Any] = {'type': self.parent_type.value}
        if self.parent_id:
            parent['id'] = self.parent_id
        return {
            'id': self.id,
            'file': self.file,
            'port': self.port,
            'pid': self.pid,
            'parent': parent,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Annotation':
        parent = data.get('parent') or {}
        return cls(
            id=data['id'],
            file=data['file'],
            port=int(data['port']),
            pid=int(data['pid']),
            parent_type=ParentType(parent.get('type', 'architect')),
            parent_id=parent.get('id'),
        )


@dataclass
class DashboardState:
    """Snapshot of every session recorded for one project instance."""
    architect: Optional[ArchitectState] = None
    builders: List[Builder] = field(default_factory=list)
    utils: List[UtilTerminal] = field(default_factory=list)
    annotations: List[Annotation] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'architect': self.architect.to_dict() if self.architect else None,
            'builders': [b.to_dict() for b in self.builders],
            'utils': [u.to_dict() for u in self.utils],
            'annotations': [a.to_dict() for a in self.annotations],
        }

    def used_ports(self) -> set:
        """All ports recorded for any session kind."""
        ports = set()
        if self.architect and self.architect.port:
            ports.add(self.architect.port)
        for session in [*self.builders, *self.utils, *self.annotations]:
            if session.port:
                ports.add(session.port)
        return ports

    def tab_count(self) -> int:
        return len(self.builders) + len(self.utils) + len(self.annotations)


@dataclass
class PortBlock:
    """A 100-port block assigned to one project path."""
    project_path: str
    base_port: int
    pid: Optional[int]
    registered_at: str
    last_used_at: str
    live: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
