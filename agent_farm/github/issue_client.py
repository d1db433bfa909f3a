"""
GitHub Issue Client

Thin wrapper over the gh CLI used by bugfix builders: fetch an issue, look
for competing pull requests and post an acknowledgment comment.
"""

import json
import logging
import subprocess
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..core.errors import PreconditionError

logger = logging.getLogger(__name__)

ON_IT_COMMENT = "On it! Working on a fix now."


@dataclass
class IssueComment:
    body: str
    created_at: str
    author: str

    def age_hours(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        created = datetime.fromisoformat(self.created_at.replace('Z', '+00:00'))
        return (now - created).total_seconds() / 3600


@dataclass
class Issue:
    """A GitHub issue as returned by gh issue view --json."""
    number: int
    title: str
    body: str
    state: str
    comments: List[IssueComment] = field(default_factory=list)

    @property
    def is_closed(self) -> bool:
        return self.state.upper() == 'CLOSED'

    @classmethod
    def from_json(cls, number: int, data: Dict[str, Any]) -> 'Issue':
        comments = [
            IssueComment(
                body=c.get('body') or '',
                created_at=c.get('createdAt') or '',
                author=(c.get('author') or {}).get('login', 'unknown'),
            )
            for c in data.get('comments') or []
        ]
        return cls(
            number=number,
            title=data.get('title') or '',
            body=data.get('body') or '',
            state=data.get('state') or 'OPEN',
            comments=comments,
        )


class IssueClient:
    """gh CLI client scoped to the current repository."""

    def __init__(self, cwd=None):
        self.cwd = str(cwd) if cwd else None

    def _gh(self, args: List[str]) -> subprocess.CompletedProcess:
        return subprocess.run(['gh'] + args, cwd=self.cwd, capture_output=True, text=True)

    def view_issue(self, number: int) -> Issue:
        """
        Fetch an issue with its comments.

        Raises:
            PreconditionError: If gh is missing, unauthenticated or the issue is unknown
        """
        try:
            result = self._gh(['issue', 'view', str(number), '--json', 'title,body,state,comments'])
        except FileNotFoundError as e:
            raise PreconditionError(
                "gh CLI not found", hint="Install it with: brew install gh (or apt install gh)"
            ) from e

        if result.returncode != 0:
            raise PreconditionError(
                f"Failed to fetch issue #{number}: {result.stderr.strip()}",
                hint="Ensure 'gh' CLI is installed and authenticated (gh auth login)"
            )
        try:
            return Issue.from_json(number, json.loads(result.stdout))
        except json.JSONDecodeError as e:
            raise PreconditionError(f"Unexpected gh output for issue #{number}: {e}") from e

    def find_open_prs(self, number: int) -> List[Dict[str, Any]]:
        """Open PRs whose body references #number. Empty on any failure."""
        try:
            result = self._gh(['pr', 'list', '--search', f'in:body #{number}',
                               '--json', 'number,title', '--limit', '5'])
        except FileNotFoundError:
            return []
        if result.returncode != 0:
            logger.warning(f"PR lookup for #{number} failed: {result.stderr.strip()}")
            return []
        try:
            return json.loads(result.stdout or '[]')
        except json.JSONDecodeError:
            logger.warning(f"Unexpected gh pr list output for #{number}")
            return []

    def post_comment(self, number: int, body: str = ON_IT_COMMENT) -> bool:
        try:
            result = self._gh(['issue', 'comment', str(number), '--body', body])
        except FileNotFoundError:
            return False
        if result.returncode != 0:
            logger.warning(f"Failed to comment on issue #{number}: {result.stderr.strip()}")
            return False
        return True
