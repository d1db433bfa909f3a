"""
Builder Spawner

Brings a builder from "requested" to "running". The spawn mode is resolved
from the options by a pure validation step before anything touches git,
tmux or the state store; each mode then provisions a worktree (except bare
shells), writes the prompt and role files, starts the tmux session with
ttyd and records the Builder.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

from rich.console import Console

from .errors import AgentFarmError, PortInUseError, PreconditionError, SpawnError, UserInputError
from .models import Builder, BuilderStatus, BuilderType
from .process_manager import ProcessManager
from .state_store import StateStore
from ..git.worktree_manager import WorktreeManager
from ..github.issue_client import Issue, IssueClient
from ..tmux.session_controller import SessionNames
from ..utils.config_loader import BUNDLED_ROLES_DIR, Config
from ..utils.deps import check_dependencies
from ..utils.file_utils import FileUtils
from ..utils.prompt_command import build_prompt_command, load_role, write_launch_script
from ..utils.system_utils import SystemUtils, generate_short_id

console = Console()
logger = logging.getLogger(__name__)

PROMPT_FILE = '.builder-prompt.txt'
ROLE_FILE = '.builder-role.md'
START_SCRIPT = '.builder-start.sh'

BUILDER_PREAMBLE = "You are a Builder. Read codev/roles/builder.md for your full role definition."
ON_IT_WINDOW_HOURS = 24
PORT_CONFLICT_RETRIES = 5

BUGFIX_TEMPLATE = """You are a Builder working on a BUGFIX task.

## Protocol
Follow the BUGFIX protocol: codev/protocols/bugfix/protocol.md

## Issue #{number}
**Title**: {title}

**Description**:
{body}

## Your Mission
1. Reproduce the bug
2. Identify root cause
3. Implement fix (< 300 LOC)
4. Add regression test
5. Get the fix reviewed
6. Create PR with "Fixes #{number}" in body

If the fix is too complex (> 300 LOC or architectural changes), notify the Architect via:
  af send architect "Issue #{number} is more complex than expected. [Reason]. Recommend escalating."

Start by reading the issue and reproducing the bug."""


class SpawnMode(Enum):
    """Exactly one of these is selected per spawn request."""
    SPEC = "spec"
    TASK = "task"
    PROTOCOL = "protocol"
    BUGFIX = "bugfix"
    SHELL = "shell"
    WORKTREE = "worktree"


MODE_FLAGS = "--project (-p), --issue (-i), --task, --protocol, --shell, --worktree"


@dataclass
class SpawnOptions:
    """Raw spawn flags as given on the command line."""
    project: Optional[str] = None
    task: Optional[str] = None
    protocol: Optional[str] = None
    issue: Optional[int] = None
    shell: bool = False
    worktree: bool = False
    files: List[str] = field(default_factory=list)
    no_role: bool = False
    no_comment: bool = False
    force: bool = False


@dataclass(frozen=True)
class SpawnRequest:
    """A validated spawn: the mode tag plus its single argument."""
    mode: SpawnMode
    target: Union[str, int, None] = None
    files: Tuple[str, ...] = ()
    no_role: bool = False
    no_comment: bool = False
    force: bool = False


def validate_spawn_options(options: SpawnOptions) -> SpawnRequest:
    """
    Resolve spawn flags to exactly one mode.

    Pure: performs no I/O.

    Raises:
        UserInputError: If zero or several modes are set, or a mode-specific
            flag is used without its mode
    """
    selected = [
        (mode, value) for mode, value in (
            (SpawnMode.SPEC, options.project),
            (SpawnMode.BUGFIX, options.issue),
            (SpawnMode.TASK, options.task),
            (SpawnMode.PROTOCOL, options.protocol),
            (SpawnMode.SHELL, options.shell),
            (SpawnMode.WORKTREE, options.worktree),
        ) if value
    ]

    if not selected:
        raise UserInputError(
            f"Must specify one of: {MODE_FLAGS}",
            hint='Run "af spawn --help" for examples.'
        )
    if len(selected) > 1:
        raise UserInputError(f"Flags {MODE_FLAGS} are mutually exclusive")

    if options.files and not options.task:
        raise UserInputError("--files requires --task")
    if (options.no_comment or options.force) and not options.issue:
        raise UserInputError("--no-comment and --force require --issue")

    mode, value = selected[0]
    if mode == SpawnMode.BUGFIX:
        try:
            value = int(value)
        except (TypeError, ValueError):
            raise UserInputError(f"Invalid issue number: {value}")
        if value <= 0:
            raise UserInputError(f"Invalid issue number: {value}")
    elif mode in (SpawnMode.SHELL, SpawnMode.WORKTREE):
        value = None
    elif mode == SpawnMode.PROTOCOL and not re.fullmatch(r'[A-Za-z0-9_-]+', value):
        raise UserInputError(f"Invalid protocol name: {value}")

    return SpawnRequest(
        mode=mode,
        target=value,
        files=tuple(options.files or ()),
        no_role=options.no_role,
        no_comment=options.no_comment,
        force=options.force,
    )


def slugify(title: str, limit: int = 30) -> str:
    slug = re.sub(r'[^a-z0-9]+', '-', title.lower())
    slug = re.sub(r'-+', '-', slug).strip('-')
    return slug[:limit]


def truncate(text: str, limit: int) -> str:
    return text[:limit] + ('...' if len(text) > limit else '')


PROJECT_ID_PATTERN = re.compile(r'^(\d{4})([a-z]+)?$')


def split_project_id(project_id: str) -> Tuple[str, str]:
    """Split '0007a' into ('0007', 'a'); ids of any other shape have no suffix."""
    normalized = project_id.strip().lower()
    match = PROJECT_ID_PATTERN.match(normalized)
    if not match:
        return normalized, ''
    return match.group(1), match.group(2) or ''


def apply_project_suffix(spec_name: str, project_id: str) -> str:
    """Carry a suffixed id into a base spec's name: ('0007-auth', '0007a') -> '0007a-auth'."""
    base_id, suffix = split_project_id(project_id)
    prefix = f'{base_id}-'
    if suffix and spec_name.lower().startswith(prefix):
        return f'{base_id}{suffix}-{spec_name[len(prefix):]}'
    return spec_name


def find_spec_file(codev_dir: Path, project_id: str) -> Optional[Path]:
    """
    Locate a spec by id.

    Accepts an exact <id>.md, an <id>-<name>.md prefix match, or a numeric
    id that matches once zero-padded to four digits. A suffixed id such as
    0007a falls back to the spec of its base id 0007.
    """
    specs_dir = Path(codev_dir) / 'specs'
    if not specs_dir.is_dir():
        return None

    normalized = project_id.strip().lower()
    variants = [normalized]
    if normalized.isdigit() and len(normalized) < 4:
        variants.append(normalized.zfill(4))
    base_id, suffix = split_project_id(normalized)
    if suffix:
        variants.append(base_id)

    files = sorted(p for p in specs_dir.iterdir() if p.suffix == '.md')
    for variant in variants:
        for path in files:
            if path.name == f'{variant}.md':
                return path
        for path in files:
            if path.name.startswith(f'{variant}-'):
                return path
    return None


class BuilderSpawner:
    """
    Orchestrates builder creation.

    Features:
    - Tagged spawn modes validated before any side effect
    - Worktree pruning before every spawn
    - Port selection that skips every port recorded in state
    - Role + prompt injection through files
    - Bugfix collision checks against GitHub
    """

    def __init__(self,
                 config: Config,
                 store: StateStore,
                 process_manager: ProcessManager,
                 worktrees: Optional[WorktreeManager] = None,
                 issues: Optional[IssueClient] = None,
                 dependency_check: Optional[Callable[[], object]] = None):
        self.config = config
        self.store = store
        self.pm = process_manager
        self.worktrees = worktrees or WorktreeManager(config.project_root)
        self.issues = issues or IssueClient(config.project_root)
        self.dependency_check = dependency_check or check_dependencies
        self.names = SessionNames(config.project_root)

        self._handlers: Dict[SpawnMode, Callable[[SpawnRequest], Builder]] = {
            SpawnMode.SPEC: self._spawn_spec,
            SpawnMode.TASK: self._spawn_task,
            SpawnMode.PROTOCOL: self._spawn_protocol,
            SpawnMode.BUGFIX: self._spawn_bugfix,
            SpawnMode.SHELL: self._spawn_shell,
            SpawnMode.WORKTREE: self._spawn_worktree,
        }

    def spawn(self, options: SpawnOptions) -> Builder:
        """
        Spawn a builder.

        Args:
            options: Raw spawn flags

        Returns:
            Builder: The recorded builder

        Raises:
            UserInputError: On invalid flags (before any side effect)
            PreconditionError: On missing specs, protocols, dependencies
            SpawnError: When provisioning fails part-way
        """
        request = validate_spawn_options(options)

        self.worktrees.prune()
        self.config.ensure_directories()

        builder = self._handlers[request.mode](request)

        console.print(f"\n[green]✅ Builder {builder.id} spawned![/green]")
        console.print(f"  Terminal: [cyan]http://localhost:{builder.port}[/cyan]")
        return builder

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    def _spawn_spec(self, request: SpawnRequest) -> Builder:
        project_id = str(request.target)
        spec_file = find_spec_file(self.config.codev_dir, project_id)
        if not spec_file:
            raise PreconditionError(
                f"Spec not found for project: {project_id}",
                hint=f"Expected codev/specs/{project_id}-<name>.md"
            )

        spec_name = spec_file.stem
        builder_name = apply_project_suffix(spec_name, project_id)
        safe_name = re.sub(r'-+', '-', re.sub(r'[^a-z0-9_-]', '-', builder_name.lower()))
        builder_id = project_id.strip().lower()
        branch = f"builder/{safe_name}"
        has_plan = (self.config.codev_dir / 'plans' / f'{spec_name}.md').exists()

        self._header(builder_id, 'spec', Spec=str(spec_file), Branch=branch)

        prompt = f"Implement the feature specified in codev/specs/{spec_name}.md."
        if has_plan:
            prompt += f" Follow the implementation plan in codev/plans/{spec_name}.md."
        prompt += f" Start by reading the spec{' and plan' if has_plan else ''}, then begin implementation."

        return self._provision_and_start(
            builder_id=builder_id,
            branch=branch,
            prompt=f"{BUILDER_PREAMBLE} {prompt}",
            role=self._role(request, 'builder'),
            name=builder_name,
            builder_type=BuilderType.SPEC,
        )

    def _spawn_task(self, request: SpawnRequest) -> Builder:
        task_text = str(request.target)
        short_id = generate_short_id()
        builder_id = f"task-{short_id}"

        self._header(builder_id, 'task', Task=truncate(task_text, 60))

        prompt = task_text
        if request.files:
            prompt += "\n\nRelevant files to consider:\n" + "\n".join(f"- {f}" for f in request.files)

        return self._provision_and_start(
            builder_id=builder_id,
            branch=f"builder/task-{short_id}",
            prompt=f"{BUILDER_PREAMBLE} {prompt}",
            role=self._role(request, 'builder'),
            name=f"Task: {truncate(task_text, 30)}",
            builder_type=BuilderType.TASK,
            task_text=task_text,
        )

    def _spawn_protocol(self, request: SpawnRequest) -> Builder:
        protocol = str(request.target)
        self._validate_protocol(protocol)

        short_id = generate_short_id()
        builder_id = f"{protocol}-{short_id}"
        self._header(builder_id, 'protocol', Protocol=protocol)

        role = None
        if not request.no_role:
            protocol_role = self.config.codev_dir / 'protocols' / protocol / 'role.md'
            if protocol_role.exists():
                role = (FileUtils.read_text(protocol_role), 'protocol')
            else:
                role = self._role(request, 'builder')

        return self._provision_and_start(
            builder_id=builder_id,
            branch=f"builder/{protocol}-{short_id}",
            prompt=(f"You are running the {protocol} protocol. Start by reading "
                    f"codev/protocols/{protocol}/protocol.md and follow its instructions."),
            role=role,
            name=f"Protocol: {protocol}",
            builder_type=BuilderType.PROTOCOL,
            protocol_name=protocol,
        )

    def _spawn_bugfix(self, request: SpawnRequest) -> Builder:
        number = int(request.target)
        builder_id = f"bugfix-{number}"
        worktree_path = self.config.builders_dir / builder_id

        if worktree_path.exists():
            raise PreconditionError(
                f"Worktree already exists at {worktree_path}",
                hint=f"Run: af cleanup --issue {number}"
            )

        console.print(f"[cyan]Fetching issue #{number} from GitHub...[/cyan]")
        issue = self.issues.view_issue(number)
        self._check_bugfix_collisions(issue, request.force)

        branch = f"builder/bugfix-{number}-{slugify(issue.title)}"
        self._header(builder_id, 'bugfix', Title=issue.title, Branch=branch)

        prompt = BUGFIX_TEMPLATE.format(
            number=number,
            title=issue.title,
            body=issue.body or "(No description provided)",
        )

        def acknowledge():
            if not request.no_comment:
                console.print("[cyan]Commenting on issue...[/cyan]")
                if not self.issues.post_comment(number):
                    console.print("[yellow]⚠️ Failed to comment on issue (continuing anyway)[/yellow]")

        return self._provision_and_start(
            builder_id=builder_id,
            branch=branch,
            prompt=f"{BUILDER_PREAMBLE}\n\n{prompt}",
            role=self._role(request, 'builder'),
            name=f"Bugfix #{number}: {truncate(issue.title, 40)}",
            builder_type=BuilderType.BUGFIX,
            issue_number=number,
            after_worktree=acknowledge,
        )

    def _spawn_shell(self, request: SpawnRequest) -> Builder:
        builder_id = f"shell-{generate_short_id()}"
        console.print(f"[bold cyan]Spawning Shell {builder_id}[/bold cyan]")
        self.dependency_check()

        session = self.names.builder(builder_id)
        self._start_with_port_retry(
            builder_id=builder_id,
            session=session,
            command=self.config.commands['builder'],
            cwd=self.config.project_root,
            make_builder=lambda pid, port: Builder(
                id=builder_id, name="Shell session", port=port, pid=pid,
                status=BuilderStatus.SPAWNING, phase="interactive",
                worktree="", branch="", type=BuilderType.SHELL, tmux_session=session,
            ),
        )
        return self.store.get_builder(builder_id)

    def _spawn_worktree(self, request: SpawnRequest) -> Builder:
        short_id = generate_short_id()
        builder_id = f"worktree-{short_id}"
        self._header(builder_id, 'worktree')

        return self._provision_and_start(
            builder_id=builder_id,
            branch=f"builder/worktree-{short_id}",
            prompt=None,
            role=self._role(request, 'builder'),
            name="Worktree session",
            builder_type=BuilderType.WORKTREE,
            phase="interactive",
        )

    def spawn_worktree_tab(self) -> Builder:
        """
        Interactive worktree builder for a dashboard tab.

        Unlike the CLI modes, a failed start removes the new worktree and
        branch again.
        """
        short_id = generate_short_id()
        builder_id = f"worktree-{short_id}"
        branch = f"builder/worktree-{short_id}"
        worktree_path = self.config.builders_dir / builder_id

        self.worktrees.prune()
        self.config.ensure_directories()
        self.worktrees.create_worktree(branch, worktree_path)

        try:
            return self._start_builder(
                builder_id=builder_id,
                branch=branch,
                worktree_path=worktree_path,
                prompt=None,
                role=self._role(SpawnRequest(SpawnMode.WORKTREE), 'builder'),
                name=f"Worktree {short_id}",
                builder_type=BuilderType.WORKTREE,
                status=BuilderStatus.IMPLEMENTING,
                phase="interactive",
            )
        except AgentFarmError:
            self.worktrees.remove_worktree(worktree_path, force=True)
            self.worktrees.delete_branch(branch, force=True)
            raise

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    def _provision_and_start(self,
                             builder_id: str,
                             branch: str,
                             prompt: Optional[str],
                             role: Optional[Tuple[str, str]],
                             name: str,
                             builder_type: BuilderType,
                             phase: str = "init",
                             after_worktree: Optional[Callable[[], None]] = None,
                             **extra) -> Builder:
        self.dependency_check()

        worktree_path = self.config.builders_dir / builder_id
        if self.store.get_builder(builder_id):
            raise PreconditionError(
                f"Builder {builder_id} already exists",
                hint=f"Run: af cleanup --project {builder_id}"
            )

        self.worktrees.create_worktree(branch, worktree_path)
        if after_worktree:
            after_worktree()

        return self._start_builder(
            builder_id=builder_id,
            branch=branch,
            worktree_path=worktree_path,
            prompt=prompt,
            role=role,
            name=name,
            builder_type=builder_type,
            phase=phase,
            **extra,
        )

    def _start_builder(self,
                       builder_id: str,
                       branch: str,
                       worktree_path: Path,
                       prompt: Optional[str],
                       role: Optional[Tuple[str, str]],
                       name: str,
                       builder_type: BuilderType,
                       status: BuilderStatus = BuilderStatus.SPAWNING,
                       phase: str = "init",
                       **extra) -> Builder:
        """Write launch files, start session + ttyd and record the builder."""
        try:
            script = self._write_launch_files(worktree_path, prompt, role)
        except OSError as e:
            raise SpawnError(builder_id, f"cannot write launch files: {e}",
                             worktree=str(worktree_path), branch=branch) from e

        session = self.names.builder(builder_id)
        self._start_with_port_retry(
            builder_id=builder_id,
            session=session,
            command=str(script),
            cwd=worktree_path,
            make_builder=lambda pid, port: Builder(
                id=builder_id, name=name, port=port, pid=pid,
                status=status, phase=phase,
                worktree=str(worktree_path), branch=branch,
                type=builder_type, tmux_session=session, **extra,
            ),
            worktree=str(worktree_path),
            branch=branch,
        )
        return self.store.get_builder(builder_id)

    def _start_with_port_retry(self,
                               builder_id: str,
                               session: str,
                               command: str,
                               cwd: Path,
                               make_builder: Callable[[int, int], Builder],
                               worktree: Optional[str] = None,
                               branch: Optional[str] = None) -> Tuple[int, int]:
        """
        Start the session and record the builder, retrying on port races.

        A concurrent spawn may pick the same port. The ttyd that loses the
        bind never listens and spawn_session reports it, so only a builder
        with a serving terminal is recorded. A conflict between two serving
        terminals is caught by the UNIQUE(port) constraint.
        """
        skip = set()
        for attempt in range(PORT_CONFLICT_RETRIES):
            port = self._find_free_port(skip)
            if port is None:
                raise SpawnError(builder_id, "no free port in builder range",
                                 worktree=worktree, branch=branch)
            try:
                pid, port = self.pm.spawn_session(session, command, cwd, port)
            except PortInUseError:
                logger.warning(f"ttyd lost port {port}, retrying ({attempt + 1}/{PORT_CONFLICT_RETRIES})")
                skip.add(port)
                continue
            except AgentFarmError as e:
                raise SpawnError(builder_id, e.message, worktree=worktree, branch=branch) from e

            if self.store.try_upsert_builder(make_builder(pid, port)):
                logger.info(f"Builder {builder_id} on port {port} (pid {pid})")
                return pid, port

            logger.warning(f"Port {port} claimed concurrently, retrying ({attempt + 1}/{PORT_CONFLICT_RETRIES})")
            self.pm.kill_gracefully(pid)
            skip.add(port)

        self.pm.kill_session(session)
        raise SpawnError(builder_id, "could not claim a port after retries",
                         worktree=worktree, branch=branch)

    def _find_free_port(self, extra_skip: set) -> Optional[int]:
        start, end = self.config.builder_port_range
        used = self.store.load().used_ports() | extra_skip
        return SystemUtils.find_available_port(start, skip=used, max_attempts=end - start + 1)

    def _write_launch_files(self, worktree_path: Path,
                            prompt: Optional[str],
                            role: Optional[Tuple[str, str]]) -> Path:
        prompt_file = None
        if prompt is not None:
            prompt_file = FileUtils.write_text(worktree_path / PROMPT_FILE, prompt)

        role_file = None
        if role:
            content, source = role
            content = content.replace('{PORT}', str(self.config.dashboard_port))
            role_file = FileUtils.write_text(worktree_path / ROLE_FILE, content)
            console.print(f"[blue]Loaded role ({source})[/blue]")

        command = build_prompt_command(
            self.config.commands['builder'],
            system_prompt_file=role_file,
            user_prompt_file=prompt_file,
        )
        return write_launch_script(worktree_path / START_SCRIPT, command)

    def _role(self, request: SpawnRequest, name: str) -> Optional[Tuple[str, str]]:
        if request.no_role:
            return None
        role = load_role(self.config.roles_dir, BUNDLED_ROLES_DIR, name)
        if role is None:
            console.print(f"[yellow]⚠️ Role '{name}' not found, starting without a role[/yellow]")
        return role

    def _validate_protocol(self, protocol: str) -> None:
        protocols_dir = self.config.codev_dir / 'protocols'
        protocol_dir = protocols_dir / protocol
        if not protocol_dir.is_dir():
            available = ''
            if protocols_dir.is_dir():
                names = sorted(p.name for p in protocols_dir.iterdir() if p.is_dir())
                if names:
                    available = f"Available protocols: {', '.join(names)}"
            raise PreconditionError(f"Protocol not found: {protocol}", hint=available or None)
        if not (protocol_dir / 'protocol.md').exists():
            raise PreconditionError(f"Protocol {protocol} exists but has no protocol.md file")

    def _check_bugfix_collisions(self, issue: Issue, force: bool) -> None:
        """
        Best-effort checks that nobody else is already on this issue.

        Raises:
            PreconditionError: On a recent "on it" comment or open PRs, unless forced
        """
        on_it = [c for c in issue.comments if 'on it' in c.body.lower()]
        if on_it:
            last = on_it[-1]
            try:
                hours = round(last.age_hours())
            except ValueError:
                hours = None
            if hours is not None and hours < ON_IT_WINDOW_HOURS:
                if not force:
                    raise PreconditionError(
                        f'Issue #{issue.number} has "On it" comment from {hours}h ago '
                        f'(by @{last.author}). Someone may already be working on this.',
                        hint="Use --force to override."
                    )
                console.print(f'[yellow]⚠️ "On it" comment from {hours}h ago - proceeding with --force[/yellow]')
            else:
                console.print('[yellow]⚠️ Stale "On it" comment. Proceeding.[/yellow]')

        prs = self.issues.find_open_prs(issue.number)
        if prs:
            if not force:
                listing = "\n".join(f"  - PR #{pr.get('number')}: {pr.get('title')}" for pr in prs)
                raise PreconditionError(
                    f"Found {len(prs)} open PR(s) referencing issue #{issue.number}:\n{listing}",
                    hint="Use --force to proceed anyway."
                )
            console.print(f"[yellow]⚠️ Found {len(prs)} open PR(s) referencing issue - proceeding with --force[/yellow]")

        if issue.is_closed:
            console.print(f"[yellow]⚠️ Issue #{issue.number} is already closed[/yellow]")

    def _header(self, builder_id: str, mode: str, **fields: str) -> None:
        console.print(f"[bold cyan]Spawning Builder {builder_id} ({mode})[/bold cyan]")
        for key, value in fields.items():
            console.print(f"  {key}: {value}")
