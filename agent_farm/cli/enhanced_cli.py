"""
Agent Farm CLI

Command-line interface for the `af` command: lifecycle commands for the
architect, builders, utility shells and file viewers of one project, plus
the global port registry and database inspection.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from .. import __version__
from ..core.errors import AgentFarmError
from ..core.models import BuilderStatus
from ..core.orchestrator import FarmOrchestrator
from ..core.port_registry import GLOBAL_DB_NAME, PortRegistry, default_home, last_used_display
from ..core.process_manager import ProcessManager
from ..core.remote import start_remote
from ..core.spawner import BuilderSpawner, SpawnOptions
from ..core.state_store import STATE_DB_NAME, StateStore
from ..database.admin import database_stats, dump_tables, reset_database, run_select
from ..utils.config_loader import Config, load_config

console = Console()
logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

STATUS_COLORS = {
    'implementing': 'blue',
    'blocked': 'yellow',
    'pr-ready': 'green',
    'complete': 'green',
}

TYPE_COLORS = {
    'spec': 'cyan',
    'task': 'magenta',
    'protocol': 'yellow',
    'bugfix': 'red',
    'worktree': 'blue',
    'shell': 'dim',
}


def setup_logging(verbosity: int = 0, minimum: int = logging.WARNING) -> None:
    """Configure root logging once. -v gives INFO, -vv gives DEBUG."""
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = minimum
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)


class AgentFarmCLI:
    """
    Command-line interface for Agent Farm.

    Features:
    - Rich console output with colors and tables
    - One subcommand per lifecycle operation
    - Errors reported with remediation hints and exit code 1
    """

    def __init__(self):
        self.parser = self._create_argument_parser()

    def error(self, message: str) -> None:
        console.print(f"[red]❌ {message}[/red]")

    def success(self, message: str) -> None:
        console.print(f"[green]✅ {message}[/green]")

    def warning(self, message: str) -> None:
        console.print(f"[yellow]⚠️  {message}[/yellow]")

    def info(self, message: str) -> None:
        console.print(f"[blue]{message}[/blue]")

    def run(self, args: Optional[List[str]] = None) -> int:
        """
        Run CLI with provided arguments.

        Args:
            args: Command-line arguments (defaults to sys.argv)

        Returns:
            Exit code (0 for success)
        """
        parsed_args = self.parser.parse_args(args)
        if not hasattr(parsed_args, 'func'):
            self.parser.print_help()
            return 1

        setup_logging(parsed_args.verbose)

        try:
            result = parsed_args.func(parsed_args)
            return result or 0
        except KeyboardInterrupt:
            console.print("\n[yellow]Operation cancelled by user[/yellow]")
            return 130
        except AgentFarmError as e:
            self.error(e.message)
            if e.hint:
                console.print(f"   {e.hint}")
            logger.debug("Command failed", exc_info=True)
            return 1

    # ------------------------------------------------------------------
    # Parser
    # ------------------------------------------------------------------

    def _create_argument_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog="af",
            description="Agent Farm - multi-agent orchestration for software development",
            epilog="Use 'af <command> --help' for command-specific help"
        )
        parser.add_argument("--version", action="version", version=f"Agent Farm v{__version__}")
        parser.add_argument("--verbose", "-v", action="count", default=0,
                            help="Increase verbosity (use -v or -vv)")
        parser.add_argument("--architect-cmd", help="Override architect command")
        parser.add_argument("--builder-cmd", help="Override builder command")
        parser.add_argument("--shell-cmd", help="Override shell command")

        subparsers = parser.add_subparsers(title="commands", dest="command")

        start = subparsers.add_parser("start", help="Start the architect and dashboard")
        start.add_argument("--no-browser", action="store_true", help="Do not open the dashboard")
        start.add_argument("--no-role", action="store_true", help="Skip the architect role prompt")
        start.add_argument("--bind", help="Interface for the dashboard server")
        start.add_argument("--port", type=int, help="Dashboard port (skips the port registry)")
        start.add_argument("--remote", metavar="USER@HOST[:PATH]",
                           help="Start on a remote machine over SSH and forward the dashboard")
        start.set_defaults(func=self._cmd_start)

        architect = subparsers.add_parser("architect", help="Run the architect in this terminal")
        architect.add_argument("args", nargs="*", help="First message for the architect")
        architect.add_argument("--layout", action="store_true",
                               help="Add a utility shell pane beside the architect")
        architect.set_defaults(func=self._cmd_architect)

        stop = subparsers.add_parser("stop", help="Stop every session of this project")
        stop.set_defaults(func=self._cmd_stop)

        status = subparsers.add_parser("status", help="Show sessions and their liveness")
        status.set_defaults(func=self._cmd_status)

        self._add_spawn_command(subparsers)

        set_status = subparsers.add_parser("set-status", help="Update a builder's status")
        set_status.add_argument("id", help="Builder ID")
        set_status.add_argument("status", choices=BuilderStatus.values())
        set_status.add_argument("--phase", help="Free-form phase label")
        set_status.set_defaults(func=self._cmd_set_status)

        send = subparsers.add_parser("send", help="Send a message to a builder or the architect")
        send.add_argument("target", nargs="?", help="Builder ID or 'architect'")
        send.add_argument("message", nargs="?", help="Message text ('-' reads stdin)")
        send.add_argument("--all", action="store_true", help="Send to all builders")
        send.add_argument("--file", type=Path, help="Include file content in message")
        send.add_argument("--interrupt", action="store_true", help="Send Ctrl+C first")
        send.add_argument("--raw", action="store_true", help="Skip structured message formatting")
        send.add_argument("--no-enter", action="store_true", help="Do not send Enter after message")
        send.set_defaults(func=self._cmd_send)

        rename = subparsers.add_parser("rename", help="Rename a builder or utility terminal")
        rename.add_argument("id")
        rename.add_argument("name")
        rename.set_defaults(func=self._cmd_rename)

        cleanup = subparsers.add_parser("cleanup", help="Stop a builder and remove its record")
        target = cleanup.add_mutually_exclusive_group(required=True)
        target.add_argument("--project", "-p", help="Builder ID")
        target.add_argument("--issue", "-i", type=int, help="Issue number of a bugfix builder")
        cleanup.add_argument("--remove-worktree", action="store_true",
                             help="Also remove the worktree and branch")
        cleanup.add_argument("--force", "-f", action="store_true",
                             help="Remove despite uncommitted changes")
        cleanup.set_defaults(func=self._cmd_cleanup)

        util = subparsers.add_parser("util", aliases=["shell"], help="Open a utility shell")
        util.add_argument("--name", "-n", help="Name for the shell terminal")
        util.set_defaults(func=self._cmd_util)

        open_cmd = subparsers.add_parser("open", help="Open a file viewer")
        open_cmd.add_argument("file")
        open_cmd.set_defaults(func=self._cmd_open)

        dashboard = subparsers.add_parser("dashboard", help="Run the dashboard server in the foreground")
        dashboard.add_argument("--port", type=int, help="Port (default: the project's dashboard port)")
        dashboard.add_argument("--bind", help="Interface to bind (default: 127.0.0.1)")
        dashboard.set_defaults(func=self._cmd_dashboard)

        viewer = subparsers.add_parser("viewer", help="Serve a single file viewer")
        viewer.add_argument("port", type=int)
        viewer.add_argument("file", type=Path)
        viewer.add_argument("--bind", default="127.0.0.1")
        viewer.set_defaults(func=self._cmd_viewer)

        ports = subparsers.add_parser("ports", help="Manage the global port registry")
        ports_sub = ports.add_subparsers(dest="ports_action")
        ports_list = ports_sub.add_parser("list", help="List all port allocations")
        ports_list.set_defaults(func=self._cmd_ports_list)
        ports_cleanup = ports_sub.add_parser("cleanup", help="Remove stale port allocations")
        ports_cleanup.set_defaults(func=self._cmd_ports_cleanup)
        ports.set_defaults(func=self._cmd_ports_list)

        db = subparsers.add_parser("db", help="Inspect or reset the state databases")
        db_sub = db.add_subparsers(dest="db_action")
        db_dump = db_sub.add_parser("dump", help="Print every table as JSON")
        db_dump.set_defaults(func=self._cmd_db_dump)
        db_query = db_sub.add_parser("query", help="Run a SELECT query and print the rows as JSON")
        db_query.add_argument("sql")
        db_query.set_defaults(func=self._cmd_db_query)
        db_reset = db_sub.add_parser("reset", help="Delete the database and start fresh")
        db_reset.add_argument("--force", action="store_true", help="Confirm the deletion")
        db_reset.set_defaults(func=self._cmd_db_reset)
        db_stats = db_sub.add_parser("stats", help="Show row counts and file statistics")
        db_stats.set_defaults(func=self._cmd_db_stats)
        for sub in (db_dump, db_query, db_reset, db_stats):
            sub.add_argument("--global", dest="global_db", action="store_true",
                             help="Use the global port registry database")
        db.set_defaults(func=self._cmd_db_stats, global_db=False)

        return parser

    def _add_spawn_command(self, subparsers) -> None:
        spawn = subparsers.add_parser(
            "spawn",
            help="Spawn a new builder",
            description="Spawn a builder in its own worktree. Exactly one mode flag is required."
        )
        spawn.add_argument("--project", "-p", help="Spawn builder for a spec")
        spawn.add_argument("--issue", "-i", help="Spawn bugfix builder for a GitHub issue")
        spawn.add_argument("--task", help="Spawn builder with a task description")
        spawn.add_argument("--protocol", help="Spawn builder to run a protocol")
        spawn.add_argument("--shell", action="store_true", help="Spawn a bare agent session")
        spawn.add_argument("--worktree", action="store_true", help="Spawn an interactive worktree session")
        spawn.add_argument("--files", help="Context files for --task (comma-separated)")
        spawn.add_argument("--no-role", action="store_true", help="Skip loading role prompt")
        spawn.add_argument("--no-comment", action="store_true", help="Don't comment on the issue")
        spawn.add_argument("--force", action="store_true", help="Skip bugfix collision checks")
        spawn.set_defaults(func=self._cmd_spawn)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _config(args, base_port: Optional[int] = None) -> Config:
        overrides = {
            'architect': args.architect_cmd,
            'builder': args.builder_cmd,
            'shell': args.shell_cmd,
        }
        return load_config(overrides=overrides, base_port=base_port)

    def _orchestrator(self, args) -> FarmOrchestrator:
        return FarmOrchestrator(self._config(args))

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _cmd_start(self, args) -> int:
        if args.remote:
            config = self._config(args, base_port=args.port)
            return start_remote(config, args.remote, port=args.port, open_browser=not args.no_browser)

        farm = FarmOrchestrator(self._config(args, base_port=args.port))
        try:
            farm.start(open_browser=not args.no_browser, no_role=args.no_role, bind_host=args.bind)
        finally:
            farm.close()
        return 0

    def _cmd_architect(self, args) -> int:
        farm = self._orchestrator(args)
        try:
            return farm.architect_terminal(args.args, layout=args.layout)
        finally:
            farm.close()

    def _cmd_stop(self, args) -> int:
        farm = self._orchestrator(args)
        try:
            farm.stop()
        finally:
            farm.close()
        return 0

    def _cmd_status(self, args) -> int:
        farm = self._orchestrator(args)
        try:
            report = farm.status()
        finally:
            farm.close()
        self._display_status(report)
        return 0

    def _display_status(self, report) -> None:
        state = report['state']
        alive = report['alive']

        console.print("[bold cyan]Agent Farm Status[/bold cyan]")
        if state.architect:
            running = alive.get(state.architect.pid)
            label = "[green]running[/green]" if running else "[red]stopped[/red]"
            console.print(f"  Architect: {label} (PID: {state.architect.pid}, port: {state.architect.port})")
            console.print(f"    Command: {state.architect.cmd}")
            console.print(f"    Started: {state.architect.started_at}")
            console.print(f"  Dashboard: [cyan]http://localhost:{report['dashboard_port']}[/cyan]")
        else:
            console.print("  Architect: [dim]not running[/dim]")

        if state.builders:
            table = Table(title="Builders")
            for column in ("ID", "Name", "Type", "Status", "Phase", "Port"):
                table.add_column(column)
            for builder in state.builders:
                status_color = STATUS_COLORS.get(builder.status.value, 'white') if alive.get(builder.pid) else 'dim'
                type_color = TYPE_COLORS.get(builder.type.value, 'white')
                table.add_row(
                    builder.id,
                    builder.name[:30],
                    f"[{type_color}]{builder.type.value}[/{type_color}]",
                    f"[{status_color}]{builder.status.value}[/{status_color}]",
                    builder.phase[:12],
                    str(builder.port),
                )
            console.print(table)
        else:
            console.print("  Builders: none")

        if state.utils:
            table = Table(title="Utility Terminals")
            for column in ("ID", "Name", "Port"):
                table.add_column(column)
            for util in state.utils:
                name = util.name if alive.get(util.pid) else f"[dim]{util.name} (stopped)[/dim]"
                table.add_row(util.id, name, str(util.port))
            console.print(table)
        else:
            console.print("  Utility Terminals: none")

        if state.annotations:
            table = Table(title="Annotations")
            for column in ("ID", "File", "Port"):
                table.add_column(column)
            for annotation in state.annotations:
                file = annotation.file if alive.get(annotation.pid) else f"[dim]{annotation.file} (stopped)[/dim]"
                table.add_row(annotation.id, file, str(annotation.port))
            console.print(table)
        else:
            console.print("  Annotations: none")

    def _cmd_spawn(self, args) -> int:
        options = SpawnOptions(
            project=args.project,
            issue=args.issue,
            task=args.task,
            protocol=args.protocol,
            shell=args.shell,
            worktree=args.worktree,
            files=[f.strip() for f in args.files.split(',') if f.strip()] if args.files else [],
            no_role=args.no_role,
            no_comment=args.no_comment,
            force=args.force,
        )
        config = self._config(args)
        pm = ProcessManager()
        store = StateStore(config.state_dir, process_manager=pm)
        try:
            BuilderSpawner(config, store, pm).spawn(options)
        finally:
            store.close()
        return 0

    def _cmd_set_status(self, args) -> int:
        farm = self._orchestrator(args)
        try:
            farm.set_status(args.id, args.status, args.phase)
        finally:
            farm.close()
        return 0

    def _cmd_send(self, args) -> int:
        message = args.message
        if message == '-':
            message = sys.stdin.read().strip()

        farm = self._orchestrator(args)
        try:
            results = farm.send(
                args.target, message,
                all_builders=args.all,
                interrupt=args.interrupt,
                raw=args.raw,
                no_enter=args.no_enter,
                file=args.file,
            )
        finally:
            farm.close()

        if results['failed']:
            self.error(f"Failed for {len(results['failed'])} builder(s): {', '.join(results['failed'])}")
            return 1
        return 0

    def _cmd_rename(self, args) -> int:
        farm = self._orchestrator(args)
        try:
            farm.rename(args.id, args.name)
        finally:
            farm.close()
        return 0

    def _cmd_cleanup(self, args) -> int:
        farm = self._orchestrator(args)
        try:
            farm.cleanup(project=args.project, issue=args.issue,
                         remove_worktree=args.remove_worktree, force=args.force)
        finally:
            farm.close()
        return 0

    def _cmd_util(self, args) -> int:
        farm = self._orchestrator(args)
        try:
            farm.util(name=args.name)
        finally:
            farm.close()
        return 0

    def _cmd_open(self, args) -> int:
        farm = self._orchestrator(args)
        try:
            farm.open_file(args.file)
        finally:
            farm.close()
        return 0

    def _cmd_dashboard(self, args) -> int:
        from ..server.dashboard_server import run_dashboard

        setup_logging(args.verbose, minimum=logging.INFO)
        config = self._config(args)
        run_dashboard(config, port=args.port, bind_host=args.bind)
        return 0

    def _cmd_viewer(self, args) -> int:
        from ..server.viewer_server import run_viewer

        setup_logging(args.verbose, minimum=logging.INFO)
        run_viewer(args.port, args.file, bind_host=args.bind)
        return 0

    def _cmd_ports_list(self, args) -> int:
        registry = PortRegistry()
        try:
            blocks = registry.list_allocations()
        finally:
            registry.close()

        if not blocks:
            self.info("No port allocations found.")
            return 0

        table = Table(title="Port Allocations")
        for column in ("Ports", "Project", "Status", "Last used"):
            table.add_column(column)
        for block in blocks:
            missing = not Path(block.project_path).exists()
            if missing:
                status = "[red]missing[/red]"
            elif block.live:
                status = "[green]live[/green]"
            else:
                status = "[dim]idle[/dim]"
            table.add_row(
                f"{block.base_port}-{block.base_port + 99}",
                block.project_path,
                status,
                last_used_display(block),
            )
        console.print(table)
        return 0

    def _cmd_ports_cleanup(self, args) -> int:
        registry = PortRegistry()
        try:
            result = registry.cleanup_stale_entries()
        finally:
            registry.close()

        if result['removed']:
            self.success(f"Removed {result['removed']} stale entries")
        else:
            self.info("No stale entries found.")
        console.print(f"Remaining allocations: {result['remaining']}")
        return 0

    def _db_path(self, args) -> Path:
        if args.global_db:
            return default_home() / GLOBAL_DB_NAME
        return self._config(args).state_dir / STATE_DB_NAME

    def _cmd_db_dump(self, args) -> int:
        console.print_json(data=dump_tables(self._db_path(args)), default=str)
        return 0

    def _cmd_db_query(self, args) -> int:
        console.print_json(data=run_select(self._db_path(args), args.sql), default=str)
        return 0

    def _cmd_db_reset(self, args) -> int:
        db_path = self._db_path(args)
        kind = "global" if args.global_db else "local"
        if not db_path.exists():
            self.info(f"No {kind} database found at {db_path}")
            return 0
        if not args.force:
            self.warning(f"This will delete the {kind} database at {db_path}")
            self.warning("Use --force to confirm.")
            return 1

        for path in reset_database(db_path):
            console.print(f"  Deleted {path}")
        self.success(f"{kind.capitalize()} database reset complete")
        return 0

    def _cmd_db_stats(self, args) -> int:
        db_path = self._db_path(args)
        stats = database_stats(db_path)

        console.print(f"[bold cyan]{'Global' if args.global_db else 'Local'} Database Statistics[/bold cyan]")
        console.print(f"  Path: {db_path}")
        table = Table(title="Table row counts")
        table.add_column("Table")
        table.add_column("Rows", justify="right")
        for name, count in stats['tables'].items():
            table.add_row(name, str(count))
        console.print(table)
        console.print(f"  Journal mode: {stats['journal_mode']}")
        console.print(f"  Page size: {stats['page_size']} bytes")
        console.print(f"  Page count: {stats['page_count']}")
        console.print(f"  Total size: {stats['size_kb']} KB")
        return 0
