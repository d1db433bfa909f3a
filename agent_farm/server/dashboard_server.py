"""
Dashboard State Server

Long-running Flask app, one per project instance. Serves the session state
as JSON and the tab lifecycle REST API used by the dashboard UI.
"""

import html
import json
import logging
import os
import re
import shlex
import signal
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from flask import Flask, Response, jsonify, render_template_string, request
from werkzeug.exceptions import HTTPException

from ..core.errors import AgentFarmError, GitError, PortInUseError, UserInputError
from ..core.models import Annotation, ParentType, UtilTerminal
from ..core.process_manager import ProcessManager
from ..core.spawner import BuilderSpawner
from ..core.state_store import StateStore
from ..git.worktree_manager import WorktreeManager, validate_branch_name
from ..tmux.session_controller import SessionNames
from ..utils.config_loader import Config
from ..utils.path_utils import resolve_within_root
from ..utils.system_utils import SystemUtils, generate_id
from .security import install_loopback_guard

logger = logging.getLogger(__name__)

MAX_TABS = 20
MAX_JSON_BODY = 1024 * 1024
TAB_PORT_RETRIES = 5
SHELL_NAME_PATTERN = r'^[a-zA-Z0-9_-]+$'
INVALID_BRANCH_MESSAGE = ('Invalid branch name. Avoid spaces, control characters, '
                          '.., @{, and leading/trailing slashes.')

EXCLUDED_DIRS = frozenset({
    'node_modules', '.git', 'dist', '.builders', '__pycache__', '.next', '.nuxt',
    '.turbo', 'coverage', '.nyc_output', '.cache', '.parcel-cache', 'build',
    '.svelte-kit', 'vendor', '.venv', 'venv', 'env', '.env',
})

DASHBOARD_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <title>Agent Farm - {{ project_name }}</title>
    <meta charset="utf-8">
    <style>
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
               margin: 0; background: #1a1a1a; color: #ccc; }
        header { padding: 12px 20px; background: #111; border-bottom: 1px solid #333; }
        h1 { margin: 0; font-size: 16px; color: #fff; }
        #tabs { display: flex; gap: 4px; padding: 8px 20px; flex-wrap: wrap; }
        .tab { padding: 6px 10px; background: #2a2a2a; border-radius: 4px; cursor: pointer; }
        iframe { width: 100%; height: calc(100vh - 100px); border: 0; background: #000; }
    </style>
</head>
<body>
    <header><h1>Agent Farm: {{ project_name }}</h1></header>
    <div id="tabs"></div>
    <iframe id="terminal"></iframe>
    <script>
        window.INITIAL_STATE = {{ initial_state|tojson }};

        function renderTabs(state) {
            const tabs = document.getElementById('tabs');
            tabs.innerHTML = '';
            const entries = [];
            if (state.architect) entries.push({label: 'Architect', port: state.architect.port});
            state.builders.forEach(b => entries.push({label: b.name, port: b.port}));
            state.utils.forEach(u => entries.push({label: u.name, port: u.port}));
            state.annotations.forEach(a => entries.push({label: a.file.split('/').pop(), port: a.port}));
            entries.forEach(entry => {
                const el = document.createElement('div');
                el.className = 'tab';
                el.textContent = entry.label;
                el.onclick = () => {
                    document.getElementById('terminal').src = 'http://localhost:' + entry.port;
                };
                tabs.appendChild(el);
            });
        }

        async function refresh() {
            const res = await fetch('/api/state');
            renderTabs(await res.json());
        }

        const channel = new BroadcastChannel('agent-farm');
        channel.onmessage = async (event) => {
            if (event.data && event.data.type === 'openFile') {
                await fetch('/api/tabs/file', {
                    method: 'POST',
                    headers: {'Content-Type': 'application/json'},
                    body: JSON.stringify({path: event.data.path})
                });
                refresh();
            }
        };

        renderTabs(window.INITIAL_STATE);
        setInterval(refresh, 2000);
    </script>
</body>
</html>
"""

OPEN_FILE_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
  <title>Opening file...</title>
  <style>
    body { font-family: system-ui; background: #1a1a1a; color: #ccc; display: flex;
           align-items: center; justify-content: center; height: 100vh; margin: 0; }
    .message { text-align: center; }
    .path { color: #3b82f6; font-family: monospace; margin: 8px 0; }
  </style>
</head>
<body>
  <div class="message">
    <p>Opening file...</p>
    <p class="path">{{ display_path }}{% if line %}:{{ line }}{% endif %}</p>
  </div>
  <script>
    (function() {
      const channel = new BroadcastChannel('agent-farm');
      channel.postMessage({type: 'openFile', path: {{ full_path|tojson }}, line: {{ line_number|tojson }}});
      setTimeout(() => {
        window.close();
        document.body.innerHTML = '<div class="message"><p>File opened in dashboard</p>' +
          '<p class="path">You can close this tab</p></div>';
      }, 500);
    })();
  </script>
</body>
</html>
"""


def get_project_name(project_root: Path) -> str:
    """Directory name, shortened from the left to at most 30 characters."""
    name = Path(project_root).name
    if len(name) > 30:
        return '...' + name[-27:]
    return name


def build_file_tree(directory: Path, relative: str = '') -> List[Dict[str, Any]]:
    """
    Recursive listing for the file browser.

    Build and VCS directories are skipped. Directories sort before files,
    then alphabetically.
    """
    entries = []
    try:
        items = list(os.scandir(directory))
    except OSError as e:
        logger.warning(f"Error reading directory {directory}: {e}")
        return entries

    for item in items:
        if item.name in EXCLUDED_DIRS:
            continue
        rel_path = f"{relative}/{item.name}" if relative else item.name
        if item.is_dir(follow_symlinks=False):
            entries.append({
                'name': item.name,
                'path': rel_path,
                'type': 'dir',
                'children': build_file_tree(Path(item.path), rel_path),
            })
        elif item.is_file():
            entries.append({'name': item.name, 'path': rel_path, 'type': 'file'})

    entries.sort(key=lambda e: (e['type'] != 'dir', e['name'].lower()))
    return entries


def viewer_command(port: int, file_path: Path) -> List[str]:
    return [sys.executable, '-m', 'agent_farm', 'viewer', str(port), str(file_path)]


def _text(body: str, status: int) -> Response:
    return Response(body, status=status, mimetype='text/plain')


def _tab_limit_response() -> Response:
    return _text(f"Tab limit reached (max {MAX_TABS}). Close some tabs first.", 429)


def _default_shutdown() -> None:
    os.kill(os.getpid(), signal.SIGINT)


def create_app(config: Config,
               store: StateStore,
               process_manager: ProcessManager,
               spawner: Optional[BuilderSpawner] = None,
               worktrees: Optional[WorktreeManager] = None,
               viewer_argv: Callable[[int, Path], List[str]] = viewer_command,
               shutdown: Callable[[], None] = _default_shutdown) -> Flask:
    """
    Build the dashboard Flask app for one project.

    Args:
        config: Project configuration (root and port ranges)
        store: Session state store shared with the CLI
        process_manager: Spawns and kills session processes
        spawner: Builder spawner for worktree builder tabs
        worktrees: Worktree manager for worktree shell tabs
        viewer_argv: Builds the file viewer command for a port and file
        shutdown: Called shortly after POST /api/stop responds

    Returns:
        Flask app
    """
    app = Flask(__name__)
    app.config['MAX_CONTENT_LENGTH'] = MAX_JSON_BODY
    app.config['VIEWER_READY_TIMEOUT'] = 5.0
    install_loopback_guard(app)

    root = config.project_root
    pm = process_manager
    spawner = spawner or BuilderSpawner(config, store, pm)
    worktrees = worktrees or WorktreeManager(root)
    names = SessionNames(root)

    def json_body() -> Dict[str, Any]:
        data = request.get_json(silent=True, force=True)
        if data is None:
            if request.get_data():
                raise UserInputError('Invalid JSON body')
            return {}
        if not isinstance(data, dict):
            raise UserInputError('JSON body must be an object')
        return data

    def find_port(port_range, state, skip=()) -> Optional[int]:
        start, end = port_range
        return SystemUtils.find_available_port(start, skip=state.used_ports() | set(skip),
                                               max_attempts=end - start + 1)

    def live_annotation(full_path: Path) -> Optional[Annotation]:
        """The recorded viewer for a file if it is still running; a dead record is dropped."""
        existing = store.find_annotation_by_file(str(full_path))
        if existing is None or pm.is_process_running(existing.pid):
            return existing
        logger.info(f"Cleaning up stale annotation for {full_path} (pid {existing.pid} dead)")
        store.remove_annotation(existing.id)
        return None

    @app.errorhandler(UserInputError)
    def _user_error(e: UserInputError):
        return _text(e.message, 400)

    @app.errorhandler(Exception)
    def _internal_error(e: Exception):
        if isinstance(e, HTTPException):
            return e
        logger.exception(f"Request error on {request.method} {request.path}")
        return _text(f"Internal server error: {e}", 500)

    @app.route('/api/state', methods=['GET'])
    def get_state():
        return jsonify(store.load(prune=True).to_dict())

    @app.route('/api/tabs/file', methods=['POST'])
    def create_file_tab():
        body = json_body()
        file_path = body.get('path')
        if not file_path or not isinstance(file_path, str):
            return _text('Missing path', 400)

        full_path = resolve_within_root(root, file_path)
        if full_path is None:
            return _text('Path must be within project directory', 403)
        if not full_path.exists():
            return _text(f"File not found: {file_path}", 404)
        if not full_path.is_file():
            return _text(f"Not a regular file: {file_path}", 400)

        existing = live_annotation(full_path)
        if existing:
            return jsonify({'id': existing.id, 'port': existing.port, 'existing': True}), 200

        if store.load().tab_count() >= MAX_TABS:
            return _tab_limit_response()

        skip = set()
        for attempt in range(TAB_PORT_RETRIES):
            port = find_port(config.annotate_port_range, store.load(), skip)
            if port is None:
                break
            try:
                pid = pm.spawn_detached(viewer_argv(port, full_path), root)
            except OSError as e:
                logger.error(f"Failed to start viewer for {full_path}: {e}")
                return _text('Failed to start file viewer', 500)

            if not pm.wait_for_listener(pid, port, timeout=app.config['VIEWER_READY_TIMEOUT']):
                exited = not pm.is_process_running(pid)
                pm.kill_gracefully(pid)
                if not exited:
                    return _text('File viewer failed to start (timeout)', 500)
                logger.info(f"Viewer lost port {port}, retrying (attempt {attempt + 1}/{TAB_PORT_RETRIES})")
                skip.add(port)
                continue

            annotation = Annotation(
                id=generate_id('A'),
                file=str(full_path),
                port=port,
                pid=pid,
                parent_type=ParentType.ARCHITECT,
            )
            if store.try_add_annotation(annotation):
                return jsonify({'id': annotation.id, 'port': port}), 201

            # A concurrent request recorded this file or port first
            pm.kill_gracefully(pid)
            existing = live_annotation(full_path)
            if existing:
                return jsonify({'id': existing.id, 'port': existing.port, 'existing': True}), 200
            skip.add(port)

        return _text('No free port for file viewer', 500)

    @app.route('/api/tabs/builder', methods=['POST'])
    def create_builder_tab():
        if store.load().tab_count() >= MAX_TABS:
            return _tab_limit_response()
        try:
            builder = spawner.spawn_worktree_tab()
        except AgentFarmError as e:
            logger.error(f"Worktree builder spawn failed: {e.message}")
            return _text('Failed to spawn worktree builder', 500)
        return jsonify({'id': builder.id, 'port': builder.port, 'name': builder.name}), 201

    @app.route('/api/tabs/shell', methods=['POST'])
    def create_shell_tab():
        body = json_body()
        name = body.get('name') or None
        command = body.get('command') or None
        use_worktree = body.get('worktree') is True
        branch = body.get('branch') or None

        if name is not None:
            if not isinstance(name, str) or not re.match(SHELL_NAME_PATTERN, name):
                return _text('Invalid name format', 400)

        if branch is not None and (not isinstance(branch, str) or validate_branch_name(branch)):
            return jsonify({'success': False, 'error': INVALID_BRANCH_MESSAGE}), 200

        state = store.load()
        if state.tab_count() >= MAX_TABS:
            return _tab_limit_response()

        cwd = root
        worktree_path = None
        if use_worktree:
            worktree_name = branch or f"temp-{int(time.time() * 1000)}"
            target = root / '.worktrees' / worktree_name
            if target.exists():
                return jsonify({
                    'success': False,
                    'error': f"Worktree '{worktree_name}' already exists at {target}",
                }), 200
            try:
                cwd = worktrees.create_shell_worktree(branch, target)
            except (GitError, UserInputError) as e:
                return jsonify({'success': False, 'error': f"Git worktree creation failed: {e.message}"}), 200
            worktree_path = str(cwd)

        util_id = generate_id('U')
        kind = 'worktree' if use_worktree else 'shell'
        util_name = name or f"{kind}-{len(state.utils) + 1}"
        session = names.shell(util_id)

        shell = SystemUtils.default_shell()
        shell_command = f"{shell} -c {shlex.quote(f'{command}; exec {shell}')}" if command else shell

        skip = set()
        for attempt in range(TAB_PORT_RETRIES):
            port = find_port(config.util_port_range, store.load(), skip)
            if port is None:
                break
            try:
                pid, port = pm.spawn_session(session, shell_command, cwd, port)
            except PortInUseError:
                logger.info(f"ttyd lost port {port}, retrying (attempt {attempt + 1}/{TAB_PORT_RETRIES})")
                skip.add(port)
                continue
            except AgentFarmError as e:
                logger.error(f"Failed to start shell {util_id}: {e.message}")
                return _text('Failed to start shell', 500)

            util = UtilTerminal(
                id=util_id, name=util_name, port=port, pid=pid,
                tmux_session=session, worktree_path=worktree_path,
            )
            if store.try_add_util(util):
                return jsonify({'success': True, 'id': util_id, 'port': port, 'name': util_name}), 201

            logger.info(f"Port {port} conflict, retrying (attempt {attempt + 1}/{TAB_PORT_RETRIES})")
            pm.kill_gracefully(pid)
            skip.add(port)

        pm.kill_session(session)
        return _text('Failed to allocate port after multiple retries', 500)

    @app.route('/api/tabs/<path:tab_id>', methods=['DELETE'])
    def close_tab(tab_id: str):
        found = False

        if tab_id.startswith('file-'):
            annotation_id = tab_id[len('file-'):]
            annotation = next((a for a in store.get_annotations() if a.id == annotation_id), None)
            if annotation:
                pm.kill_gracefully(annotation.pid)
                store.remove_annotation(annotation_id)
                found = True

        elif tab_id.startswith('builder-'):
            builder_id = tab_id[len('builder-'):]
            builder = store.get_builder(builder_id)
            if builder:
                pm.kill_gracefully(builder.pid, builder.tmux_session)
                store.remove_builder(builder_id)
                found = True

        elif tab_id.startswith('shell-'):
            util_id = tab_id[len('shell-'):]
            util = store.get_util(util_id)
            if util:
                # Worktrees stay on disk for inspection
                pm.kill_gracefully(util.pid, util.tmux_session)
                store.remove_util(util_id)
                found = True

        if found:
            return jsonify({'success': True}), 200
        return _text('Tab not found', 404)

    @app.route('/api/stop', methods=['POST'])
    def stop_all():
        state = store.load()
        targets = []
        if state.architect:
            targets.append((state.architect.pid, state.architect.tmux_session))
        for session in [*state.builders, *state.utils]:
            targets.append((session.pid, session.tmux_session))
        for annotation in state.annotations:
            targets.append((annotation.pid, None))

        if targets:
            with ThreadPoolExecutor(max_workers=min(8, len(targets))) as pool:
                list(pool.map(lambda t: pm.kill_gracefully(*t), targets))

        store.clear_state()
        logger.info(f"Stopped {len(targets)} session(s), shutting down dashboard")

        timer = threading.Timer(0.5, shutdown)
        timer.daemon = True
        timer.start()
        return jsonify({'success': True, 'killed': len(targets)})

    @app.route('/open-file', methods=['GET'])
    def open_file():
        file_path = request.args.get('path')
        line = request.args.get('line')
        source_port = request.args.get('sourcePort')

        if not file_path:
            return _text('Missing path parameter', 400)

        base = root
        if source_port and source_port.isdigit():
            port = int(source_port)
            builder = next((b for b in store.get_builders() if b.port == port), None)
            if builder and builder.worktree:
                base = Path(builder.worktree)

        full_path = resolve_within_root(root, file_path, base=base)
        if full_path is None:
            return _text('Path must be within project directory', 403)
        if not full_path.exists():
            return _text(f"File not found: {file_path}", 404)

        line_number = int(line) if line and line.isdigit() else None
        page = render_template_string(
            OPEN_FILE_TEMPLATE,
            display_path=file_path,
            line=line,
            full_path=str(full_path),
            line_number=line_number,
        )
        return Response(page, mimetype='text/html')

    @app.route('/api/projectlist-exists', methods=['GET'])
    def projectlist_exists():
        return jsonify({'exists': (root / 'codev' / 'projectlist.md').exists()})

    @app.route('/file', methods=['GET'])
    def read_file():
        file_path = request.args.get('path')
        if not file_path:
            return _text('Missing path parameter', 400)

        full_path = resolve_within_root(root, file_path)
        if full_path is None:
            return _text('Path must be within project directory', 403)
        if not full_path.exists():
            return _text(f"File not found: {file_path}", 404)

        try:
            content = full_path.read_text(encoding='utf-8')
        except (OSError, UnicodeDecodeError) as e:
            return _text(f"Error reading file: {e}", 500)
        return Response(content, mimetype='text/plain')

    @app.route('/api/files', methods=['GET'])
    def file_tree():
        return jsonify(build_file_tree(root))

    @app.route('/', methods=['GET'])
    @app.route('/index.html', methods=['GET'])
    def index():
        return render_template_string(
            DASHBOARD_TEMPLATE,
            project_name=get_project_name(root),
            initial_state=store.load(prune=True).to_dict(),
        )

    return app


def run_dashboard(config: Config,
                  port: Optional[int] = None,
                  bind_host: Optional[str] = None) -> None:
    """
    Run the dashboard in the foreground until interrupted.

    Args:
        config: Project configuration
        port: Listen port (default: the project's dashboard port)
        bind_host: Interface (default: 127.0.0.1)
    """
    from ..core.port_registry import PortRegistry

    port = port or config.dashboard_port
    pm = ProcessManager()
    store = StateStore(config.state_dir, process_manager=pm)

    registry = PortRegistry()
    try:
        registry.touch(config.project_root, os.getpid())
    finally:
        registry.close()

    app = create_app(config, store, pm)
    logger.info(f"Dashboard: http://{bind_host or 'localhost'}:{port}")
    try:
        app.run(host=bind_host or '127.0.0.1', port=port, threaded=True)
    finally:
        store.close()
