#!/usr/bin/env python3
"""
Dashboard State Server Tests

Drives the Flask app through its test client with a real state store and
mocked process management.
"""

import os
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, Mock, patch

from agent_farm.core.errors import GitError, PortInUseError, SpawnError
from agent_farm.core.models import (
    Annotation, ArchitectState, Builder, BuilderStatus, BuilderType, UtilTerminal
)
from agent_farm.core.state_store import StateStore
from agent_farm.server.dashboard_server import (
    INVALID_BRANCH_MESSAGE, MAX_TABS, build_file_tree, create_app, get_project_name
)
from agent_farm.server.security import is_request_allowed
from agent_farm.tmux.session_controller import SessionNames
from agent_farm.utils.config_loader import Config


def next_free(start, skip=None, max_attempts=20):
    skipped = set(skip or ())
    for port in range(start, start + max_attempts):
        if port not in skipped:
            return port
    return None


class TestHelpers(unittest.TestCase):
    """Test module-level helpers"""

    def test_project_name_truncation(self):
        self.assertEqual(get_project_name(Path('/x/shop')), 'shop')
        long_name = 'a' * 20 + 'b' * 20
        self.assertEqual(get_project_name(Path('/x') / long_name), '...' + long_name[-27:])

    def test_request_guard(self):
        """Test only loopback Host and Origin values pass"""
        self.assertTrue(is_request_allowed('localhost:4200', None))
        self.assertTrue(is_request_allowed('127.0.0.1:4200', 'http://localhost:4200'))
        self.assertTrue(is_request_allowed(None, None))
        self.assertFalse(is_request_allowed('evil.com', None))
        self.assertFalse(is_request_allowed('localhost.evil.com', None))
        self.assertFalse(is_request_allowed('localhost:4200', 'http://evil.com'))
        self.assertFalse(is_request_allowed('localhost:4200', 'http://localhost.evil.com'))


class TestDashboardServer(unittest.TestCase):
    """Test the dashboard REST API"""

    def setUp(self):
        self.test_dir = os.path.realpath(tempfile.mkdtemp())
        self.root = Path(self.test_dir) / 'shop'
        (self.root / 'src').mkdir(parents=True)
        (self.root / 'src' / 'app.py').write_text('print("hi")\n')
        (self.root / 'README.md').write_text('# Shop\n')

        self.config = Config(project_root=self.root, base_port=4200)
        self.pm = MagicMock()
        self.pm.is_process_running.return_value = True
        self.pm.spawn_detached.return_value = 777
        self.pm.wait_for_listener.return_value = True
        self.pm.spawn_session.side_effect = lambda session, command, cwd, port: (888, port)
        self.store = StateStore(self.config.state_dir, process_manager=self.pm)
        self.spawner = Mock()
        self.worktrees = Mock()
        self.shutdown = Mock()

        self.app = create_app(
            self.config, self.store, self.pm,
            spawner=self.spawner, worktrees=self.worktrees, shutdown=self.shutdown,
        )
        self.app.config['TESTING'] = True
        self.client = self.app.test_client()

        self.port_patch = patch(
            'agent_farm.server.dashboard_server.SystemUtils.find_available_port',
            side_effect=next_free,
        )
        self.port_patch.start()

    def tearDown(self):
        self.port_patch.stop()
        self.store.close()
        shutil.rmtree(self.test_dir)

    def _fill_tabs(self, count):
        for i in range(count):
            self.store.add_util(UtilTerminal(f'U{i}', f'u{i}', 5000 + i, 100 + i))

    # Security

    def test_foreign_host_rejected(self):
        response = self.client.get('/api/state', headers={'Host': 'evil.com'})
        self.assertEqual(response.status_code, 403)

    def test_foreign_origin_rejected(self):
        response = self.client.get('/api/state', headers={'Origin': 'http://evil.com'})
        self.assertEqual(response.status_code, 403)

    def test_local_origin_gets_cors_headers(self):
        response = self.client.get('/api/state', headers={'Origin': 'http://localhost:4200'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers['Access-Control-Allow-Origin'], 'http://localhost:4200')
        self.assertEqual(response.headers['Cache-Control'], 'no-store')

    def test_options_preflight(self):
        response = self.client.open('/api/tabs/file', method='OPTIONS')
        self.assertEqual(response.status_code, 200)

    # State

    def test_state_snapshot(self):
        """Test /api/state returns every session kind"""
        self.store.set_architect(ArchitectState(4201, 1, 'claude', 'now', 'af-shop-architect'))
        data = self.client.get('/api/state').get_json()
        self.assertEqual(data['architect']['port'], 4201)
        self.assertEqual(data['builders'], [])

    def test_state_prunes_dead_tabs(self):
        self.store.add_util(UtilTerminal('U1', 'dead', 4230, 99))
        self.pm.is_process_running.return_value = False
        data = self.client.get('/api/state').get_json()
        self.assertEqual(data['utils'], [])

    def test_index_embeds_state(self):
        response = self.client.get('/')
        self.assertEqual(response.status_code, 200)
        self.assertIn(b'Agent Farm: shop', response.data)
        self.assertIn(b'INITIAL_STATE', response.data)

    # File tabs

    def test_file_tab_created(self):
        """Test a viewer is spawned and recorded for a project file"""
        response = self.client.post('/api/tabs/file', json={'path': 'src/app.py'})

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json()['port'], 4250)
        annotation = self.store.find_annotation_by_file(str(self.root / 'src' / 'app.py'))
        self.assertEqual(annotation.pid, 777)
        argv = self.pm.spawn_detached.call_args[0][0]
        self.assertEqual(argv[-3:], ['viewer', '4250', str(self.root / 'src' / 'app.py')])

    def test_file_tab_reuses_live_viewer(self):
        """Test opening the same file twice returns the existing tab"""
        first = self.client.post('/api/tabs/file', json={'path': 'README.md'}).get_json()
        second = self.client.post('/api/tabs/file', json={'path': 'README.md'})

        self.assertEqual(second.status_code, 200)
        self.assertEqual(second.get_json(), {'id': first['id'], 'port': first['port'], 'existing': True})
        self.assertEqual(self.pm.spawn_detached.call_count, 1)

    def test_file_tab_replaces_dead_viewer(self):
        self.store.add_annotation(Annotation('Aold', str(self.root / 'README.md'), 4250, 55))
        self.pm.is_process_running.side_effect = lambda pid: pid != 55

        response = self.client.post('/api/tabs/file', json={'path': 'README.md'})

        self.assertEqual(response.status_code, 201)
        self.assertNotEqual(response.get_json()['id'], 'Aold')

    def test_file_tab_errors(self):
        """Test missing, escaping and nonexistent paths"""
        self.assertEqual(self.client.post('/api/tabs/file', json={}).status_code, 400)
        self.assertEqual(
            self.client.post('/api/tabs/file', json={'path': '../../etc/passwd'}).status_code, 403
        )
        self.assertEqual(
            self.client.post('/api/tabs/file', json={'path': 'nope.md'}).status_code, 404
        )

    def test_file_tab_viewer_timeout(self):
        """Test a viewer that is alive but never listens is killed and reported"""
        self.pm.wait_for_listener.return_value = False
        response = self.client.post('/api/tabs/file', json={'path': 'README.md'})
        self.assertEqual(response.status_code, 500)
        self.pm.kill_gracefully.assert_called_once_with(777)
        self.assertEqual(self.store.get_annotations(), [])

    def test_file_tab_directory_rejected(self):
        """Test a directory is refused before any viewer is spawned"""
        response = self.client.post('/api/tabs/file', json={'path': 'src'})
        self.assertEqual(response.status_code, 400)
        self.pm.spawn_detached.assert_not_called()

    def test_file_tab_viewer_lost_port(self):
        """Test a viewer that exits without listening is retried on the next port"""
        self.pm.spawn_detached.side_effect = [701, 702]
        self.pm.wait_for_listener.side_effect = lambda pid, port, timeout: pid == 702
        self.pm.is_process_running.side_effect = lambda pid: pid != 701

        response = self.client.post('/api/tabs/file', json={'path': 'README.md'})

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json()['port'], 4251)
        self.assertEqual(self.store.find_annotation_by_file(str(self.root / 'README.md')).pid, 702)
        self.pm.kill_gracefully.assert_called_once_with(701)

    def test_file_tab_concurrent_open_keeps_first_viewer(self):
        """Test a request that loses the insert returns the recorded viewer and stops its own"""
        readme = str(self.root / 'README.md')
        real_add = self.store.try_add_annotation

        def other_request_first(annotation):
            real_add(Annotation('Afirst', readme, 4255, 555))
            return real_add(annotation)

        with patch.object(self.store, 'try_add_annotation', side_effect=other_request_first):
            response = self.client.post('/api/tabs/file', json={'path': 'README.md'})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json(), {'id': 'Afirst', 'port': 4255, 'existing': True})
        self.pm.kill_gracefully.assert_called_once_with(777)
        self.assertEqual([a.id for a in self.store.get_annotations()], ['Afirst'])

    def test_invalid_json_body(self):
        response = self.client.post(
            '/api/tabs/file', data='{not json', content_type='application/json'
        )
        self.assertEqual(response.status_code, 400)

    def test_tab_limit(self):
        """Test a new tab is refused at the tab limit"""
        self._fill_tabs(MAX_TABS)
        self.assertEqual(self.client.post('/api/tabs/file', json={'path': 'README.md'}).status_code, 429)
        self.assertEqual(self.client.post('/api/tabs/builder').status_code, 429)
        self.assertEqual(self.client.post('/api/tabs/shell', json={}).status_code, 429)
        self.spawner.spawn_worktree_tab.assert_not_called()

    # Builder tabs

    def test_builder_tab(self):
        self.spawner.spawn_worktree_tab.return_value = Builder(
            id='worktree-ab12', name='Worktree ab12', port=4210, pid=1,
            status=BuilderStatus.IMPLEMENTING, phase='interactive', worktree='/w',
            branch='builder/worktree-ab12', type=BuilderType.WORKTREE,
        )
        response = self.client.post('/api/tabs/builder')
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json(), {'id': 'worktree-ab12', 'port': 4210, 'name': 'Worktree ab12'})

    def test_builder_tab_failure(self):
        self.spawner.spawn_worktree_tab.side_effect = SpawnError('w', 'ttyd failed')
        response = self.client.post('/api/tabs/builder')
        self.assertEqual(response.status_code, 500)

    # Shell tabs

    def test_shell_tab(self):
        """Test a plain shell tab is started and recorded"""
        response = self.client.post('/api/tabs/shell', json={'name': 'logs'})

        self.assertEqual(response.status_code, 201)
        data = response.get_json()
        self.assertEqual(data['name'], 'logs')
        self.assertEqual(data['port'], 4230)
        util = self.store.get_util(data['id'])
        self.assertTrue(util.tmux_session.startswith(SessionNames(self.root).shell('U')))

    def test_shell_tab_default_name_and_command(self):
        response = self.client.post('/api/tabs/shell', json={'command': 'npm test'})
        self.assertEqual(response.get_json()['name'], 'shell-1')
        command = self.pm.spawn_session.call_args[0][1]
        self.assertIn('npm test; exec', command)

    def test_shell_tab_invalid_name(self):
        response = self.client.post('/api/tabs/shell', json={'name': 'bad name!'})
        self.assertEqual(response.status_code, 400)

    def test_shell_tab_invalid_branch(self):
        response = self.client.post('/api/tabs/shell', json={'worktree': True, 'branch': 'a..b'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json(), {'success': False, 'error': INVALID_BRANCH_MESSAGE})
        self.worktrees.create_shell_worktree.assert_not_called()

    def test_shell_tab_worktree(self):
        """Test worktree shells run inside their new worktree"""
        target = self.root / '.worktrees' / 'feature-x'
        self.worktrees.create_shell_worktree.return_value = target

        response = self.client.post('/api/tabs/shell', json={'worktree': True, 'branch': 'feature-x'})

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json()['name'], 'worktree-1')
        self.worktrees.create_shell_worktree.assert_called_once_with('feature-x', target)
        self.assertEqual(self.pm.spawn_session.call_args[0][2], target)
        self.assertEqual(self.store.get_util(response.get_json()['id']).worktree_path, str(target))

    def test_shell_tab_existing_worktree(self):
        (self.root / '.worktrees' / 'taken').mkdir(parents=True)
        response = self.client.post('/api/tabs/shell', json={'worktree': True, 'branch': 'taken'})
        data = response.get_json()
        self.assertFalse(data['success'])
        self.assertIn("Worktree 'taken' already exists", data['error'])

    def test_shell_tab_git_failure(self):
        self.worktrees.create_shell_worktree.side_effect = GitError('fatal: bad ref')
        response = self.client.post('/api/tabs/shell', json={'worktree': True, 'branch': 'x'})
        self.assertEqual(response.get_json()['error'], 'Git worktree creation failed: fatal: bad ref')

    def test_shell_tab_port_race(self):
        """Test a lost port race retries on the next port"""
        real_add = self.store.try_add_util
        calls = []

        def racing_add(util):
            calls.append(util.port)
            return False if len(calls) == 1 else real_add(util)

        with patch.object(self.store, 'try_add_util', side_effect=racing_add):
            response = self.client.post('/api/tabs/shell', json={})

        self.assertEqual(response.status_code, 201)
        self.assertEqual(calls, [4230, 4231])
        self.pm.kill_gracefully.assert_called_once_with(888)

    def test_shell_tab_ttyd_lost_port(self):
        """Test a ttyd that never listens is not recorded and the next port is used"""
        def lose_first(session, command, cwd, port):
            if port == 4230:
                raise PortInUseError(port, 'ttyd did not listen')
            return 889, port

        self.pm.spawn_session.side_effect = lose_first
        response = self.client.post('/api/tabs/shell', json={})

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json()['port'], 4231)
        self.assertEqual([u.pid for u in self.store.get_utils()], [889])

    def test_shell_tab_gives_up_after_retries(self):
        with patch.object(self.store, 'try_add_util', return_value=False):
            response = self.client.post('/api/tabs/shell', json={})
        self.assertEqual(response.status_code, 500)
        self.pm.kill_session.assert_called_once()

    # Closing tabs

    def test_close_tabs(self):
        """Test each tab kind is killed and removed"""
        self.store.add_annotation(Annotation('A1', '/f', 4250, 21))
        self.store.add_util(UtilTerminal('U1', 'u', 4230, 22, 'af-shop-shell-U1'))
        self.store.upsert_builder(Builder(
            id='0001', name='b', port=4210, pid=23, status=BuilderStatus.SPAWNING, phase='',
            worktree='', branch='', type=BuilderType.SHELL, tmux_session='af-shop-builder-0001',
        ))

        for tab in ('file-A1', 'shell-U1', 'builder-0001'):
            self.assertEqual(self.client.delete(f'/api/tabs/{tab}').status_code, 200)

        self.pm.kill_gracefully.assert_any_call(21)
        self.pm.kill_gracefully.assert_any_call(22, 'af-shop-shell-U1')
        self.pm.kill_gracefully.assert_any_call(23, 'af-shop-builder-0001')
        self.assertEqual(self.store.load().tab_count(), 0)

    def test_close_unknown_tab(self):
        self.assertEqual(self.client.delete('/api/tabs/shell-nope').status_code, 404)
        self.assertEqual(self.client.delete('/api/tabs/weird').status_code, 404)

    # Stop

    @patch('agent_farm.server.dashboard_server.threading.Timer')
    def test_stop_all(self, mock_timer):
        """Test stop kills every session, clears state and schedules shutdown"""
        self.store.set_architect(ArchitectState(4201, 1, 'claude', 'now', 'af-shop-architect'))
        self.store.add_util(UtilTerminal('U1', 'u', 4230, 2, 'af-shop-shell-U1'))
        self.store.add_annotation(Annotation('A1', '/f', 4250, 3))

        response = self.client.post('/api/stop')

        self.assertEqual(response.get_json(), {'success': True, 'killed': 3})
        self.assertEqual(self.pm.kill_gracefully.call_count, 3)
        self.assertIsNone(self.store.get_architect())
        mock_timer.assert_called_once_with(0.5, self.shutdown)
        mock_timer.return_value.start.assert_called_once()

    # Files

    def test_open_file_page(self):
        response = self.client.get('/open-file?path=src/app.py&line=12')
        self.assertEqual(response.status_code, 200)
        self.assertIn(b'src/app.py', response.data)
        self.assertIn(str(self.root / 'src' / 'app.py').encode(), response.data)

    def test_open_file_relative_to_builder(self):
        """Test sourcePort resolves paths inside that builder's worktree"""
        worktree = self.root / '.builders' / '0001'
        worktree.mkdir(parents=True)
        (worktree / 'notes.md').write_text('notes\n')
        self.store.upsert_builder(Builder(
            id='0001', name='b', port=4210, pid=1, status=BuilderStatus.SPAWNING, phase='',
            worktree=str(worktree), branch='b', type=BuilderType.SPEC,
        ))

        response = self.client.get('/open-file?path=notes.md&sourcePort=4210')

        self.assertEqual(response.status_code, 200)
        self.assertIn(str(worktree / 'notes.md').encode(), response.data)

    def test_open_file_errors(self):
        self.assertEqual(self.client.get('/open-file').status_code, 400)
        self.assertEqual(self.client.get('/open-file?path=../x').status_code, 403)
        self.assertEqual(self.client.get('/open-file?path=missing.md').status_code, 404)

    def test_read_file(self):
        response = self.client.get('/file?path=README.md')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, b'# Shop\n')
        self.assertEqual(self.client.get('/file?path=%2e%2e/%2e%2e/etc/passwd').status_code, 403)

    def test_projectlist_exists(self):
        self.assertFalse(self.client.get('/api/projectlist-exists').get_json()['exists'])
        (self.root / 'codev').mkdir()
        (self.root / 'codev' / 'projectlist.md').write_text('# Projects\n')
        self.assertTrue(self.client.get('/api/projectlist-exists').get_json()['exists'])

    def test_file_tree(self):
        """Test excluded directories are skipped and dirs sort first"""
        (self.root / 'node_modules' / 'pkg').mkdir(parents=True)
        (self.root / 'b.txt').write_text('')
        tree = self.client.get('/api/files').get_json()

        names = [entry['name'] for entry in tree]
        self.assertNotIn('node_modules', names)
        self.assertEqual(names[0], '.agent-farm')
        self.assertLess(names.index('src'), names.index('b.txt'))
        src = next(entry for entry in tree if entry['name'] == 'src')
        self.assertEqual(src['children'], [{'name': 'app.py', 'path': 'src/app.py', 'type': 'file'}])


class TestBuildFileTree(unittest.TestCase):
    """Test the file browser listing directly"""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_sorting_is_case_insensitive(self):
        root = Path(self.test_dir)
        for name in ('beta.md', 'Alpha.md', 'gamma.md'):
            (root / name).write_text('')
        (root / 'zdir').mkdir()
        names = [e['name'] for e in build_file_tree(root)]
        self.assertEqual(names, ['zdir', 'Alpha.md', 'beta.md', 'gamma.md'])


if __name__ == '__main__':
    unittest.main()
