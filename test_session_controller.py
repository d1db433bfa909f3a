#!/usr/bin/env python3
"""
Tmux Session Controller Tests
"""

import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import Mock, patch, call

from agent_farm.core.errors import TmuxError
from agent_farm.tmux.session_controller import (
    SessionNames, TmuxSessionController, project_key, sanitize_project_name
)


class TestSessionNames(unittest.TestCase):
    """Test project-namespaced session names"""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.root = Path(self.test_dir) / 'my project'
        self.root.mkdir()
        self.names = SessionNames(self.root)
        self.prefix = f'af-my-project-{project_key(self.root)}-'

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_sanitize_project_name(self):
        """Test unsupported characters are replaced"""
        self.assertEqual(sanitize_project_name('my project'), 'my-project')
        self.assertEqual(sanitize_project_name('a.b:c'), 'a-b-c')
        self.assertEqual(sanitize_project_name('...'), 'project')

    def test_project_key(self):
        """Test the key is stable per path and differs between paths"""
        key = project_key(self.root)
        self.assertRegex(key, r'^[0-9a-f]{6}$')
        self.assertEqual(project_key(Path(self.test_dir) / 'x' / '..' / 'my project'), key)
        self.assertNotEqual(project_key(Path(self.test_dir) / 'other' / 'my project'), key)

    def test_name_formats(self):
        """Test architect, builder and shell names"""
        self.assertEqual(self.names.architect(), f'{self.prefix}architect')
        self.assertEqual(self.names.builder('0042'), f'{self.prefix}builder-0042')
        self.assertEqual(self.names.shell('U1A2B'), f'{self.prefix}shell-U1A2B')

    def test_layout_session_not_owned(self):
        """Test the interactive layout session is outside the tracked namespace"""
        self.assertEqual(self.names.layout(), f'{self.prefix}layout')
        self.assertFalse(self.names.owns(self.names.layout()))

    def test_owns(self):
        """Test ownership is limited to this project's exact names"""
        self.assertTrue(self.names.owns(f'{self.prefix}architect'))
        self.assertTrue(self.names.owns(f'{self.prefix}builder-task-a_B-'))
        self.assertTrue(self.names.owns(f'{self.prefix}shell-U1'))
        self.assertFalse(self.names.owns('af-other-architect'))
        self.assertFalse(self.names.owns(f'{self.prefix}misc'))
        self.assertFalse(self.names.owns(f'{self.prefix}architect-2'))
        self.assertFalse(self.names.owns(f'{self.prefix}builder-'))
        self.assertFalse(self.names.owns('main'))

    def test_same_basename_in_other_parent_not_owned(self):
        other = SessionNames(Path(self.test_dir) / 'elsewhere' / 'my project')
        self.assertNotEqual(other.prefix, self.names.prefix)
        self.assertFalse(self.names.owns(other.builder('0001')))
        self.assertFalse(other.owns(self.names.architect()))

    def test_longer_project_name_not_owned(self):
        """Test a project named like this one plus a suffix keeps its own sessions"""
        shop = SessionNames(Path(self.test_dir) / 'shop')
        shop_builder = SessionNames(Path(self.test_dir) / 'shop-builder')
        self.assertFalse(shop.owns(shop_builder.architect()))
        self.assertFalse(shop.owns(shop_builder.builder('0001')))

    def test_legacy_names(self):
        """Test only this project's legacy architect names are recognised"""
        self.assertTrue(SessionNames.is_legacy('af-architect'))
        self.assertTrue(SessionNames.is_legacy('af-architect-4201', 4201))
        self.assertFalse(SessionNames.is_legacy('af-architect-4301', 4201))
        self.assertFalse(SessionNames.is_legacy('af-architect-4201'))
        self.assertFalse(SessionNames.is_legacy('af-shell-U1F', 4201))
        self.assertFalse(SessionNames.is_legacy(self.names.architect(), 4201))


class TestTmuxSessionController(unittest.TestCase):
    """Test tmux invocations"""

    def setUp(self):
        self.controller = TmuxSessionController()

    @patch('subprocess.run')
    def test_session_exists_uses_exact_target(self, mock_run):
        """Test has-session is called with an exact-match target"""
        mock_run.return_value = Mock(returncode=0)
        self.assertTrue(self.controller.session_exists('af-p-architect'))
        self.assertEqual(mock_run.call_args[0][0], ['tmux', 'has-session', '-t', '=af-p-architect'])

    @patch('subprocess.run', side_effect=FileNotFoundError('tmux'))
    def test_missing_tmux_means_no_session(self, mock_run):
        """Test an absent tmux binary is not an error for existence checks"""
        self.assertFalse(self.controller.session_exists('x'))
        self.assertFalse(self.controller.kill_session('x'))
        self.assertEqual(self.controller.list_sessions(), [])

    @patch('subprocess.run')
    def test_create_session_configures_options(self, mock_run):
        """Test a new session is sized and configured"""
        mock_run.return_value = Mock(returncode=0, stderr='')
        self.controller.create_session('af-p-shell-U1', 'bash', Path('/tmp'))

        first = mock_run.call_args_list[0][0][0]
        self.assertEqual(first[:5], ['tmux', 'new-session', '-d', '-s', 'af-p-shell-U1'])
        self.assertIn('200', first)
        self.assertEqual(first[-1], 'bash')
        option_calls = [c[0][0] for c in mock_run.call_args_list[1:]]
        self.assertIn(['tmux', 'set-option', '-t', '=af-p-shell-U1', 'status', 'off'], option_calls)

    @patch('subprocess.run')
    def test_create_session_failure_raises(self, mock_run):
        """Test tmux errors surface as TmuxError"""
        mock_run.return_value = Mock(returncode=1, stderr='duplicate session')
        with self.assertRaises(TmuxError):
            self.controller.create_session('dup', 'bash', Path('/tmp'))

    @patch.object(TmuxSessionController, 'create_session')
    @patch.object(TmuxSessionController, 'session_exists', return_value=True)
    def test_ensure_session_reuses_existing(self, mock_exists, mock_create):
        """Test an existing session is not recreated"""
        self.assertFalse(self.controller.ensure_session('s', 'bash', Path('/tmp')))
        mock_create.assert_not_called()

    @patch('subprocess.run')
    def test_list_sessions_parses_output(self, mock_run):
        """Test list-sessions output is split into records"""
        mock_run.return_value = Mock(
            returncode=0,
            stdout='af-p-architect|1700000000|attached\nmain|1700000001|not attached\n'
        )
        sessions = self.controller.list_sessions()
        self.assertEqual(len(sessions), 2)
        self.assertEqual(sessions[0]['name'], 'af-p-architect')
        self.assertEqual(sessions[1]['status'], 'not attached')
        self.assertEqual(self.controller.list_session_names(), ['af-p-architect', 'main'])

    @patch('subprocess.run')
    def test_no_server_means_no_sessions(self, mock_run):
        """Test a non-zero list-sessions exit yields an empty list"""
        mock_run.return_value = Mock(returncode=1, stdout='', stderr='no server running')
        self.assertEqual(self.controller.list_sessions(), [])

    @patch('subprocess.run')
    def test_send_keys_with_enter(self, mock_run):
        """Test Enter is appended when requested"""
        mock_run.return_value = Mock(returncode=0, stderr='')
        self.controller.send_keys('s', 'C-c', send_enter=True)
        mock_run.assert_called_once_with(
            ['tmux', 'send-keys', '-t', 's', 'C-c', 'Enter'], capture_output=True, text=True
        )

    @patch('subprocess.run')
    def test_paste_file_always_deletes_buffer(self, mock_run):
        """Test the named buffer is deleted even when paste fails"""
        mock_run.side_effect = [
            Mock(returncode=0, stderr=''),
            Mock(returncode=1, stderr='no such session'),
            Mock(returncode=0, stderr=''),
        ]
        with self.assertRaises(TmuxError):
            self.controller.paste_file('s', Path('/tmp/msg'), 'architect-7')

        self.assertEqual(
            mock_run.call_args_list[-1],
            call(['tmux', 'delete-buffer', '-b', 'architect-7'], capture_output=True, text=True)
        )


if __name__ == '__main__':
    unittest.main()
