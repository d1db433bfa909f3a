#!/usr/bin/env python3
"""
Remote Farm Tests

Target parsing, command construction and the SSH session loop with
subprocess mocked.
"""

import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from agent_farm.core.errors import PreconditionError, UserInputError
from agent_farm.core.remote import (
    RemoteTarget, find_dashboard_url, parse_remote, remote_start_command, ssh_command, start_remote
)
from agent_farm.utils.config_loader import Config


class TestRemoteHelpers(unittest.TestCase):

    def test_parse_remote(self):
        self.assertEqual(parse_remote('dev@box'), RemoteTarget('dev', 'box'))
        self.assertEqual(parse_remote('dev@box:/srv/shop'), RemoteTarget('dev', 'box', '/srv/shop'))

    def test_parse_remote_invalid(self):
        for remote in ('box', '@box', 'dev@', 'dev@box:'):
            with self.assertRaises(UserInputError):
                parse_remote(remote)

    def test_remote_start_command(self):
        """Test the remote enters the named path or looks for the project by name"""
        self.assertEqual(
            remote_start_command(RemoteTarget('dev', 'box', '/srv/shop'), 'shop', 4300),
            'cd /srv/shop && af start --port 4300 --no-browser'
        )
        command = remote_start_command(RemoteTarget('dev', 'box'), 'shop', 4300)
        self.assertTrue(command.startswith('cd shop 2>/dev/null || cd ~/shop 2>/dev/null && af start'))

    def test_ssh_command_forwards_dashboard_port(self):
        argv = ssh_command(RemoteTarget('dev', 'box'), 4300, 'af start')
        self.assertEqual(argv[:4], ['ssh', '-L', '4300:localhost:4300', '-t'])
        self.assertEqual(argv[-2:], ['dev@box', 'af start'])

    def test_find_dashboard_url(self):
        self.assertEqual(find_dashboard_url('  Dashboard: http://localhost:4300\r\n'), 'http://localhost:4300')
        colored = '  Dashboard: \x1b[36mhttp://localhost:4300\x1b[0m\n'
        self.assertEqual(find_dashboard_url(colored), 'http://localhost:4300')
        self.assertIsNone(find_dashboard_url('Starting Agent Farm'))


@patch('agent_farm.core.remote.time.sleep')
@patch('agent_farm.core.remote.SystemUtils.command_exists', return_value=True)
class TestStartRemote(unittest.TestCase):
    """Test the SSH session loop"""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        root = Path(self.test_dir) / 'shop'
        root.mkdir()
        self.config = Config(project_root=root, base_port=4300)

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def _ssh(self, lines, code):
        process = MagicMock()
        process.stdout = iter(lines)
        process.wait.return_value = code
        return process

    @patch('agent_farm.core.remote.SystemUtils.open_browser')
    @patch('agent_farm.core.remote.SystemUtils.is_port_listening', return_value=False)
    @patch('agent_farm.core.remote.subprocess.Popen')
    def test_opens_browser_once_dashboard_is_announced(self, mock_popen, mock_listening,
                                                       mock_browser, mock_exists, mock_sleep):
        mock_popen.return_value = self._ssh(
            ['Starting Agent Farm\n', '  Dashboard: http://localhost:4300\n',
             '  Dashboard: http://localhost:4300\n'], 0
        )

        self.assertEqual(start_remote(self.config, 'dev@box'), 0)

        argv = mock_popen.call_args[0][0]
        self.assertIn('4300:localhost:4300', argv)
        self.assertIn('cd shop', argv[-1])
        mock_browser.assert_called_once_with('http://localhost:4300')

    @patch('agent_farm.core.remote.SystemUtils.open_browser')
    @patch('agent_farm.core.remote.SystemUtils.is_port_listening', return_value=False)
    @patch('agent_farm.core.remote.subprocess.Popen')
    def test_connection_failure_returns_ssh_code(self, mock_popen, mock_listening,
                                                 mock_browser, mock_exists, mock_sleep):
        mock_popen.return_value = self._ssh([], 255)

        self.assertEqual(start_remote(self.config, 'dev@box', port=4400, open_browser=False), 255)
        self.assertIn('4400:localhost:4400', mock_popen.call_args[0][0])
        mock_browser.assert_not_called()

    @patch('agent_farm.core.remote.subprocess.Popen')
    @patch('agent_farm.core.remote.SystemUtils.is_port_listening', return_value=True)
    def test_local_port_in_use(self, mock_listening, mock_popen, mock_exists, mock_sleep):
        with self.assertRaises(PreconditionError):
            start_remote(self.config, 'dev@box')
        mock_popen.assert_not_called()


if __name__ == '__main__':
    unittest.main()
