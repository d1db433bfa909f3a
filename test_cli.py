#!/usr/bin/env python3
"""
CLI Tests

Argument parsing and exit codes of the `af` command with the orchestrator
and spawner mocked.
"""

import os
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from agent_farm.cli.enhanced_cli import AgentFarmCLI
from agent_farm.core.errors import PreconditionError, UserInputError
from agent_farm.core.models import DashboardState
from agent_farm.core.port_registry import PortRegistry


class TestAgentFarmCLI(unittest.TestCase):
    """Test AgentFarmCLI dispatch"""

    def setUp(self):
        self.cli = AgentFarmCLI()
        self.config_patch = patch('agent_farm.cli.enhanced_cli.load_config')
        self.mock_load_config = self.config_patch.start()
        self.farm_patch = patch('agent_farm.cli.enhanced_cli.FarmOrchestrator')
        self.mock_farm_class = self.farm_patch.start()
        self.farm = self.mock_farm_class.return_value

    def tearDown(self):
        self.farm_patch.stop()
        self.config_patch.stop()

    def test_no_command_prints_help(self):
        self.assertEqual(self.cli.run([]), 1)

    def test_invalid_status_choice(self):
        """Test argparse rejects unknown statuses"""
        with self.assertRaises(SystemExit):
            self.cli.run(['set-status', '0001', 'finished'])

    def test_set_status(self):
        self.assertEqual(self.cli.run(['set-status', '0001', 'blocked', '--phase', 'waiting']), 0)
        self.farm.set_status.assert_called_once_with('0001', 'blocked', 'waiting')
        self.farm.close.assert_called_once()

    def test_command_overrides_reach_config(self):
        self.farm.status.return_value = {'state': DashboardState(), 'alive': {}, 'dashboard_port': 4200}
        self.cli.run(['--builder-cmd', 'codex', 'status'])
        overrides = self.mock_load_config.call_args[1]['overrides']
        self.assertEqual(overrides['builder'], 'codex')
        self.assertIsNone(overrides['architect'])

    def test_agent_farm_error_exit_code(self):
        """Test domain errors print and exit with 1"""
        self.farm.rename.side_effect = UserInputError('No builder or utility found with ID: x')
        self.assertEqual(self.cli.run(['rename', 'x', 'new']), 1)
        self.farm.close.assert_called_once()

    def test_keyboard_interrupt_exit_code(self):
        self.farm.stop.side_effect = KeyboardInterrupt()
        self.assertEqual(self.cli.run(['stop']), 130)

    def test_start_port_skips_registry(self):
        self.assertEqual(self.cli.run(['start', '--port', '4300', '--no-browser']), 0)
        self.assertEqual(self.mock_load_config.call_args[1]['base_port'], 4300)
        self.farm.start.assert_called_once_with(open_browser=False, no_role=False, bind_host=None)

    @patch('agent_farm.cli.enhanced_cli.start_remote', return_value=0)
    def test_start_remote(self, mock_remote):
        """Test --remote hands over to the SSH session instead of starting locally"""
        self.assertEqual(self.cli.run(['start', '--remote', 'dev@box:/srv/shop']), 0)
        mock_remote.assert_called_once_with(
            self.mock_load_config.return_value, 'dev@box:/srv/shop', port=None, open_browser=True
        )
        self.farm.start.assert_not_called()

    def test_architect(self):
        self.farm.architect_terminal.return_value = 0
        self.assertEqual(self.cli.run(['architect', '--layout', 'review', '0007']), 0)
        self.farm.architect_terminal.assert_called_once_with(['review', '0007'], layout=True)
        self.farm.close.assert_called_once()

    def test_cleanup_selectors_are_exclusive(self):
        with self.assertRaises(SystemExit):
            self.cli.run(['cleanup', '-p', '0001', '-i', '3'])
        with self.assertRaises(SystemExit):
            self.cli.run(['cleanup'])

    def test_cleanup(self):
        self.assertEqual(self.cli.run(['cleanup', '--issue', '42', '--remove-worktree', '-f']), 0)
        self.farm.cleanup.assert_called_once_with(
            project=None, issue=42, remove_worktree=True, force=True
        )

    def test_send_failures_exit_nonzero(self):
        self.farm.send.return_value = {'sent': ['0001'], 'failed': ['0002']}
        self.assertEqual(self.cli.run(['send', '--all', 'hello']), 1)
        args, kwargs = self.farm.send.call_args
        self.assertEqual(args, ('hello', None))
        self.assertTrue(kwargs['all_builders'])

    def test_shell_alias(self):
        self.assertEqual(self.cli.run(['shell', '--name', 'logs']), 0)
        self.farm.util.assert_called_once_with(name='logs')

    @patch('agent_farm.cli.enhanced_cli.BuilderSpawner')
    @patch('agent_farm.cli.enhanced_cli.StateStore')
    @patch('agent_farm.cli.enhanced_cli.ProcessManager')
    def test_spawn_options(self, mock_pm, mock_store, mock_spawner):
        """Test spawn flags are forwarded as SpawnOptions"""
        self.assertEqual(self.cli.run(['spawn', '--task', 'Fix flaky test', '--files', 'a.py, b.py']), 0)

        options = mock_spawner.return_value.spawn.call_args[0][0]
        self.assertEqual(options.task, 'Fix flaky test')
        self.assertEqual(options.files, ['a.py', 'b.py'])
        mock_store.return_value.close.assert_called_once()

    @patch('agent_farm.cli.enhanced_cli.BuilderSpawner')
    @patch('agent_farm.cli.enhanced_cli.StateStore')
    @patch('agent_farm.cli.enhanced_cli.ProcessManager')
    def test_spawn_precondition_failure(self, mock_pm, mock_store, mock_spawner):
        mock_spawner.return_value.spawn.side_effect = PreconditionError('Spec not found', hint='hint')
        self.assertEqual(self.cli.run(['spawn', '-p', '0404']), 1)


class TestPortsCommands(unittest.TestCase):
    """Test the ports subcommands against a temporary registry"""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.env_patch = patch.dict(os.environ, {'AGENT_FARM_HOME': self.test_dir})
        self.env_patch.start()
        self.cli = AgentFarmCLI()

    def tearDown(self):
        self.env_patch.stop()
        shutil.rmtree(self.test_dir)

    def test_ports_list_empty(self):
        self.assertEqual(self.cli.run(['ports']), 0)
        self.assertTrue((Path(self.test_dir) / 'global.db').exists())

    def test_ports_cleanup(self):
        self.assertEqual(self.cli.run(['ports', 'cleanup']), 0)


class TestDbCommands(unittest.TestCase):
    """Test the db subcommands against a temporary global database"""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.env_patch = patch.dict(os.environ, {'AGENT_FARM_HOME': self.test_dir})
        self.env_patch.start()
        self.project = Path(self.test_dir) / 'shop'
        self.project.mkdir()
        registry = PortRegistry()
        registry.get_or_assign_block(self.project)
        registry.close()
        self.db_path = Path(self.test_dir) / 'global.db'
        self.cli = AgentFarmCLI()

    def tearDown(self):
        self.env_patch.stop()
        shutil.rmtree(self.test_dir)

    @patch('agent_farm.cli.enhanced_cli.console')
    def test_dump(self, mock_console):
        self.assertEqual(self.cli.run(['db', 'dump', '--global']), 0)
        data = mock_console.print_json.call_args[1]['data']
        self.assertEqual(data['port_allocations'][0]['project_path'], os.path.realpath(self.project))
        self.assertNotIn('_migrations', data)

    @patch('agent_farm.cli.enhanced_cli.console')
    def test_query(self, mock_console):
        self.assertEqual(self.cli.run(['db', 'query', '--global', 'SELECT base_port FROM port_allocations']), 0)
        self.assertEqual(mock_console.print_json.call_args[1]['data'], [{'base_port': 4200}])

    def test_query_rejects_writes(self):
        self.assertEqual(self.cli.run(['db', 'query', '--global', 'DELETE FROM port_allocations']), 1)

    def test_stats(self):
        self.assertEqual(self.cli.run(['db', 'stats', '--global']), 0)

    def test_reset_requires_force(self):
        """Test reset only deletes once confirmed"""
        self.assertEqual(self.cli.run(['db', 'reset', '--global']), 1)
        self.assertTrue(self.db_path.exists())

        self.assertEqual(self.cli.run(['db', 'reset', '--global', '--force']), 0)
        self.assertFalse(self.db_path.exists())
        self.assertEqual(self.cli.run(['db', 'reset', '--global']), 0)


if __name__ == '__main__':
    unittest.main()
