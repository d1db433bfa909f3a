#!/usr/bin/env python3
"""
Configuration Loader Tests
"""

import json
import os
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import Mock, patch

import yaml

from agent_farm.core.errors import UserInputError
from agent_farm.utils.config_loader import (
    BUNDLED_ROLES_DIR, DEFAULT_COMMANDS, Config, find_project_root, load_config,
    load_user_config, resolve_commands, resolve_roles_dir, substitute_env
)


class TestConfigLoader(unittest.TestCase):
    """Test config discovery and precedence"""

    def setUp(self):
        self.test_dir = os.path.realpath(tempfile.mkdtemp())
        self.root = Path(self.test_dir) / 'project'
        (self.root / 'codev').mkdir(parents=True)

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_config_ports(self):
        """Test every port derives from the base port"""
        config = Config(project_root=self.root, base_port=4300)
        self.assertEqual(config.dashboard_port, 4300)
        self.assertEqual(config.architect_port, 4301)
        self.assertEqual(config.builder_port_range, (4310, 4329))
        self.assertEqual(config.util_port_range, (4330, 4349))
        self.assertEqual(config.annotate_port_range, (4350, 4369))
        self.assertEqual(config.builders_dir, self.root / '.builders')
        self.assertEqual(config.state_dir, self.root / '.agent-farm')

    def test_ensure_directories(self):
        config = Config(project_root=self.root, base_port=4200)
        config.ensure_directories()
        self.assertTrue(config.builders_dir.is_dir())
        self.assertTrue(config.state_dir.is_dir())

    def test_find_project_root_walks_up(self):
        """Test a nested directory finds the codev/ marker above it"""
        nested = self.root / 'src' / 'deep'
        nested.mkdir(parents=True)
        self.assertEqual(find_project_root(nested), self.root)

    def test_substitute_env(self):
        with patch.dict(os.environ, {'AF_TEST_MODEL': 'opus'}, clear=False):
            os.environ.pop('AF_TEST_UNSET', None)
            data = {'a': 'claude --model $AF_TEST_MODEL', 'b': ['${AF_TEST_MODEL}', '$AF_TEST_UNSET'], 'c': 3}
            self.assertEqual(
                substitute_env(data),
                {'a': 'claude --model opus', 'b': ['opus', ''], 'c': 3},
            )

    def test_json_config(self):
        (self.root / 'codev' / 'config.json').write_text(json.dumps({
            'shell': {'architect': ['claude', '--model', 'opus'], 'shell': 'zsh'}
        }))
        commands = resolve_commands(load_user_config(self.root))
        self.assertEqual(commands['architect'], 'claude --model opus')
        self.assertEqual(commands['builder'], DEFAULT_COMMANDS['builder'])
        self.assertEqual(commands['shell'], 'zsh')

    def test_yaml_config(self):
        (self.root / 'codev' / 'config.yaml').write_text(yaml.safe_dump({'shell': {'builder': 'codex'}}))
        self.assertEqual(resolve_commands(load_user_config(self.root))['builder'], 'codex')

    def test_invalid_config_raises(self):
        (self.root / 'codev' / 'config.json').write_text('{broken')
        with self.assertRaises(UserInputError):
            load_user_config(self.root)

    def test_cli_overrides_win(self):
        """Test CLI flags beat the config file"""
        user_config = {'shell': {'builder': 'codex'}}
        commands = resolve_commands(user_config, {'builder': 'gemini', 'shell': None})
        self.assertEqual(commands['builder'], 'gemini')
        self.assertEqual(commands['shell'], DEFAULT_COMMANDS['shell'])

    def test_roles_dir_precedence(self):
        """Test configured dir, then codev/roles, then bundled roles"""
        self.assertEqual(resolve_roles_dir(self.root, {}), BUNDLED_ROLES_DIR)

        local = self.root / 'codev' / 'roles'
        local.mkdir()
        self.assertEqual(resolve_roles_dir(self.root, {}), local)

        custom = self.root / 'my-roles'
        custom.mkdir()
        self.assertEqual(resolve_roles_dir(self.root, {'roles': {'dir': 'my-roles'}}), custom)

    def test_bundled_roles_present(self):
        self.assertTrue((BUNDLED_ROLES_DIR / 'architect.md').exists())
        self.assertTrue((BUNDLED_ROLES_DIR / 'builder.md').exists())

    def test_load_config_uses_registry(self):
        """Test the base port comes from the registry"""
        registry = Mock()
        registry.get_or_assign_block.return_value = 4500
        config = load_config(self.root, overrides={'architect': 'claude --resume'}, registry=registry)

        self.assertEqual(config.base_port, 4500)
        self.assertEqual(config.commands['architect'], 'claude --resume')
        registry.get_or_assign_block.assert_called_once_with(self.root)
        registry.close.assert_not_called()

    def test_load_config_explicit_base_port(self):
        config = load_config(self.root, base_port=4700)
        self.assertEqual(config.dashboard_port, 4700)


if __name__ == '__main__':
    unittest.main()
