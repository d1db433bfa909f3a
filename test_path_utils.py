#!/usr/bin/env python3
"""
Path Validation Tests

Traversal, encoding and symlink escapes must all be rejected.
"""

import os
import shutil
import tempfile
import unittest
from pathlib import Path

from agent_farm.utils.path_utils import resolve_within_root


class TestResolveWithinRoot(unittest.TestCase):
    """Test resolve_within_root"""

    def setUp(self):
        self.test_dir = os.path.realpath(tempfile.mkdtemp())
        self.root = Path(self.test_dir) / 'project'
        self.outside = Path(self.test_dir) / 'outside'
        (self.root / 'src').mkdir(parents=True)
        self.outside.mkdir()
        (self.root / 'src' / 'app.py').write_text('print(1)\n')
        (self.outside / 'secret.txt').write_text('secret\n')

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_relative_path_inside_root(self):
        """Test a plain relative path resolves under root"""
        self.assertEqual(resolve_within_root(self.root, 'src/app.py'), self.root / 'src' / 'app.py')

    def test_absolute_path_inside_root(self):
        """Test an absolute path inside root is accepted"""
        target = str(self.root / 'src' / 'app.py')
        self.assertEqual(resolve_within_root(self.root, target), Path(target))

    def test_nonexistent_path_inside_root(self):
        """Test containment does not require existence"""
        self.assertEqual(resolve_within_root(self.root, 'new/file.md'), self.root / 'new' / 'file.md')

    def test_traversal_rejected(self):
        """Test ../ escapes are rejected"""
        self.assertIsNone(resolve_within_root(self.root, '../outside/secret.txt'))
        self.assertIsNone(resolve_within_root(self.root, 'src/../../outside/secret.txt'))

    def test_encoded_traversal_rejected(self):
        """Test URL-encoded traversal is decoded before checking"""
        self.assertIsNone(resolve_within_root(self.root, '%2e%2e/outside/secret.txt'))
        self.assertIsNone(resolve_within_root(self.root, '..%2Foutside%2Fsecret.txt'))

    def test_sibling_prefix_rejected(self):
        """Test a sibling whose name starts with root's name is outside"""
        sibling = Path(self.test_dir) / 'project-evil'
        sibling.mkdir()
        self.assertIsNone(resolve_within_root(self.root, str(sibling / 'x')))

    def test_absolute_outside_rejected(self):
        """Test absolute paths outside root are rejected"""
        self.assertIsNone(resolve_within_root(self.root, '/etc/passwd'))

    def test_nul_byte_rejected(self):
        """Test embedded NUL bytes are rejected"""
        self.assertIsNone(resolve_within_root(self.root, 'src/app.py\x00.md'))
        self.assertIsNone(resolve_within_root(self.root, 'src/app.py%00'))

    def test_empty_path_rejected(self):
        self.assertIsNone(resolve_within_root(self.root, ''))

    def test_symlink_escape_rejected(self):
        """Test a link inside root that points outside is rejected"""
        os.symlink(self.outside / 'secret.txt', self.root / 'link.txt')
        self.assertIsNone(resolve_within_root(self.root, 'link.txt'))

    def test_symlink_inside_root_accepted(self):
        """Test a link that stays inside root is accepted"""
        os.symlink(self.root / 'src' / 'app.py', self.root / 'alias.py')
        self.assertEqual(resolve_within_root(self.root, 'alias.py'), self.root / 'alias.py')

    def test_relative_to_base(self):
        """Test relative paths are resolved against base when given"""
        base = self.root / 'src'
        self.assertEqual(resolve_within_root(self.root, 'app.py', base=base), base / 'app.py')
        self.assertIsNone(resolve_within_root(self.root, '../../outside/secret.txt', base=base))


if __name__ == '__main__':
    unittest.main()
