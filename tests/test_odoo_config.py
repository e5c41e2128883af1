#!/usr/bin/env python3
"""
test_odoo_config.py - Unit tests for the odoo_config.py tool.

Covers deterministic rendering, environment fallbacks, atomic writes with
restricted permissions, and the get/show/render command line.

History:
    2025-03-02: Rewritten for the template-based renderer.
"""

import io
import os
import stat
import tempfile
import unittest
from unittest.mock import patch

from tools.src import odoo_config


class TestRenderConfig(unittest.TestCase):
    """Unit tests for values_from_env and render_config."""

    def test_defaults_render_every_key(self) -> None:
        content = odoo_config.render_config(odoo_config.values_from_env({}))

        self.assertTrue(content.startswith('[options]\n'))
        for key in odoo_config.KEYS:
            self.assertIn(f'\n{key} = ', content)
        self.assertIn('addons_path = /opt/odoo/addons,/mnt/extra-addons\n', content)
        self.assertIn('http_port = 8080\n', content)
        self.assertIn('proxy_mode = True\n', content)
        self.assertIn('list_db = False\n', content)
        self.assertIn('without_demo = True\n', content)

    def test_groups_are_commented_in_order(self) -> None:
        content = odoo_config.render_config({})
        positions = [content.index(f'; {comment}\n') for comment, _ in odoo_config.LAYOUT]
        self.assertEqual(positions, sorted(positions))

    def test_environment_overrides(self) -> None:
        env = {
            'DB_HOST': '/cloudsql/p:r:i',
            'DB_PASSWORD': 's3cret',
            'ADMIN_PASSWORD': 'master',
            'ODOO_WORKERS': '4',
            'ODOO_PROXY_MODE': 'False',
        }
        content = odoo_config.render_config(odoo_config.values_from_env(env))

        self.assertIn('db_host = /cloudsql/p:r:i\n', content)
        self.assertIn('db_password = s3cret\n', content)
        self.assertIn('admin_passwd = master\n', content)
        self.assertIn('workers = 4\n', content)
        self.assertIn('proxy_mode = False\n', content)

    def test_empty_addons_path_falls_back_to_default(self) -> None:
        values = odoo_config.values_from_env({'ADDONS_PATH': ''})
        self.assertEqual(values['addons_path'], odoo_config.DEFAULT_ADDONS_PATH)

    def test_empty_db_password_is_kept(self) -> None:
        values = odoo_config.values_from_env({'DB_PASSWORD': ''})
        self.assertEqual(values['db_password'], '')

    def test_rendering_is_deterministic(self) -> None:
        env = {'DB_HOST': 'db', 'ODOO_WORKERS': '3'}
        first = odoo_config.render_config(odoo_config.values_from_env(env))
        second = odoo_config.render_config(odoo_config.values_from_env(dict(reversed(list(env.items())))))
        self.assertEqual(first, second)

    def test_line_breaks_are_rejected(self) -> None:
        with self.assertRaises(ValueError):
            odoo_config.render_config({'admin_passwd': 'a\nworkers = 0'})


class TestWriteConfig(unittest.TestCase):
    """Unit tests for the atomic file writer."""

    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, 'etc', 'odoo.conf')

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_written_file_is_restricted(self) -> None:
        odoo_config.write_config('[options]\n', self.path)
        mode = stat.S_IMODE(os.stat(self.path).st_mode)
        self.assertEqual(mode, 0o640)

    def test_no_temporary_files_left_behind(self) -> None:
        odoo_config.write_config('[options]\n', self.path)
        leftovers = [n for n in os.listdir(os.path.dirname(self.path)) if n.startswith('.odoo.conf.')]
        self.assertEqual(leftovers, [])

    def test_rerender_is_byte_identical(self) -> None:
        env = {'DB_HOST': 'db', 'DB_PASSWORD': 'pw'}
        odoo_config.render_from_env(env, self.path)
        with open(self.path, 'rb') as fh:
            first = fh.read()
        odoo_config.render_from_env(env, self.path)
        with open(self.path, 'rb') as fh:
            second = fh.read()
        self.assertEqual(first, second)

    def test_rerender_replaces_stale_content(self) -> None:
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        with open(self.path, 'w') as fh:
            fh.write('[options]\nstale_key = 1\n')
        odoo_config.render_from_env({}, self.path)
        self.assertIsNone(odoo_config.get_config('options', 'stale_key', self.path))


class TestCommandLine(unittest.TestCase):
    """Unit tests for get_config and main."""

    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, 'odoo.conf')
        odoo_config.render_from_env({'DB_PASSWORD': 'pw', 'ADMIN_PASSWORD': 'master'}, self.path)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_get_config(self) -> None:
        self.assertEqual(odoo_config.get_config('options', 'http_port', self.path), '8080')
        self.assertIsNone(odoo_config.get_config('options', 'missing', self.path))
        self.assertIsNone(odoo_config.get_config('other', 'http_port', self.path))

    @patch('tools.src.odoo_config.signal.signal')
    def test_main_get_missing_key_exits(self, _mock_signal) -> None:
        with self.assertRaises(SystemExit) as cm:
            odoo_config.main(['--config', self.path, 'get', 'options', 'missing'])
        self.assertEqual(cm.exception.code, 1)

    @patch('tools.src.odoo_config.signal.signal')
    def test_main_show_masks_passwords(self, _mock_signal) -> None:
        with patch('sys.stdout', new_callable=io.StringIO) as out:
            odoo_config.main(['--config', self.path, 'show'])
        shown = out.getvalue()
        self.assertIn('db_password = ********', shown)
        self.assertIn('admin_passwd = ********', shown)
        self.assertNotIn('master', shown)

    @patch.dict(os.environ, {'ODOO_WORKERS': '6'}, clear=True)
    @patch('tools.src.odoo_config.signal.signal')
    def test_main_render_uses_environment(self, _mock_signal) -> None:
        odoo_config.main(['--config', self.path, 'render'])
        self.assertEqual(odoo_config.get_config('options', 'workers', self.path), '6')

    @patch('tools.src.odoo_config.signal.signal')
    def test_main_missing_file_exits(self, _mock_signal) -> None:
        with self.assertRaises(SystemExit) as cm:
            odoo_config.main(['--config', os.path.join(self.tmp.name, 'absent.conf'), 'show'])
        self.assertEqual(cm.exception.code, 1)


if __name__ == '__main__':
    unittest.main()
