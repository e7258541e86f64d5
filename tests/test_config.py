#!/usr/bin/env python3
"""
Unit tests for configuration module.

Covers YAML loading, validation of directory sections and group pairs,
environment variable overrides and defaults.
"""

import os
import sys
import tempfile
import yaml
import unittest
from unittest.mock import patch

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from group_sync.config import ConfigLoader, ConfigurationError, load_config


class TestConfigLoader(unittest.TestCase):
    """Test cases for ConfigLoader class."""

    def setUp(self):
        """Set up test fixtures."""
        self.valid_config = {
            'local_directory': {
                'server_url': 'ldaps://dc01.corp.example.com:636',
                'bind_dn': 'CN=svc-groupsync,OU=Service,DC=corp,DC=example,DC=com',
                'bind_password': 'password',
                'user_base_dn': 'OU=Users,DC=corp,DC=example,DC=com',
            },
            'remote_directory': {
                'tenant_id': 'contoso.onmicrosoft.com',
                'client_id': '11111111-2222-3333-4444-555555555555',
                'client_secret': 'secret',
            },
            'group_pairs': [
                {
                    'local_group': 'CN=Finance,OU=Groups,DC=corp,DC=example,DC=com',
                    'remote_group': '9f1c2b3a-0000-4000-8000-000000000001',
                    'direction': 'to_remote',
                }
            ],
        }
        self.temp_files = []

    def tearDown(self):
        """Clean up temporary files."""
        for path in self.temp_files:
            if os.path.exists(path):
                os.unlink(path)

    def _write_config(self, data):
        handle = tempfile.NamedTemporaryFile('w', suffix='.yaml', delete=False)
        with handle:
            if isinstance(data, str):
                handle.write(data)
            else:
                yaml.safe_dump(data, handle)
        self.temp_files.append(handle.name)
        return handle.name

    def _assert_invalid(self, data, fragment):
        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader(self._write_config(data)).load()
        self.assertIn(fragment, str(ctx.exception))

    def test_load_valid_config(self):
        config = ConfigLoader(self._write_config(self.valid_config)).load()

        self.assertEqual(config['local_directory']['server_url'], 'ldaps://dc01.corp.example.com:636')
        self.assertEqual(len(config['group_pairs']), 1)

    def test_defaults_applied(self):
        config = ConfigLoader(self._write_config(self.valid_config)).load()

        local = config['local_directory']
        self.assertEqual(local['mapping_attribute'], 'extensionAttribute1')
        self.assertEqual(local['member_lookup'], 'member')
        self.assertEqual(local['max_retries'], 3)
        self.assertEqual(local['retry_wait_seconds'], 5)
        self.assertEqual(config['remote_directory']['correlation_attribute'], 'id')
        self.assertEqual(config['remote_directory']['base_url'], 'https://graph.microsoft.com/v1.0')
        self.assertFalse(config['sync']['dry_run'])
        self.assertEqual(config['logging']['level'], 'INFO')
        self.assertEqual(config['error_handling']['max_failed_pairs'], 0)

        pair = config['group_pairs'][0]
        self.assertEqual(pair['name'], pair['local_group'])
        self.assertEqual(pair['direction'], 'to_remote')

    def test_direction_normalised_and_defaulted(self):
        self.valid_config['group_pairs'][0]['direction'] = 'TO-LOCAL'
        self.valid_config['group_pairs'].append({
            'name': 'hr', 'local_group': 'CN=HR,DC=corp', 'remote_group': 'g-hr'
        })

        config = ConfigLoader(self._write_config(self.valid_config)).load()

        self.assertEqual([p['direction'] for p in config['group_pairs']], ['to_local', 'to_remote'])

    def test_error_handling_settings_flow_to_local_directory(self):
        self.valid_config['error_handling'] = {'max_retries': 1, 'retry_wait_seconds': 0}

        config = ConfigLoader(self._write_config(self.valid_config)).load()

        self.assertEqual(config['local_directory']['max_retries'], 1)
        self.assertEqual(config['local_directory']['retry_wait_seconds'], 0)

    @patch.dict(os.environ, {'LDAP_BIND_PASSWORD': 'env-ldap', 'GRAPH_CLIENT_SECRET': 'env-graph'})
    def test_environment_overrides(self):
        config = ConfigLoader(self._write_config(self.valid_config)).load()

        self.assertEqual(config['local_directory']['bind_password'], 'env-ldap')
        self.assertEqual(config['remote_directory']['client_secret'], 'env-graph')

    @patch.dict(os.environ, {'LDAP_BIND_PASSWORD': 'env-ldap'})
    def test_environment_override_satisfies_required_field(self):
        del self.valid_config['local_directory']['bind_password']

        config = ConfigLoader(self._write_config(self.valid_config)).load()

        self.assertEqual(config['local_directory']['bind_password'], 'env-ldap')

    def test_missing_local_field(self):
        del self.valid_config['local_directory']['server_url']
        self._assert_invalid(self.valid_config, 'local_directory field: server_url')

    def test_missing_remote_field(self):
        del self.valid_config['remote_directory']['tenant_id']
        self._assert_invalid(self.valid_config, 'remote_directory field: tenant_id')

    def test_invalid_member_lookup(self):
        self.valid_config['local_directory']['member_lookup'] = 'nested'
        self._assert_invalid(self.valid_config, 'member_lookup')

    def test_group_pairs_required(self):
        self.valid_config['group_pairs'] = []
        self._assert_invalid(self.valid_config, 'At least one group pair')

    def test_pair_missing_group(self):
        del self.valid_config['group_pairs'][0]['remote_group']
        self._assert_invalid(self.valid_config, 'group_pairs[0].remote_group')

    def test_invalid_direction(self):
        self.valid_config['group_pairs'][0]['direction'] = 'both'
        self._assert_invalid(self.valid_config, 'Invalid direction for group_pairs[0]')

    def test_duplicate_pair_names(self):
        self.valid_config['group_pairs'].append(dict(self.valid_config['group_pairs'][0]))
        self._assert_invalid(self.valid_config, 'Duplicate group pair name')

    def test_all_errors_reported_together(self):
        del self.valid_config['local_directory']['bind_dn']
        del self.valid_config['remote_directory']['client_id']

        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader(self._write_config(self.valid_config)).load()

        self.assertIn('bind_dn', str(ctx.exception))
        self.assertIn('client_id', str(ctx.exception))

    def test_file_not_found(self):
        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader('/nonexistent/config.yaml').load()
        self.assertIn('not found', str(ctx.exception))

    def test_invalid_yaml(self):
        self._assert_invalid('group_pairs: [unclosed', 'Invalid YAML')

    def test_non_mapping_root(self):
        self._assert_invalid('- just\n- a list\n', 'must be a mapping')

    @patch.dict(os.environ, {'CONFIG_PATH': '/etc/group-sync/config.yaml'})
    def test_config_path_from_environment(self):
        self.assertEqual(ConfigLoader().config_path, '/etc/group-sync/config.yaml')

    def test_load_config_function(self):
        config = load_config(self._write_config(self.valid_config))
        self.assertIn('error_handling', config)


if __name__ == '__main__':
    unittest.main()
