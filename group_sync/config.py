"""
Configuration loading and management for Hybrid Group Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

from group_sync.models import SyncDirection

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'local_directory.bind_password': 'LDAP_BIND_PASSWORD',
        'remote_directory.client_secret': 'GRAPH_CLIENT_SECRET',
    }

    REQUIRED_LOCAL_FIELDS = ('server_url', 'bind_dn', 'bind_password')
    REQUIRED_REMOTE_FIELDS = ('tenant_id', 'client_id', 'client_secret')

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        local_config = self.config.get('local_directory') or {}
        for field in self.REQUIRED_LOCAL_FIELDS:
            if not local_config.get(field):
                errors.append(f"Missing required local_directory field: {field}")

        lookup = local_config.get('member_lookup', 'member')
        if str(lookup).lower() not in ('member', 'memberof'):
            errors.append(f"Invalid local_directory.member_lookup: {lookup}")

        remote_config = self.config.get('remote_directory') or {}
        for field in self.REQUIRED_REMOTE_FIELDS:
            if not remote_config.get(field):
                errors.append(f"Missing required remote_directory field: {field}")

        group_pairs = self.config.get('group_pairs') or []
        if not group_pairs:
            errors.append("At least one group pair must be configured")

        names = set()
        for i, pair in enumerate(group_pairs):
            prefix = f"group_pairs[{i}]"
            if not isinstance(pair, dict):
                errors.append(f"{prefix} must be a mapping")
                continue
            for field in ('local_group', 'remote_group'):
                if not pair.get(field):
                    errors.append(f"Missing required field {prefix}.{field}")

            try:
                SyncDirection.parse(pair.get('direction', 'to_remote'))
            except ValueError:
                errors.append(f"Invalid direction for {prefix}: {pair.get('direction')}")

            name = pair.get('name') or pair.get('local_group')
            if name in names:
                errors.append(f"Duplicate group pair name: {name}")
            names.add(name)

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        local_defaults = {
            'user_base_dn': '',
            'user_filter': '(objectClass=person)',
            'mapping_attribute': 'extensionAttribute1',
            'member_lookup': 'member',
            'page_size': 1000
        }
        local_config = self.config.setdefault('local_directory', {})
        for key, value in local_defaults.items():
            local_config.setdefault(key, value)

        remote_defaults = {
            'base_url': 'https://graph.microsoft.com/v1.0',
            'authority': 'https://login.microsoftonline.com',
            'correlation_attribute': 'id',
            'verify_ssl': True,
            'timeout': 30,
            'page_size': 999
        }
        remote_config = self.config.setdefault('remote_directory', {})
        for key, value in remote_defaults.items():
            remote_config.setdefault(key, value)

        for pair in self.config.get('group_pairs', []):
            pair.setdefault('name', pair['local_group'])
            pair['direction'] = SyncDirection.parse(pair.get('direction', 'to_remote')).value

        sync_config = self.config.setdefault('sync', {})
        sync_config.setdefault('dry_run', False)

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'WARNING'
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
            'max_failed_pairs': 0
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

        # Gateways read their retry settings from their own section
        local_config.setdefault('max_retries', error_config['max_retries'])
        local_config.setdefault('retry_wait_seconds', error_config['retry_wait_seconds'])


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()
