"""
Configuration loading and management for Directory Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

from directory_sync.address import AddressFormatter
from directory_sync.models import DeletionPolicy

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'registry.bind_password': 'REGISTRY_BIND_PASSWORD',
        'directory.auth.password': 'DIRECTORY_PASSWORD',
        'directory.auth.token': 'DIRECTORY_TOKEN',
        'directory.auth.client_secret': 'DIRECTORY_CLIENT_SECRET',
    }

    AUTH_METHODS = ('basic', 'token', 'bearer', 'oauth2', 'mtls', 'mutual_tls')

    CONNECTOR_FLAGS = ('provision_users', 'deprovision_users', 'simple_subject_naming',
                       'include_user_in_global_address_list', 'fully_populate_on_start')

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
            raise ConfigurationError(f"Configuration file must contain a mapping: {self.config_path}")

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

        registry_config = self.config.get('registry') or {}
        for field in ['server_url', 'bind_dn', 'bind_password', 'base_dn']:
            if not registry_config.get(field):
                errors.append(f"Missing required registry field: {field}")

        directory_config = self.config.get('directory') or {}
        for field in ['base_url', 'auth']:
            if not directory_config.get(field):
                errors.append(f"Missing required directory field: {field}")
        auth = directory_config.get('auth') or {}
        if auth:
            method = str(auth.get('method', '')).lower()
            if not method:
                errors.append("Missing auth method for directory")
            elif method not in self.AUTH_METHODS:
                errors.append(f"Unsupported directory auth method: {method}")

        connectors = self.config.get('connectors') or []
        if not isinstance(connectors, list):
            errors.append("connectors must be a list")
            connectors = []
        elif not connectors:
            errors.append("At least one connector must be configured")

        names = set()
        for i, connector in enumerate(connectors):
            prefix = f"connectors[{i}]"
            if not isinstance(connector, dict):
                errors.append(f"{prefix} must be a mapping")
                continue

            name = connector.get('name')
            if not name:
                errors.append(f"Missing required field {prefix}.name")
            elif name in names:
                errors.append(f"Duplicate connector name: {name}")
            names.add(name)

            if not connector.get('domain'):
                errors.append(f"Missing required field {prefix}.domain")
            else:
                try:
                    AddressFormatter(
                        connector['domain'],
                        group_identifier_format=connector.get('group_identifier_format', '{path}'),
                        subject_identifier_format=connector.get('subject_identifier_format', '{id}')
                    )
                except ValueError as e:
                    errors.append(f"Invalid address format for {prefix}: {e}")

            if 'handle_deleted_group' in connector:
                try:
                    DeletionPolicy.parse(connector['handle_deleted_group'])
                except ValueError as e:
                    errors.append(f"Invalid {prefix}.handle_deleted_group: {e}")

            for field in ['remote_user_cache_validity_minutes', 'remote_group_cache_validity_minutes',
                          'local_cache_validity_minutes']:
                value = connector.get(field)
                if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float))
                                          or value < 0):
                    errors.append(f"{prefix}.{field} must be a non-negative number")

            for field in self.CONNECTOR_FLAGS:
                value = connector.get(field)
                if value is not None and not isinstance(value, bool):
                    errors.append(f"{prefix}.{field} must be true or false")

            settings = connector.get('default_group_settings')
            if settings is not None and not isinstance(settings, dict):
                errors.append(f"{prefix}.default_group_settings must be a mapping")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        registry_defaults = {
            'user_base_dn': '',
            'user_filter': '(objectClass=person)',
            'group_object_class': 'groupOfNames',
            'stem_object_class': 'organizationalUnit',
            'marker_attribute': 'businessCategory',
            'subject_id_attribute': 'uid',
            'subject_source_id': 'ldap'
        }
        registry_config = self.config.setdefault('registry', {})
        for key, value in registry_defaults.items():
            registry_config.setdefault(key, value)

        directory_config = self.config.setdefault('directory', {})
        directory_config.setdefault('name', 'directory')
        directory_config.setdefault('verify_ssl', True)
        directory_config.setdefault('timeout', 30)

        connector_defaults = {
            'group_identifier_format': '{path}',
            'subject_identifier_format': '{id}',
            'remote_user_cache_validity_minutes': 30,
            'remote_group_cache_validity_minutes': 30,
            'local_cache_validity_minutes': 5,
            'provision_users': False,
            'deprovision_users': False,
            'include_user_in_global_address_list': True,
            'simple_subject_naming': True,
            'subject_given_name_field': 'givenName',
            'subject_surname_field': 'sn',
            'handle_deleted_group': 'delete',
            'fully_populate_on_start': False
        }
        for connector in self.config.get('connectors', []):
            for key, value in connector_defaults.items():
                connector.setdefault(key, value)
            connector.setdefault('default_group_settings', {})
            connector.setdefault('sync_marker', f"syncToDirectory{connector['name']}")

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
            'max_errors_per_run': 0
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)


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
