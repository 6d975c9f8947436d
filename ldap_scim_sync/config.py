"""
Configuration loading and management for LDAP SCIM Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

from ldap_scim_sync.batching import MAX_BATCH_SIZE

logger = logging.getLogger(__name__)

SYNC_METHOD_GROUPS = 'groups'
SYNC_METHOD_USERS_GROUPS = 'users_groups'
SYNC_METHODS = (SYNC_METHOD_GROUPS, SYNC_METHOD_USERS_GROUPS)

ON_ERROR_ABORT = 'abort'
ON_ERROR_CONTINUE = 'continue'
ON_ERROR_POLICIES = (ON_ERROR_ABORT, ON_ERROR_CONTINUE)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'scim.access_token': 'SCIM_ACCESS_TOKEN',
        'identity_store.identity_store_id': 'IDENTITY_STORE_ID',
        'identity_store.region': 'AWS_REGION',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Args:
            overrides: Dotted-path values (e.g. from the command line) applied
                after the environment and before validation

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

        for key_path, value in (overrides or {}).items():
            if value is not None:
                self._set_nested_value(self.config, key_path, value)
                logger.debug(f"Applied command line override for {key_path}")

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

        ldap_config = self.config.get('ldap') or {}
        for field in ['server_url', 'bind_dn', 'bind_password']:
            if not ldap_config.get(field):
                errors.append(f"Missing required LDAP field: {field}")

        scim_config = self.config.get('scim') or {}
        for field in ['endpoint', 'access_token']:
            if not scim_config.get(field):
                errors.append(f"Missing required SCIM field: {field}")

        endpoint = scim_config.get('endpoint', '')
        if endpoint and not endpoint.lower().startswith(('https://', 'http://')):
            errors.append(f"SCIM endpoint must be an http(s) URL: {endpoint}")

        store_config = self.config.get('identity_store') or {}
        for field in ['identity_store_id', 'region']:
            if not store_config.get(field):
                errors.append(f"Missing required identity_store field: {field}")

        sync_config = self.config.get('sync') or {}
        method = sync_config.get('method', SYNC_METHOD_GROUPS)
        if method not in SYNC_METHODS:
            errors.append(f"Invalid sync.method '{method}', expected one of {', '.join(SYNC_METHODS)}")

        on_error = sync_config.get('on_error', ON_ERROR_ABORT)
        if on_error not in ON_ERROR_POLICIES:
            errors.append(f"Invalid sync.on_error '{on_error}', expected one of {', '.join(ON_ERROR_POLICIES)}")

        batch_size = sync_config.get('membership_batch_size', MAX_BATCH_SIZE)
        if not isinstance(batch_size, int) or not 1 <= batch_size <= MAX_BATCH_SIZE:
            errors.append(f"sync.membership_batch_size must be between 1 and {MAX_BATCH_SIZE}")

        max_errors = sync_config.get('max_errors', 10)
        if not isinstance(max_errors, int) or max_errors < 1:
            errors.append("sync.max_errors must be a positive integer")

        if sync_config.get('include_groups') and method != SYNC_METHOD_USERS_GROUPS:
            errors.append("sync.include_groups is only supported with sync.method 'users_groups'")

        for field in ['user_match', 'group_match']:
            value = sync_config.get(field)
            if value is not None and not isinstance(value, str):
                errors.append(f"sync.{field} must be a string")

        for field in ['include_users', 'include_groups', 'ignore_users', 'ignore_groups']:
            value = sync_config.get(field)
            if value is not None and not isinstance(value, list):
                errors.append(f"sync.{field} must be a list")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        ldap_defaults = {
            'user_base_dn': '',
            'group_base_dn': '',
            'user_filter': '(objectClass=person)',
            'group_filter': '(objectClass=group)',
            'page_size': 1000,
            'suspended_attribute': 'userAccountControl',
            'user_id_attribute': 'objectGUID',
            'group_id_attribute': 'objectGUID',
            'group_name_attribute': 'cn',
            'include_deleted_users': False,
        }
        ldap_config = self.config.setdefault('ldap', {})
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)

        scim_config = self.config.setdefault('scim', {})
        scim_config.setdefault('verify_ssl', True)
        scim_config.setdefault('timeout', 30)

        sync_defaults = {
            'method': SYNC_METHOD_GROUPS,
            'dry_run': False,
            'user_match': '',
            'group_match': '*',
            'include_users': [],
            'include_groups': [],
            'ignore_users': [],
            'ignore_groups': [],
            'on_error': ON_ERROR_ABORT,
            'max_errors': 10,
            'membership_batch_size': MAX_BATCH_SIZE,
            'attribute_mapper': '',
        }
        sync_config = self.config.setdefault('sync', {})
        for key, value in sync_defaults.items():
            if sync_config.get(key) is None:
                sync_config[key] = value

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'format': 'text',
            'console': True,
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
            'retry_backoff': 2.0,
            'retry_max_wait_seconds': 60,
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

        notification_defaults = {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_port': 587,
            'smtp_tls': True
        }
        notification_config = self.config.setdefault('notifications', {})
        for key, value in notification_defaults.items():
            notification_config.setdefault(key, value)


def load_config(config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file
        overrides: Dotted-path overrides applied before validation

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load(overrides)
