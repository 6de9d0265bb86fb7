"""
Configuration loading and management for LDAP User Watch.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

VALID_SCOPES = ('base', 'onelevel', 'level', 'subtree')
VALID_ACTION_MODULES = ('command', 'webhook')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
        'action.auth.token': 'WEBHOOK_TOKEN',
    }

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

        ldap_config = self.config.get('ldap') or {}
        for field in ['server_url', 'bind_dn', 'bind_password']:
            if not ldap_config.get(field):
                errors.append(f"Missing required LDAP field: {field}")

        scope = str(ldap_config.get('watch_scope', 'subtree')).lower()
        if scope not in VALID_SCOPES:
            errors.append(f"Invalid ldap.watch_scope '{scope}' (expected one of {', '.join(VALID_SCOPES)})")

        watch_config = self.config.get('watch') or {}
        for field in ['settle_delay_seconds', 'subscription_ttl_seconds',
                      'liveness_check_seconds', 'shutdown_timeout_seconds']:
            value = watch_config.get(field)
            if value is not None and (not isinstance(value, (int, float)) or value < 0):
                errors.append(f"watch.{field} must be a non-negative number")

        max_workers = watch_config.get('max_workers')
        if max_workers is not None and (not isinstance(max_workers, int) or max_workers < 1):
            errors.append("watch.max_workers must be a positive integer")

        action = self.config.get('action') or {}
        module = action.get('module')
        if not module:
            errors.append("Missing required field action.module")
        elif module not in VALID_ACTION_MODULES:
            errors.append(f"Unknown action module '{module}' (expected one of {', '.join(VALID_ACTION_MODULES)})")
        elif module == 'command' and not action.get('command'):
            errors.append("Missing action.command for command action")
        elif module == 'webhook' and not action.get('url'):
            errors.append("Missing action.url for webhook action")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        ldap_defaults = {
            'base_dn': '',
            'watch_filter': '(objectClass=*)',
            'watch_scope': 'subtree',
            'user_filter': '(objectClass=user)',
            'account_attribute': 'sAMAccountName',
            'connection_timeout': 10,
            'receive_timeout': 10,
            'page_size': 1000
        }
        ldap_config = self.config.setdefault('ldap', {})
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)

        watch_defaults = {
            'settle_delay_seconds': 30,
            'subscription_ttl_seconds': 86400,
            'liveness_check_seconds': 60,
            'max_workers': 8,
            'shutdown_timeout_seconds': 60,
            'user_object_class': 'user'
        }
        watch_config = self.config.setdefault('watch', {}) or {}
        self.config['watch'] = watch_config
        for key, value in watch_defaults.items():
            watch_config.setdefault(key, value)

        ledger_config = self.config.setdefault('ledger', {}) or {}
        self.config['ledger'] = ledger_config
        ledger_config.setdefault('path', os.path.join('data', 'ledger.db'))

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {}) or {}
        self.config['logging'] = logging_config
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
            'retry_backoff': 2.0
        }
        error_config = self.config.setdefault('error_handling', {}) or {}
        self.config['error_handling'] = error_config
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

        notification_defaults = {
            'enable_email': False,
            'email_on_failure': True,
            'smtp_port': 587,
            'smtp_tls': True
        }
        notification_config = self.config.setdefault('notifications', {}) or {}
        self.config['notifications'] = notification_config
        for key, value in notification_defaults.items():
            notification_config.setdefault(key, value)

        action = self.config['action']
        if action['module'] == 'webhook':
            action.setdefault('method', 'POST')
            action.setdefault('timeout', 30)
            action.setdefault('verify_ssl', True)
            action.setdefault('auth', {})
        else:
            action.setdefault('timeout', None)


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
