"""
Configuration loading and management for groupsync.

This module loads the YAML configuration holding one section per backend
(connection and credential parameters) plus logging and error handling
settings, applies environment overrides for secrets and fills in defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, List, Optional

from groupsync.errors import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = 'groupsync.yaml'

# Searched in order when no path is given
CONFIG_SEARCH_PATHS = [
    '/etc/groupsync/',
    '~/.groupsync/',
    '.',
]

# Sections that configure the engine rather than a backend
RESERVED_SECTIONS = ('logging', 'error_handling')


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'github.token': 'GITHUB_TOKEN',
        'app_store_connect.private_key': 'APP_STORE_CONNECT_PRIVATE_KEY',
    }

    def __init__(self, config_path: Optional[str] = None, known_kinds: Optional[List[str]] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses GROUPSYNC_CONFIG env var
                or the first groupsync.yaml found in the search paths
            known_kinds: Connector kinds accepted in backend sections
        """
        self.config_path = config_path or os.getenv('GROUPSYNC_CONFIG') or self._find_config_file()
        self.known_kinds = known_kinds
        self.config = {}

    @staticmethod
    def _find_config_file() -> Optional[str]:
        for directory in CONFIG_SEARCH_PATHS:
            candidate = os.path.join(os.path.expanduser(directory), CONFIG_FILENAME)
            if os.path.isfile(candidate):
                return candidate
        return None

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If an explicit config file is missing or validation fails
        """
        if self.config_path is None:
            logger.info(f"No {CONFIG_FILENAME} found, continuing with an empty configuration")
            self.config = {}
        else:
            try:
                with open(self.config_path, 'r') as f:
                    self.config = yaml.safe_load(f) or {}
            except FileNotFoundError:
                raise ConfigurationError(f"Configuration file not found: {self.config_path}")
            except OSError as e:
                raise ConfigurationError(f"Cannot read configuration file {self.config_path}: {e}")
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError("Configuration root must be a mapping")

        self._normalize_keys()
        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        if self.config_path:
            logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _normalize_keys(self):
        """Lower-case top-level section names so `LDAP:` and `ldap:` are the same section."""
        normalized = {}
        for key, value in self.config.items():
            normalized[str(key).lower()] = value
        self.config = normalized

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
            if current.get(key) is None:
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate section shapes and connector kinds."""
        errors = []

        for section, values in self.config.items():
            if values is None:
                continue
            if not isinstance(values, dict):
                errors.append(f"Section `{section}` must be a mapping")
                continue
            if section in RESERVED_SECTIONS:
                continue

            kind = values.get('kind', section)
            if self.known_kinds is not None and kind not in self.known_kinds:
                errors.append(f"Section `{section}` has unknown kind `{kind}`")

        level = (self.config.get('logging') or {}).get('level')
        if level and not isinstance(getattr(logging, str(level).upper(), None), int):
            errors.append(f"Unknown logging level: {level}")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        for section in list(self.config):
            if self.config[section] is None:
                self.config[section] = {}

        logging_defaults = {
            'level': 'INFO',
            'log_dir': None,
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        error_defaults = {
            'max_retries': 2,
            'retry_wait_seconds': 2,
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)


def backend_sections(config: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Return the configuration sections that describe backends."""
    return {
        name: values for name, values in config.items()
        if name not in RESERVED_SECTIONS and isinstance(values, dict)
    }


def load_config(config_path: Optional[str] = None, known_kinds: Optional[List[str]] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file
        known_kinds: Connector kinds accepted in backend sections

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path, known_kinds)
    return loader.load()
