"""
Configuration loading and management for LLDAP POSIX IDs.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

DEFAULT_UID_OFFSET = 100000
DEFAULT_GID_OFFSET = 100000
DEFAULT_GROUP_NAME = 'pam_users'


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""
    
    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'directory.auth.password': 'DIRECTORY_PASSWORD',
        'directory.auth.token': 'DIRECTORY_TOKEN',
    }
    
    AUTH_METHODS = ('', 'login', 'token', 'bearer')
    SECTIONS = ('directory', 'posix', 'logging', 'error_handling')
    
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
        
        for section in self.SECTIONS:
            value = self.config.get(section)
            if value is not None and not isinstance(value, dict):
                errors.append(f"Section '{section}' must be a mapping")
        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))
        
        directory = self.config.get('directory') or {}
        for field in ('base_url', 'auth'):
            if not directory.get(field):
                errors.append(f"Missing required directory field: {field}")
        
        auth = directory.get('auth') or {}
        method = str(auth.get('method', '') or '').lower()
        if method not in self.AUTH_METHODS:
            errors.append(f"Unknown directory auth method: {method}")
        elif method == 'login':
            for field in ('username', 'password'):
                if not auth.get(field):
                    errors.append(f"Missing directory.auth.{field} for login authentication")
        elif method in ('token', 'bearer') and not auth.get('token'):
            errors.append("Missing directory.auth.token for token authentication")
        
        posix = self.config.get('posix') or {}
        for field in ('uid_offset', 'gid_offset'):
            if field in posix:
                value = posix[field]
                if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                    errors.append(f"posix.{field} must be a non-negative integer")
        if 'default_group' in posix:
            group_name = posix['default_group']
            if not isinstance(group_name, str) or not group_name.strip():
                errors.append("posix.default_group must be a non-empty string")
        
        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))
    
    def _section(self, name: str) -> Dict[str, Any]:
        """Return a top-level section, replacing an empty (None) one with a dict."""
        section = self.config.get(name) or {}
        self.config[name] = section
        return section
    
    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        directory_defaults = {
            'module': 'lldap',
            'verify_ssl': True,
            'timeout': 30
        }
        directory_config = self._section('directory')
        for key, value in directory_defaults.items():
            directory_config.setdefault(key, value)
        
        posix_defaults = {
            'uid_offset': DEFAULT_UID_OFFSET,
            'gid_offset': DEFAULT_GID_OFFSET,
            'default_group': DEFAULT_GROUP_NAME
        }
        posix_config = self._section('posix')
        for key, value in posix_defaults.items():
            posix_config.setdefault(key, value)
        
        # Logging defaults
        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self._section('logging')
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)
        
        # Error handling defaults
        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5
        }
        error_config = self._section('error_handling')
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
