"""
Configuration loading and management for CF Org Sync.

This module handles loading the main configuration from a YAML file and
environment variables, with validation and defaults, and reading the
organization files (orgs.yml and orgConfig.yml) from the config directory.
"""

import os
import yaml
import logging
from typing import Dict, Any, List, Optional, Tuple

from cf_org_sync.models import OrgConfig

logger = logging.getLogger(__name__)

ORGS_FILE_NAME = 'orgs.yml'
ORG_CONFIG_FILE_NAME = 'orgConfig.yml'


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'cloud_foundry.password': 'CF_ADMIN_PASSWORD',
        'cloud_foundry.client_secret': 'CF_CLIENT_SECRET',
    }

    REQUIRED_FIELDS = {
        'ldap': ['server_url', 'bind_dn', 'bind_password', 'group_search_base'],
        'cloud_foundry': ['system_domain', 'user_id', 'password', 'client_id', 'client_secret'],
    }

    def __init__(self, config_path: Optional[str] = None, config_dir: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
            config_dir: Overrides config_dir from the file when given
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config_dir = config_dir
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        self.config = _read_yaml(self.config_path) or {}
        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration file must contain a mapping: {self.config_path}")

        if self.config_dir:
            self.config['config_dir'] = self.config_dir

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

        for section, fields in self.REQUIRED_FIELDS.items():
            section_config = self.config.get(section) or {}
            for field in fields:
                if not section_config.get(field):
                    errors.append(f"Missing required {section} field: {field}")

        if not self.config.get('config_dir'):
            errors.append("Missing required field: config_dir")

        member_attribute = (self.config.get('ldap') or {}).get('group_member_attribute')
        if member_attribute and member_attribute.lower() not in ('member', 'uniquemember', 'memberuid'):
            errors.append(f"Unsupported ldap.group_member_attribute: {member_attribute}")

        cf_config = self.config.get('cloud_foundry') or {}
        for field in ('page_size', 'max_pages'):
            value = cf_config.get(field)
            if value is not None and (not isinstance(value, int) or value < 1):
                errors.append(f"cloud_foundry.{field} must be a positive integer")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        ldap_defaults = {
            'user_search_base': '',
            'user_name_attribute': 'uid',
            'user_mail_attribute': 'mail',
            'group_member_attribute': 'member',
        }
        ldap_config = self.config.setdefault('ldap', {})
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)

        cf_defaults = {
            'user_origin': 'ldap',
            'verify_ssl': True,
            'page_size': 5000,
            'max_pages': 1000,
            'timeout': 30,
            'dry_run': False,
        }
        cf_config = self.config.setdefault('cloud_foundry', {})
        for key, value in cf_defaults.items():
            cf_config.setdefault(key, value)

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
            'fail_fast': True
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)


def _read_yaml(path: str) -> Any:
    try:
        with open(path, 'r') as f:
            return yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {path}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in config file {path}: {e}")


def load_config(config_path: Optional[str] = None, config_dir: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file
        config_dir: Optional override of the config directory

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path, config_dir)
    return loader.load()


def load_org_names(config_dir: str) -> List[str]:
    """
    Read the organization names listed in <config_dir>/orgs.yml.

    Raises:
        ConfigurationError: If the file is missing or malformed
    """
    config_file = os.path.join(config_dir, ORGS_FILE_NAME)
    logger.info(f"Processing org file {config_file}")
    data = _read_yaml(config_file) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{config_file} must contain a mapping")

    orgs = data.get('orgs') or []
    if not isinstance(orgs, list):
        raise ConfigurationError(f"'orgs' in {config_file} must be a list")
    return [str(org) for org in orgs]


def find_org_config_files(config_dir: str) -> List[str]:
    """Find every orgConfig.yml below config_dir, in sorted path order."""
    matches = []
    for root, dirs, files in os.walk(config_dir):
        dirs.sort()
        if ORG_CONFIG_FILE_NAME in files:
            matches.append(os.path.join(root, ORG_CONFIG_FILE_NAME))
    return sorted(matches)


def parse_org_config(path: str) -> OrgConfig:
    """
    Parse one orgConfig.yml file.

    Raises:
        ConfigurationError: If the file cannot be read or names no org
    """
    data = _read_yaml(path) or {}
    if not isinstance(data, dict) or not data.get('org'):
        raise ConfigurationError(f"Missing org name in {path}")

    return OrgConfig(
        org=str(data['org']),
        manager_group=data.get('org-manager-group') or '',
        auditor_group=data.get('org-auditor-group') or '',
        billing_manager_group=data.get('org-billingmanager-group') or ''
    )


def load_org_configs(config_dir: str) -> Tuple[List[OrgConfig], List[str]]:
    """
    Load every orgConfig.yml below config_dir.

    Files that fail to parse are logged and skipped.

    Returns:
        The parsed org configs, and one error message per skipped file
    """
    org_configs = []
    errors = []
    for path in find_org_config_files(config_dir):
        logger.info(f"Processing org file {path}")
        try:
            org_configs.append(parse_org_config(path))
        except ConfigurationError as e:
            logger.error(f"Skipping org config {path}: {e}")
            errors.append(f"Skipped org config {path}: {e}")
    return org_configs, errors
