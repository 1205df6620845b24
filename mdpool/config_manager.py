"""Configuration management for the pool agent."""

import os
import json
import logging
from typing import Dict, Any, Optional, List
from pathlib import Path
from dataclasses import dataclass, asdict, field
from enum import Enum

import yaml
from dotenv import dotenv_values


logger = logging.getLogger(__name__)


class ConfigFormat(Enum):
    """Supported configuration file formats."""
    JSON = "json"
    YAML = "yaml"
    ENV = "env"


@dataclass
class AgentConfig:
    """Pool agent configuration data structure."""
    mdstat_path: str = "/proc/mdstat"
    mdstat_cache_ttl_seconds: float = 5.0
    disk_by_id_dir: str = "/dev/disk/by-id"
    excluded_drives: List[str] = field(default_factory=list)
    metadata_path: str = "/var/lib/mdpool/pool-metadata.json"
    operations_dir: str = "/var/lib/mdpool/operations"
    mdadm_conf_path: str = "/etc/mdadm/mdadm.conf"
    command_timeout_seconds: int = 300
    use_sudo: bool = True
    dry_run: bool = False
    device_wait_timeout_seconds: int = 30
    watch_settle_delay_seconds: float = 2.0
    drive_poll_interval_seconds: int = 60
    max_concurrent_operations: int = 4
    operation_cleanup_interval_minutes: int = 60
    completed_operation_retention_days: int = 7
    failed_operation_retention_days: int = 30
    stale_operation_threshold_hours: int = 12
    metadata_validation_interval_hours: int = 6
    filesystem_type: str = "ext4"
    log_level: str = "INFO"
    log_format: str = "json"


class ConfigManager:
    """Manages configuration loading and validation."""

    # Environment variable mappings
    ENV_MAPPINGS = {
        'MDPOOL_MDSTAT_PATH': 'mdstat_path',
        'MDPOOL_MDSTAT_CACHE_TTL': 'mdstat_cache_ttl_seconds',
        'MDPOOL_DISK_BY_ID_DIR': 'disk_by_id_dir',
        'MDPOOL_EXCLUDED_DRIVES': 'excluded_drives',
        'MDPOOL_METADATA_PATH': 'metadata_path',
        'MDPOOL_OPERATIONS_DIR': 'operations_dir',
        'MDPOOL_MDADM_CONF': 'mdadm_conf_path',
        'MDPOOL_COMMAND_TIMEOUT': 'command_timeout_seconds',
        'MDPOOL_USE_SUDO': 'use_sudo',
        'MDPOOL_DRY_RUN': 'dry_run',
        'MDPOOL_DEVICE_WAIT_TIMEOUT': 'device_wait_timeout_seconds',
        'MDPOOL_WATCH_SETTLE_DELAY': 'watch_settle_delay_seconds',
        'MDPOOL_DRIVE_POLL_INTERVAL': 'drive_poll_interval_seconds',
        'MDPOOL_MAX_CONCURRENT_OPERATIONS': 'max_concurrent_operations',
        'MDPOOL_CLEANUP_INTERVAL_MINUTES': 'operation_cleanup_interval_minutes',
        'MDPOOL_COMPLETED_RETENTION_DAYS': 'completed_operation_retention_days',
        'MDPOOL_FAILED_RETENTION_DAYS': 'failed_operation_retention_days',
        'MDPOOL_STALE_THRESHOLD_HOURS': 'stale_operation_threshold_hours',
        'MDPOOL_VALIDATION_INTERVAL_HOURS': 'metadata_validation_interval_hours',
        'MDPOOL_FILESYSTEM_TYPE': 'filesystem_type',
        'MDPOOL_LOG_LEVEL': 'log_level',
        'MDPOOL_LOG_FORMAT': 'log_format',
    }

    LIST_KEYS = {'excluded_drives'}
    BOOL_KEYS = {'use_sudo', 'dry_run'}
    FLOAT_KEYS = {'mdstat_cache_ttl_seconds', 'watch_settle_delay_seconds'}
    INT_KEYS = {
        'command_timeout_seconds', 'device_wait_timeout_seconds',
        'drive_poll_interval_seconds', 'max_concurrent_operations',
        'operation_cleanup_interval_minutes', 'completed_operation_retention_days',
        'failed_operation_retention_days', 'stale_operation_threshold_hours',
        'metadata_validation_interval_hours',
    }

    def __init__(self, config_file_path: Optional[str] = None):
        """
        Initialize the ConfigManager.

        Args:
            config_file_path: Optional path to a .json, .yaml or env-style file
        """
        self.config_file_path = config_file_path
        self._config: Optional[AgentConfig] = None
        self._config_cache_valid = False

    def load_config(self) -> AgentConfig:
        """
        Load configuration from defaults, the config file and the environment.

        Returns:
            AgentConfig object with loaded configuration
        """
        if self._config_cache_valid and self._config:
            return self._config

        config_dict = asdict(AgentConfig())

        if self.config_file_path and os.path.exists(self.config_file_path):
            file_config = self._load_config_file(self.config_file_path)
            config_dict.update(
                {key: value for key, value in file_config.items() if key in config_dict}
            )

        env_config = self._load_from_environment()
        config_dict.update(env_config)

        self._config = AgentConfig(**config_dict)
        self._validate_config(self._config)

        self._config_cache_valid = True
        logger.info("Configuration loaded successfully")

        return self._config

    def reload_config(self) -> AgentConfig:
        """Force reload configuration from sources."""
        self._config_cache_valid = False
        return self.load_config()

    def get_config_value(self, key: str, default: Any = None) -> Any:
        config = self.load_config()
        return getattr(config, key, default)

    def _load_config_file(self, file_path: str) -> Dict[str, Any]:
        """
        Load configuration from file.

        Args:
            file_path: Path to configuration file

        Returns:
            Dictionary of configuration values
        """
        config_format = self._detect_format(file_path)
        try:
            if config_format == ConfigFormat.JSON:
                with open(file_path, 'r') as f:
                    return json.load(f) or {}
            if config_format == ConfigFormat.YAML:
                with open(file_path, 'r') as f:
                    return yaml.safe_load(f) or {}
            return self._load_env_file(file_path)

        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.error(f"Error loading config file {file_path}: {e}")
            return {}

    @staticmethod
    def _detect_format(file_path: str) -> ConfigFormat:
        suffix = Path(file_path).suffix.lower()
        if suffix == '.json':
            return ConfigFormat.JSON
        if suffix in {'.yaml', '.yml'}:
            return ConfigFormat.YAML
        return ConfigFormat.ENV

    def _load_env_file(self, file_path: str) -> Dict[str, Any]:
        """Load configuration from an environment-style file."""
        config = {}
        for key, value in dotenv_values(file_path).items():
            if key in self.ENV_MAPPINGS and value is not None:
                config_key = self.ENV_MAPPINGS[key]
                config[config_key] = self._parse_value(config_key, value)
        return config

    def _load_from_environment(self) -> Dict[str, Any]:
        """
        Load configuration from environment variables.

        Returns:
            Dictionary of configuration values from environment
        """
        config = {}

        for env_key, config_key in self.ENV_MAPPINGS.items():
            env_value = os.getenv(env_key)
            if env_value is not None:
                config[config_key] = self._parse_value(config_key, env_value)

        return config

    def _parse_value(self, config_key: str, value: str) -> Any:
        """
        Parse a string setting to the type of its configuration field.

        Args:
            config_key: Configuration field name
            value: String value from the environment or an env file

        Returns:
            Parsed value in appropriate type
        """
        default = getattr(AgentConfig(), config_key)

        # Handle list values (comma-separated)
        if config_key in self.LIST_KEYS:
            return [item.strip() for item in value.split(',') if item.strip()]

        if config_key in self.BOOL_KEYS:
            return value.strip().lower() in {'true', '1', 'yes', 'on'}

        if config_key in self.INT_KEYS:
            try:
                return int(value)
            except ValueError:
                logger.warning(f"Invalid integer for {config_key}, using default")
                return default

        if config_key in self.FLOAT_KEYS:
            try:
                return float(value)
            except ValueError:
                logger.warning(f"Invalid number for {config_key}, using default")
                return default

        return value

    def _validate_config(self, config: AgentConfig) -> None:
        """
        Validate configuration values.

        Args:
            config: Configuration to validate

        Raises:
            ValueError: If configuration is invalid
        """
        for key in self.INT_KEYS:
            if getattr(config, key) <= 0:
                raise ValueError(f"{key} must be positive")

        if config.mdstat_cache_ttl_seconds < 0:
            raise ValueError("mdstat_cache_ttl_seconds must not be negative")
        if config.watch_settle_delay_seconds < 0:
            raise ValueError("watch_settle_delay_seconds must not be negative")

        # Empty string disables the optional files
        for key in ('mdstat_path', 'disk_by_id_dir', 'metadata_path'):
            if not os.path.isabs(getattr(config, key)):
                raise ValueError(f"{key} must be an absolute path")
        for key in ('operations_dir', 'mdadm_conf_path'):
            value = getattr(config, key)
            if value and not os.path.isabs(value):
                raise ValueError(f"{key} must be an absolute path")

        if config.filesystem_type not in {'ext4', 'ext3', 'xfs', 'btrfs'}:
            raise ValueError(f"Unsupported filesystem type: {config.filesystem_type}")

        valid_log_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        if config.log_level.upper() not in valid_log_levels:
            raise ValueError(f"Invalid log level: {config.log_level}")

        if config.log_format not in {'json', 'text'}:
            raise ValueError(f"Invalid log format: {config.log_format}")
