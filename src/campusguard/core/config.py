"""
Configuration Management System for CampusGuard

Handles loading configuration from environment variables, config files,
and provides validation and runtime updates.
"""

import os
import json
import yaml
import logging
from typing import Any, Dict, List, Optional, Callable
from pathlib import Path
from dataclasses import dataclass


@dataclass
class ConfigSource:
    """Configuration source definition"""
    name: str
    priority: int
    loader: Callable
    path: Optional[str] = None


class ConfigurationError(Exception):
    """Configuration-related errors"""
    pass


class ConfigurationManager:
    """
    Manages system configuration with support for multiple sources,
    validation, and runtime updates.
    """

    def __init__(self, config_dir: str = "config"):
        self.config_dir = Path(config_dir)
        self.config: Dict[str, Any] = {}
        self.watchers: Dict[str, List[Callable]] = {}
        self.sources: List[ConfigSource] = []
        self.logger = logging.getLogger(__name__)

        # Default configuration values
        self.defaults = {
            "app": {
                "name": "CampusGuard",
                "version": "1.0.0",
                "debug": False,
                "log_level": "INFO"
            },
            "database": {
                "path": "data/campusguard.db",
                "max_connections": 10
            },
            "sessions": {
                "default_check_in_interval_seconds": 300,
                "grace_seconds": 120,
                "max_history_points": 100,
                "default_duration_seconds": 3600,
                "default_grant_seconds": 3600
            },
            "scheduler": {
                "tick_seconds": 5,
                "error_backoff_seconds": 30
            },
            "notifications": {
                "max_attempts": 3,
                "retry_delay_seconds": 2,
                "push": {
                    "enabled": False,
                    "endpoint": "https://exp.host/--/api/v2/push/send",
                    "timeout": 10
                },
                "email": {
                    "enabled": False,
                    "smtp_host": "localhost",
                    "smtp_port": 587,
                    "smtp_use_tls": True,
                    "smtp_username": "",
                    "smtp_password": "",
                    "from_address": "alerts@campusguard.local",
                    "timeout": 30
                },
                "sms": {
                    "enabled": False,
                    "account_sid": "",
                    "auth_token": "",
                    "from_number": "",
                    "timeout": 10
                }
            },
            "accounts": {
                "staff_roles": ["staff", "security", "admin"]
            },
            "realtime": {
                "subscriber_queue_size": 10
            },
            "web": {
                "enabled": True,
                "host": "0.0.0.0",
                "port": 8080
            },
            "logging": {
                "level": "INFO",
                "file": "logs/campusguard.log",
                "max_size": "10MB",
                "backup_count": 5
            }
        }

        self._setup_sources()

    def _setup_sources(self):
        """Set up configuration sources in priority order"""
        # Environment variables (highest priority)
        self.sources.append(ConfigSource(
            name="environment",
            priority=4,
            loader=self._load_from_env
        ))

        # Local config file
        local_config_path = str(self.config_dir / "config.yaml")
        self.sources.append(ConfigSource(
            name="local_config",
            priority=3,
            loader=lambda: self._load_from_file(local_config_path),
            path=local_config_path
        ))

        # Default config file
        default_config_path = str(self.config_dir / "default.yaml")
        self.sources.append(ConfigSource(
            name="default_config",
            priority=2,
            loader=lambda: self._load_from_file(default_config_path),
            path=default_config_path
        ))

        # Built-in defaults (lowest priority)
        self.sources.append(ConfigSource(
            name="defaults",
            priority=1,
            loader=lambda: self.defaults
        ))

    def load_config(self) -> None:
        """Load configuration from all sources"""
        self.logger.info("Loading configuration from all sources")

        merged_config = {}

        # Lowest priority first so later sources override
        for source in sorted(self.sources, key=lambda x: x.priority):
            try:
                source_config = source.loader()
                if source_config:
                    merged_config = self._deep_merge(merged_config, source_config)
                    self.logger.debug(f"Loaded configuration from {source.name}")
            except Exception as e:
                self.logger.warning(f"Failed to load config from {source.name}: {e}")

        self.config = merged_config
        self._validate_config()
        self.logger.info("Configuration loaded successfully")

    def _load_from_env(self) -> Dict[str, Any]:
        """Load configuration from environment variables"""
        config = {}

        env_mappings = {
            "CAMPUSGUARD_DEBUG": "app.debug",
            "CAMPUSGUARD_LOG_LEVEL": "app.log_level",
            "CAMPUSGUARD_DB_PATH": "database.path",
            "CAMPUSGUARD_WEB_PORT": "web.port",
            "CAMPUSGUARD_TICK_SECONDS": "scheduler.tick_seconds",
            "CAMPUSGUARD_GRACE_SECONDS": "sessions.grace_seconds",
            "CAMPUSGUARD_SMTP_PASSWORD": "notifications.email.smtp_password",
            "CAMPUSGUARD_TWILIO_AUTH_TOKEN": "notifications.sms.auth_token",
            "CAMPUSGUARD_STAFF_ROLES": "accounts.staff_roles"
        }

        for env_var, config_key in env_mappings.items():
            value = os.getenv(env_var)
            if value is not None:
                if value.lower() in ('true', 'false'):
                    value = value.lower() == 'true'
                elif value.isdigit():
                    value = int(value)
                elif config_key == "accounts.staff_roles":
                    try:
                        value = json.loads(value)
                    except json.JSONDecodeError:
                        self.logger.warning(f"Invalid JSON in {env_var}: {value}")
                        continue

                self._set_nested_value(config, config_key, value)

        return config

    def _load_from_file(self, file_path: str) -> Dict[str, Any]:
        """Load configuration from YAML or JSON file"""
        path = Path(file_path)

        if not path.exists():
            return {}

        try:
            with open(path, 'r') as f:
                if path.suffix.lower() in ['.yaml', '.yml']:
                    return yaml.safe_load(f) or {}
                elif path.suffix.lower() == '.json':
                    return json.load(f)
                else:
                    self.logger.warning(f"Unsupported config file format: {path}")
                    return {}
        except Exception as e:
            self.logger.error(f"Error loading config file {path}: {e}")
            return {}

    def _deep_merge(self, base: Dict, override: Dict) -> Dict:
        """Deep merge two dictionaries"""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def _set_nested_value(self, config: Dict, key_path: str, value: Any) -> None:
        """Set a nested configuration value using dot notation"""
        keys = key_path.split('.')
        current = config

        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def _validate_config(self) -> None:
        """Validate configuration values"""
        errors = []

        required_sections = ['app', 'database', 'sessions', 'scheduler', 'notifications']
        for section in required_sections:
            if section not in self.config:
                errors.append(f"Missing required configuration section: {section}")

        db_path = self.get('database.path')
        if db_path:
            db_dir = Path(db_path).parent
            if not db_dir.exists():
                try:
                    db_dir.mkdir(parents=True, exist_ok=True)
                except Exception as e:
                    errors.append(f"Cannot create database directory {db_dir}: {e}")

        tick = self.get('scheduler.tick_seconds')
        if not isinstance(tick, (int, float)) or tick <= 0:
            errors.append(f"Invalid scheduler tick: {tick}")

        grace = self.get('sessions.grace_seconds')
        if not isinstance(grace, (int, float)) or grace < 0:
            errors.append(f"Invalid grace period: {grace}")

        max_points = self.get('sessions.max_history_points')
        if not isinstance(max_points, int) or max_points < 1:
            errors.append(f"Invalid max history points: {max_points}")

        max_attempts = self.get('notifications.max_attempts')
        if not isinstance(max_attempts, int) or max_attempts < 1:
            errors.append(f"Invalid notification max attempts: {max_attempts}")

        web_port = self.get('web.port')
        if web_port and (not isinstance(web_port, int) or web_port < 1 or web_port > 65535):
            errors.append(f"Invalid web port: {web_port}")

        log_level = self.get('app.log_level', 'INFO')
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if log_level.upper() not in valid_levels:
            errors.append(f"Invalid log level: {log_level}")

        if errors:
            raise ConfigurationError(f"Configuration validation failed: {'; '.join(errors)}")

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation"""
        keys = key.split('.')
        current = self.config

        try:
            for k in keys:
                current = current[k]
            return current
        except (KeyError, TypeError):
            return default

    def set(self, key: str, value: Any) -> None:
        """Set configuration value using dot notation"""
        self._set_nested_value(self.config, key, value)

        if key in self.watchers:
            for callback in self.watchers[key]:
                try:
                    callback(key, value)
                except Exception as e:
                    self.logger.error(f"Error in config watcher for {key}: {e}")

    def watch(self, key: str, callback: Callable[[str, Any], None]) -> None:
        """Watch for configuration changes"""
        if key not in self.watchers:
            self.watchers[key] = []
        self.watchers[key].append(callback)

    def get_section(self, section: str) -> Dict[str, Any]:
        """Get entire configuration section"""
        return self.get(section, {})

    def is_transport_enabled(self, channel: str) -> bool:
        """Check if a notification transport is configured and enabled"""
        return bool(self.get(f'notifications.{channel}.enabled', False))

    def get_staff_roles(self) -> List[str]:
        """Roles whose accounts receive staff notifications"""
        return self.get('accounts.staff_roles', ['staff', 'security', 'admin'])
