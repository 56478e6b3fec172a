"""
Configuration management for the retention system.

This module handles loading, validation, and management of retention configurations.
"""

import os
from pathlib import Path
from typing import Dict, Any, Optional, Literal, Tuple

import structlog
import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from .retention_errors import ValidationError

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_PATH = "configs/retention.yaml"
DEFAULT_DB_PATH = "data/portal.db"

# Column names probed when a data type has no explicit timestamp column
TIMESTAMP_COLUMN_CANDIDATES = ('timestamp', 'created_at', 'collected_at')


class GlobalSettings(BaseModel):
    """Engine-wide switches."""
    enabled: bool = True
    total_space_bytes: Optional[int] = Field(default=None, gt=0)


class CleanupSettings(BaseModel):
    """Batch and safety limits for cleanup runs."""
    batch_size: int = Field(default=1000, gt=0, le=100000)
    max_duration_seconds: float = Field(default=300.0, gt=0)
    archive_dir: str = "data/archive"
    busy_retries: int = Field(default=3, ge=1, le=10)


class MonitoringSettings(BaseModel):
    """Thresholds used by growth analysis and capacity predictions."""
    caution_threshold_percent: float = Field(default=70.0, gt=0, le=100)
    warning_threshold_percent: float = Field(default=80.0, gt=0, le=100)
    critical_threshold_percent: float = Field(default=90.0, gt=0, le=100)
    trend_threshold_percent: float = Field(default=1.0, ge=0)
    growth_window_days: int = Field(default=7, gt=0)
    enable_wal: bool = False


class SchedulerSettings(BaseModel):
    """Periodic loop settings."""
    enabled: bool = True
    check_interval_minutes: float = Field(default=60, gt=0)
    snapshot_on_cycle: bool = True


class DataTypeSettings(BaseModel):
    """Maps a data type onto its physical table."""
    table: str
    timestamp_column: Optional[str] = None
    timestamp_format: Literal['iso', 'epoch'] = 'iso'


class PolicySettings(BaseModel):
    """Default retention policy for a known data type."""
    model_config = ConfigDict(extra='forbid')

    max_age_days: int = Field(gt=0)
    max_records: Optional[int] = Field(default=None, gt=0)
    compression_enabled: bool = False
    archival_enabled: bool = False
    cleanup_frequency: Literal['daily', 'weekly', 'monthly'] = 'daily'
    is_enabled: bool = True
    description: str = ""
    category: str = "general"


class RetentionConfig(BaseModel):
    """Complete retention engine configuration."""
    model_config = ConfigDict(populate_by_name=True)

    global_settings: GlobalSettings = Field(default_factory=GlobalSettings, alias='global')
    cleanup: CleanupSettings = Field(default_factory=CleanupSettings)
    storage_monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    data_types: Dict[str, DataTypeSettings] = Field(default_factory=dict)
    retention_policies: Dict[str, PolicySettings] = Field(default_factory=dict)


def get_default_config() -> Dict[str, Any]:
    """Get default configuration."""
    return {
        'global': {
            'enabled': True,
            'total_space_bytes': None,
        },
        'cleanup': {
            'batch_size': 1000,
            'max_duration_seconds': 300,
            'archive_dir': 'data/archive',
            'busy_retries': 3,
        },
        'storage_monitoring': {
            'caution_threshold_percent': 70,
            'warning_threshold_percent': 80,
            'critical_threshold_percent': 90,
            'trend_threshold_percent': 1.0,
            'growth_window_days': 7,
            'enable_wal': False,
        },
        'scheduler': {
            'enabled': True,
            'check_interval_minutes': 60,
            'snapshot_on_cycle': True,
        },
        'data_types': {
            'system_metrics': {'table': 'system_metrics', 'timestamp_column': 'timestamp'},
            'interface_metrics': {'table': 'interface_metrics', 'timestamp_column': 'timestamp'},
            'terminal_logs': {'table': 'terminal_session_logs', 'timestamp_column': 'timestamp'},
            'connection_tracking': {'table': 'connection_tracking', 'timestamp_column': 'collected_at'},
            'user_audit': {'table': 'user_management_audit', 'timestamp_column': 'created_at'},
            'alerts': {'table': 'alerts', 'timestamp_column': 'created_at'},
            'login_attempts': {'table': 'login_attempts', 'timestamp_column': 'created_at'},
            'disk_usage_history': {'table': 'disk_usage_history', 'timestamp_column': 'timestamp'},
        },
        'retention_policies': {
            'system_metrics': {
                'max_age_days': 30,
                'max_records': 1000000,
                'cleanup_frequency': 'daily',
                'description': 'System monitoring data (CPU, memory, storage)',
                'category': 'monitoring',
            },
            'interface_metrics': {
                'max_age_days': 30,
                'max_records': 2000000,
                'cleanup_frequency': 'daily',
                'description': 'Network interface monitoring data',
                'category': 'monitoring',
            },
            'terminal_logs': {
                'max_age_days': 90,
                'max_records': 100000,
                'compression_enabled': True,
                'cleanup_frequency': 'weekly',
                'description': 'Terminal session logs and command history',
                'category': 'logs',
            },
            'connection_tracking': {
                'max_age_days': 7,
                'max_records': 500000,
                'cleanup_frequency': 'daily',
                'description': 'Network connection tracking data',
                'category': 'monitoring',
            },
            'user_audit': {
                'max_age_days': 365,
                'max_records': 50000,
                'compression_enabled': True,
                'archival_enabled': True,
                'cleanup_frequency': 'monthly',
                'description': 'User management and authentication audit logs',
                'category': 'audit',
            },
            'alerts': {
                'max_age_days': 90,
                'max_records': 20000,
                'cleanup_frequency': 'weekly',
                'description': 'System alerts and notifications',
                'category': 'alerts',
            },
            'login_attempts': {
                'max_age_days': 30,
                'max_records': 100000,
                'cleanup_frequency': 'daily',
                'description': 'User login attempts and security events',
                'category': 'security',
            },
            'disk_usage_history': {
                'max_age_days': 90,
                'cleanup_frequency': 'weekly',
                'description': 'Disk usage snapshots used for growth analysis',
                'category': 'monitoring',
            },
        },
    }


class RetentionConfigManager:
    """Manages retention system configuration."""

    def __init__(self, config_path: Optional[str] = None,
                 overrides: Optional[Dict[str, Any]] = None):
        self.config_path = Path(config_path) if config_path else None
        self.config = self._load_config(overrides or {})

    def _load_config(self, overrides: Dict[str, Any]) -> RetentionConfig:
        """Load configuration from YAML file."""
        if self.config_path is None:
            config_data = get_default_config()
        elif self.config_path.exists():
            try:
                with open(self.config_path, 'r') as f:
                    config_data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ValidationError(f"Invalid YAML in {self.config_path}: {e}")
        else:
            logger.warning("Config file not found, writing defaults", path=str(self.config_path))
            config_data = get_default_config()
            self._save_config(config_data)

        config_data = _merge(config_data, overrides)
        return self._parse_config(config_data)

    def _parse_config(self, config_data: Dict[str, Any]) -> RetentionConfig:
        """Parse configuration data into a RetentionConfig object."""
        # Sections left out of a user file fall back to the defaults
        defaults = get_default_config()
        for section in ('data_types', 'retention_policies'):
            if section not in config_data:
                config_data[section] = defaults[section]

        try:
            return RetentionConfig.model_validate(config_data)
        except PydanticValidationError as e:
            errors = [
                f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
                for err in e.errors()
            ]
            raise ValidationError("Invalid retention configuration", errors=errors)

    def _save_config(self, config_data: Dict[str, Any]):
        """Save configuration to YAML file."""
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, 'w') as f:
                yaml.dump(config_data, f, default_flow_style=False, indent=2)
        except OSError as e:
            logger.error("Failed to save config", path=str(self.config_path), error=str(e))

    def is_enabled(self) -> bool:
        """Check if retention system is enabled."""
        return self.config.global_settings.enabled

    def get_data_type_settings(self, data_type: str) -> Optional[DataTypeSettings]:
        return self.config.data_types.get(data_type)

    def get_default_policies(self) -> Dict[str, PolicySettings]:
        """Get the policies seeded on startup."""
        return self.config.retention_policies


def _merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def resolve_paths(config_path: Optional[str] = None,
                  db_path: Optional[str] = None) -> Tuple[str, str]:
    """Resolve config and database paths, honouring .env / environment overrides."""
    load_dotenv()
    config_path = config_path or os.getenv("RETENTIOND_CONFIG", DEFAULT_CONFIG_PATH)
    db_path = db_path or os.getenv("RETENTIOND_DB_PATH", DEFAULT_DB_PATH)
    return config_path, db_path
