"""Configuration management for labelsync."""

from labelsync.config.loader import (
    ConfigLoader,
    EnvironmentVariableError,
    SecurityError,
    find_config_file,
    load_config_from_dict,
    load_config_from_path,
)
from labelsync.config.models import (
    AuditConfig,
    LabelsyncConfig,
    LogFormat,
    LoggingConfig,
    LogLevel,
    ProviderConfig,
    ProvidersConfig,
    ReconcileConfig,
    StoreConfig,
    TenantConfig,
)

__all__ = [
    "ConfigLoader",
    "EnvironmentVariableError",
    "SecurityError",
    "find_config_file",
    "load_config_from_dict",
    "load_config_from_path",
    "AuditConfig",
    "LabelsyncConfig",
    "LogFormat",
    "LoggingConfig",
    "LogLevel",
    "ProviderConfig",
    "ProvidersConfig",
    "ReconcileConfig",
    "StoreConfig",
    "TenantConfig",
]
