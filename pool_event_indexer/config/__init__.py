"""
Configuration management for the pool event indexer.
"""

from .models import (
    IndexerSettings,
    DatabaseConfig,
    ProviderConfig,
    IndexerConfig,
    ErrorConfig,
    APIConfig,
    LoggingConfig,
    DomainConfig,
    default_domains,
)
from .manager import ConfigManager
from .validation import (
    IndexerSettingsValidator,
    validate_config_dict,
    get_env_var_mappings,
    LogLevelEnum,
)

__all__ = [
    # Models
    'IndexerSettings',
    'DatabaseConfig',
    'ProviderConfig',
    'IndexerConfig',
    'ErrorConfig',
    'APIConfig',
    'LoggingConfig',
    'DomainConfig',
    'default_domains',

    # Manager
    'ConfigManager',

    # Validation
    'IndexerSettingsValidator',
    'validate_config_dict',
    'get_env_var_mappings',
    'LogLevelEnum',
]
