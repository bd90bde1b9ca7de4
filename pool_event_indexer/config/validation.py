"""
Pydantic schema for the settings file; converts to the plain dataclasses in models.
"""

import re
from dataclasses import asdict
from typing import List, Any, Dict, Optional
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from enum import Enum

from pool_event_indexer.config.models import DFK_CHAIN_RPC, default_domains


class LogLevelEnum(str, Enum):
    """Supported log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseConfigValidator(BaseModel):
    """database: section."""
    url: str = Field(default="sqlite:///indexer_data.db", description="Database connection URL")
    pool_size: int = Field(default=10, ge=1, le=100, description="Pooled connections (server databases only)")
    max_overflow: int = Field(default=20, ge=0, le=200, description="Connection pool overflow")
    echo: bool = Field(default=False, description="Log every SQL statement")
    timeout: int = Field(default=30, ge=1, le=300, description="Seconds to wait for a connection or lock")

    @field_validator('url')
    @classmethod
    def validate_database_url(cls, v):
        """Accept only backends the store has been run against."""
        if not v:
            raise ValueError("database.url must not be empty")

        valid_prefixes = ['sqlite:///', 'postgresql://', 'postgresql+psycopg2://']
        if not any(v.startswith(prefix) for prefix in valid_prefixes):
            raise ValueError(f"Unsupported database backend in {v!r}")

        return v


class ProviderConfigValidator(BaseModel):
    """Pydantic model for chain provider configuration validation."""
    rpc_url: str = Field(default=DFK_CHAIN_RPC, description="JSON-RPC endpoint")
    timeout: int = Field(default=30, ge=1, le=300, description="Seconds per JSON-RPC request")
    blocks_per_query: int = Field(default=2000, ge=1, le=100000, description="Blocks per eth_getLogs call")
    max_concurrent: int = Field(default=4, ge=1, le=64, description="Maximum concurrent requests")
    rate_limit_delay: float = Field(default=0.0, ge=0.0, le=10.0, description="Delay between requests")

    @field_validator('rpc_url')
    @classmethod
    def validate_rpc_url(cls, v):
        """Validate RPC URL format."""
        if not v.startswith(('http://', 'https://')):
            raise ValueError("RPC URL must start with http:// or https://")
        return v.rstrip('/')


class IndexerConfigValidator(BaseModel):
    """Pydantic model for run and scheduling defaults."""
    workers_per_pool: int = Field(default=3, ge=1, le=64, description="Workers per coordinator")
    blocks_per_batch: int = Field(default=20000, ge=1, description="Blocks scanned per worker batch")
    max_blocks_per_run: Optional[int] = Field(default=200000, ge=1, description="Run window budget")
    auto_run_interval_ms: int = Field(default=60000, ge=1000, description="Auto-run interval")
    batch_timeout_seconds: float = Field(default=120.0, gt=0, le=3600, description="Per-batch time budget")
    min_blocks_to_steal: int = Field(default=500000, ge=1, description="Smallest range worth stealing")
    stagger_auto_run: bool = Field(default=True, description="Spread first auto-run ticks")
    eta_window_seconds: float = Field(default=30.0, gt=0, description="ETA rate window")
    snapshot_history: int = Field(default=120, ge=2, le=10000, description="Progress snapshots kept")


class ErrorConfigValidator(BaseModel):
    """error_handling: section; retry backoff and the provider circuit breaker."""
    max_retries: int = Field(default=3, ge=0, le=10, description="Retries of a failed batch before the run aborts")
    backoff_factor: float = Field(default=2.0, ge=1.0, le=10.0, description="Multiplier between consecutive retry delays")
    base_delay: float = Field(default=1.0, ge=0.0, le=60.0, description="First retry delay")
    max_delay: float = Field(default=60.0, ge=0.0, le=3600.0, description="Retry delay ceiling")
    circuit_breaker_threshold: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Consecutive provider failures that open the circuit"
    )
    circuit_breaker_timeout: int = Field(
        default=300,
        ge=1,
        le=3600,
        description="Seconds an open circuit waits before a trial request"
    )

    @model_validator(mode='after')
    def validate_delay_bounds(self):
        """Ensure the base delay does not exceed the ceiling."""
        if self.base_delay > self.max_delay:
            raise ValueError(f"base_delay ({self.base_delay}) must not exceed max_delay ({self.max_delay})")
        return self


class APIConfigValidator(BaseModel):
    """Pydantic model for admin API configuration validation."""
    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=8080, ge=1, le=65535, description="Bind port")
    base_path: str = Field(default="/api/admin", description="Route prefix")

    @field_validator('base_path')
    @classmethod
    def validate_base_path(cls, v):
        """Route prefix must be absolute without a trailing slash."""
        if not v.startswith('/'):
            raise ValueError("base_path must start with '/'")
        return v.rstrip('/') or '/'


class LoggingConfigValidator(BaseModel):
    """Pydantic model for logging configuration validation."""
    level: LogLevelEnum = Field(default=LogLevelEnum.INFO, description="Root log level")
    file: Optional[str] = Field(default=None, description="Log file path")
    structured: bool = Field(default=True, description="Emit JSON log lines")

    @field_validator('level', mode='before')
    @classmethod
    def normalize_level(cls, v):
        return v.upper() if isinstance(v, str) else v


class DomainConfigValidator(BaseModel):
    """Pydantic model for one event domain."""
    name: str
    contracts: List[str] = Field(default_factory=list)
    events: Dict[str, str] = Field(default_factory=dict, min_length=1)
    pool_ids: List[int] = Field(default_factory=lambda: [0], min_length=1)
    genesis_block: int = Field(default=0, ge=0)
    pool_genesis: Dict[int, int] = Field(default_factory=dict)
    pool_contracts: Dict[int, List[str]] = Field(default_factory=dict)
    workers_per_pool: Optional[int] = Field(default=None, ge=1, le=64)
    pid_topic_index: Optional[int] = Field(default=None, ge=1, le=3)
    wallet_topic_index: Optional[int] = Field(default=1, ge=1, le=3)
    amount_word_index: Optional[int] = Field(default=0, ge=0)

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        if not re.match(r'^[a-z0-9_-]+$', v):
            raise ValueError(f"Invalid domain name: {v}")
        return v

    @field_validator('contracts')
    @classmethod
    def validate_contracts(cls, v):
        for address in v:
            if not re.match(r'^0x[0-9a-fA-F]{40}$', address):
                raise ValueError(f"Invalid contract address: {address}")
        return v

    @field_validator('events')
    @classmethod
    def validate_events(cls, v):
        for event_type, signature in v.items():
            if not re.match(r'^[A-Za-z_][A-Za-z0-9_]*\([A-Za-z0-9_,\[\]() ]*\)$', signature):
                raise ValueError(f"Invalid event signature for {event_type}: {signature}")
        return v

    @model_validator(mode='after')
    def validate_contract_source(self):
        """A domain needs contracts, either shared or per pool."""
        if not self.contracts and not self.pool_contracts:
            raise ValueError(f"Domain '{self.name}' has no contract addresses")
        return self


def _default_domain_validators() -> Dict[str, DomainConfigValidator]:
    return {
        key: DomainConfigValidator(**asdict(domain))
        for key, domain in default_domains().items()
    }


class IndexerSettingsValidator(BaseModel):
    """Root of the settings file schema."""
    database: DatabaseConfigValidator = Field(default_factory=DatabaseConfigValidator)
    provider: ProviderConfigValidator = Field(default_factory=ProviderConfigValidator)
    indexer: IndexerConfigValidator = Field(default_factory=IndexerConfigValidator)
    error_handling: ErrorConfigValidator = Field(default_factory=ErrorConfigValidator)
    api: APIConfigValidator = Field(default_factory=APIConfigValidator)
    logging: LoggingConfigValidator = Field(default_factory=LoggingConfigValidator)
    domains: Dict[str, DomainConfigValidator] = Field(default_factory=_default_domain_validators)

    model_config = {
        "validate_assignment": True,
        "extra": "forbid",
        "use_enum_values": True
    }

    @model_validator(mode='before')
    @classmethod
    def fill_domain_names(cls, data):
        """Allow domains keyed by name without repeating the name inside."""
        if isinstance(data, dict) and isinstance(data.get('domains'), dict):
            domains = {}
            for key, value in data['domains'].items():
                if isinstance(value, dict):
                    value = {'name': key, **value}
                domains[key] = value
            data = {**data, 'domains': domains}
        return data

    @model_validator(mode='after')
    def validate_domain_keys(self):
        for key, domain in self.domains.items():
            if key != domain.name:
                raise ValueError(f"Domain key '{key}' does not match domain name '{domain.name}'")
        return self

    def to_settings(self) -> 'IndexerSettings':
        """Convert to the dataclass settings used at runtime."""
        from pool_event_indexer.config.models import (
            IndexerSettings, DatabaseConfig, ProviderConfig, IndexerConfig,
            ErrorConfig, APIConfig, LoggingConfig, DomainConfig
        )

        return IndexerSettings(
            database=DatabaseConfig(
                url=self.database.url,
                pool_size=self.database.pool_size,
                max_overflow=self.database.max_overflow,
                echo=self.database.echo,
                timeout=self.database.timeout
            ),
            provider=ProviderConfig(
                rpc_url=self.provider.rpc_url,
                timeout=self.provider.timeout,
                blocks_per_query=self.provider.blocks_per_query,
                max_concurrent=self.provider.max_concurrent,
                rate_limit_delay=self.provider.rate_limit_delay
            ),
            indexer=IndexerConfig(**self.indexer.model_dump()),
            error_handling=ErrorConfig(**self.error_handling.model_dump()),
            api=APIConfig(
                host=self.api.host,
                port=self.api.port,
                base_path=self.api.base_path
            ),
            logging=LoggingConfig(
                level=LogLevelEnum(self.logging.level).value,
                file=self.logging.file,
                structured=self.logging.structured
            ),
            domains={
                key: DomainConfig(**domain.model_dump())
                for key, domain in self.domains.items()
            }
        )


def validate_config_dict(config_data: Dict[str, Any]) -> IndexerSettingsValidator:
    """
    Parse a raw settings mapping.

    Raises:
        ValueError: With every field error pydantic reported
    """
    try:
        return IndexerSettingsValidator(**config_data)
    except (ValidationError, TypeError) as e:
        raise ValueError(f"Configuration validation failed: {e}") from e


def get_env_var_mappings() -> Dict[str, str]:
    """INDEXER_* environment variables and the dotted settings path each overrides."""
    return {
        # Storage
        'INDEXER_DB_URL': 'database.url',
        'INDEXER_DB_POOL_SIZE': 'database.pool_size',
        'INDEXER_DB_ECHO': 'database.echo',
        'INDEXER_DB_TIMEOUT': 'database.timeout',

        # Provider configuration
        'INDEXER_RPC_URL': 'provider.rpc_url',
        'INDEXER_RPC_TIMEOUT': 'provider.timeout',
        'INDEXER_BLOCKS_PER_QUERY': 'provider.blocks_per_query',
        'INDEXER_RPC_MAX_CONCURRENT': 'provider.max_concurrent',

        # Run configuration
        'INDEXER_WORKERS_PER_POOL': 'indexer.workers_per_pool',
        'INDEXER_BLOCKS_PER_BATCH': 'indexer.blocks_per_batch',
        'INDEXER_MAX_BLOCKS_PER_RUN': 'indexer.max_blocks_per_run',
        'INDEXER_AUTO_RUN_INTERVAL_MS': 'indexer.auto_run_interval_ms',
        'INDEXER_BATCH_TIMEOUT': 'indexer.batch_timeout_seconds',
        'INDEXER_MIN_BLOCKS_TO_STEAL': 'indexer.min_blocks_to_steal',

        # Retry and circuit breaker
        'INDEXER_MAX_RETRIES': 'error_handling.max_retries',
        'INDEXER_BACKOFF_FACTOR': 'error_handling.backoff_factor',
        'INDEXER_CIRCUIT_BREAKER_THRESHOLD': 'error_handling.circuit_breaker_threshold',
        'INDEXER_CIRCUIT_BREAKER_TIMEOUT': 'error_handling.circuit_breaker_timeout',

        # Admin HTTP server
        'INDEXER_API_HOST': 'api.host',
        'INDEXER_API_PORT': 'api.port',

        # Logging configuration
        'INDEXER_LOG_LEVEL': 'logging.level',
        'INDEXER_LOG_FILE': 'logging.file',
    }
