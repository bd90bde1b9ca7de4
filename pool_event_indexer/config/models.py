"""
Configuration data models and validation.
"""

import re
from dataclasses import asdict, dataclass, field
from typing import List, Dict, Any, Optional


DFK_CHAIN_RPC = "https://subnets.avax.network/defi-kingdoms/dfk-chain/rpc"
MASTER_GARDENER_V2 = "0xB04e8D6aED037904B77A9F0b08002592925833b7"
QUEST_REWARD_CONTRACT = "0x39a06d3e1b6b1b24c477d90770f317abb4b8f928"

DOMAIN_NAME_PATTERN = re.compile(r'^[a-z0-9_-]+$')


@dataclass
class DatabaseConfig:
    """Database connection configuration."""
    url: str = "sqlite:///indexer_data.db"
    pool_size: int = 10
    max_overflow: int = 20
    echo: bool = False
    timeout: int = 30


@dataclass
class ProviderConfig:
    """Chain data provider (JSON-RPC) configuration."""
    rpc_url: str = DFK_CHAIN_RPC
    timeout: int = 30
    blocks_per_query: int = 2000
    max_concurrent: int = 4
    rate_limit_delay: float = 0.0


@dataclass
class IndexerConfig:
    """Run and scheduling defaults shared by every coordinator."""
    workers_per_pool: int = 3
    blocks_per_batch: int = 20000
    max_blocks_per_run: Optional[int] = 200000
    auto_run_interval_ms: int = 60000
    batch_timeout_seconds: float = 120.0
    min_blocks_to_steal: int = 500000
    stagger_auto_run: bool = True
    eta_window_seconds: float = 30.0
    snapshot_history: int = 120


@dataclass
class ErrorConfig:
    """Error handling configuration."""
    max_retries: int = 3
    backoff_factor: float = 2.0
    base_delay: float = 1.0
    max_delay: float = 60.0
    circuit_breaker_threshold: int = 5
    circuit_breaker_timeout: int = 300  # seconds


@dataclass
class APIConfig:
    """Admin HTTP API configuration."""
    host: str = "0.0.0.0"
    port: int = 8080
    base_path: str = "/api/admin"


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = None
    structured: bool = True


@dataclass
class DomainConfig:
    """
    One event domain (a contract family scanned per pool id).

    ``events`` maps event type names to Solidity event signatures; the
    decoder derives topic0 from each signature. ``pid_topic_index`` is the
    position of the indexed pool id in a log's topics, or None when the
    domain is not keyed by pool id on chain.
    """
    name: str
    contracts: List[str] = field(default_factory=list)
    events: Dict[str, str] = field(default_factory=dict)
    pool_ids: List[int] = field(default_factory=lambda: [0])
    genesis_block: int = 0
    pool_genesis: Dict[int, int] = field(default_factory=dict)
    pool_contracts: Dict[int, List[str]] = field(default_factory=dict)
    workers_per_pool: Optional[int] = None
    pid_topic_index: Optional[int] = None
    wallet_topic_index: Optional[int] = 1
    amount_word_index: Optional[int] = 0

    def genesis_for(self, pid: int) -> int:
        """Genesis block for a pool, honoring per-pool overrides."""
        return self.pool_genesis.get(pid, self.genesis_block)

    def contracts_for(self, pid: int) -> List[str]:
        """Contract addresses scanned for a pool."""
        return self.pool_contracts.get(pid, self.contracts)

    def indexer_name(self, pid: int) -> str:
        return f"{self.name}_pool_{pid}"


def default_domains() -> Dict[str, DomainConfig]:
    """Built-in event domains."""
    return {
        "pools": DomainConfig(
            name="pools",
            contracts=[MASTER_GARDENER_V2],
            events={
                "Deposit": "Deposit(address,uint256,uint256)",
                "Withdraw": "Withdraw(address,uint256,uint256)",
                "EmergencyWithdraw": "EmergencyWithdraw(address,uint256,uint256)",
                "Harvest": "Harvest(address,uint256,uint256)",
            },
            pool_ids=list(range(14)),
            pid_topic_index=2,
            wallet_topic_index=1,
            amount_word_index=0,
        ),
        "gardening-quest": DomainConfig(
            name="gardening-quest",
            contracts=[QUEST_REWARD_CONTRACT],
            events={
                "RewardMinted": "RewardMinted(uint256,address,uint256,address,uint256,uint256)",
            },
            pool_ids=[0],
            workers_per_pool=5,
            pid_topic_index=None,
            wallet_topic_index=2,
            amount_word_index=1,
        ),
    }


@dataclass
class IndexerSettings:
    """Main configuration container."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    indexer: IndexerConfig = field(default_factory=IndexerConfig)
    error_handling: ErrorConfig = field(default_factory=ErrorConfig)
    api: APIConfig = field(default_factory=APIConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    domains: Dict[str, DomainConfig] = field(default_factory=default_domains)

    def workers_for(self, domain: str) -> int:
        domain_config = self.domains[domain]
        return domain_config.workers_per_pool or self.indexer.workers_per_pool

    def validate(self) -> List[str]:
        """
        Validate configuration settings.

        Returns:
            List of validation errors, empty if valid
        """
        errors = []

        if self.indexer.workers_per_pool < 1:
            errors.append("workers_per_pool must be at least 1")

        if self.indexer.blocks_per_batch < 1:
            errors.append("blocks_per_batch must be at least 1")

        if self.indexer.max_blocks_per_run is not None and self.indexer.max_blocks_per_run < 1:
            errors.append("max_blocks_per_run must be positive when set")

        if self.indexer.auto_run_interval_ms < 1000:
            errors.append("auto_run_interval_ms must be at least 1000")

        if self.indexer.batch_timeout_seconds <= 0:
            errors.append("batch_timeout_seconds must be positive")

        if self.provider.blocks_per_query < 1:
            errors.append("blocks_per_query must be at least 1")

        if self.error_handling.max_retries < 0:
            errors.append("Max retries must be non-negative")

        if not self.domains:
            errors.append("At least one event domain must be configured")

        for key, domain in self.domains.items():
            if key != domain.name:
                errors.append(f"Domain key '{key}' does not match domain name '{domain.name}'")
            if not DOMAIN_NAME_PATTERN.match(domain.name):
                errors.append(f"Invalid domain name: {domain.name}")
            if not domain.contracts and not domain.pool_contracts:
                errors.append(f"Domain '{domain.name}' has no contract addresses")
            if not domain.events:
                errors.append(f"Domain '{domain.name}' has no events")
            if not domain.pool_ids:
                errors.append(f"Domain '{domain.name}' has no pool ids")
            if domain.genesis_block < 0:
                errors.append(f"Domain '{domain.name}' genesis block must be non-negative")
            if domain.workers_per_pool is not None and domain.workers_per_pool < 1:
                errors.append(f"Domain '{domain.name}' workers_per_pool must be at least 1")

        return errors

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
