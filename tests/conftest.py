"""
Pytest configuration and shared fixtures.
"""

import pytest

from pool_event_indexer.clients.chain_client import MockChainProvider
from pool_event_indexer.config.models import (
    DatabaseConfig,
    DomainConfig,
    ErrorConfig,
    IndexerConfig,
    IndexerSettings,
    MASTER_GARDENER_V2,
)
from pool_event_indexer.database.sqlalchemy_manager import SQLAlchemyIndexerStore
from pool_event_indexer.indexing.coordinator import Coordinator
from pool_event_indexer.indexing.decoder import ChainEventSource
from pool_event_indexer.indexing.registry import IndexerRegistry

from log_factory import DEPOSIT_SIGNATURE, WITHDRAW_SIGNATURE


@pytest.fixture
def pools_domain():
    """Small staking domain: four pools starting at block 1000."""
    return DomainConfig(
        name="pools",
        contracts=[MASTER_GARDENER_V2],
        events={
            "Deposit": DEPOSIT_SIGNATURE,
            "Withdraw": WITHDRAW_SIGNATURE,
            "EmergencyWithdraw": "EmergencyWithdraw(address,uint256,uint256)",
            "Harvest": "Harvest(address,uint256,uint256)",
        },
        pool_ids=[0, 1, 2, 3],
        genesis_block=1000,
        pid_topic_index=2,
        wallet_topic_index=1,
        amount_word_index=0,
    )


@pytest.fixture
def indexer_settings(pools_domain):
    """Settings tuned for fast tests: no backoff, no stealing, no run budget."""
    return IndexerSettings(
        database=DatabaseConfig(url="sqlite:///:memory:"),
        indexer=IndexerConfig(
            workers_per_pool=4,
            blocks_per_batch=1000,
            max_blocks_per_run=None,
            auto_run_interval_ms=60000,
            batch_timeout_seconds=5.0,
            min_blocks_to_steal=1_000_000,
        ),
        error_handling=ErrorConfig(max_retries=3, base_delay=0.0, max_delay=0.0),
        domains={"pools": pools_domain},
    )


@pytest.fixture
def store(indexer_settings):
    """In-memory SQLite store with the schema created."""
    sqlite_store = SQLAlchemyIndexerStore(indexer_settings.database)
    sqlite_store.connection.initialize()
    sqlite_store.connection.create_tables()
    yield sqlite_store
    sqlite_store.connection.close()


@pytest.fixture
def provider():
    """Scripted chain at head block 2000."""
    return MockChainProvider(head_block=2000)


@pytest.fixture
def make_coordinator(indexer_settings, store, provider, pools_domain):
    """Factory for coordinators over the shared store and provider."""
    def factory(pid=0, scheduler=None, settings=None):
        settings = settings or indexer_settings
        domain = settings.domains["pools"]
        return Coordinator(
            domain,
            pid,
            settings,
            store,
            ChainEventSource(domain, provider),
            scheduler=scheduler,
        )
    return factory


@pytest.fixture
def registry(indexer_settings, store, provider):
    """Registry over the shared store and provider with its own scheduler."""
    return IndexerRegistry(indexer_settings, store, provider)
