"""
Chain data provider clients.
"""

from .chain_client import (
    BaseChainProvider,
    JsonRpcChainProvider,
    MockChainProvider,
    RateLimiter,
    build_log,
    create_chain_provider,
)

__all__ = [
    "BaseChainProvider",
    "JsonRpcChainProvider",
    "MockChainProvider",
    "RateLimiter",
    "build_log",
    "create_chain_provider",
]
