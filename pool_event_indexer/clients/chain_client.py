"""
EVM JSON-RPC client wrapper with rate limiting, circuit breaking, and a
scripted mock for tests and dry runs.
"""

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from ..config.models import ErrorConfig, ProviderConfig
from ..exceptions import ProviderError, ProviderTimeout
from ..utils.error_handling import CircuitBreaker


logger = logging.getLogger(__name__)


def _to_hex_block(block: int) -> str:
    return hex(block)


def _parse_hex_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(value, 16)


class RateLimiter:
    """Minimum spacing between RPC calls."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.last_call = 0.0
        self._lock = asyncio.Lock()

    async def wait(self):
        """Wait if necessary to respect rate limits."""
        if self.delay <= 0:
            return

        async with self._lock:
            loop = asyncio.get_running_loop()
            time_since_last = loop.time() - self.last_call
            if time_since_last < self.delay:
                await asyncio.sleep(self.delay - time_since_last)
            self.last_call = loop.time()


class BaseChainProvider(ABC):
    """Abstract chain data provider."""

    @abstractmethod
    async def get_block_number(self) -> int:
        """Current chain head."""
        pass

    @abstractmethod
    async def get_logs(
        self,
        addresses: Sequence[str],
        topics: Sequence[Any],
        from_block: int,
        to_block: int,
    ) -> List[Dict[str, Any]]:
        """
        Raw logs emitted by ``addresses`` in ``[from_block, to_block]``.

        Args:
            addresses: Contract addresses
            topics: eth_getLogs topic filter (position-wise, None = any)
            from_block: First block, inclusive
            to_block: Last block, inclusive

        Raises:
            ProviderError: RPC or transport failure
            ProviderTimeout: Call exceeded the provider timeout
        """
        pass

    async def close(self) -> None:
        pass


class JsonRpcChainProvider(BaseChainProvider):
    """
    Async JSON-RPC provider over aiohttp.

    ``get_logs`` splits its range into ``blocks_per_query`` sized chunks,
    the largest span most public endpoints accept per call.
    """

    def __init__(self, provider_config: ProviderConfig, error_config: ErrorConfig):
        """
        Initialize the client with configuration.

        Args:
            provider_config: RPC endpoint settings
            error_config: Error handling configuration
        """
        self.provider_config = provider_config
        self.error_config = error_config

        self.rate_limiter = RateLimiter(provider_config.rate_limit_delay)
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=error_config.circuit_breaker_threshold,
            recovery_timeout=error_config.circuit_breaker_timeout,
            expected_exception=ProviderError,
        )
        self._semaphore = asyncio.Semaphore(provider_config.max_concurrent)
        self._request_ids = itertools.count(1)
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.provider_config.timeout)
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _post(self, method: str, params: List[Any]) -> Any:
        session = await self._ensure_session()
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._request_ids),
            "method": method,
            "params": params,
        }

        async with self._semaphore:
            await self.rate_limiter.wait()
            try:
                async with session.post(self.provider_config.rpc_url, json=payload) as response:
                    if response.status == 429:
                        raise ProviderError(f"{method} rate limited (HTTP 429)")
                    response.raise_for_status()
                    body = await response.json(content_type=None)
            except asyncio.TimeoutError as e:
                raise ProviderTimeout(f"{method} timed out after {self.provider_config.timeout}s") from e
            except aiohttp.ClientError as e:
                raise ProviderError(f"{method} transport error: {e}") from e
            except ValueError as e:
                raise ProviderError(f"{method} returned invalid JSON: {e}") from e

        if not isinstance(body, dict):
            raise ProviderError(f"{method} returned unexpected payload")

        if body.get("error"):
            error = body["error"]
            raise ProviderError(f"{method} RPC error {error.get('code')}: {error.get('message')}")

        return body.get("result")

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        return await self.circuit_breaker.call(self._post, method, params)

    async def get_block_number(self) -> int:
        result = await self._rpc("eth_blockNumber", [])
        try:
            return _parse_hex_int(result)
        except (TypeError, ValueError) as e:
            raise ProviderError(f"eth_blockNumber returned {result!r}") from e

    async def get_logs(
        self,
        addresses: Sequence[str],
        topics: Sequence[Any],
        from_block: int,
        to_block: int,
    ) -> List[Dict[str, Any]]:
        logs: List[Dict[str, Any]] = []
        chunk = self.provider_config.blocks_per_query

        for start in range(from_block, to_block + 1, chunk):
            end = min(start + chunk - 1, to_block)
            params = [{
                "address": [address.lower() for address in addresses],
                "fromBlock": _to_hex_block(start),
                "toBlock": _to_hex_block(end),
                "topics": list(topics),
            }]
            result = await self._rpc("eth_getLogs", params)
            if not isinstance(result, list):
                raise ProviderError(f"eth_getLogs returned {type(result).__name__}, expected list")
            logs.extend(result)

        logger.debug(f"Fetched {len(logs)} logs for blocks {from_block}-{to_block}")
        return logs


def build_log(
    address: str,
    topics: Sequence[str],
    block_number: int,
    tx_hash: str,
    log_index: int,
    data: str = "0x",
    removed: bool = False,
) -> Dict[str, Any]:
    """Raw log dict shaped like an eth_getLogs result entry."""
    return {
        "address": address.lower(),
        "topics": [topic.lower() for topic in topics],
        "data": data,
        "blockNumber": _to_hex_block(block_number),
        "transactionHash": tx_hash.lower(),
        "logIndex": _to_hex_block(log_index),
        "removed": removed,
    }


class MockChainProvider(BaseChainProvider):
    """
    Scripted provider for tests and dry runs.

    ``failures`` and ``delays`` are keyed by the ``from_block`` of a
    ``get_logs`` call; each call with that start pops the next scripted
    entry, so a sub-range can fail once and then succeed on retry.
    """

    def __init__(
        self,
        head_block: int = 0,
        logs: Optional[List[Dict[str, Any]]] = None,
        failures: Optional[Dict[int, List[Exception]]] = None,
        delays: Optional[Dict[int, List[float]]] = None,
        head_error: Optional[Exception] = None,
    ):
        self.head_block = head_block
        self.logs = list(logs or [])
        self.failures = {key: list(value) for key, value in (failures or {}).items()}
        self.delays = {key: list(value) for key, value in (delays or {}).items()}
        self.head_error = head_error
        self.calls: List[tuple] = []

    def set_head(self, block: int) -> None:
        self.head_block = block

    def add_log(self, log: Dict[str, Any]) -> None:
        self.logs.append(log)

    async def get_block_number(self) -> int:
        if self.head_error is not None:
            raise self.head_error
        return self.head_block

    async def get_logs(
        self,
        addresses: Sequence[str],
        topics: Sequence[Any],
        from_block: int,
        to_block: int,
    ) -> List[Dict[str, Any]]:
        self.calls.append((from_block, to_block))

        scripted_delays = self.delays.get(from_block)
        if scripted_delays:
            await asyncio.sleep(scripted_delays.pop(0))

        scripted_failures = self.failures.get(from_block)
        if scripted_failures:
            raise scripted_failures.pop(0)

        wanted_addresses = {address.lower() for address in addresses}
        return [
            log for log in self.logs
            if from_block <= _parse_hex_int(log["blockNumber"]) <= to_block
            and (not wanted_addresses or log["address"].lower() in wanted_addresses)
            and self._topics_match(log.get("topics", []), topics)
        ]

    @staticmethod
    def _topics_match(log_topics: Sequence[str], wanted: Sequence[Any]) -> bool:
        for position, expected in enumerate(wanted):
            if expected is None:
                continue
            if position >= len(log_topics):
                return False
            options = expected if isinstance(expected, (list, tuple)) else [expected]
            if log_topics[position].lower() not in {option.lower() for option in options}:
                return False
        return True


def create_chain_provider(
    provider_config: ProviderConfig,
    error_config: ErrorConfig,
    use_mock: bool = False,
) -> BaseChainProvider:
    """
    Create a chain data provider.

    Args:
        provider_config: RPC endpoint settings
        error_config: Error handling configuration
        use_mock: Return an empty scripted provider instead

    Returns:
        Configured provider instance
    """
    if use_mock:
        return MockChainProvider()
    return JsonRpcChainProvider(provider_config, error_config)
