"""
Log decoding: raw eth_getLogs entries to DecodedEvent records.

Decoding is pluggable per domain. The bundled TopicTableDecoder covers
the common shape of staking-style events: an event name chosen by
topic0, the wallet in an indexed topic, the pool id optionally in another
indexed topic and the amount in a data word.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from eth_utils import keccak, to_checksum_address

from pool_event_indexer.clients.chain_client import BaseChainProvider
from pool_event_indexer.config.models import DomainConfig
from pool_event_indexer.exceptions import DecodeError
from pool_event_indexer.models.core import DecodedEvent

logger = logging.getLogger(__name__)

WORD_HEX_CHARS = 64


def event_topic(signature: str) -> str:
    """topic0 of a canonical event signature such as ``Deposit(address,uint256,uint256)``."""
    return "0x" + keccak(text=signature.replace(" ", "")).hex()


def uint_topic(value: int) -> str:
    return "0x" + format(value, "064x")


def _strip_0x(value: str) -> str:
    return value[2:] if value[:2].lower() == "0x" else value


class EventDecoder(ABC):
    """Turns raw logs of one domain into decoded events."""

    @abstractmethod
    def topic_filters(self, pid: int) -> List[Any]:
        """eth_getLogs topic filter for a pool."""
        pass

    @abstractmethod
    def decode(self, pid: int, logs: Sequence[Dict[str, Any]]) -> List[DecodedEvent]:
        """
        Decode raw logs.

        Raises:
            DecodeError: A log matched the domain but its payload is malformed
        """
        pass


class TopicTableDecoder(EventDecoder):
    """Decoder driven by a domain's event signature table."""

    def __init__(self, domain_config: DomainConfig):
        self.domain_config = domain_config
        self.topic_to_type: Dict[str, str] = {
            event_topic(signature): event_type
            for event_type, signature in domain_config.events.items()
        }

    def topic_filters(self, pid: int) -> List[Any]:
        filters: List[Any] = [sorted(self.topic_to_type)]
        pid_index = self.domain_config.pid_topic_index
        if pid_index is not None:
            filters.extend([None] * (pid_index - len(filters)))
            filters.append(uint_topic(pid))
        return filters

    def decode(self, pid: int, logs: Sequence[Dict[str, Any]]) -> List[DecodedEvent]:
        decoded: List[DecodedEvent] = []
        for raw in logs:
            try:
                event = self._decode_one(pid, raw)
            except (AttributeError, TypeError) as e:
                # Wrong payload shape: a non-object log or non-string field
                raise DecodeError(f"Malformed log payload {raw!r:.200}: {e}",
                                  domain=self.domain_config.name, pid=pid) from e
            if event is not None:
                decoded.append(event)
        return decoded

    def _decode_one(self, pid: int, raw: Dict[str, Any]) -> Optional[DecodedEvent]:
        if raw.get("removed"):
            # Reorged out
            return None

        topics = [str(topic).lower() for topic in raw.get("topics") or []]
        if not topics:
            return None

        event_type = self.topic_to_type.get(topics[0])
        if event_type is None:
            return None

        try:
            block_number = int(raw["blockNumber"], 16) if isinstance(raw["blockNumber"], str) else int(raw["blockNumber"])
            log_index = int(raw["logIndex"], 16) if isinstance(raw["logIndex"], str) else int(raw["logIndex"])
            tx_hash = str(raw["transactionHash"]).lower()
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError(f"Malformed {event_type} log metadata: {e}",
                              domain=self.domain_config.name, pid=pid) from e

        pid_index = self.domain_config.pid_topic_index
        if pid_index is not None:
            log_pid = self._topic_int(topics, pid_index, event_type, pid)
            if log_pid != pid:
                return None

        wallet = None
        wallet_index = self.domain_config.wallet_topic_index
        if wallet_index is not None:
            wallet = self._topic_address(topics, wallet_index, event_type, pid)

        amount = None
        word_index = self.domain_config.amount_word_index
        if word_index is not None:
            amount = self._data_word(raw.get("data") or "0x", word_index, event_type, pid)

        return DecodedEvent(
            domain=self.domain_config.name,
            pid=pid,
            block_number=block_number,
            tx_hash=tx_hash,
            log_index=log_index,
            event_type=event_type,
            wallet=wallet,
            amount=amount,
            payload={
                "address": raw.get("address"),
                "topics": topics,
                "data": raw.get("data"),
            },
        )

    def _topic_int(self, topics: List[str], index: int, event_type: str, pid: int) -> int:
        if index >= len(topics):
            raise DecodeError(f"{event_type} log is missing topic {index}",
                              domain=self.domain_config.name, pid=pid)
        try:
            return int(_strip_0x(topics[index]), 16)
        except ValueError as e:
            raise DecodeError(f"{event_type} topic {index} is not hex: {topics[index]}",
                              domain=self.domain_config.name, pid=pid) from e

    def _topic_address(self, topics: List[str], index: int, event_type: str, pid: int) -> str:
        value = self._topic_int(topics, index, event_type, pid)
        if value >> 160:
            raise DecodeError(f"{event_type} topic {index} is not an address",
                              domain=self.domain_config.name, pid=pid)
        return to_checksum_address("0x" + format(value, "040x"))

    def _data_word(self, data: str, index: int, event_type: str, pid: int) -> int:
        body = _strip_0x(data)
        start = index * WORD_HEX_CHARS
        word = body[start:start + WORD_HEX_CHARS]
        if len(word) != WORD_HEX_CHARS:
            raise DecodeError(f"{event_type} data too short for word {index}",
                              domain=self.domain_config.name, pid=pid)
        try:
            return int(word, 16)
        except ValueError as e:
            raise DecodeError(f"{event_type} data word {index} is not hex",
                              domain=self.domain_config.name, pid=pid) from e


class ChainEventSource:
    """Provider plus decoder for one domain: ``(pid, block range) -> events``."""

    def __init__(
        self,
        domain_config: DomainConfig,
        provider: BaseChainProvider,
        decoder: Optional[EventDecoder] = None,
    ):
        self.domain_config = domain_config
        self.provider = provider
        self.decoder = decoder or TopicTableDecoder(domain_config)

    async def fetch_events(self, pid: int, from_block: int, to_block: int) -> List[DecodedEvent]:
        """
        Fetch and decode events in ``[from_block, to_block]``.

        Raises:
            ProviderError: Fetch failed
            DecodeError: A matching log could not be decoded
        """
        logs = await self.provider.get_logs(
            self.domain_config.contracts_for(pid),
            self.decoder.topic_filters(pid),
            from_block,
            to_block,
        )
        return self.decoder.decode(pid, logs)
