"""Decode raw EVM logs into typed CommunityCoin events.

Logs reach the indexer from two places: `eth_getLogs` responses (web3 dicts
with `HexBytes` and ints) and webhook deliveries (JSON with hex strings).
`RawLog.from_rpc` normalizes both into one shape; `decode_log` dispatches on
the first topic and returns a `ChainEvent` or `None` for unrelated logs.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError

from communitycoin_indexer.chain.abi import (
    GROUP_CREATED_DATA_TYPES,
    GROUP_CREATED_TOPIC,
    TOKENS_PURCHASED_TOPIC,
    TOKENS_SOLD_TOPIC,
    TRADE_DATA_WORDS,
)
from communitycoin_indexer.errors import MalformedEventError

logger = logging.getLogger(__name__)

WORD_SIZE = 32


def _to_hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    text = str(value).strip().lower()
    if text.startswith("0x"):
        return int(text, 16)
    return int(text)


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    text = str(value)
    if text.startswith(("0x", "0X")):
        text = text[2:]
    try:
        return bytes.fromhex(text)
    except ValueError as e:
        raise MalformedEventError(f"Log data is not valid hex: {e}") from e


@dataclass(frozen=True)
class RawLog:
    """A log entry as emitted by the chain, before decoding.

    Hex values are lowercase and 0x-prefixed; `data` is raw bytes.
    """

    address: str
    topics: tuple[str, ...]
    data: bytes
    block_number: int
    tx_hash: str
    log_index: int

    @classmethod
    def from_rpc(cls, log: Mapping[str, Any]) -> RawLog:
        """Build from a web3 log dict or a webhook log object.

        Raises:
            MalformedEventError: If a required field is missing or unparsable.
        """
        try:
            return cls(
                address=_to_hex(log["address"]),
                topics=tuple(_to_hex(t) for t in log.get("topics") or ()),
                data=_to_bytes(log.get("data") or b""),
                block_number=_to_int(log["blockNumber"]),
                tx_hash=_to_hex(log["transactionHash"]),
                log_index=_to_int(log["logIndex"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedEventError(f"Log is missing or has invalid fields: {e}") from e


@dataclass(frozen=True)
class GroupCreated:
    token_address: str
    treasury_address: str
    creator: str
    name: str
    symbol: str
    charter_cid: str
    is_public: bool


@dataclass(frozen=True)
class TokensPurchased:
    """A buy; amounts are raw 18-decimal integers."""

    buyer: str
    eth_in: int
    tokens_out: int
    new_price: int


@dataclass(frozen=True)
class TokensSold:
    """A sell; amounts are raw 18-decimal integers."""

    seller: str
    tokens_in: int
    eth_out: int
    new_price: int


DecodedEvent = GroupCreated | TokensPurchased | TokensSold


@dataclass(frozen=True)
class ChainEvent:
    """A decoded event plus the log coordinates it was found at."""

    event: DecodedEvent
    contract_address: str
    tx_hash: str
    block_number: int
    log_index: int

    @property
    def ordering_key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)

    @property
    def name(self) -> str:
        return type(self.event).__name__


def topic_to_address(topic: str) -> str:
    """Extract the address stored in the low 20 bytes of a 32-byte topic."""
    body = topic[2:] if topic.startswith("0x") else topic
    if len(body) != 2 * WORD_SIZE:
        raise MalformedEventError(f"Indexed topic must be 32 bytes, got {len(body) // 2}")
    return "0x" + body[24:].lower()


def split_words(data: bytes, count: int) -> list[int]:
    """Split static ABI data into `count` unsigned 256-bit words."""
    if len(data) != count * WORD_SIZE:
        raise MalformedEventError(f"Expected {count * WORD_SIZE} bytes of data, got {len(data)}")
    return [
        int.from_bytes(data[i * WORD_SIZE : (i + 1) * WORD_SIZE], "big") for i in range(count)
    ]


def _require_topics(raw: RawLog, count: int, name: str) -> None:
    if len(raw.topics) != count:
        raise MalformedEventError(f"{name} expects {count} topics, got {len(raw.topics)}")


def _decode_group_created(raw: RawLog) -> GroupCreated:
    _require_topics(raw, 4, "GroupCreated")
    try:
        name, symbol, charter_cid, is_public = abi_decode(GROUP_CREATED_DATA_TYPES, raw.data)
    except (DecodingError, ValueError, OverflowError) as e:
        raise MalformedEventError(f"GroupCreated data could not be decoded: {e}") from e
    return GroupCreated(
        token_address=topic_to_address(raw.topics[1]),
        treasury_address=topic_to_address(raw.topics[2]),
        creator=topic_to_address(raw.topics[3]),
        name=name,
        symbol=symbol,
        charter_cid=charter_cid,
        is_public=bool(is_public),
    )


def _decode_tokens_purchased(raw: RawLog) -> TokensPurchased:
    _require_topics(raw, 2, "TokensPurchased")
    eth_in, tokens_out, new_price = split_words(raw.data, TRADE_DATA_WORDS)
    return TokensPurchased(
        buyer=topic_to_address(raw.topics[1]),
        eth_in=eth_in,
        tokens_out=tokens_out,
        new_price=new_price,
    )


def _decode_tokens_sold(raw: RawLog) -> TokensSold:
    _require_topics(raw, 2, "TokensSold")
    tokens_in, eth_out, new_price = split_words(raw.data, TRADE_DATA_WORDS)
    return TokensSold(
        seller=topic_to_address(raw.topics[1]),
        tokens_in=tokens_in,
        eth_out=eth_out,
        new_price=new_price,
    )


_DECODERS = {
    GROUP_CREATED_TOPIC: _decode_group_created,
    TOKENS_PURCHASED_TOPIC: _decode_tokens_purchased,
    TOKENS_SOLD_TOPIC: _decode_tokens_sold,
}


def decode_log(raw: RawLog) -> ChainEvent | None:
    """Decode one log.

    Returns:
        The decoded event, or None when the first topic is not a known event.

    Raises:
        MalformedEventError: If the topic is known but the payload is not.
    """
    if not raw.topics:
        return None
    decoder = _DECODERS.get(raw.topics[0])
    if decoder is None:
        logger.debug("Ignoring log with unknown topic %s (tx=%s)", raw.topics[0], raw.tx_hash)
        return None
    return ChainEvent(
        event=decoder(raw),
        contract_address=raw.address,
        tx_hash=raw.tx_hash,
        block_number=raw.block_number,
        log_index=raw.log_index,
    )


def sort_events(events: Sequence[ChainEvent]) -> list[ChainEvent]:
    """Order events by (block_number, log_index)."""
    return sorted(events, key=lambda e: e.ordering_key)
