"""Chain access: ABI fragments, log decoding and RPC clients."""

from communitycoin_indexer.chain.decoder import (
    ChainEvent,
    GroupCreated,
    RawLog,
    TokensPurchased,
    TokensSold,
    decode_log,
)

__all__ = [
    "ChainEvent",
    "GroupCreated",
    "RawLog",
    "TokensPurchased",
    "TokensSold",
    "decode_log",
]
