"""Contract ABI fragments and event topic hashes for CommunityCoin groups."""

from __future__ import annotations

from typing import Any

from web3 import Web3

GROUP_CREATED_SIGNATURE = "GroupCreated(address,address,address,string,string,string,bool)"
TOKENS_PURCHASED_SIGNATURE = "TokensPurchased(address,uint256,uint256,uint256)"
TOKENS_SOLD_SIGNATURE = "TokensSold(address,uint256,uint256,uint256)"


def event_topic(signature: str) -> str:
    """Keccak-256 topic hash of an event signature, as a 0x-prefixed hex string."""
    return "0x" + bytes(Web3.keccak(text=signature)).hex()


GROUP_CREATED_TOPIC = event_topic(GROUP_CREATED_SIGNATURE)
TOKENS_PURCHASED_TOPIC = event_topic(TOKENS_PURCHASED_SIGNATURE)
TOKENS_SOLD_TOPIC = event_topic(TOKENS_SOLD_SIGNATURE)

TRADE_EVENT_SIGNATURES = (TOKENS_PURCHASED_SIGNATURE, TOKENS_SOLD_SIGNATURE)

# Non-indexed parameter types in declaration order.
GROUP_CREATED_DATA_TYPES = ["string", "string", "string", "bool"]
TRADE_DATA_WORDS = 3

COMMUNITY_TOKEN_ABI: list[dict[str, Any]] = [
    {
        "inputs": [],
        "name": "totalSupply",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "reserveBalance",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "currentPrice",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]
