"""CommunityCoin indexer - bonding-curve economics and on-chain event indexing."""

__version__ = "0.1.0"
