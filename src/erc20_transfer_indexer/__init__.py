"""ERC20 Transfer Indexer - durable, deduplicated ledger of token Transfer events."""

__version__ = "0.1.0"
