"""Data models and configuration."""

from btc_graph.models.config import ImporterConfig
from btc_graph.models.documents import (
    EntityKind,
    BlockRecord,
    TransactionRecord,
    OutputRecord,
    AddressRecord,
    EdgeRecord,
    ParsedOutput,
    MalformedOutputError,
)

__all__ = [
    "ImporterConfig",
    "EntityKind",
    "BlockRecord",
    "TransactionRecord",
    "OutputRecord",
    "AddressRecord",
    "EdgeRecord",
    "ParsedOutput",
    "MalformedOutputError",
]
