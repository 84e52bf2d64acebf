"""ArangoDB storage."""

from btc_graph.database.gateway import StorageGateway, StorageError

__all__ = [
    "StorageGateway",
    "StorageError",
]
