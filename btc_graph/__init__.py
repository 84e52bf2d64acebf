"""
Bitcoin graph importer

Walks the best chain of a Bitcoin Core node and stores blocks, transactions,
outputs and addresses as an ArangoDB graph. Imports resume from the highest
stored block.
"""

__version__ = "1.0.0"
__description__ = "Bitcoin Core to ArangoDB graph importer"

from btc_graph.core.pipeline import PipelineDriver
from btc_graph.core.chain_reader import ChainReader
from btc_graph.database.gateway import StorageGateway
from btc_graph.models.config import ImporterConfig

__all__ = [
    "PipelineDriver",
    "ChainReader",
    "StorageGateway",
    "ImporterConfig",
]
