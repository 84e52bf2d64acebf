"""Chain reading, block processing and the import pipeline."""

from btc_graph.core.rpc_client import BitcoinRPCClient, BitcoinRPCError
from btc_graph.core.chain_reader import ChainReader, ChainReadError
from btc_graph.core.block_processor import BlockProcessor
from btc_graph.core.progress import ImportStats, ProgressReporter
from btc_graph.core.pipeline import PipelineDriver, PipelineState, RunOutcome

__all__ = [
    "BitcoinRPCClient",
    "BitcoinRPCError",
    "ChainReader",
    "ChainReadError",
    "BlockProcessor",
    "ImportStats",
    "ProgressReporter",
    "PipelineDriver",
    "PipelineState",
    "RunOutcome",
]
