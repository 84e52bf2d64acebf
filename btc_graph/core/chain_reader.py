"""Read-only view of the best chain served by Bitcoin Core."""

import time
from typing import Any, Dict
import structlog

from btc_graph.utils.perf import LatencyTracker
from btc_graph.core.rpc_client import BitcoinRPCClient, BitcoinRPCError
from btc_graph.models.config import ImporterConfig

logger = structlog.get_logger(__name__)

# Bitcoin Core RPC error codes
RPC_INVALID_ADDRESS_OR_KEY = -5  # block not found
RPC_INVALID_PARAMETER = -8       # height out of range


class ChainReadError(BitcoinRPCError):
    """The node could not resolve a block."""


class ChainReader:
    """
    Fetches blocks, block hashes and the chain tip.

    RPC failures propagate unchanged; retrying is left to the RPC client's
    transport layer and to whoever restarts the import.
    """

    def __init__(self, config: ImporterConfig, rpc_client: BitcoinRPCClient = None):
        self.config = config
        self.rpc_client = rpc_client or BitcoinRPCClient(config)
        self.logger = logger.bind(component="chain_reader")
        self._get_block_latency = LatencyTracker("getblock", enabled=config.perf >= 2)

    def get_chain_tip(self) -> Dict[str, Any]:
        """Header of the current best block."""
        best_hash = self.rpc_client.get_best_block_hash()
        return self.get_block_header(best_hash)

    def get_block(self, block_hash: str) -> Dict[str, Any]:
        """Block with every transaction fully decoded."""
        started = time.perf_counter()
        block = self._fetch_block(block_hash, verbosity=2)
        self._get_block_latency.observe(time.perf_counter() - started)
        return block

    def get_block_header(self, block_hash: str) -> Dict[str, Any]:
        """Block with transaction ids only."""
        return self._fetch_block(block_hash, verbosity=1)

    def get_block_hash_at_height(self, height: int) -> str:
        try:
            block_hash = self.rpc_client.get_block_hash(height)
        except BitcoinRPCError as e:
            if e.code == RPC_INVALID_PARAMETER:
                raise ChainReadError(f"No block at height {height}", code=e.code) from e
            raise

        if not block_hash:
            raise ChainReadError(f"No block at height {height}")
        return block_hash

    def _fetch_block(self, block_hash: str, verbosity: int) -> Dict[str, Any]:
        try:
            block = self.rpc_client.get_block(block_hash, verbosity=verbosity)
        except BitcoinRPCError as e:
            if e.code in (RPC_INVALID_ADDRESS_OR_KEY, RPC_INVALID_PARAMETER):
                raise ChainReadError(f"Block \"{block_hash}\" not found", code=e.code) from e
            raise

        if not block:
            raise ChainReadError(f"Block \"{block_hash}\" not found")
        return block

    def test_connection(self) -> bool:
        return self.rpc_client.test_connection()

    def close(self):
        self.rpc_client.close()
