"""Bitcoin Core RPC client for blockchain data access."""

import json
import time
from typing import Dict, Any, Optional, List
import requests
import structlog

from btc_graph.models.config import ImporterConfig

logger = structlog.get_logger(__name__)


class BitcoinRPCError(Exception):
    """Bitcoin RPC specific error."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class BitcoinRPCClient:
    """Bitcoin Core JSON-RPC client with retry logic and error handling."""

    def __init__(self, config: ImporterConfig):
        self.config = config
        self.session = requests.Session()
        self.session.headers.update({
            'Content-Type': 'application/json',
            'User-Agent': 'btc-graph/1.0.0'
        })

        # RPC endpoint
        self.rpc_url = config.bitcoin_rpc_url
        self.auth = (config.bitcoin_rpc_user, config.bitcoin_rpc_password)

        logger.info("Bitcoin RPC client initialized",
                   host=config.bitcoin_rpc_host,
                   port=config.bitcoin_rpc_port)

    def _make_request(self, method: str, params: List[Any] = None) -> Any:
        """
        Make RPC request with retry logic.

        Only transport failures are retried. An error object returned by the
        node is final and raised immediately with its code.
        """
        if params is None:
            params = []

        payload = {
            "jsonrpc": "1.0",
            "id": int(time.time() * 1000),
            "method": method,
            "params": params
        }

        attempts = max(self.config.bitcoin_rpc_retry_attempts, 1)

        for attempt in range(attempts):
            try:
                response = self.session.post(
                    self.rpc_url,
                    json=payload,
                    auth=self.auth,
                    timeout=self.config.bitcoin_rpc_timeout
                )

                # Bitcoin Core answers RPC errors with HTTP 404/500 and a JSON body
                try:
                    data = response.json()
                except json.JSONDecodeError:
                    response.raise_for_status()
                    raise

                if data.get('error') is not None:
                    error_msg = data['error'].get('message', 'Unknown RPC error')
                    error_code = data['error'].get('code', -1)
                    raise BitcoinRPCError(f"RPC Error {error_code}: {error_msg}", code=error_code)

                return data.get('result')

            except (requests.RequestException, json.JSONDecodeError) as e:
                logger.warning("RPC request failed",
                             method=method,
                             attempt=attempt + 1,
                             error=str(e))

                if attempt == attempts - 1:
                    raise BitcoinRPCError(f"RPC request failed after {attempts} attempts: {e}") from e

                time.sleep(self.config.bitcoin_rpc_retry_delay)

        raise BitcoinRPCError("Unexpected error in RPC request")

    def get_blockchain_info(self) -> Dict[str, Any]:
        """Get blockchain information."""
        return self._make_request("getblockchaininfo")

    def get_best_block_hash(self) -> str:
        """Get the hash of the best (tip) block."""
        return self._make_request("getbestblockhash")

    def get_block_count(self) -> int:
        """Get the current block height."""
        return self._make_request("getblockcount")

    def get_block_hash(self, height: int) -> str:
        """Get block hash by height."""
        return self._make_request("getblockhash", [height])

    def get_block(self, block_hash: str, verbosity: int = 2) -> Dict[str, Any]:
        """
        Get block data by hash.

        Args:
            block_hash: Block hash
            verbosity: 0=hex, 1=json without tx, 2=json with tx details
        """
        return self._make_request("getblock", [block_hash, verbosity])

    def test_connection(self) -> bool:
        """Test RPC connection."""
        try:
            info = self.get_blockchain_info()
            logger.info("RPC connection successful",
                       chain=info.get('chain'),
                       blocks=info.get('blocks'))
            return True
        except BitcoinRPCError as e:
            logger.error("RPC connection failed", error=str(e))
            return False

    def close(self):
        """Close the RPC session."""
        self.session.close()
        logger.info("RPC client session closed")
