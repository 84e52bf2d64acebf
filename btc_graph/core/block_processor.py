"""Block decomposition into graph documents and edges."""

from concurrent.futures import Executor, ThreadPoolExecutor, wait
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional
import structlog

from btc_graph.core.progress import BlockResult
from btc_graph.database.gateway import StorageGateway
from btc_graph.models.config import ImporterConfig
from btc_graph.models.documents import (
    BlockRecord, EdgeRecord, MalformedOutputError, OutputRecord, ParsedOutput,
    TransactionRecord, coinbase_output_id, output_id,
)
from btc_graph.utils.bitcoin import block_subsidy, calculate_fee, parse_vin

logger = structlog.get_logger(__name__)


@dataclass
class TransactionResult:
    """Counts contributed by one transaction."""
    num_inputs: int
    num_outputs: int
    num_addresses: int


class BlockProcessor:
    """
    Walks a verbose block and persists what it derives.

    For every transaction the inputs link the outputs they spend, the outputs
    are stored and linked to the addresses they pay. The transaction summary
    is saved once its inputs and outputs are done, the block summary once all
    of its transactions are.

    With ``async_mode`` the transactions of a block, and the inputs and
    outputs of a transaction, are handled concurrently. Transactions and
    their inputs/outputs run on separate pools so a transaction waiting for
    its children never holds a thread they need.
    """

    def __init__(self, config: ImporterConfig, gateway: StorageGateway):
        self.config = config
        self.gateway = gateway
        self.logger = logger.bind(component="block_processor")

        # Failures of sibling tasks beyond the first one that propagated
        self.deferred_errors: List[BaseException] = []

        self._tx_executor: Optional[Executor] = None
        self._io_executor: Optional[Executor] = None
        if config.async_mode:
            self._tx_executor = ThreadPoolExecutor(max_workers=config.async_threads,
                                                   thread_name_prefix="btc-graph-tx")
            self._io_executor = ThreadPoolExecutor(max_workers=config.async_threads,
                                                   thread_name_prefix="btc-graph-io")

    def process_block(self, block: Dict[str, Any]) -> BlockResult:
        height = block['height']
        transactions = block.get('tx', [])

        self.logger.info(f"Processing block #{height} containing {len(transactions)} transactions",
                         block_hash=block['hash'], verbosity=1)

        results = self._map(self._tx_executor, self.process_transaction, transactions, block)

        self.gateway.save(BlockRecord(
            hash=block['hash'],
            height=height,
            time=block['time'],
            tx=[transaction['txid'] for transaction in transactions],
        ))

        self.logger.info(f"Done processing block #{height}", verbosity=4)

        return BlockResult(
            height=height,
            next_block_hash=block.get('nextblockhash'),
            num_transactions=len(transactions),
            num_inputs=sum(r.num_inputs for r in results),
            num_outputs=sum(r.num_outputs for r in results),
            num_addresses=sum(r.num_addresses for r in results),
        )

    def process_transaction(self, transaction: Dict[str, Any], index: int,
                            block: Dict[str, Any]) -> TransactionResult:
        txid = transaction['txid']
        inputs = transaction.get('vin', [])
        outputs = transaction.get('vout', [])

        self.logger.info(f"Processing transaction: {txid} containing {len(inputs)} inputs "
                         f"and {len(outputs)} outputs", verbosity=2)

        is_coinbase = bool(inputs) and 'coinbase' in inputs[0]
        if is_coinbase and len(inputs) != 1:
            self.logger.warning(f"Coinbase transaction with multiple inputs: {txid}",
                                block_hash=block['hash'])

        input_values = self._map(self._io_executor, self.process_input, inputs, transaction, index, block)
        address_counts = self._map(self._io_executor, self.process_output, outputs, transaction, block)

        if not is_coinbase:
            self._check_balance(transaction, input_values)

        self.gateway.save(TransactionRecord(txid=txid, blockhash=block['hash']))

        self.logger.info(f"Done processing transaction: {txid}", verbosity=4)

        return TransactionResult(
            num_inputs=len(inputs),
            num_outputs=len(outputs),
            num_addresses=sum(address_counts),
        )

    def process_input(self, vin: Dict[str, Any], index: int, transaction: Dict[str, Any],
                      tx_index: int, block: Dict[str, Any]) -> Optional[Decimal]:
        """
        Link the output an input spends to the spending transaction.

        Returns the spent value, or None when the output is unknown. A
        coinbase input spends a pseudo-output carrying the block subsidy.
        """
        txid = transaction['txid']
        parsed = parse_vin(vin)

        self.logger.info(f"Processing input #{index} in transaction {txid}", verbosity=3)

        if parsed['is_coinbase']:
            if tx_index > 0 or index > 0:
                self.logger.warning(f"Coinbase input #{index} of transaction #{tx_index} in block "
                                    f"\"{block['hash']}\" is not the first input of the first transaction",
                                    txid=txid)
            spent = coinbase_output_id(txid)
            value = block_subsidy(block['height'])
            self.gateway.save(OutputRecord(output_id=spent, value=value))
        else:
            spent = output_id(parsed['previous_tx_hash'], parsed['previous_vout_index'])
            document = self.gateway.get_output(spent)
            if document is None:
                self.logger.warning(f"Can't find output \"{spent}\" referenced in input #{index} "
                                    f"of transaction \"{txid}\"")
                value = None
            else:
                value = Decimal(str(document.get('value', 0)))

        self.gateway.save(EdgeRecord.output_to_transaction(spent, txid))

        return value

    def process_output(self, vout: Dict[str, Any], index: int, transaction: Dict[str, Any],
                       block: Dict[str, Any]) -> int:
        """Store an output and link it to its transaction and addresses; returns the address count."""
        txid = transaction['txid']

        try:
            output = ParsedOutput.from_rpc(txid, vout, index)
        except MalformedOutputError:
            self.logger.error("Malformed output", txid=txid, block_hash=block['hash'], payload=vout)
            raise

        self.logger.info(f"Processing output #{output.index} in transaction {txid}", verbosity=3)

        self.gateway.save(OutputRecord(output_id=output.output_id, value=output.value))
        self.gateway.save(EdgeRecord.transaction_to_output(txid, output.output_id))

        if not output.addresses:
            if not output.is_unspendable:
                self.logger.warning(f"No addresses in output #{output.index} in transaction \"{txid}\"",
                                    script_type=output.script_type, payload=vout)
            return 0

        if len(output.addresses) > 1:
            self.logger.warning(f"Unexpected number of addresses in output #{output.index} "
                                f"in transaction \"{txid}\"",
                                addresses=len(output.addresses), payload=vout)

        for address in output.addresses:
            self.process_address(address, output)

        return len(output.addresses)

    def process_address(self, address: str, output: ParsedOutput) -> None:
        self.logger.info(f"Processing address {address} in output #{output.index} "
                         f"in transaction {output.txid}", verbosity=3)

        self.gateway.merge_address(address, output.output_id)
        self.gateway.save(EdgeRecord.address_to_output(address, output.output_id))

    def _check_balance(self, transaction: Dict[str, Any], input_values: List[Optional[Decimal]]) -> None:
        """Warn about a transaction paying out more than it spends, when every input is known."""
        if any(value is None for value in input_values):
            return

        inputs_value = sum(input_values, Decimal(0))
        outputs_value = sum((Decimal(str(vout.get('value', 0))) for vout in transaction.get('vout', [])),
                            Decimal(0))

        if calculate_fee(inputs_value, outputs_value) < 0:
            self.logger.warning(f"Transaction \"{transaction['txid']}\" is spending more ({outputs_value}) "
                                f"than the sum of its inputs ({inputs_value})")

    def _map(self, executor: Optional[Executor], func: Callable, items: List[Any], *args) -> List[Any]:
        """
        Apply ``func(item, index, *args)`` to every item, in order or on ``executor``.

        Concurrent siblings always run to completion. The first failure is
        raised, later ones are kept in ``deferred_errors``.
        """
        if executor is None:
            return [func(item, index, *args) for index, item in enumerate(items)]

        futures = [executor.submit(func, item, index, *args) for index, item in enumerate(items)]
        wait(futures)

        errors = [future.exception() for future in futures if future.exception() is not None]
        if errors:
            self.deferred_errors.extend(errors[1:])
            raise errors[0]

        return [future.result() for future in futures]

    def close(self) -> None:
        for executor in (self._tx_executor, self._io_executor):
            if executor is not None:
                executor.shutdown(wait=True)
