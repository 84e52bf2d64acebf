"""
Unit tests for the block processor.

Blocks are processed into the in-memory database and the resulting
documents and edges are inspected after a flush.
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from structlog.testing import capture_logs

from conftest import (
    ADDRESS_A,
    ADDRESS_B,
    ADDRESS_C,
    BLOCK_1_HASH,
    BLOCK_2_HASH,
    COINBASE_1_TXID,
    COINBASE_2_TXID,
    SPEND_TXID,
)
from btc_graph.core.block_processor import BlockProcessor
from btc_graph.models.documents import MalformedOutputError


@pytest.fixture
def processor(config, gateway):
    processor = BlockProcessor(config, gateway)
    yield processor
    processor.close()


def _documents(fake_db, collection):
    return fake_db.collections[collection].documents


def _process(processor, gateway, blocks):
    results = [processor.process_block(block) for block in blocks]
    gateway.flush_all()
    return results


def _warnings(logs):
    return [entry['event'] for entry in logs if entry['log_level'] == "warning"]


class TestCoinbase:
    """Tests for coinbase handling."""

    def test_pseudo_output_carries_subsidy(self, processor, gateway, fake_db, chain):
        _process(processor, gateway, chain[:1])

        outputs = _documents(fake_db, "outputs")
        assert outputs[f"{COINBASE_1_TXID}:coinbase"]['value'] == Decimal("50")
        assert outputs[f"{COINBASE_1_TXID}:0"]['value'] == Decimal("50")

        spent = _documents(fake_db, "outputs_to_transactions")[f"{COINBASE_1_TXID}:coinbase"]
        assert spent['_from'] == f"outputs/{COINBASE_1_TXID}:coinbase"
        assert spent['_to'] == f"transactions/{COINBASE_1_TXID}"

    def test_subsidy_follows_height(self, processor, gateway, fake_db, chain):
        block = chain[0]
        block['height'] = 210000

        _process(processor, gateway, [block])

        assert _documents(fake_db, "outputs")[f"{COINBASE_1_TXID}:coinbase"]['value'] == Decimal("25")

    def test_misplaced_coinbase_still_recorded(self, processor, gateway, fake_db, chain):
        block = chain[1]
        # Coinbase marker on the second transaction
        block['tx'].reverse()

        with capture_logs() as logs:
            _process(processor, gateway, [block])

        assert f"{COINBASE_2_TXID}:coinbase" in _documents(fake_db, "outputs")
        assert any("is not the first input of the first transaction" in event for event in _warnings(logs))

    def test_coinbase_in_place_logs_no_warning(self, processor, gateway, chain):
        with capture_logs() as logs:
            _process(processor, gateway, chain[:1])

        assert _warnings(logs) == []


class TestInputs:
    """Tests for spent output resolution."""

    def test_spend_links_output_to_transaction(self, processor, gateway, fake_db, chain):
        _process(processor, gateway, chain)

        edge = _documents(fake_db, "outputs_to_transactions")[f"{COINBASE_1_TXID}:0"]
        assert edge['_from'] == f"outputs/{COINBASE_1_TXID}:0"
        assert edge['_to'] == f"transactions/{SPEND_TXID}"

    def test_spend_within_unflushed_buffer(self, config, gateway, fake_db, chain):
        processor = BlockProcessor(config, gateway)
        processor._check_balance = MagicMock(wraps=processor._check_balance)

        # Both blocks in one go, the spent output is still buffered
        processor.process_block(chain[0])
        processor.process_block(chain[1])

        values = processor._check_balance.call_args_list[-1].args[1]
        assert values == [Decimal("50")]

    def test_missing_output_is_not_fatal(self, processor, gateway, fake_db, chain):
        with capture_logs() as logs:
            result = _process(processor, gateway, chain[1:])[0]

        assert _warnings(logs) == [
            f"Can't find output \"{COINBASE_1_TXID}:0\" referenced in input #0 of transaction \"{SPEND_TXID}\"",
        ]
        assert result.num_inputs == 2
        edge = _documents(fake_db, "outputs_to_transactions")[f"{COINBASE_1_TXID}:0"]
        assert edge['_to'] == f"transactions/{SPEND_TXID}"
        assert SPEND_TXID in _documents(fake_db, "transactions")

    def test_missing_output_value_is_none(self, processor, chain):
        spend = chain[1]['tx'][1]
        assert processor.process_input(spend['vin'][0], 0, spend, 1, chain[1]) is None


class TestOutputs:
    """Tests for outputs and address links."""

    def test_outputs_and_addresses(self, processor, gateway, fake_db, chain):
        _process(processor, gateway, chain)

        outputs = _documents(fake_db, "outputs")
        assert outputs[f"{SPEND_TXID}:0"]['value'] == Decimal("10")
        assert outputs[f"{SPEND_TXID}:1"]['value'] == Decimal("39.9")
        assert outputs[f"{SPEND_TXID}:2"]['value'] == Decimal("0")

        addresses = _documents(fake_db, "addresses")
        assert addresses[ADDRESS_A]['outputs'] == [f"{COINBASE_1_TXID}:0", f"{SPEND_TXID}:1"]
        assert addresses[ADDRESS_B]['outputs'] == [f"{COINBASE_2_TXID}:0"]
        assert addresses[ADDRESS_C]['outputs'] == [f"{SPEND_TXID}:0"]

        edges = _documents(fake_db, "addresses_to_outputs")
        assert edges[f"{SPEND_TXID}:0@{ADDRESS_C}"]['_from'] == f"addresses/{ADDRESS_C}"

        produced = _documents(fake_db, "transactions_to_outputs")
        assert produced[f"{SPEND_TXID}:2"]['_from'] == f"transactions/{SPEND_TXID}"

    @pytest.mark.parametrize("script_pub_key", [
        {'type': 'nulldata', 'hex': '6a0568656c6c6f'},
        {'type': 'nonstandard', 'hex': '51'},
    ])
    def test_unspendable_output_has_no_address(self, processor, chain, script_pub_key):
        spend = chain[1]['tx'][1]
        vout = {'value': 0.0, 'n': 2, 'scriptPubKey': script_pub_key}

        with capture_logs() as logs:
            assert processor.process_output(vout, 2, spend, chain[1]) == 0

        assert _warnings(logs) == []

    def test_address_less_output_warns(self, processor, chain):
        spend = chain[1]['tx'][1]
        vout = {'value': 1.0, 'n': 6, 'scriptPubKey': {'type': 'witness_unknown', 'hex': ''}}

        with capture_logs() as logs:
            assert processor.process_output(vout, 6, spend, chain[1]) == 0

        assert _warnings(logs) == [f"No addresses in output #6 in transaction \"{SPEND_TXID}\""]

    def test_every_address_recorded(self, processor, gateway, fake_db, chain):
        spend = chain[1]['tx'][1]
        vout = {'value': 1.0, 'n': 5, 'scriptPubKey': {'type': 'multisig', 'addresses': [ADDRESS_A, ADDRESS_B]}}

        with capture_logs() as logs:
            assert processor.process_output(vout, 5, spend, chain[1]) == 2
        gateway.flush_all()

        assert _warnings(logs) == [f"Unexpected number of addresses in output #5 in transaction \"{SPEND_TXID}\""]

        edges = _documents(fake_db, "addresses_to_outputs")
        assert f"{SPEND_TXID}:5@{ADDRESS_A}" in edges
        assert f"{SPEND_TXID}:5@{ADDRESS_B}" in edges

    def test_malformed_output_is_fatal(self, processor, chain):
        del chain[1]['tx'][1]['vout'][0]['scriptPubKey']

        with pytest.raises(MalformedOutputError):
            processor.process_block(chain[1])


class TestBlocks:
    """Tests for block summaries and counts."""

    def test_block_result(self, processor, gateway, chain):
        first, second = _process(processor, gateway, chain)

        assert first.height == 1
        assert first.next_block_hash == BLOCK_2_HASH
        assert second.next_block_hash is None
        assert (second.num_transactions, second.num_inputs, second.num_outputs, second.num_addresses) == (2, 2, 4, 3)

    def test_block_and_transaction_documents(self, processor, gateway, fake_db, chain):
        _process(processor, gateway, chain)

        block = _documents(fake_db, "blocks")[BLOCK_2_HASH]
        assert block['height'] == 2
        assert block['tx'] == [COINBASE_2_TXID, SPEND_TXID]
        assert _documents(fake_db, "transactions")[SPEND_TXID]['blockhash'] == BLOCK_2_HASH
        assert _documents(fake_db, "blocks")[BLOCK_1_HASH]['time'] == 1231469665

    def test_replay_is_idempotent(self, processor, gateway, fake_db, chain):
        _process(processor, gateway, chain)
        before = {name: dict(c.documents) for name, c in fake_db.collections.items()}

        _process(processor, gateway, chain)
        after = {name: dict(c.documents) for name, c in fake_db.collections.items()}

        assert before == after


class TestAsyncMode:
    """Tests for concurrent fan-out."""

    @pytest.fixture
    def async_processor(self, config, gateway):
        config.async_mode = True
        config.async_threads = 2
        processor = BlockProcessor(config, gateway)
        yield processor
        processor.close()

    def test_same_documents_as_sequential(self, async_processor, gateway, fake_db, chain):
        _process(async_processor, gateway, chain)

        assert len(_documents(fake_db, "outputs")) == 7
        assert _documents(fake_db, "addresses")[ADDRESS_A]['outputs'] == [
            f"{COINBASE_1_TXID}:0", f"{SPEND_TXID}:1",
        ]
        assert BLOCK_2_HASH in _documents(fake_db, "blocks")

    def test_sibling_failures_are_deferred(self, async_processor, chain):
        for vout in chain[1]['tx'][1]['vout']:
            del vout['scriptPubKey']

        with pytest.raises(MalformedOutputError):
            async_processor.process_block(chain[1])

        assert len(async_processor.deferred_errors) == 2
        assert all(isinstance(e, MalformedOutputError) for e in async_processor.deferred_errors)
