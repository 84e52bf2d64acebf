"""Pytest configuration and fixtures for importer tests."""

import copy
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest
from arango.exceptions import (
    CollectionCreateError,
    DocumentInsertError,
    GraphCreateError,
)

from btc_graph.models.config import ImporterConfig


# ============================================================================
# ARANGODB FAKES
# ============================================================================

def arango_error(error_class, error_code: int, http_code: int = 409, message: str = "conflict"):
    """Build a real python-arango server error carrying ``error_code``."""
    response = MagicMock()
    response.status_code = http_code
    response.status_text = message
    response.error_code = error_code
    response.error_message = message
    response.url = "http://localhost:8529/_db/bitcoin/_api/test"
    response.method = "post"
    response.headers = {}
    return error_class(response, MagicMock())


class FakeCollection:
    """In-memory stand-in for ``arango.collection.StandardCollection``."""

    def __init__(self, name: str, edge: bool, import_log: List[str]):
        self.name = name
        self.edge = edge
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.indexes: List[List[str]] = []
        self.import_calls: List[List[Dict[str, Any]]] = []
        # Errors raised by the next insert/replace calls, in order
        self.insert_errors: List[Exception] = []
        self.replace_errors: List[Exception] = []
        self._import_log = import_log

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        document = self.documents.get(key)
        return dict(document) if document is not None else None

    def insert(self, document: Dict[str, Any]) -> Dict[str, Any]:
        if self.insert_errors:
            raise self.insert_errors.pop(0)
        key = document['_key']
        if key in self.documents:
            raise arango_error(DocumentInsertError, 1210, message="unique constraint violated")
        self.documents[key] = dict(document)
        return {'_key': key}

    def replace(self, document: Dict[str, Any]) -> Dict[str, Any]:
        if self.replace_errors:
            raise self.replace_errors.pop(0)
        self.documents[document['_key']] = dict(document)
        return {'_key': document['_key']}

    def import_bulk(self, documents, halt_on_error=True, details=True, on_duplicate='error'):
        self._import_log.append(self.name)
        self.import_calls.append([dict(document) for document in documents])

        result = {'created': 0, 'updated': 0, 'errors': 0, 'details': []}
        for document in documents:
            key = document['_key']
            if key in self.documents:
                if on_duplicate != 'replace':
                    result['errors'] += 1
                    result['details'].append(f"unique constraint violated for \"{key}\"")
                    if halt_on_error:
                        break
                    continue
                result['updated'] += 1
            else:
                result['created'] += 1
            self.documents[key] = dict(document)
        return result

    def add_persistent_index(self, fields, **kwargs):
        self.indexes.append(list(fields))
        return {'fields': list(fields), 'type': 'persistent'}

    def count(self) -> int:
        return len(self.documents)

    def truncate(self) -> bool:
        self.documents.clear()
        return True


class FakeAQL:
    """Understands the two queries the gateway runs."""

    def __init__(self, database: "FakeArangoDatabase"):
        self.database = database
        self.executed: List[Dict[str, Any]] = []
        # Errors raised by the next execute calls, in order
        self.errors: List[Exception] = []

    def execute(self, query: str, bind_vars: Optional[Dict[str, Any]] = None, **kwargs):
        bind_vars = bind_vars or {}
        self.executed.append(bind_vars)

        if self.errors:
            raise self.errors.pop(0)

        collection = self.database.collection(bind_vars['@collection'])

        if 'key' in bind_vars:
            document = collection.documents.get(bind_vars['key'])
            if document is None:
                collection.documents[bind_vars['key']] = {
                    '_key': bind_vars['key'],
                    'outputs': [bind_vars['output']],
                }
                return iter([{'type': 'insert'}])
            if bind_vars['output'] not in document['outputs']:
                document['outputs'].append(bind_vars['output'])
            return iter([{'type': 'update'}])

        blocks = sorted(collection.documents.values(), key=lambda b: b['height'], reverse=True)
        return iter([dict(block) for block in blocks[:1]])


class FakeArangoDatabase:
    """In-memory stand-in for ``arango.database.StandardDatabase``."""

    def __init__(self):
        self.collections: Dict[str, FakeCollection] = {}
        self.graphs: Dict[str, List[Dict[str, Any]]] = {}
        self.import_log: List[str] = []
        self.aql = FakeAQL(self)

    def has_collection(self, name: str) -> bool:
        return name in self.collections

    def create_collection(self, name: str, edge: bool = False, **kwargs) -> FakeCollection:
        if name in self.collections:
            raise arango_error(CollectionCreateError, 1207, message="duplicate name")
        self.collections[name] = FakeCollection(name, edge, self.import_log)
        return self.collections[name]

    def collection(self, name: str) -> FakeCollection:
        return self.collections[name]

    def has_graph(self, name: str) -> bool:
        return name in self.graphs

    def create_graph(self, name: str, edge_definitions=None, **kwargs):
        if name in self.graphs:
            raise arango_error(GraphCreateError, 1925, message="graph already exists")
        self.graphs[name] = list(edge_definitions or [])
        return MagicMock(name=name)

    def version(self) -> str:
        return "3.11.0"


# ============================================================================
# CHAIN FAKES
# ============================================================================

BLOCK_1_HASH = "00000000839a8e6886ab5951d76f411475428afc90947ee320161bbf18eb6048"
BLOCK_2_HASH = "000000006a625f06636b8bb6ac7b960a8d03705d1ace08b1a19da3fdcc99ddbd"
COINBASE_1_TXID = "0e3e2357e806b6cdb1f70b54c3a3a17b6714ee1f0e68bebb44a74b1efd512098"
COINBASE_2_TXID = "9b0fc92260312ce44e74ef369f5c66bbb85848f2eddd5a7a1cde251e54ccfdd5"
SPEND_TXID = "f4184fc596403b9d638783cf57adfe4c75c605f6356fbc91338530e9831e9e16"

ADDRESS_A = "12c6DSiU4Rq3P4ZxziKxzrGjUczAu3L5Dh"
ADDRESS_B = "1HLoD9E4SDFFPDiYfNYnkBLQ85Y51J3Zb1"
ADDRESS_C = "1Q2TWHE3GMdB6BZKafqwxXtWAWgFt5Jvm3"


def _coinbase(txid: str, address: str) -> Dict[str, Any]:
    return {
        'txid': txid,
        'vin': [{'coinbase': '04ffff001d0104', 'sequence': 4294967295}],
        'vout': [{
            'value': 50.0,
            'n': 0,
            'scriptPubKey': {'type': 'pubkeyhash', 'address': address},
        }],
    }


def make_chain() -> List[Dict[str, Any]]:
    """
    Two blocks at heights 1 and 2.

    Block 2 holds a transaction spending the coinbase of block 1 into one
    output for C, change back to A and an OP_RETURN output.
    """
    block_1 = {
        'hash': BLOCK_1_HASH,
        'height': 1,
        'time': 1231469665,
        'nextblockhash': BLOCK_2_HASH,
        'tx': [_coinbase(COINBASE_1_TXID, ADDRESS_A)],
    }
    block_2 = {
        'hash': BLOCK_2_HASH,
        'height': 2,
        'time': 1231469744,
        'previousblockhash': BLOCK_1_HASH,
        'tx': [
            _coinbase(COINBASE_2_TXID, ADDRESS_B),
            {
                'txid': SPEND_TXID,
                'vin': [{'txid': COINBASE_1_TXID, 'vout': 0, 'sequence': 4294967295}],
                'vout': [
                    {'value': 10.0, 'n': 0, 'scriptPubKey': {'type': 'pubkeyhash', 'address': ADDRESS_C}},
                    {'value': 39.9, 'n': 1, 'scriptPubKey': {'type': 'pubkeyhash', 'address': ADDRESS_A}},
                    {'value': 0.0, 'n': 2, 'scriptPubKey': {'type': 'nulldata', 'hex': '6a0568656c6c6f'}},
                ],
            },
        ],
    }
    return [block_1, block_2]


class FakeChainReader:
    """Serves a fixed list of blocks the way ``ChainReader`` does."""

    def __init__(self, blocks: List[Dict[str, Any]]):
        self.blocks = {block['hash']: block for block in blocks}
        self.by_height = {block['height']: block['hash'] for block in blocks}
        self.fetched: List[str] = []
        self.closed = False

    def get_chain_tip(self) -> Dict[str, Any]:
        return self.get_block_header(self.by_height[max(self.by_height)])

    def get_block(self, block_hash: str) -> Dict[str, Any]:
        self.fetched.append(block_hash)
        return copy.deepcopy(self.blocks[block_hash])

    def get_block_header(self, block_hash: str) -> Dict[str, Any]:
        header = copy.deepcopy(self.blocks[block_hash])
        header['tx'] = [tx['txid'] for tx in header['tx']]
        return header

    def get_block_hash_at_height(self, height: int) -> str:
        return self.by_height[height]

    def test_connection(self) -> bool:
        return True

    def close(self):
        self.closed = True


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def config():
    """Importer configuration that never reads the environment's .env file."""
    return ImporterConfig(
        _env_file=None,
        bitcoin_rpc_user="test_user",
        bitcoin_rpc_password="test_pass",
        batch_size=1000,
        conflict_retries=3,
    )


@pytest.fixture
def fake_db():
    return FakeArangoDatabase()


@pytest.fixture
def gateway(config, fake_db):
    from btc_graph.database.gateway import StorageGateway

    gateway = StorageGateway(config, database=fake_db)
    gateway.ensure_collections_exist()
    return gateway


@pytest.fixture
def chain():
    return make_chain()


@pytest.fixture
def chain_reader(chain):
    return FakeChainReader(chain)


@pytest.fixture
def sample_vout():
    """Pay-to-pubkey-hash output as reported by a v22+ node."""
    return {
        'value': 0.5,
        'n': 1,
        'scriptPubKey': {
            'asm': 'OP_DUP OP_HASH160 0f62d2e8c3e1e0e4a6b5a6a2d1c5f3e4a6b5a6a2 OP_EQUALVERIFY OP_CHECKSIG',
            'hex': '76a9140f62d2e8c3e1e0e4a6b5a6a2d1c5f3e4a6b5a6a288ac',
            'type': 'pubkeyhash',
            'address': ADDRESS_A,
        },
    }

