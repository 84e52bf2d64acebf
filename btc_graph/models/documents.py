"""Graph document records derived from Bitcoin blocks."""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from btc_graph.utils.bitcoin import UNSPENDABLE_SCRIPT_TYPES, extract_addresses


class MalformedOutputError(Exception):
    """Transaction output violates the node's data contract."""

    def __init__(self, message: str, output: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.output = output


class EntityKind(str, Enum):
    """Entity kinds, one ArangoDB collection each."""

    BLOCK = "block"
    TRANSACTION = "transaction"
    OUTPUT = "output"
    ADDRESS = "address"
    ADDRESS_TO_OUTPUT = "address_to_output"
    OUTPUT_TO_TRANSACTION = "output_to_transaction"
    TRANSACTION_TO_OUTPUT = "transaction_to_output"

    @property
    def collection(self) -> str:
        return COLLECTION_NAMES[self]

    @property
    def is_edge(self) -> bool:
        return self in EDGE_KINDS


COLLECTION_NAMES = {
    EntityKind.BLOCK: "blocks",
    EntityKind.TRANSACTION: "transactions",
    EntityKind.OUTPUT: "outputs",
    EntityKind.ADDRESS: "addresses",
    EntityKind.ADDRESS_TO_OUTPUT: "addresses_to_outputs",
    EntityKind.OUTPUT_TO_TRANSACTION: "outputs_to_transactions",
    EntityKind.TRANSACTION_TO_OUTPUT: "transactions_to_outputs",
}

EDGE_KINDS = frozenset({
    EntityKind.ADDRESS_TO_OUTPUT,
    EntityKind.OUTPUT_TO_TRANSACTION,
    EntityKind.TRANSACTION_TO_OUTPUT,
})

# (edge kind, from kind, to kind)
EDGE_DEFINITIONS = [
    (EntityKind.ADDRESS_TO_OUTPUT, EntityKind.ADDRESS, EntityKind.OUTPUT),
    (EntityKind.OUTPUT_TO_TRANSACTION, EntityKind.OUTPUT, EntityKind.TRANSACTION),
    (EntityKind.TRANSACTION_TO_OUTPUT, EntityKind.TRANSACTION, EntityKind.OUTPUT),
]


def output_id(txid: str, index: int) -> str:
    """Key of the ``index``-th output of ``txid``."""
    return f"{txid}:{index}"


def coinbase_output_id(txid: str) -> str:
    """Key of the pseudo-output holding a coinbase's newly minted value."""
    return f"{txid}:coinbase"


def document_id(kind: EntityKind, key: str) -> str:
    """Collection-qualified document handle used by edges."""
    return f"{kind.collection}/{key}"


@dataclass
class BlockRecord:
    """Block summary document."""
    hash: str
    height: int
    time: int
    tx: List[str] = field(default_factory=list)

    kind = EntityKind.BLOCK

    @property
    def key(self) -> str:
        return self.hash

    def to_document(self) -> Dict[str, Any]:
        return {
            '_key': self.hash,
            'height': self.height,
            'time': self.time,
            'tx': list(self.tx),
        }


@dataclass
class TransactionRecord:
    """Transaction summary document."""
    txid: str
    blockhash: str

    kind = EntityKind.TRANSACTION

    @property
    def key(self) -> str:
        return self.txid

    def to_document(self) -> Dict[str, Any]:
        return {'_key': self.txid, 'blockhash': self.blockhash}


@dataclass
class OutputRecord:
    """Output document, keyed ``<txid>:<n>`` or ``<txid>:coinbase``."""
    output_id: str
    value: Decimal

    kind = EntityKind.OUTPUT

    @property
    def key(self) -> str:
        return self.output_id

    def to_document(self) -> Dict[str, Any]:
        return {'_key': self.output_id, 'value': self.value}


@dataclass
class AddressRecord:
    """Address document with the outputs it received."""
    address: str
    outputs: List[str] = field(default_factory=list)

    kind = EntityKind.ADDRESS

    @property
    def key(self) -> str:
        return self.address

    def to_document(self) -> Dict[str, Any]:
        return {'_key': self.address, 'outputs': list(self.outputs)}


@dataclass
class EdgeRecord:
    """Directed edge between two documents."""
    kind: EntityKind
    key: str
    from_id: str
    to_id: str

    def to_document(self) -> Dict[str, Any]:
        return {'_key': self.key, '_from': self.from_id, '_to': self.to_id}

    @classmethod
    def address_to_output(cls, address: str, output: str) -> "EdgeRecord":
        """Address received the output."""
        return cls(
            kind=EntityKind.ADDRESS_TO_OUTPUT,
            key=f"{output}@{address}",
            from_id=document_id(EntityKind.ADDRESS, address),
            to_id=document_id(EntityKind.OUTPUT, output),
        )

    @classmethod
    def output_to_transaction(cls, output: str, txid: str) -> "EdgeRecord":
        """Output was spent by the transaction. An output is spent once, so its id is the key."""
        return cls(
            kind=EntityKind.OUTPUT_TO_TRANSACTION,
            key=output,
            from_id=document_id(EntityKind.OUTPUT, output),
            to_id=document_id(EntityKind.TRANSACTION, txid),
        )

    @classmethod
    def transaction_to_output(cls, txid: str, output: str) -> "EdgeRecord":
        """Transaction produced the output."""
        return cls(
            kind=EntityKind.TRANSACTION_TO_OUTPUT,
            key=output,
            from_id=document_id(EntityKind.TRANSACTION, txid),
            to_id=document_id(EntityKind.OUTPUT, output),
        )


@dataclass
class ParsedOutput:
    """Transaction output as reported by ``getblock`` verbosity 2."""
    txid: str
    index: int
    value: Decimal
    script_type: str
    addresses: List[str]

    @property
    def output_id(self) -> str:
        return output_id(self.txid, self.index)

    @property
    def is_unspendable(self) -> bool:
        return self.script_type in UNSPENDABLE_SCRIPT_TYPES

    @classmethod
    def from_rpc(cls, txid: str, vout: Dict[str, Any], index: Optional[int] = None) -> "ParsedOutput":
        if 'scriptPubKey' not in vout:
            raise MalformedOutputError(
                f"No scriptPubKey in output #{vout.get('n', index)} in transaction \"{txid}\"",
                output=vout,
            )

        script_pub_key = vout['scriptPubKey']
        return cls(
            txid=txid,
            index=vout.get('n', index),
            value=Decimal(str(vout.get('value', 0))),
            script_type=script_pub_key.get('type', 'unknown'),
            addresses=extract_addresses(script_pub_key),
        )
