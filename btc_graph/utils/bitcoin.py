"""Bitcoin-specific utility functions."""

import hashlib
import base58
from decimal import Decimal
from typing import Optional, Dict, Any, List
import structlog

logger = structlog.get_logger(__name__)

# Satoshis per Bitcoin
SATOSHIS_PER_BTC = Decimal('100000000')

# Emission schedule
INITIAL_SUBSIDY_SATOSHIS = 50 * 100_000_000
HALVING_INTERVAL = 210_000

# Script types whose outputs carry no address by nature
UNSPENDABLE_SCRIPT_TYPES = frozenset({"nonstandard", "nulldata"})

# Version bytes (mainnet)
P2PKH_VERSION = b'\x00'
P2SH_VERSION = b'\x05'


def satoshi_to_btc(satoshis: int) -> Decimal:
    """Convert satoshis to BTC."""
    return Decimal(satoshis) / SATOSHIS_PER_BTC


def block_subsidy(height: int) -> Decimal:
    """
    Newly minted value of the coinbase at ``height``, in BTC.

    The subsidy starts at 50 BTC and halves every 210,000 blocks; height
    210,000 already pays 25. Computed in satoshis like the node does, so it
    reaches zero after 64 halvings instead of dwindling forever.
    """
    if height < 0:
        raise ValueError(f"Block height must not be negative: {height}")

    halvings = height // HALVING_INTERVAL
    if halvings >= 64:
        return Decimal(0)

    return satoshi_to_btc(INITIAL_SUBSIDY_SATOSHIS >> halvings)


def calculate_fee(inputs_value: Decimal, outputs_value: Decimal) -> Decimal:
    """Calculate transaction fee."""
    return inputs_value - outputs_value


def get_script_type(script_hex: str) -> str:
    """Determine script type from script hex."""
    if not script_hex:
        return "unknown"

    script_bytes = bytes.fromhex(script_hex)

    # P2PKH: OP_DUP OP_HASH160 <pubKeyHash> OP_EQUALVERIFY OP_CHECKSIG
    if (len(script_bytes) == 25 and
        script_bytes[0] == 0x76 and  # OP_DUP
        script_bytes[1] == 0xa9 and  # OP_HASH160
        script_bytes[2] == 0x14 and  # Push 20 bytes
        script_bytes[23] == 0x88 and # OP_EQUALVERIFY
        script_bytes[24] == 0xac):   # OP_CHECKSIG
        return "P2PKH"

    # P2SH: OP_HASH160 <scriptHash> OP_EQUAL
    if (len(script_bytes) == 23 and
        script_bytes[0] == 0xa9 and  # OP_HASH160
        script_bytes[1] == 0x14 and  # Push 20 bytes
        script_bytes[22] == 0x87):   # OP_EQUAL
        return "P2SH"

    # P2PK: <pubkey> OP_CHECKSIG
    if (len(script_bytes) in [35, 67] and
        script_bytes[0] == len(script_bytes) - 2 and
        script_bytes[-1] == 0xac):   # OP_CHECKSIG
        return "P2PK"

    # OP_RETURN (data output)
    if len(script_bytes) > 0 and script_bytes[0] == 0x6a:
        return "OP_RETURN"

    return "NON_STANDARD"


def decode_address(script_hex: str, script_type: str = None) -> Optional[str]:
    """
    Derive a legacy address from an output script.

    Only base58 script forms are covered. Segwit and taproot outputs always
    come with an ``address`` from the node, so they never reach this path.
    """
    if not script_hex:
        return None

    try:
        script_bytes = bytes.fromhex(script_hex)

        if not script_type:
            script_type = get_script_type(script_hex)

        if script_type == "P2PKH":
            return _encode_base58_check(P2PKH_VERSION, script_bytes[3:23])

        elif script_type == "P2SH":
            return _encode_base58_check(P2SH_VERSION, script_bytes[2:22])

        elif script_type == "P2PK":
            pubkey = script_bytes[1:-1]
            return _encode_base58_check(P2PKH_VERSION, _hash160(pubkey))

        return None

    except ValueError as e:
        # ripemd160 is missing from some OpenSSL builds
        logger.warning("Failed to decode address", script_hex=script_hex, error=str(e))
        return None


def _hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))."""
    return hashlib.new('ripemd160', hashlib.sha256(data).digest()).digest()


def _encode_base58_check(version_byte: bytes, payload_hash: bytes) -> str:
    """Base58Check-encode a versioned hash."""
    payload = version_byte + payload_hash

    # Double SHA256 for checksum
    checksum = hashlib.sha256(hashlib.sha256(payload).digest()).digest()[:4]

    return base58.b58encode(payload + checksum).decode('ascii')


def extract_addresses(script_pub_key: Dict[str, Any]) -> List[str]:
    """
    Collect the addresses an output pays to.

    Nodes before v22 report an ``addresses`` list, later ones a single
    ``address``. Bare scripts without either are decoded locally.
    """
    addresses = script_pub_key.get('addresses')
    if addresses:
        return list(addresses)

    address = script_pub_key.get('address')
    if address:
        return [address]

    if script_pub_key.get('type') in UNSPENDABLE_SCRIPT_TYPES:
        return []

    decoded = decode_address(script_pub_key.get('hex', ''))
    return [decoded] if decoded else []


def parse_vin(vin_data: Dict[str, Any]) -> Dict[str, Any]:
    """Parse transaction input data."""
    # Coinbase transaction
    if 'coinbase' in vin_data:
        return {
            'is_coinbase': True,
            'previous_tx_hash': None,
            'previous_vout_index': None,
        }

    # Regular transaction input
    return {
        'is_coinbase': False,
        'previous_tx_hash': vin_data.get('txid'),
        'previous_vout_index': vin_data.get('vout'),
    }
