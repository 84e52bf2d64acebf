"""Utility functions and helpers."""

from btc_graph.utils.logging import setup_logging
from btc_graph.utils.bitcoin import (
    block_subsidy,
    decode_address,
    extract_addresses,
    get_script_type,
)
from btc_graph.utils.time import format_duration

__all__ = [
    "setup_logging",
    "block_subsidy",
    "decode_address",
    "extract_addresses",
    "get_script_type",
    "format_duration",
]
