"""
Wallet address helpers.
Identity comparisons and storage keys always use the lowercase form.
"""

import re

from eth_utils import is_address

_HEX_ADDRESS = re.compile(r'^0x[a-fA-F0-9]{40}$')


def is_wallet_address(address: str) -> bool:
    """0x-prefixed 20-byte hex, any case (mixed case must carry a valid checksum)"""
    if not isinstance(address, str) or not _HEX_ADDRESS.match(address):
        return False
    return is_address(address)


def normalize_address(address: str) -> str:
    """Canonical lowercase form used for identity"""
    return address.strip().lower()
