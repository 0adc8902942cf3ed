"""Identifier format checks for Solana mint addresses."""

from __future__ import annotations

import re
from typing import Any

MIN_ADDRESS_LENGTH = 32
MAX_ADDRESS_LENGTH = 44

_BASE58_RE = re.compile(r"[1-9A-HJ-NP-Za-km-z]+")


def is_valid_identifier(address: Any) -> bool:
    """Return ``True`` when *address* looks like a base58 Solana address.

    Only the textual shape is checked: the length must be within
    ``MIN_ADDRESS_LENGTH``..``MAX_ADDRESS_LENGTH``, EVM style ``0x`` prefixes
    are refused and every character must belong to the base58 alphabet.
    """

    if not isinstance(address, str) or not address:
        return False
    if len(address) < MIN_ADDRESS_LENGTH or len(address) > MAX_ADDRESS_LENGTH:
        return False
    if address.startswith("0x"):
        return False
    return _BASE58_RE.fullmatch(address) is not None
