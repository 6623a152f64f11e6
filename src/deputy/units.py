"""Token unit formatting and address helpers using exact Decimal arithmetic."""

from __future__ import annotations

from decimal import Decimal

from eth_utils import is_address, to_checksum_address


GWEI_DECIMALS = 9
ETHER_DECIMALS = 18


def format_units(value: int, decimals: int) -> str:
    """Render integer base units as a decimal string, trimming trailing zeros."""
    dec = Decimal(int(value)).scaleb(-decimals)
    return format(dec.normalize(), "f")


def format_gwei(value: int) -> str:
    return f"{format_units(value, GWEI_DECIMALS)} gwei"


def format_ether(value: int) -> str:
    return f"{format_units(value, ETHER_DECIMALS)} ETH"


def normalize_address(value: str) -> str:
    """Return the checksummed form of an address or raise ValueError."""
    candidate = str(value).strip()
    if not is_address(candidate):
        raise ValueError(f"Invalid address: {value}")
    return to_checksum_address(candidate)
