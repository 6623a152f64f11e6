"""Tests for unit formatting and address helpers."""

import pytest
from eth_account import Account

from deputy.units import format_ether, format_gwei, format_units, normalize_address


@pytest.mark.parametrize(
    "value,decimals,expected",
    [
        (0, 6, "0"),
        (10_000_000, 6, "10"),
        (1_500_000, 6, "1.5"),
        (1, 18, "0.000000000000000001"),
    ],
)
def test_format_units(value, decimals, expected):
    assert format_units(value, decimals) == expected


def test_fee_and_balance_rendering():
    assert format_gwei(60 * 10**9) == "60 gwei"
    assert format_gwei(1_500_000_000) == "1.5 gwei"
    assert format_ether(10**16) == "0.01 ETH"


def test_normalize_address():
    address = Account.create().address
    assert normalize_address(address.lower()) == address
    assert normalize_address(f"  {address}  ") == address
    with pytest.raises(ValueError, match="Invalid address"):
        normalize_address("0x1234")
