# paygate/x402/pricing.py
"""
Amount conversion for x402 payment challenges and receipts.

Payment amounts travel through the gateway as integers in the asset's
smallest unit (wei for ETH). Conversions to and from human-readable
amounts go through Decimal so no float ever touches money:
1. Parse the configured minimum payment ("0.0001") into wei
2. Format wei back into a display string ("0.0001 ETH")
"""
from decimal import Decimal
from typing import Union

# Conversion constants
ETH_DECIMALS = 18
WEI_PER_ETH = 10 ** ETH_DECIMALS


def to_smallest_unit(amount: Union[Decimal, str, int], decimals: int = ETH_DECIMALS) -> int:
    """
    Convert a whole-unit amount into the asset's smallest unit.

    Args:
        amount: Amount in whole units (e.g. "0.0001" ETH)
        decimals: Number of decimals of the asset

    Returns:
        Integer amount in the smallest unit

    Raises:
        ValueError: If the amount is negative or more precise than the asset allows
    """
    scaled = Decimal(str(amount)).scaleb(decimals)
    if scaled < 0:
        raise ValueError(f"Amount must not be negative: {amount}")
    if scaled != scaled.to_integral_value():
        raise ValueError(f"Amount {amount} has more than {decimals} decimal places")
    return int(scaled)


def from_smallest_unit(amount: int, decimals: int = ETH_DECIMALS) -> Decimal:
    """Convert a smallest-unit integer into a whole-unit Decimal."""
    return Decimal(int(amount)).scaleb(-decimals)


def format_amount(amount: int, asset: str = "ETH", decimals: int = ETH_DECIMALS) -> str:
    """
    Format a smallest-unit amount for display.

    Trailing zeros are dropped, scientific notation is never used:
    100000000000000 wei -> "0.0001 ETH".
    """
    value = from_smallest_unit(amount, decimals)
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return f"{text} {asset}"
