"""
Treasury TWAP SDK - Token Registry

Known Polygon tokens and helpers for converting between human amounts
and integer base units.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, Union

from eth_utils import is_address


@dataclass(frozen=True)
class Token:
    symbol: str
    address: str
    decimals: int


# ═══════════════════════════════════════════════════════════════════════════════
# POLYGON MAINNET (chain 137)
# ═══════════════════════════════════════════════════════════════════════════════

POLYGON_CHAIN_ID = 137

POLYGON_TOKENS: Dict[str, Token] = {
    "USDC": Token("USDC", "0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359", 6),
    "USDC.E": Token("USDC.e", "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174", 6),
    "WPOL": Token("WPOL", "0x0d500B1d8E8eF31E21C99d1Db9A6444d3ADf1270", 18),
    "WMATIC": Token("WMATIC", "0x0d500B1d8E8eF31E21C99d1Db9A6444d3ADf1270", 18),
    "STMATIC": Token("stMATIC", "0x3A58a54C066FdC0f2D55FC9C89F0415C92eBf3C4", 18),
    "WETH": Token("WETH", "0x7ceB23fD6bC0adD59E62ac25578270cFf1b9f619", 18),
    "DAI": Token("DAI", "0x8f3Cf7ad23Cd3CaDbD9735AFf958023239c6A063", 18),
}

# Placeholder the 1inch swap API uses for the chain's native coin
NATIVE_TOKEN_ADDRESS = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"

# 1inch Limit Order Protocol v4 router (same address on every supported chain)
LIMIT_ORDER_PROTOCOL_V4 = "0x111111125421cA6dc452d289314280a0f8842A65"


def resolve_token(symbol_or_address: str) -> Token:
    """
    Look up a token by symbol (case-insensitive) or address.

    Unknown addresses are returned with 18 decimals; callers that care
    should read `decimals()` from the chain instead.

    Raises:
        ValueError: If the value is neither a known symbol nor an address
    """
    key = symbol_or_address.strip()
    if key.upper() in POLYGON_TOKENS:
        return POLYGON_TOKENS[key.upper()]

    if not is_address(key):
        raise ValueError(f"Unknown token: {symbol_or_address}")

    for token in POLYGON_TOKENS.values():
        if token.address.lower() == key.lower():
            return token

    return Token(key[:10], key, 18)


def parse_units(amount: Union[str, int, float, Decimal], decimals: int) -> int:
    """
    Convert a human amount to integer base units.

    Examples:
        >>> parse_units("20", 6)
        20000000

        >>> parse_units("0.5", 18)
        500000000000000000

    Raises:
        ValueError: If the amount has more precision than the token allows
    """
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {amount}")

    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"Amount {amount} has more than {decimals} decimals")
    return int(scaled)


def format_units(amount: int, decimals: int) -> str:
    """Convert integer base units to a human-readable decimal string."""
    value = Decimal(int(amount)).scaleb(-decimals)
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text
