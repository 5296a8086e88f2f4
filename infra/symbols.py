"""Symbol normalization between agent tickers and futures contract symbols.

The signal source reports bare base tickers (`BTC`, `eth`), the exchange
trades perpetual contracts (`BTCUSDT`). Everything inside the engine and the
order history store is keyed by the canonical base ticker; only the exchange
adapter converts to contract symbols.
"""

from __future__ import annotations

from typing import Dict, Optional, Tuple

DEFAULT_QUOTE = "USDT"

# Quote suffixes accepted when a contract symbol is passed where a base is expected.
QUOTE_SUFFIXES: Tuple[str, ...] = (
    "USDT",
    "USDC",
    "BUSD",
    "USD",
)

# Tickers whose contract uses a 1000x multiplier on the exchange.
_CONTRACT_ALIAS_MAP: Dict[str, str] = {
    "PEPE": "1000PEPE",
    "SHIB": "1000SHIB",
    "BONK": "1000BONK",
    "FLOKI": "1000FLOKI",
}


def canonical_base(symbol: Optional[str]) -> str:
    """Return the canonical base ticker (e.g., `btc-usdt` -> `BTC`)."""

    if not symbol:
        return ""

    token = str(symbol).strip().upper().replace(" ", "")
    for delim in ("/", "_", ":", "-"):
        if delim in token:
            token = token.split(delim, 1)[0]

    for quote in QUOTE_SUFFIXES:
        if token.endswith(quote) and len(token) > len(quote):
            token = token[: -len(quote)]
            break

    for base, alias in _CONTRACT_ALIAS_MAP.items():
        if token == alias:
            return base
    return token


def to_exchange_symbol(symbol: Optional[str], *, quote: str = DEFAULT_QUOTE) -> str:
    """Map an agent ticker to the exchange contract symbol (`BTC` -> `BTCUSDT`)."""

    base = canonical_base(symbol)
    if not base:
        return ""
    return f"{_CONTRACT_ALIAS_MAP.get(base, base)}{quote}"


def contract_multiplier(symbol: Optional[str]) -> int:
    """Units of the base asset per exchange contract unit (1000 for `1000PEPEUSDT`)."""

    return 1000 if canonical_base(symbol) in _CONTRACT_ALIAS_MAP else 1


__all__ = [
    "DEFAULT_QUOTE",
    "QUOTE_SUFFIXES",
    "canonical_base",
    "contract_multiplier",
    "to_exchange_symbol",
]
