"""Canonical symbol handling.

Every boundary (venue, ledger, journal, oracle) speaks ``BaseSymbol``; the
venue-specific spellings are derived from it here and nowhere else.
"""

from __future__ import annotations

from typing import NewType

BaseSymbol = NewType("BaseSymbol", str)

DEFAULT_QUOTE = "USDT"

SUPPORTED_SYMBOLS: tuple[BaseSymbol, ...] = (
    BaseSymbol("BTC"),
    BaseSymbol("ETH"),
    BaseSymbol("SOL"),
    BaseSymbol("BNB"),
    BaseSymbol("DOGE"),
    BaseSymbol("XRP"),
)


def to_base_symbol(raw: str, quote: str = DEFAULT_QUOTE) -> BaseSymbol:
    """Normalize ``BTC``, ``btc``, ``BTC/USDT``, ``BTC/USDT:USDT``, ``BTC-USDT`` or ``BTCUSDT`` to ``BTC``."""
    value = raw.strip().upper()
    if not value:
        raise ValueError("empty_symbol")
    value = value.split(":", 1)[0]
    for separator in ("/", "-", "_"):
        if separator in value:
            value = value.split(separator, 1)[0]
            break
    else:
        quote = quote.upper()
        if value.endswith(quote) and len(value) > len(quote):
            value = value[: -len(quote)]
    return BaseSymbol(value)


def to_market_symbol(raw: str, quote: str = DEFAULT_QUOTE) -> str:
    """Unified market symbol used by the venue protocol, e.g. ``BTC/USDT``."""
    return f"{to_base_symbol(raw, quote)}/{quote.upper()}"


def to_exchange_symbol(raw: str, quote: str = DEFAULT_QUOTE) -> str:
    """Binance wire symbol, e.g. ``BTCUSDT``."""
    return f"{to_base_symbol(raw, quote)}{quote.upper()}"
