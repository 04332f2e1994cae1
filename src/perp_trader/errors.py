"""Error taxonomy shared by the venue adapters, oracle and execution service."""

from __future__ import annotations


class TradingError(Exception):
    """Base error for every expected trading failure."""


class DataFetchError(TradingError):
    """Raised when market or account data cannot be fetched or is unusable."""


class OracleResponseInvalid(TradingError):
    """Raised when the decision oracle output is missing, malformed or off-schema."""


class VenueRejectionError(TradingError):
    """Raised when the venue refuses an order or a configuration call.

    The venue's own message is kept verbatim in ``message``.
    """

    def __init__(self, message: str, code: int | str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class InsufficientCapitalError(TradingError):
    """Raised when an order cannot be sized from the given quantity, cost or capital."""


class NoOpenPositionError(TradingError):
    """Raised when a close is requested for a symbol without an open position."""


class IncompatiblePositionError(TradingError):
    """Raised when a signal conflicts with the current position on the symbol."""


class RiskGateRejected(TradingError):
    """Raised when an enforced risk gate refuses an entry."""

    def __init__(self, reasons: list[str]) -> None:
        super().__init__("risk_gate_rejected: " + ", ".join(reasons))
        self.reasons = reasons
