"""Shared domain types for the trading agent."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

from perp_trader.symbols import BaseSymbol

Signal = Literal["buy_to_enter", "sell_to_enter", "hold", "close"]
Operation = Literal["BUY_TO_ENTER", "SELL_TO_ENTER", "HOLD", "CLOSE"]

ENTRY_OPERATIONS: tuple[Operation, ...] = ("BUY_TO_ENTER", "SELL_TO_ENTER")

_SIGNAL_TO_OPERATION: dict[str, Operation] = {
    "buy_to_enter": "BUY_TO_ENTER",
    "sell_to_enter": "SELL_TO_ENTER",
    "hold": "HOLD",
    "close": "CLOSE",
}


def operation_for_signal(signal: str) -> Operation:
    """Map a decision signal to the persisted trade operation."""
    return _SIGNAL_TO_OPERATION[signal]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(slots=True)
class OpenInterest:
    latest: float = 0.0
    average: float = 0.0


@dataclass(slots=True)
class IntradaySeries:
    """Oldest-to-newest fixed-length series on the intraday interval."""

    mid_prices: list[float]
    ema_20: list[float]
    macd: list[float]
    rsi_7: list[float]
    rsi_14: list[float]
    bollinger_upper: list[float] = field(default_factory=list)
    bollinger_middle: list[float] = field(default_factory=list)
    bollinger_lower: list[float] = field(default_factory=list)
    stochastic_k: list[float] = field(default_factory=list)
    stochastic_d: list[float] = field(default_factory=list)
    adx: list[float] = field(default_factory=list)
    plus_di: list[float] = field(default_factory=list)
    minus_di: list[float] = field(default_factory=list)


@dataclass(slots=True)
class LongerTermContext:
    """Current values and fixed-length series on the 4h interval."""

    ema_20: float
    ema_50: float
    atr_3: float
    atr_14: float
    current_volume: float
    average_volume: float
    macd: list[float]
    rsi_14: list[float]
    bollinger_upper: list[float] = field(default_factory=list)
    bollinger_middle: list[float] = field(default_factory=list)
    bollinger_lower: list[float] = field(default_factory=list)
    stochastic_k: list[float] = field(default_factory=list)
    stochastic_d: list[float] = field(default_factory=list)
    adx: list[float] = field(default_factory=list)


@dataclass(slots=True)
class MarketState:
    """Per-symbol technical snapshot, recomputed every cycle."""

    symbol: BaseSymbol
    current_price: float
    current_ema20: float
    current_macd: float
    current_rsi: float
    open_interest: OpenInterest
    funding_rate: float
    intraday: IntradaySeries
    longer_term: LongerTermContext
    current_bollinger_upper: float | None = None
    current_bollinger_middle: float | None = None
    current_bollinger_lower: float | None = None
    current_stochastic_k: float | None = None
    current_stochastic_d: float | None = None
    current_adx: float | None = None
    current_plus_di: float | None = None
    current_minus_di: float | None = None


@dataclass(slots=True)
class PositionRisk:
    """Locally tracked risk for one open position.

    ``quantity`` is signed: positive for long, negative for short.
    """

    symbol: BaseSymbol
    entry_price: float
    current_price: float
    quantity: float
    leverage: float
    unrealized_pnl: float = 0.0
    risk_usd: float = 0.0
    risk_percentage: float = 0.0
    stop_loss: float | None = None
    take_profit: float | None = None

    @property
    def is_long(self) -> bool:
        return self.quantity > 0


@dataclass(slots=True)
class AccountPosition:
    """Venue-reported position joined with its persisted exit plan."""

    symbol: BaseSymbol
    side: Literal["long", "short"]
    quantity: float
    entry_price: float
    current_price: float
    liquidation_price: float | None
    unrealized_pnl: float
    leverage: float
    notional_usd: float
    percentage: float
    profit_target: float | None = None
    stop_loss: float | None = None
    invalidation_condition: str | None = None
    confidence: float | None = None
    risk_usd: float | None = None
    matched_trade: bool = False

    @property
    def signed_quantity(self) -> float:
        return self.quantity if self.side == "long" else -self.quantity


@dataclass(slots=True)
class AccountSnapshot:
    """Point-in-time account state rebuilt from the venue every cycle."""

    available_cash: float
    total_cash_value: float
    current_positions_value: float
    current_account_value: float
    current_total_return: float
    sharpe_ratio: float
    positions: list[AccountPosition] = field(default_factory=list)
    timestamp: str = field(default_factory=utc_now_iso)

    @property
    def current_total_return_percent(self) -> float:
        return self.current_total_return * 100


@dataclass(slots=True)
class RiskMetrics:
    total_positions: int
    total_unrealized_pnl: float
    total_risk: float
    daily_pnl: float
    risk_score: float


@dataclass(slots=True)
class RiskAssessment:
    """Sizing and gate verdict for one prospective entry."""

    can_trade: bool
    reasons: list[str]
    recommended_position_size: float
    recommended_leverage: int
    max_quantity: float
    risk_score: float


@dataclass(slots=True)
class ExecutionDetail:
    type: Operation
    order_id: str | None = None
    executed_price: float | None = None
    executed_quantity: float | None = None
    stop_loss_order_id: str | None = None
    take_profit_order_id: str | None = None


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of translating one decision into venue orders."""

    success: bool
    symbol: BaseSymbol
    signal: Signal
    execution: ExecutionDetail | None = None
    risk_assessment: RiskAssessment | None = None
    error: str | None = None
    error_type: str | None = None
    warnings: list[str] = field(default_factory=list)
    timestamp: str = field(default_factory=utc_now_iso)


@dataclass(slots=True)
class TradeRecord:
    """Persisted trade row, joined back onto venue positions by symbol."""

    symbol: BaseSymbol
    operation: Operation
    leverage: int
    quantity: float
    stop_loss: float | None
    take_profit: float | None
    invalidation_condition: str | None
    confidence: float | None
    risk_usd: float | None
    justification: str
    success: bool = True
    error: str | None = None
    created_at: str = field(default_factory=utc_now_iso)


@dataclass(slots=True)
class CycleResult:
    """Outcome of one pipeline cycle run."""

    status: str
    decisions: list[dict[str, object]] = field(default_factory=list)
    orders: list[dict[str, object]] = field(default_factory=list)
    executions: list[ExecutionResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    elapsed_ms: float = 0.0
