"""Position sizing, leverage bounds and the trade gate."""

from __future__ import annotations

import math

from perp_trader.config import Settings
from perp_trader.risk.ledger import PositionRiskLedger
from perp_trader.types import RiskAssessment
from perp_trader.utils.logging import get_logger, log_risk_event

_MIN_RISK_PER_UNIT = 1e-3
_MIN_LIQUIDATION_DISTANCE = 0.03
_LIQUIDATION_STOP_FACTOR = 3.0


def confidence_multiplier(confidence: float) -> float:
    """Map confidence in [0, 1] linearly onto [0.3, 1.0]."""
    if math.isnan(confidence):
        confidence = 0.0
    confidence = max(0.0, min(1.0, confidence))
    return 0.3 + 0.7 * confidence


def clamp_leverage(value: float, max_leverage: int) -> int:
    """Floor to an integer inside ``[1, max_leverage]``."""
    if math.isnan(value):
        return 1
    if math.isinf(value):
        return max_leverage if value > 0 else 1
    return max(1, min(max_leverage, math.floor(value)))


def required_liquidation_distance(entry_price: float, stop_loss: float | None) -> float:
    """Fractional distance to liquidation the stop requires."""
    if stop_loss is None or entry_price <= 0:
        return _MIN_LIQUIDATION_DISTANCE
    stop_distance = abs(entry_price - stop_loss) / entry_price
    return max(_LIQUIDATION_STOP_FACTOR * stop_distance, _MIN_LIQUIDATION_DISTANCE)


class RiskEngine:
    """Sizing engine and configurable trade gate over a position risk ledger."""

    def __init__(self, settings: Settings, ledger: PositionRiskLedger | None = None) -> None:
        self._settings = settings
        self._ledger = ledger or PositionRiskLedger(
            max_daily_loss=settings.max_daily_loss,
            max_total_risk=settings.max_total_risk,
        )
        self._logger = get_logger("perp_trader.risk.rules")

    @property
    def ledger(self) -> PositionRiskLedger:
        return self._ledger

    def clamp_leverage(self, value: float, symbol: str | None = None) -> int:
        """Clamp with a warning when the requested value is out of range."""
        clamped = clamp_leverage(value, self._settings.max_leverage)
        if clamped != value:
            log_risk_event(
                self._logger,
                event_type="leverage_clamped",
                action="clamp",
                symbol=symbol,
                requested=value,
                applied=clamped,
            )
        return clamped

    def assess_risk(
        self,
        symbol: str,
        entry_price: float,
        stop_loss: float | None,
        take_profit: float | None,
        available_capital: float,
        atr: float,
        confidence: float,
        leverage: float | None = None,
    ) -> RiskAssessment:
        """Size a prospective entry and decide whether the gate lets it through."""
        reasons: list[str] = []
        applied_leverage = self.clamp_leverage(
            leverage if leverage is not None else 1, symbol=symbol
        )

        if entry_price <= 0:
            return RiskAssessment(
                can_trade=False,
                reasons=["invalid_entry_price"],
                recommended_position_size=0.0,
                recommended_leverage=applied_leverage,
                max_quantity=0.0,
                risk_score=self._ledger.get_risk_metrics().risk_score,
            )

        risk_per_unit = abs(entry_price - stop_loss) if stop_loss is not None else atr
        max_by_risk = (available_capital * self._settings.max_risk_per_trade) / max(
            risk_per_unit, _MIN_RISK_PER_UNIT
        )
        max_by_capital = (self._settings.max_position_size_usd * applied_leverage) / entry_price
        max_quantity = max(0.0, min(max_by_risk, max_by_capital))
        recommended = max_quantity * confidence_multiplier(confidence)

        recommended_leverage = applied_leverage
        if stop_loss is not None:
            recommended_leverage = min(applied_leverage, self.max_safe_leverage(entry_price, stop_loss))

        if available_capital <= 0:
            reasons.append("no_available_capital")
        reasons.extend(self.halt_reasons())
        if stop_loss is not None and take_profit is not None:
            risk = abs(entry_price - stop_loss)
            reward = abs(take_profit - entry_price)
            if risk > 0 and reward / risk < self._settings.min_risk_reward_ratio:
                reasons.append("risk_reward_below_minimum")
        if recommended <= 0:
            reasons.append("position_size_zero")

        assessment = RiskAssessment(
            can_trade=not reasons,
            reasons=reasons,
            recommended_position_size=recommended,
            recommended_leverage=recommended_leverage,
            max_quantity=max_quantity,
            risk_score=self._ledger.get_risk_metrics().risk_score,
        )
        if reasons:
            log_risk_event(
                self._logger,
                event_type="trade_gate",
                action="reject" if self._settings.risk_gate_enabled else "log_only",
                symbol=symbol,
                reasons=reasons,
            )
        return assessment

    def calculate_position_size(
        self,
        available_capital: float,
        entry_price: float,
        stop_loss: float,
        confidence: float,
        leverage: float = 1,
    ) -> float:
        """Risk-budget size bounded by the position cap and scaled by confidence."""
        if entry_price <= 0:
            return 0.0
        risk_per_unit = max(abs(entry_price - stop_loss), _MIN_RISK_PER_UNIT)
        max_by_risk = available_capital * self._settings.max_risk_per_trade / risk_per_unit
        max_by_capital = self._settings.max_position_size_usd * leverage / entry_price
        return max(0.0, min(max_by_risk, max_by_capital) * confidence_multiplier(confidence))

    def calculate_stop_loss_and_take_profit(
        self,
        entry_price: float,
        atr: float,
        is_long: bool,
    ) -> tuple[float, float]:
        """ATR-based stop loss and take profit, returned as ``(stop, target)``."""
        stop_distance = atr * self._settings.stop_loss_atr_multiplier
        profit_distance = atr * self._settings.take_profit_atr_multiplier
        if is_long:
            return entry_price - stop_distance, entry_price + profit_distance
        return entry_price + stop_distance, entry_price - profit_distance

    def is_liquidation_safe(
        self,
        entry_price: float,
        stop_loss: float | None,
        liquidation_price: float | None = None,
        leverage: float | None = None,
    ) -> bool:
        """Check ``|entry - liq| / entry >= max(3 * |entry - stop| / entry, 0.03)``.

        Without a liquidation price the distance is approximated as ``1 / leverage``.
        """
        if entry_price <= 0:
            return False
        if liquidation_price is not None and liquidation_price > 0:
            distance = abs(entry_price - liquidation_price) / entry_price
        elif leverage is not None and leverage > 0:
            distance = 1 / leverage
        else:
            return True
        return distance >= required_liquidation_distance(entry_price, stop_loss)

    def max_safe_leverage(self, entry_price: float, stop_loss: float | None) -> int:
        """Highest leverage whose approximate liquidation distance satisfies the rule."""
        required = required_liquidation_distance(entry_price, stop_loss)
        return clamp_leverage(1 / required, self._settings.max_leverage)

    def should_halt_trading(self) -> bool:
        return bool(self.halt_reasons())

    def halt_reasons(self) -> list[str]:
        metrics = self._ledger.get_risk_metrics()
        reasons: list[str] = []
        if metrics.daily_pnl <= -self._settings.max_daily_loss:
            reasons.append("daily_loss_limit_reached")
        if metrics.total_risk >= self._settings.max_total_risk:
            reasons.append("total_risk_limit_reached")
        return reasons
