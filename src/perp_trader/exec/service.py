"""Execution service: the per-symbol FLAT/LONG/SHORT state machine."""

from __future__ import annotations

from enum import Enum

from perp_trader.ai.schemas import Decision
from perp_trader.config import Settings
from perp_trader.data.market import MarketSnapshotBuilder
from perp_trader.errors import (
    IncompatiblePositionError,
    InsufficientCapitalError,
    RiskGateRejected,
    TradingError,
)
from perp_trader.exec.orders import EntryRequest, OrderTranslator, resolve_amount
from perp_trader.risk.ledger import calculate_position_risk
from perp_trader.risk.rules import RiskEngine
from perp_trader.symbols import BaseSymbol, to_base_symbol
from perp_trader.types import ExecutionDetail, ExecutionResult, operation_for_signal
from perp_trader.utils.logging import get_logger
from perp_trader.venue.base import Venue


class PositionState(str, Enum):
    """Per-symbol state, rebuilt from venue position data."""

    FLAT = "FLAT"
    LONG = "LONG"
    SHORT = "SHORT"


class ExecutionService:
    """Turn validated decisions into venue orders and keep the risk ledger current."""

    def __init__(
        self,
        venue: Venue,
        settings: Settings,
        risk_engine: RiskEngine | None = None,
        translator: OrderTranslator | None = None,
        market: MarketSnapshotBuilder | None = None,
    ) -> None:
        self._venue = venue
        self._settings = settings
        self._risk = risk_engine or RiskEngine(settings)
        self._translator = translator or OrderTranslator(venue, settings)
        self._market = market
        self._logger = get_logger("perp_trader.exec.service")

    @property
    def risk_engine(self) -> RiskEngine:
        return self._risk

    async def position_state(self, symbol: str) -> PositionState:
        position = await self._translator.live_position(symbol)
        if position is None:
            return PositionState.FLAT
        return PositionState.LONG if position.side == "long" else PositionState.SHORT

    async def execute_decision(
        self,
        decision: Decision,
        available_capital: float,
        portfolio_value: float | None = None,
    ) -> ExecutionResult:
        """Execute one decision; every ``TradingError`` is reported, never raised."""
        symbol = to_base_symbol(decision.coin, self._settings.quote_currency)
        portfolio = portfolio_value if portfolio_value is not None else available_capital
        try:
            if decision.signal in ("buy_to_enter", "sell_to_enter"):
                result = await self._enter(symbol, decision, available_capital, portfolio)
            elif decision.signal == "close":
                result = await self._close(symbol, decision)
            else:
                result = await self._hold(symbol, decision, portfolio)
        except TradingError as exc:
            self._logger.warning(
                "decision_execution_failed",
                symbol=symbol,
                signal=decision.signal,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return ExecutionResult(
                success=False,
                symbol=symbol,
                signal=decision.signal,
                error=str(exc),
                error_type=type(exc).__name__,
            )

        self._logger.info(
            "decision_executed",
            symbol=symbol,
            signal=decision.signal,
            order_id=result.execution.order_id if result.execution else None,
            warnings=result.warnings,
        )
        return result

    async def _enter(
        self,
        symbol: BaseSymbol,
        decision: Decision,
        available_capital: float,
        portfolio_value: float,
    ) -> ExecutionResult:
        state = await self.position_state(symbol)
        if state != PositionState.FLAT:
            raise IncompatiblePositionError(
                f"Position already open on {symbol} ({state.value}); "
                f"close it before entering again"
            )

        warnings: list[str] = []
        price = await self._translator.current_price(symbol)
        leverage = self._risk.clamp_leverage(decision.leverage, symbol=symbol)
        if leverage != decision.leverage:
            warnings.append(f"leverage_clamped: {decision.leverage} -> {leverage}")

        cost = decision.cost
        if not decision.quantity and not cost:
            fallback = available_capital * self._settings.capital_fallback_allocation
            if fallback <= 0:
                raise InsufficientCapitalError(
                    f"Cannot size {symbol}: no quantity, no cost and no available capital"
                )
            cost = fallback
            warnings.append(f"sized_from_available_capital: cost={fallback:.2f}")
        amount = resolve_amount(decision.quantity, cost, leverage, price)

        atr = await self._current_atr(symbol, warnings)
        assessment = self._risk.assess_risk(
            symbol,
            price,
            decision.stop_loss,
            decision.profit_target,
            available_capital,
            atr,
            decision.confidence,
            leverage=leverage,
        )
        if not assessment.can_trade:
            if self._settings.risk_gate_enabled:
                raise RiskGateRejected(assessment.reasons)
            warnings.append("risk_gate_bypassed: " + ", ".join(assessment.reasons))
        if assessment.max_quantity > 0 and amount > assessment.max_quantity:
            warnings.append(
                f"quantity_above_risk_max: {amount:.8g} > {assessment.max_quantity:.8g}"
            )
        if leverage > assessment.recommended_leverage:
            warnings.append(
                f"leverage_above_liquidation_safe_max: {leverage} > {assessment.recommended_leverage}"
            )

        is_long = decision.signal == "buy_to_enter"
        outcome = await self._translator.open_position(
            EntryRequest(
                symbol=symbol,
                is_long=is_long,
                leverage=leverage,
                quantity=amount,
                order_type=decision.order_type,
                limit_price=decision.limit_price,
                stop_loss=decision.stop_loss,
                take_profit=decision.profit_target,
                reference_price=price,
            )
        )
        warnings.extend(outcome.warnings)

        # ledger entry is rebuilt from the fill, never patched across the awaits above
        self._risk.ledger.add_or_update_position(
            calculate_position_risk(
                symbol,
                entry_price=outcome.executed_price,
                current_price=outcome.executed_price,
                quantity=outcome.quantity if is_long else -outcome.quantity,
                leverage=leverage,
                portfolio_value=portfolio_value,
                stop_loss=decision.stop_loss,
                take_profit=decision.profit_target,
            )
        )
        return ExecutionResult(
            success=True,
            symbol=symbol,
            signal=decision.signal,
            execution=ExecutionDetail(
                type=operation_for_signal(decision.signal),
                order_id=outcome.order.id,
                executed_price=outcome.executed_price,
                executed_quantity=outcome.quantity,
                stop_loss_order_id=outcome.stop_loss_order_id,
                take_profit_order_id=outcome.take_profit_order_id,
            ),
            risk_assessment=assessment,
            warnings=warnings,
        )

    async def _close(self, symbol: BaseSymbol, decision: Decision) -> ExecutionResult:
        tracked = self._risk.ledger.get_position(symbol)
        expected = None if tracked is None else ("long" if tracked.is_long else "short")
        outcome = await self._translator.close_position(symbol, expected_direction=expected)

        self._risk.ledger.remove_position(symbol)
        daily_pnl = self._risk.ledger.update_daily_pnl(outcome.realized_pnl)
        self._logger.info(
            "position_closed",
            symbol=symbol,
            direction=outcome.closed_direction,
            realized_pnl=outcome.realized_pnl,
            daily_pnl=daily_pnl,
        )
        return ExecutionResult(
            success=True,
            symbol=symbol,
            signal=decision.signal,
            execution=ExecutionDetail(
                type="CLOSE",
                order_id=outcome.order.id,
                executed_price=outcome.executed_price,
                executed_quantity=outcome.closed_quantity,
            ),
            warnings=list(outcome.warnings),
        )

    async def _hold(
        self,
        symbol: BaseSymbol,
        decision: Decision,
        portfolio_value: float,
    ) -> ExecutionResult:
        detail = ExecutionDetail(type="HOLD")
        warnings: list[str] = []
        if decision.stop_loss is None and decision.profit_target is None:
            return ExecutionResult(success=True, symbol=symbol, signal=decision.signal, execution=detail)

        outcome = await self._translator.replace_protective_orders(
            symbol,
            stop_loss=decision.stop_loss,
            take_profit=decision.profit_target,
        )
        warnings.extend(outcome.warnings)
        detail.stop_loss_order_id = outcome.stop_loss_order_id
        detail.take_profit_order_id = outcome.take_profit_order_id

        tracked = self._risk.ledger.get_position(symbol)
        if tracked is not None:
            self._risk.ledger.add_or_update_position(
                calculate_position_risk(
                    symbol,
                    entry_price=tracked.entry_price,
                    current_price=tracked.current_price,
                    quantity=tracked.quantity,
                    leverage=tracked.leverage,
                    portfolio_value=portfolio_value,
                    stop_loss=decision.stop_loss if decision.stop_loss is not None else tracked.stop_loss,
                    take_profit=(
                        decision.profit_target
                        if decision.profit_target is not None
                        else tracked.take_profit
                    ),
                )
            )
        return ExecutionResult(
            success=True,
            symbol=symbol,
            signal=decision.signal,
            execution=detail,
            warnings=warnings,
        )

    async def _current_atr(self, symbol: BaseSymbol, warnings: list[str]) -> float:
        if self._market is None:
            return 0.0
        try:
            return await self._market.get_current_atr(symbol)
        except TradingError as exc:
            self._logger.warning("atr_unavailable", symbol=symbol, error=str(exc))
            warnings.append(f"atr_unavailable: {exc}")
            return 0.0
