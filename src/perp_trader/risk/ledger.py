"""In-memory ledger of the positions this process believes it holds."""

from __future__ import annotations

from datetime import date, datetime, timezone

from perp_trader.symbols import BaseSymbol
from perp_trader.types import AccountPosition, PositionRisk, RiskMetrics
from perp_trader.utils.logging import get_logger

_MAX_CONCURRENT_POSITIONS = 5


def calculate_position_risk(
    symbol: BaseSymbol,
    *,
    entry_price: float,
    current_price: float,
    quantity: float,
    leverage: float,
    portfolio_value: float,
    stop_loss: float | None = None,
    take_profit: float | None = None,
) -> PositionRisk:
    """Build a ``PositionRisk``; ``quantity`` is signed (short is negative)."""
    unrealized = (current_price - entry_price) * quantity
    risk_usd = 0.0
    if stop_loss is not None:
        risk_usd = abs(entry_price - stop_loss) * abs(quantity) * leverage
    return PositionRisk(
        symbol=symbol,
        entry_price=entry_price,
        current_price=current_price,
        quantity=quantity,
        leverage=leverage,
        stop_loss=stop_loss,
        take_profit=take_profit,
        unrealized_pnl=unrealized,
        risk_usd=risk_usd,
        risk_percentage=calculate_risk_percentage(risk_usd, portfolio_value),
    )


def calculate_risk_percentage(risk_usd: float, portfolio_value: float) -> float:
    if portfolio_value <= 0:
        return 0.0
    return risk_usd / portfolio_value


class PositionRiskLedger:
    """Symbol-keyed position risk, mutated only by the execution service."""

    def __init__(self, max_daily_loss: float, max_total_risk: float) -> None:
        self._max_daily_loss = max_daily_loss
        self._max_total_risk = max_total_risk
        self._positions: dict[BaseSymbol, PositionRisk] = {}
        self._daily_pnl = 0.0
        self._pnl_day: date = datetime.now(timezone.utc).date()
        self._logger = get_logger("perp_trader.risk.ledger")

    def __len__(self) -> int:
        return len(self._positions)

    def __contains__(self, symbol: object) -> bool:
        return symbol in self._positions

    def add_or_update_position(self, risk: PositionRisk) -> None:
        """Upsert by symbol; the previous entry is replaced, not merged."""
        self._positions[risk.symbol] = risk

    def remove_position(self, symbol: BaseSymbol) -> PositionRisk | None:
        return self._positions.pop(symbol, None)

    def get_position(self, symbol: BaseSymbol) -> PositionRisk | None:
        return self._positions.get(symbol)

    def positions(self) -> list[PositionRisk]:
        return list(self._positions.values())

    def calculate_total_risk(self) -> float:
        return sum(position.risk_percentage for position in self._positions.values())

    @property
    def daily_pnl(self) -> float:
        self._roll_day_if_needed()
        return self._daily_pnl

    def update_daily_pnl(self, pnl: float) -> float:
        """Add realized PnL to today's running total and return it."""
        self._roll_day_if_needed()
        self._daily_pnl += pnl
        return self._daily_pnl

    def reset_daily_pnl(self) -> None:
        self._daily_pnl = 0.0
        self._pnl_day = datetime.now(timezone.utc).date()

    def get_risk_metrics(self) -> RiskMetrics:
        total_risk = self.calculate_total_risk()
        daily_pnl = self.daily_pnl
        score = 0.0
        if daily_pnl < -self._max_daily_loss:
            score += 0.4
        if total_risk > self._max_total_risk:
            score += 0.3
        if len(self._positions) > _MAX_CONCURRENT_POSITIONS:
            score += 0.2
        score += min(total_risk * 2, 0.1)
        return RiskMetrics(
            total_positions=len(self._positions),
            total_unrealized_pnl=sum(p.unrealized_pnl for p in self._positions.values()),
            total_risk=total_risk,
            daily_pnl=daily_pnl,
            risk_score=max(0.0, min(1.0, score)),
        )

    def reconcile(self, positions: list[AccountPosition], portfolio_value: float) -> None:
        """Align the ledger with venue positions read at account-snapshot time.

        Entries without a venue position are dropped, matching entries get fresh
        price and PnL, and venue positions unknown to the ledger are adopted with
        the stop loss recovered from the trade journal.
        """
        live = {position.symbol: position for position in positions}
        for symbol in list(self._positions):
            if symbol not in live:
                self._logger.info("ledger_entry_dropped", symbol=symbol)
                del self._positions[symbol]

        for symbol, position in live.items():
            existing = self._positions.get(symbol)
            stop_loss = existing.stop_loss if existing else position.stop_loss
            take_profit = existing.take_profit if existing else position.profit_target
            if existing is None:
                self._logger.info("ledger_entry_adopted", symbol=symbol, side=position.side)
            self._positions[symbol] = calculate_position_risk(
                symbol,
                entry_price=position.entry_price,
                current_price=position.current_price,
                quantity=position.signed_quantity,
                leverage=position.leverage,
                portfolio_value=portfolio_value,
                stop_loss=stop_loss,
                take_profit=take_profit,
            )

    def _roll_day_if_needed(self) -> None:
        today = datetime.now(timezone.utc).date()
        if today != self._pnl_day:
            self._pnl_day = today
            self._daily_pnl = 0.0
