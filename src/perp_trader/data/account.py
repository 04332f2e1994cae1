"""Account snapshot builder: balances, enriched positions and performance."""

from __future__ import annotations

import asyncio
import math
import statistics
from collections.abc import Awaitable
from typing import TypeVar

from perp_trader.config import Settings
from perp_trader.errors import DataFetchError
from perp_trader.journal.store import JournalStore
from perp_trader.symbols import to_base_symbol, to_market_symbol
from perp_trader.types import ENTRY_OPERATIONS, AccountPosition, AccountSnapshot, TradeRecord
from perp_trader.utils.logging import get_logger
from perp_trader.venue.base import BalanceEntry, Venue, VenuePosition

T = TypeVar("T")

_TRADE_LOOKBACK = 20
_MIN_SERIES_FOR_SHARPE = 3


class AccountSnapshotBuilder:
    """Rebuild the account view from the venue and the trade journal."""

    def __init__(self, venue: Venue, journal: JournalStore | None, settings: Settings) -> None:
        self._venue = venue
        self._journal = journal
        self._settings = settings
        self._logger = get_logger("perp_trader.data.account")

    async def get_account_information_and_performance(
        self,
        initial_capital: float | None = None,
    ) -> AccountSnapshot:
        initial = self._settings.initial_capital if initial_capital is None else initial_capital
        quote = self._settings.quote_currency
        universe = [to_market_symbol(symbol, quote) for symbol in self._settings.symbols]

        balances, venue_positions = await asyncio.gather(
            self._guard(self._venue.fetch_balance(), "balance"),
            self._guard(self._venue.fetch_positions(universe), "positions"),
        )
        wallet = balances.get(quote)
        if wallet is None:
            self._logger.warning("quote_balance_missing", quote=quote, assets=sorted(balances))
            wallet = BalanceEntry(total=0.0, free=0.0, used=0.0)

        open_positions = [
            position
            for position in venue_positions
            if position.contracts != 0 and position.side in ("long", "short")
        ]
        trades = self._recent_entry_trades()
        positions = [self._enrich(position, trades) for position in open_positions]

        unrealized = sum(position.unrealized_pnl for position in positions)
        positions_value = sum(
            position.notional_usd / position.leverage + position.unrealized_pnl
            for position in positions
            if position.leverage > 0
        )
        account_value = wallet.total + unrealized

        return AccountSnapshot(
            available_cash=wallet.free,
            total_cash_value=wallet.total,
            current_positions_value=positions_value,
            current_account_value=account_value,
            current_total_return=compute_total_return(account_value, initial),
            sharpe_ratio=self._sharpe(account_value, positions),
            positions=positions,
        )

    def _recent_entry_trades(self) -> list[TradeRecord]:
        if self._journal is None:
            return []
        return self._journal.load_recent_trades(_TRADE_LOOKBACK, ENTRY_OPERATIONS)

    def _enrich(self, position: VenuePosition, trades: list[TradeRecord]) -> AccountPosition:
        quote = self._settings.quote_currency
        base = to_base_symbol(position.symbol, quote)
        match = next(
            (trade for trade in trades if to_base_symbol(trade.symbol, quote) == base),
            None,
        )
        if match is None:
            self._logger.debug("position_without_trade_record", symbol=base)
        side = "long" if position.side == "long" else "short"
        return AccountPosition(
            symbol=base,
            side=side,
            quantity=abs(position.contracts),
            entry_price=position.entry_price,
            current_price=position.mark_price,
            liquidation_price=position.liquidation_price,
            unrealized_pnl=position.unrealized_pnl,
            leverage=position.leverage,
            notional_usd=position.notional,
            percentage=position.percentage,
            profit_target=match.take_profit if match else None,
            stop_loss=match.stop_loss if match else None,
            invalidation_condition=match.invalidation_condition if match else None,
            confidence=match.confidence if match else None,
            risk_usd=match.risk_usd if match else None,
            matched_trade=match is not None,
        )

    def _sharpe(self, account_value: float, positions: list[AccountPosition]) -> float:
        values: list[float] = []
        if self._journal is not None:
            for point in self._journal.load_metrics():
                value = point.get("account", {}).get("current_account_value")
                if isinstance(value, (int, float)):
                    values.append(float(value))
        values.append(account_value)
        if len(values) >= _MIN_SERIES_FOR_SHARPE:
            returns = [
                (current - previous) / previous
                for previous, current in zip(values, values[1:])
                if previous > 0
            ]
        else:
            returns = [position.percentage / 100 for position in positions]
        return compute_sharpe_ratio(returns)

    async def _guard(self, call: Awaitable[T], what: str) -> T:
        try:
            return await asyncio.wait_for(call, self._settings.venue_timeout)
        except asyncio.TimeoutError as exc:
            raise DataFetchError(f"timeout: {what}") from exc


def compute_total_return(account_value: float, initial_capital: float) -> float:
    """Fractional return vs. the initial capital; 0 for a non-positive baseline."""
    if initial_capital <= 0:
        return 0.0
    value = (account_value - initial_capital) / initial_capital
    return value if math.isfinite(value) else 0.0


def compute_sharpe_ratio(returns: list[float]) -> float:
    """Simplified single-period Sharpe: mean over population std, 0 when undefined."""
    clean = [value for value in returns if math.isfinite(value)]
    if len(clean) < 2:
        return 0.0
    deviation = statistics.pstdev(clean)
    if deviation == 0:
        return 0.0
    ratio = statistics.fmean(clean) / deviation
    return ratio if math.isfinite(ratio) else 0.0


def format_account_performance(snapshot: AccountSnapshot) -> str:
    """Render the account section used in prompts and the CLI."""
    lines = [
        f"Current Total Return (percent): {snapshot.current_total_return_percent:.2f}%",
        f"Available Cash: {snapshot.available_cash:.2f}",
        f"Current Account Value: {snapshot.current_account_value:.2f}",
        f"Sharpe Ratio: {snapshot.sharpe_ratio:.3f}",
    ]
    if not snapshot.positions:
        lines.append("Current live positions & performance: none")
        return "\n".join(lines)

    lines.append("Current live positions & performance:")
    for position in snapshot.positions:
        exit_plan = (
            f"profit_target={_fmt(position.profit_target)}, "
            f"stop_loss={_fmt(position.stop_loss)}, "
            f"invalidation_condition={position.invalidation_condition or 'n/a'}"
        )
        lines.append(
            f"- {position.symbol}: side={position.side}, quantity={position.quantity}, "
            f"entry_price={position.entry_price}, current_price={position.current_price}, "
            f"liquidation_price={_fmt(position.liquidation_price)}, "
            f"unrealized_pnl={position.unrealized_pnl:.2f}, leverage={position.leverage:g}, "
            f"notional_usd={position.notional_usd:.2f}, confidence={_fmt(position.confidence)}, "
            f"risk_usd={_fmt(position.risk_usd)}, exit_plan=({exit_plan})"
        )
    return "\n".join(lines)


def _fmt(value: float | None) -> str:
    return "n/a" if value is None else f"{value:g}"
