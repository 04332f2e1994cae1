from __future__ import annotations

import asyncio
import math

import pytest

from perp_trader.config import Settings
from perp_trader.data.account import (
    AccountSnapshotBuilder,
    compute_sharpe_ratio,
    compute_total_return,
    format_account_performance,
)
from perp_trader.journal.store import JournalStore
from perp_trader.symbols import BaseSymbol
from perp_trader.types import AccountSnapshot, TradeRecord
from perp_trader.venue.paper import PaperVenue


def _snapshot(value: float) -> AccountSnapshot:
    return AccountSnapshot(
        available_cash=value,
        total_cash_value=value,
        current_positions_value=0.0,
        current_account_value=value,
        current_total_return=0.0,
        sharpe_ratio=0.0,
    )


async def _open_btc_long(venue: PaperVenue) -> None:
    venue.set_price("BTC/USDT", 100.0)
    await venue.set_leverage(5, "BTC/USDT")
    await venue.create_order("BTC/USDT", "market", "buy", 10)
    venue.set_price("BTC/USDT", 110.0)


def test_empty_account_has_no_nan(tmp_path: object) -> None:
    settings = Settings(journal_dir=tmp_path)
    builder = AccountSnapshotBuilder(PaperVenue(10_000), JournalStore(tmp_path), settings)

    snapshot = asyncio.run(builder.get_account_information_and_performance())

    assert snapshot.available_cash == 10_000
    assert snapshot.current_account_value == 10_000
    assert snapshot.current_total_return == 0.0
    assert snapshot.sharpe_ratio == 0.0
    assert snapshot.positions == []
    for value in (snapshot.current_total_return, snapshot.sharpe_ratio, snapshot.current_positions_value):
        assert math.isfinite(value)


def test_positions_joined_with_trade_records(tmp_path: object) -> None:
    settings = Settings(journal_dir=tmp_path)
    journal = JournalStore(tmp_path)
    journal.append_trade(
        TradeRecord(
            symbol=BaseSymbol("BTC"),
            operation="BUY_TO_ENTER",
            leverage=5,
            quantity=10,
            stop_loss=95.0,
            take_profit=130.0,
            invalidation_condition="close below 90",
            confidence=0.7,
            risk_usd=50.0,
            justification="trend",
        )
    )
    venue = PaperVenue(10_000)
    asyncio.run(_open_btc_long(venue))
    builder = AccountSnapshotBuilder(venue, journal, settings)

    snapshot = asyncio.run(builder.get_account_information_and_performance(initial_capital=10_000))

    assert len(snapshot.positions) == 1
    position = snapshot.positions[0]
    assert position.symbol == "BTC"
    assert position.side == "long"
    assert position.quantity == 10
    assert position.unrealized_pnl == pytest.approx(100.0)
    assert position.stop_loss == 95.0
    assert position.profit_target == 130.0
    assert position.invalidation_condition == "close below 90"
    assert position.matched_trade

    assert snapshot.available_cash == pytest.approx(9_800.0)
    assert snapshot.current_account_value == pytest.approx(10_100.0)
    assert snapshot.current_positions_value == pytest.approx(110 * 10 / 5 + 100)
    assert snapshot.current_total_return == pytest.approx(0.01)


def test_position_without_trade_record_keeps_empty_exit_plan(tmp_path: object) -> None:
    venue = PaperVenue(10_000)
    asyncio.run(_open_btc_long(venue))
    builder = AccountSnapshotBuilder(venue, JournalStore(tmp_path), Settings(journal_dir=tmp_path))

    snapshot = asyncio.run(builder.get_account_information_and_performance())

    position = snapshot.positions[0]
    assert not position.matched_trade
    assert position.stop_loss is None
    assert position.confidence is None


def test_sharpe_from_metrics_series(tmp_path: object) -> None:
    journal = JournalStore(tmp_path)
    journal.append_metrics(_snapshot(10_000.0))
    journal.append_metrics(_snapshot(11_000.0))
    venue = PaperVenue(10_000)
    asyncio.run(_open_btc_long(venue))
    builder = AccountSnapshotBuilder(venue, journal, Settings(journal_dir=tmp_path))

    snapshot = asyncio.run(builder.get_account_information_and_performance())

    # returns +10% then 10100 / 11000 - 1
    assert snapshot.sharpe_ratio == pytest.approx(0.1)


def test_missing_quote_wallet_is_zero(tmp_path: object) -> None:
    settings = Settings(journal_dir=tmp_path)
    builder = AccountSnapshotBuilder(PaperVenue(500, quote_currency="USDC"), None, settings)
    snapshot = asyncio.run(builder.get_account_information_and_performance(initial_capital=0))
    assert snapshot.available_cash == 0.0
    assert snapshot.current_account_value == 0.0
    assert snapshot.current_total_return == 0.0


def test_return_and_sharpe_guards() -> None:
    assert compute_total_return(12_000, 10_000) == pytest.approx(0.2)
    assert compute_total_return(12_000, 0) == 0.0
    assert compute_sharpe_ratio([]) == 0.0
    assert compute_sharpe_ratio([0.01]) == 0.0
    assert compute_sharpe_ratio([0.0, 0.0, 0.0]) == 0.0
    assert compute_sharpe_ratio([0.01, math.nan, math.inf]) == 0.0
    assert compute_sharpe_ratio([0.01, 0.03]) == pytest.approx(2.0)


def test_format_account_performance(tmp_path: object) -> None:
    venue = PaperVenue(10_000)
    asyncio.run(_open_btc_long(venue))
    builder = AccountSnapshotBuilder(venue, None, Settings(journal_dir=tmp_path))
    snapshot = asyncio.run(builder.get_account_information_and_performance())

    text = format_account_performance(snapshot)

    assert "Current Total Return (percent): 1.00%" in text
    assert "Available Cash: 9800.00" in text
    assert "- BTC: side=long, quantity=10.0" in text
    assert "Current live positions & performance: none" in format_account_performance(_snapshot(1.0))
