from __future__ import annotations

import pytest

from perp_trader.journal.store import JournalStore, uniform_sample
from perp_trader.symbols import BaseSymbol
from perp_trader.types import AccountSnapshot, TradeRecord


def _trade(symbol: str, operation: str, quantity: float = 1.0) -> TradeRecord:
    return TradeRecord(
        symbol=BaseSymbol(symbol),
        operation=operation,  # type: ignore[arg-type]
        leverage=3,
        quantity=quantity,
        stop_loss=None,
        take_profit=None,
        invalidation_condition=None,
        confidence=0.5,
        risk_usd=None,
        justification="",
    )


def _snapshot(value: float) -> AccountSnapshot:
    return AccountSnapshot(
        available_cash=value,
        total_cash_value=value,
        current_positions_value=0.0,
        current_account_value=value,
        current_total_return=0.0,
        sharpe_ratio=0.0,
    )


def test_events_are_restricted_and_reloaded(tmp_path: object) -> None:
    journal = JournalStore(tmp_path)
    journal.append("cycle_start", {"n": 1})
    journal.append("cycle_end", {"n": 2})
    journal.append_trade(_trade("BTC", "HOLD"))

    with pytest.raises(ValueError, match="unsupported_event_type"):
        journal.append("candidate", {})

    events = journal.load_recent(10)
    assert [event["event_type"] for event in events] == ["cycle_start", "cycle_end"]
    assert journal.load_recent(1)[0]["payload"] == {"n": 2}
    assert journal.load_recent(0) == []


def test_recent_trades_newest_first_with_filter(tmp_path: object) -> None:
    journal = JournalStore(tmp_path)
    journal.append_trade(_trade("BTC", "BUY_TO_ENTER", 1.0))
    journal.append_trade(_trade("ETH", "HOLD"))
    journal.append_trade(_trade("BTC", "SELL_TO_ENTER", 2.0))

    trades = journal.load_recent_trades(10)
    assert [trade.symbol for trade in trades] == ["BTC", "ETH", "BTC"]
    assert trades[0].quantity == 2.0

    entries = journal.load_recent_trades(1, ("BUY_TO_ENTER", "SELL_TO_ENTER"))
    assert len(entries) == 1
    assert entries[0].operation == "SELL_TO_ENTER"


def test_chat_log(tmp_path: object) -> None:
    journal = JournalStore(tmp_path)
    assert journal.first_chat_time() is None
    assert journal.count_chats() == 0

    journal.append_chat(
        reasoning="r1",
        justification="j1",
        user_prompt="p1",
        trades=[_trade("BTC", "HOLD")],
    )
    journal.append_chat(reasoning="r2", justification="j2", user_prompt="p2", trades=[])

    assert journal.count_chats() == 2
    assert journal.first_chat_time() is not None
    chats = journal.load_chats(1)
    assert chats[0]["reasoning"] == "r2"


def test_metrics_series_is_downsampled(tmp_path: object) -> None:
    journal = JournalStore(tmp_path, metrics_max_points=5)
    for value in range(12):
        stored = journal.append_metrics(_snapshot(float(value)))
    assert stored == 5

    values = [point["account"]["current_account_value"] for point in journal.load_metrics()]
    assert len(values) == 5
    assert values[0] == 0.0
    assert values[-1] == 11.0


def test_uniform_sample_keeps_endpoints() -> None:
    items = list(range(101))
    sampled = uniform_sample(items, 11)
    assert sampled == list(range(0, 101, 10))
    assert uniform_sample(items[:3], 10) == [0, 1, 2]
    assert uniform_sample(items, 1) == [100]
    assert uniform_sample(items, 0) == []
