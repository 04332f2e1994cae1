from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from perp_trader.ai.openrouter_client import OpenRouterAPIError, OracleReply
from perp_trader.config import OracleMode, Settings
from perp_trader.journal.store import JournalStore
from perp_trader.pipeline import TradingAgent
from perp_trader.venue.base import BalanceEntry
from perp_trader.venue.paper import PaperVenue


def _candles(count: int, start: float, drift: float, step_ms: int) -> list[list[float]]:
    base_ts = 1_700_000_000_000
    rows = []
    for i in range(count):
        close = start + i * drift
        rows.append([base_ts + i * step_ms, close - drift / 2, close + 2, close - 2, close, 100.0 + i])
    return rows


def _seeded_venue(symbols: tuple[str, ...] = ("BTC/USDT", "ETH/USDT")) -> PaperVenue:
    venue = PaperVenue(10_000)
    for symbol in symbols:
        # last 3m close is 129.5, which becomes the paper fill price
        venue.set_candles(symbol, "3m", _candles(60, 100.0, 0.5, 180_000))
        venue.set_candles(symbol, "4h", _candles(60, 90.0, 1.0, 14_400_000))
        venue.set_candles(symbol, "1h", _candles(30, 100.0, 0.0, 3_600_000))
    return venue


def _decision(coin: str, signal: str = "hold", **overrides: object) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "signal": signal,
        "coin": coin,
        "quantity": 0,
        "leverage": 1,
        "confidence": 0.5,
        "justification": f"{coin} {signal}",
    }
    payload.update(overrides)
    return payload


def _btc_long() -> dict[str, Any]:
    return _decision(
        "BTC",
        "buy_to_enter",
        quantity=10,
        leverage=5,
        stop_loss=125.0,
        profit_target=150.0,
        confidence=0.7,
        invalidation_condition="3m close below 120",
    )


class _ScriptedOracle:
    """Returns canned replies; ``per_symbol`` is keyed by the coin named in the prompt."""

    def __init__(
        self,
        content: str = "",
        per_symbol: dict[str, str | Exception] | None = None,
        error: Exception | None = None,
    ) -> None:
        self.content = content
        self.per_symbol = per_symbol or {}
        self.error = error
        self.calls = 0

    async def generate_decision(
        self,
        system_prompt: str,
        user_prompt: str,
        schema: dict[str, Any],
    ) -> OracleReply:
        self.calls += 1
        if self.error is not None:
            raise self.error
        for coin, reply in self.per_symbol.items():
            if f"Decide for {coin} only" in user_prompt:
                if isinstance(reply, Exception):
                    raise reply
                return OracleReply(content=reply, reasoning=f"{coin} reasoning")
        return OracleReply(content=self.content, reasoning="multi reasoning")


def _agent(
    tmp_path: object,
    oracle: _ScriptedOracle,
    venue: PaperVenue | None = None,
    **overrides: object,
) -> tuple[TradingAgent, JournalStore]:
    settings = Settings(journal_dir=tmp_path, symbols=["BTC", "ETH"], **overrides)
    journal = JournalStore(settings.journal_dir)
    return TradingAgent(settings, venue or _seeded_venue(), oracle, journal), journal


def _multi(*decisions: dict[str, Any]) -> str:
    return json.dumps({"decisions": list(decisions), "justification": "cycle view"})


def test_dry_run_records_decisions_without_orders(tmp_path: object) -> None:
    venue = _seeded_venue()
    agent, journal = _agent(tmp_path, _ScriptedOracle(_multi(_btc_long(), _decision("ETH"))), venue)

    result = asyncio.run(agent.run_decision_cycle(dry_run=True))

    assert result.status == "completed_dry_run"
    assert [d["coin"] for d in result.decisions] == ["BTC", "ETH"]
    assert [order["status"] for order in result.orders] == ["dry_run", "dry_run"]
    assert result.orders[0]["action"] == "BUY_TO_ENTER"
    assert result.executions == []
    assert asyncio.run(venue.fetch_closed_orders("BTC/USDT")) == []
    assert journal.load_recent_trades(10) == []
    assert journal.count_chats() == 1


def test_cycle_executes_entry_and_journals_everything(tmp_path: object) -> None:
    venue = _seeded_venue()
    agent, journal = _agent(tmp_path, _ScriptedOracle(_multi(_btc_long(), _decision("ETH"))), venue)

    result = asyncio.run(agent.run_decision_cycle())

    assert result.status == "completed", result.warnings
    assert result.warnings == []
    assert [execution.success for execution in result.executions] == [True, True]
    assert len(result.orders) == 1
    assert result.orders[0]["symbol"] == "BTC"
    assert result.orders[0]["price"] == 129.5

    positions = asyncio.run(venue.fetch_positions())
    assert [position.symbol for position in positions] == ["BTC/USDT"]
    assert len(asyncio.run(venue.fetch_open_orders("BTC/USDT"))) == 2
    assert agent.ledger.get_position("BTC") is not None

    trades = journal.load_recent_trades(10)
    assert [trade.operation for trade in trades] == ["HOLD", "BUY_TO_ENTER"]
    assert trades[1].quantity == 10
    assert trades[1].invalidation_condition == "3m close below 120"

    chats = journal.load_chats(5)
    assert len(chats) == 1
    assert chats[0]["reasoning"] == "multi reasoning"
    assert len(chats[0]["trades"]) == 2

    event_types = [event["event_type"] for event in journal.load_recent(50)]
    assert event_types[0] == "cycle_start"
    assert event_types[-1] == "cycle_end"
    assert event_types.count("ai_decision") == 2
    assert event_types.count("execution") == 2


def test_next_snapshot_joins_exit_plan(tmp_path: object) -> None:
    venue = _seeded_venue()
    agent, _ = _agent(tmp_path, _ScriptedOracle(_multi(_btc_long(), _decision("ETH"))), venue)
    asyncio.run(agent.run_decision_cycle())

    snapshot = asyncio.run(agent.account_snapshot())

    assert len(snapshot.positions) == 1
    position = snapshot.positions[0]
    assert position.symbol == "BTC"
    assert position.stop_loss == 125.0
    assert position.profit_target == 150.0
    assert position.matched_trade


def test_oracle_failure_places_no_orders(tmp_path: object) -> None:
    venue = _seeded_venue()
    oracle = _ScriptedOracle(error=OpenRouterAPIError("upstream 503"))
    agent, journal = _agent(tmp_path, oracle, venue)

    result = asyncio.run(agent.run_decision_cycle())

    assert result.status == "oracle_failed"
    assert any("oracle_failed" in warning for warning in result.warnings)
    assert result.decisions == []
    assert asyncio.run(venue.fetch_closed_orders("BTC/USDT")) == []
    assert "error" in [event["event_type"] for event in journal.load_recent(50)]


def test_malformed_oracle_reply_places_no_orders(tmp_path: object) -> None:
    venue = _seeded_venue()
    agent, _ = _agent(tmp_path, _ScriptedOracle("go long on everything"), venue)

    result = asyncio.run(agent.run_decision_cycle())

    assert result.status == "oracle_failed"
    assert asyncio.run(venue.fetch_positions()) == []


def test_single_mode_isolates_oracle_failures(tmp_path: object) -> None:
    venue = _seeded_venue()
    oracle = _ScriptedOracle(
        per_symbol={
            "BTC": json.dumps(_btc_long()),
            "ETH": "not a decision",
        }
    )
    agent, journal = _agent(tmp_path, oracle, venue, oracle_mode=OracleMode.SINGLE)

    result = asyncio.run(agent.run_decision_cycle())

    assert oracle.calls == 2
    assert result.status == "completed"
    assert [d["coin"] for d in result.decisions] == ["BTC"]
    assert any(warning.startswith("ETH: oracle_failed") for warning in result.warnings)
    assert len(asyncio.run(venue.fetch_positions())) == 1
    assert journal.count_chats() == 1


def test_missing_market_data_is_reported(tmp_path: object) -> None:
    venue = _seeded_venue(("BTC/USDT",))
    oracle = _ScriptedOracle(_multi(_decision("BTC"), _decision("ETH")))
    agent, _ = _agent(tmp_path, oracle, venue)

    result = asyncio.run(agent.run_decision_cycle())

    assert result.status == "completed"
    assert "market_data_missing: ETH" in result.warnings


def test_no_market_data_skips_oracle(tmp_path: object) -> None:
    oracle = _ScriptedOracle(_multi(_decision("BTC"), _decision("ETH")))
    agent, _ = _agent(tmp_path, oracle, PaperVenue(10_000))

    result = asyncio.run(agent.run_decision_cycle())

    assert result.status == "no_market_data"
    assert oracle.calls == 0


def test_failed_execution_marks_cycle(tmp_path: object) -> None:
    oracle = _ScriptedOracle(_multi(_decision("BTC", "close", confidence=0.9), _decision("ETH")))
    agent, journal = _agent(tmp_path, oracle)

    result = asyncio.run(agent.run_decision_cycle())

    assert result.status == "completed_with_errors"
    failed = result.executions[0]
    assert failed.error_type == "NoOpenPositionError"
    trades = journal.load_recent_trades(10)
    assert trades[1].success is False


def test_metrics_snapshot_appends_series(tmp_path: object) -> None:
    agent, journal = _agent(tmp_path, _ScriptedOracle())

    snapshot = asyncio.run(agent.run_metrics_snapshot())
    asyncio.run(agent.run_metrics_snapshot())

    assert snapshot.current_account_value == 10_000
    assert len(journal.load_metrics()) == 2
    events = [event["event_type"] for event in journal.load_recent(10)]
    assert events == ["metrics_snapshot", "metrics_snapshot"]


class _HungBalanceVenue(PaperVenue):
    async def fetch_balance(self) -> dict[str, BalanceEntry]:
        await asyncio.sleep(3600)
        return await super().fetch_balance()


def test_capital_refresh_times_out_to_previous_value(tmp_path: object) -> None:
    agent, _ = _agent(tmp_path, _ScriptedOracle(), _HungBalanceVenue(10_000), venue_timeout=0.1)

    refreshed = asyncio.run(asyncio.wait_for(agent._refresh_capital(1_234.0), 5))

    assert refreshed == 1_234.0


def test_cost_sized_entry_from_oracle(tmp_path: object) -> None:
    venue = _seeded_venue()
    btc = {
        "signal": "buy_to_enter",
        "coin": "BTC",
        "cost": 500,
        "leverage": 10,
        "confidence": 0.6,
        "justification": "size by margin",
    }
    agent, _ = _agent(tmp_path, _ScriptedOracle(_multi(btc, _decision("ETH"))), venue)

    result = asyncio.run(agent.run_decision_cycle())

    assert result.status == "completed", result.warnings
    execution = result.executions[0].execution
    assert execution is not None
    assert execution.executed_quantity == pytest.approx(500 * 10 / 129.5)
