from __future__ import annotations

import pytest

from perp_trader.risk.ledger import PositionRiskLedger, calculate_position_risk
from perp_trader.symbols import BaseSymbol
from perp_trader.types import AccountPosition

BTC = BaseSymbol("BTC")
ETH = BaseSymbol("ETH")


def _risk(symbol: BaseSymbol, quantity: float, stop: float | None, portfolio: float = 10_000.0):
    return calculate_position_risk(
        symbol,
        entry_price=100.0,
        current_price=110.0,
        quantity=quantity,
        leverage=2,
        portfolio_value=portfolio,
        stop_loss=stop,
    )


def _account_position(symbol: BaseSymbol, side: str, quantity: float, stop: float | None) -> AccountPosition:
    return AccountPosition(
        symbol=symbol,
        side=side,  # type: ignore[arg-type]
        quantity=quantity,
        entry_price=200.0,
        current_price=210.0,
        liquidation_price=None,
        unrealized_pnl=(210.0 - 200.0) * (quantity if side == "long" else -quantity),
        leverage=5,
        notional_usd=210.0 * quantity,
        percentage=0.0,
        stop_loss=stop,
    )


def test_calculate_position_risk_signed_quantity() -> None:
    long_risk = _risk(BTC, 2, 95)
    assert long_risk.unrealized_pnl == pytest.approx(20.0)
    assert long_risk.risk_usd == pytest.approx(5 * 2 * 2)
    assert long_risk.risk_percentage == pytest.approx(20 / 10_000)
    assert long_risk.is_long

    short_risk = _risk(BTC, -2, 105)
    assert short_risk.unrealized_pnl == pytest.approx(-20.0)
    assert short_risk.risk_usd == pytest.approx(20.0)
    assert not short_risk.is_long

    assert _risk(BTC, 2, None).risk_usd == 0.0
    assert _risk(BTC, 2, 95, portfolio=0).risk_percentage == 0.0


def test_upsert_replaces_and_remove_is_idempotent() -> None:
    ledger = PositionRiskLedger(max_daily_loss=1_000, max_total_risk=0.2)
    ledger.add_or_update_position(_risk(BTC, 1, 90))
    ledger.add_or_update_position(_risk(BTC, 3, 99))
    assert len(ledger) == 1
    assert ledger.get_position(BTC).quantity == 3  # type: ignore[union-attr]

    assert ledger.remove_position(BTC) is not None
    assert ledger.remove_position(BTC) is None
    assert BTC not in ledger


def test_total_risk_and_score() -> None:
    ledger = PositionRiskLedger(max_daily_loss=100, max_total_risk=0.01)
    ledger.add_or_update_position(_risk(BTC, 10, 90))  # 200 USD -> 0.02
    ledger.add_or_update_position(_risk(ETH, -10, 110))  # 200 USD -> 0.02
    assert ledger.calculate_total_risk() == pytest.approx(0.04)

    metrics = ledger.get_risk_metrics()
    assert metrics.total_positions == 2
    assert metrics.total_unrealized_pnl == pytest.approx(0.0)
    assert metrics.risk_score == pytest.approx(0.3 + 0.08)

    ledger.update_daily_pnl(-150)
    assert ledger.get_risk_metrics().risk_score == pytest.approx(0.4 + 0.3 + 0.08)


def test_risk_score_counts_crowded_book_and_clamps() -> None:
    ledger = PositionRiskLedger(max_daily_loss=10, max_total_risk=0.01)
    for index in range(6):
        ledger.add_or_update_position(_risk(BaseSymbol(f"C{index}"), 10, 90))
    ledger.update_daily_pnl(-50)
    metrics = ledger.get_risk_metrics()
    assert metrics.total_positions == 6
    assert metrics.risk_score == pytest.approx(1.0)


def test_daily_pnl_accumulates_and_resets() -> None:
    ledger = PositionRiskLedger(max_daily_loss=1_000, max_total_risk=0.2)
    assert ledger.update_daily_pnl(-40) == -40
    assert ledger.update_daily_pnl(15) == -25
    assert ledger.daily_pnl == -25
    ledger.reset_daily_pnl()
    assert ledger.daily_pnl == 0.0


def test_reconcile_drops_refreshes_and_adopts() -> None:
    ledger = PositionRiskLedger(max_daily_loss=1_000, max_total_risk=0.2)
    ledger.add_or_update_position(_risk(BTC, 1, 90))
    ledger.add_or_update_position(_risk(BaseSymbol("SOL"), 1, 90))

    ledger.reconcile(
        [
            _account_position(BTC, "long", 1.5, stop=None),
            _account_position(ETH, "short", 2.0, stop=220.0),
        ],
        portfolio_value=10_000,
    )

    assert BaseSymbol("SOL") not in ledger
    btc = ledger.get_position(BTC)
    assert btc is not None
    assert btc.quantity == 1.5
    assert btc.current_price == 210.0
    # ledger stop wins over the missing journal stop
    assert btc.stop_loss == 90

    eth = ledger.get_position(ETH)
    assert eth is not None
    assert eth.quantity == -2.0
    assert eth.stop_loss == 220.0
    assert eth.unrealized_pnl == pytest.approx(-20.0)
    assert eth.risk_usd == pytest.approx(20 * 2 * 5)
