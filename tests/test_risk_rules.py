from __future__ import annotations

import math

import pytest

from perp_trader.config import Settings
from perp_trader.risk.ledger import calculate_position_risk
from perp_trader.risk.rules import RiskEngine, clamp_leverage, confidence_multiplier
from perp_trader.symbols import BaseSymbol


def _engine(**overrides: object) -> RiskEngine:
    return RiskEngine(Settings(journal_dir="data/journal", **overrides))


def test_assess_risk_sizes_from_stop_distance() -> None:
    engine = _engine(max_risk_per_trade=0.02, max_position_size_usd=10_000)
    assessment = engine.assess_risk(
        "BTC",
        entry_price=100,
        stop_loss=97,
        take_profit=110,
        available_capital=10_000,
        atr=0.0,
        confidence=1.0,
    )
    # 200 USD of risk over 3 USD per unit; the capital bound is 100 units
    assert assessment.can_trade
    assert assessment.max_quantity == pytest.approx(200 / 3)
    assert assessment.recommended_position_size == pytest.approx(200 / 3)
    assert assessment.reasons == []


def test_assess_risk_bounded_by_capital() -> None:
    engine = _engine(max_position_size_usd=1_000)
    assessment = engine.assess_risk(
        "BTC",
        entry_price=100,
        stop_loss=97,
        take_profit=None,
        available_capital=10_000,
        atr=0.0,
        confidence=0.0,
        leverage=2,
    )
    assert assessment.max_quantity == pytest.approx(20.0)
    assert assessment.recommended_position_size == pytest.approx(20.0 * 0.3)


def test_assess_risk_falls_back_to_atr_without_stop() -> None:
    engine = _engine(max_risk_per_trade=0.01)
    assessment = engine.assess_risk(
        "ETH",
        entry_price=2_000,
        stop_loss=None,
        take_profit=None,
        available_capital=5_000,
        atr=25.0,
        confidence=1.0,
        leverage=5,
    )
    assert assessment.max_quantity == pytest.approx(50 / 25)
    assert assessment.recommended_leverage == 5


def test_assess_risk_reasons() -> None:
    engine = _engine(min_risk_reward_ratio=1.5)
    assessment = engine.assess_risk(
        "BTC",
        entry_price=100,
        stop_loss=95,
        take_profit=104,
        available_capital=0,
        atr=0.0,
        confidence=0.5,
    )
    assert not assessment.can_trade
    assert "no_available_capital" in assessment.reasons
    assert "risk_reward_below_minimum" in assessment.reasons
    assert "position_size_zero" in assessment.reasons


def test_assess_risk_invalid_entry_price() -> None:
    assessment = _engine().assess_risk("BTC", 0, None, None, 1_000, 0.0, 1.0)
    assert not assessment.can_trade
    assert assessment.reasons == ["invalid_entry_price"]
    assert assessment.max_quantity == 0.0


def test_assess_risk_recommends_liquidation_safe_leverage() -> None:
    engine = _engine(max_leverage=50)
    # 2% stop needs 6% liquidation distance, so at most 16x
    assessment = engine.assess_risk("BTC", 100, 98, 110, 10_000, 0.0, 1.0, leverage=40)
    assert assessment.recommended_leverage == 16
    assert assessment.can_trade


def test_halt_reasons_from_ledger() -> None:
    engine = _engine(max_daily_loss=500, max_total_risk=0.1)
    assert not engine.should_halt_trading()

    engine.ledger.update_daily_pnl(-600)
    engine.ledger.add_or_update_position(
        calculate_position_risk(
            BaseSymbol("BTC"),
            entry_price=100,
            current_price=100,
            quantity=10,
            leverage=2,
            portfolio_value=1_000,
            stop_loss=90,
        )
    )
    assert engine.halt_reasons() == ["daily_loss_limit_reached", "total_risk_limit_reached"]
    assessment = engine.assess_risk("ETH", 100, 97, 110, 10_000, 0.0, 1.0)
    assert not assessment.can_trade
    assert assessment.risk_score > 0.7


@pytest.mark.parametrize("confidence", [0.0, 0.25, 0.5, 0.75, 1.0])
def test_confidence_multiplier_linear(confidence: float) -> None:
    assert confidence_multiplier(confidence) == pytest.approx(0.3 + 0.7 * confidence)


def test_confidence_multiplier_bounded_and_monotonic() -> None:
    samples = [confidence_multiplier(c / 20) for c in range(21)]
    assert samples == sorted(samples)
    assert confidence_multiplier(-3) == pytest.approx(0.3)
    assert confidence_multiplier(7) == pytest.approx(1.0)
    assert confidence_multiplier(math.nan) == pytest.approx(0.3)


@pytest.mark.parametrize("value", [-10, 0, 0.5, 1, 3.7, 20, 21, 500, math.inf, -math.inf, math.nan])
def test_clamp_leverage_idempotent_and_bounded(value: float) -> None:
    once = clamp_leverage(value, 20)
    assert 1 <= once <= 20
    assert clamp_leverage(once, 20) == once


def test_engine_clamp_leverage_uses_settings() -> None:
    engine = _engine(max_leverage=10)
    assert engine.clamp_leverage(25, symbol="BTC") == 10
    assert engine.clamp_leverage(0, symbol="BTC") == 1
    assert engine.clamp_leverage(4.9) == 4


def test_stop_loss_and_take_profit_from_atr() -> None:
    engine = _engine(stop_loss_atr_multiplier=2.0, take_profit_atr_multiplier=4.0)
    assert engine.calculate_stop_loss_and_take_profit(100, 2, is_long=True) == (96, 108)
    assert engine.calculate_stop_loss_and_take_profit(100, 2, is_long=False) == (104, 92)


def test_calculate_position_size() -> None:
    engine = _engine(max_risk_per_trade=0.02, max_position_size_usd=10_000)
    size = engine.calculate_position_size(10_000, 100, 97, confidence=0.5)
    assert size == pytest.approx(200 / 3 * 0.65)
    assert engine.calculate_position_size(10_000, 0, 97, confidence=0.5) == 0.0


def test_liquidation_rule() -> None:
    engine = _engine()
    # stop 2% away requires liquidation at least 6% away
    assert engine.is_liquidation_safe(100, 98, liquidation_price=90)
    assert not engine.is_liquidation_safe(100, 98, liquidation_price=95)
    assert engine.is_liquidation_safe(100, 98, leverage=10)
    assert not engine.is_liquidation_safe(100, 98, leverage=20)
    # without a stop the floor is 3%
    assert engine.is_liquidation_safe(100, None, leverage=20)
    assert not engine.is_liquidation_safe(100, None, leverage=50)
    assert engine.max_safe_leverage(100, 98) == 16
