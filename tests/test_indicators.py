from __future__ import annotations

import math

import pandas as pd

from perp_trader.features import indicators as ind


def _rows(count: int, start: float = 100.0, drift: float = 1.0, spread: float = 2.0) -> list[list[float]]:
    base_ts = 1_700_000_000_000
    rows = []
    for i in range(count):
        close = start + i * drift
        rows.append([base_ts + i * 60_000, close, close + spread, close - spread, close, 10.0 + i])
    return rows


def test_candles_to_frame_and_order_check() -> None:
    df = ind.candles_to_frame(_rows(5))
    assert list(df.columns) == ind.OHLCV_COLUMNS
    assert ind.is_time_ascending(df)

    shuffled = ind.candles_to_frame(list(reversed(_rows(5))))
    assert not ind.is_time_ascending(shuffled)

    duplicated = ind.candles_to_frame(_rows(3) + _rows(3)[-1:])
    assert not ind.is_time_ascending(duplicated)


def test_ema_of_constant_series_is_constant() -> None:
    close = pd.Series([50.0] * 40)
    values = ind.ema(close, 20)
    assert math.isnan(values.iloc[0])
    assert abs(values.iloc[-1] - 50.0) < 1e-9


def test_rsi_is_100_without_losses() -> None:
    close = pd.Series([float(i) for i in range(1, 40)])
    assert ind.last_value(ind.rsi(close, 14)) == 100.0


def test_atr_of_constant_range() -> None:
    df = ind.candles_to_frame(_rows(40, drift=0.0, spread=2.0))
    assert abs(ind.last_value(ind.atr(df, 14)) - 4.0) < 1e-9


def test_macd_is_positive_in_uptrend() -> None:
    close = pd.Series([100.0 + i * 2 for i in range(60)])
    line, signal, hist = ind.macd(close)
    assert ind.last_value(line) > 0
    assert ind.last_value(signal) > 0
    assert len(hist) == 60


def test_bollinger_collapses_on_flat_prices() -> None:
    close = pd.Series([10.0] * 25)
    upper, middle, lower = ind.bollinger(close)
    for band in (upper, middle, lower):
        assert abs(ind.last_value(band) - 10.0) < 1e-9


def test_stochastic_and_adx_are_bounded() -> None:
    df = ind.candles_to_frame(_rows(60))
    k, d = ind.stochastic(df)
    adx_line, plus_di, minus_di = ind.adx(df)
    for series in (k, d, adx_line, plus_di, minus_di):
        value = ind.last_value(series)
        assert -1e-9 <= value <= 100.0 + 1e-9
    assert ind.last_value(plus_di) > ind.last_value(minus_di)


def test_tail_values_replace_missing_with_zero() -> None:
    series = pd.Series([float("nan"), 1.0, float("inf"), 3.0])
    assert ind.tail_values(series, 3) == [1.0, 0.0, 3.0]
    assert ind.tail_values(series, 10) == [0.0, 1.0, 0.0, 3.0]
    assert ind.last_value(pd.Series([], dtype=float)) == 0.0
