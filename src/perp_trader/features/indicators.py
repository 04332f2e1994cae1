"""Indicator computation on OHLCV frames."""

from __future__ import annotations

import math

import pandas as pd  # type: ignore[import-untyped]

OHLCV_COLUMNS = ["open_time", "open", "high", "low", "close", "volume"]


def candles_to_frame(rows: list[list[float]]) -> pd.DataFrame:
    """Build a normalized dataframe from ``[ts, open, high, low, close, volume]`` rows."""
    df = pd.DataFrame([row[:6] for row in rows], columns=OHLCV_COLUMNS)
    numeric_cols = ["open", "high", "low", "close", "volume"]
    for col in numeric_cols:
        df[col] = pd.to_numeric(df[col], errors="coerce")
    df["open_time"] = pd.to_datetime(df["open_time"], unit="ms", utc=True)
    return df.dropna(subset=numeric_cols).reset_index(drop=True)


def is_time_ascending(df: pd.DataFrame) -> bool:
    open_time = df.get("open_time")
    if open_time is None:
        return False
    series = pd.Series(open_time)
    return bool(series.is_monotonic_increasing and series.is_unique)


def ema(series: pd.Series, period: int) -> pd.Series:
    return series.ewm(span=period, adjust=False, min_periods=period).mean()


def macd(
    close: pd.Series,
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> tuple[pd.Series, pd.Series, pd.Series]:
    """Return the MACD line, its signal line and the histogram."""
    macd_line = ema(close, fast) - ema(close, slow)
    signal_line = macd_line.ewm(span=signal, adjust=False, min_periods=signal).mean()
    return macd_line, signal_line, macd_line - signal_line


def rsi(close: pd.Series, period: int = 14) -> pd.Series:
    """Wilder RSI."""
    delta = close.diff()
    gain = delta.clip(lower=0.0)
    loss = -delta.clip(upper=0.0)
    avg_gain = gain.ewm(alpha=1 / period, adjust=False, min_periods=period).mean()
    avg_loss = loss.ewm(alpha=1 / period, adjust=False, min_periods=period).mean()
    rs = avg_gain / avg_loss
    values = 100 - 100 / (1 + rs)
    # no losses in the window means RSI 100
    return values.where(avg_loss != 0, 100.0).where(avg_gain.notna())


def true_range(df: pd.DataFrame) -> pd.Series:
    high = df["high"].astype(float)
    low = df["low"].astype(float)
    close = df["close"].astype(float)
    prev_close = close.shift(1)
    tr_components = pd.concat(
        [
            (high - low).abs(),
            (high - prev_close).abs(),
            (low - prev_close).abs(),
        ],
        axis=1,
    )
    return tr_components.max(axis=1)


def atr(df: pd.DataFrame, period: int = 14) -> pd.Series:
    """Wilder-smoothed average true range."""
    return true_range(df).ewm(alpha=1 / period, adjust=False, min_periods=period).mean()


def bollinger(
    close: pd.Series,
    period: int = 20,
    num_std: float = 2.0,
) -> tuple[pd.Series, pd.Series, pd.Series]:
    """Return upper, middle and lower bands."""
    middle = close.rolling(window=period, min_periods=period).mean()
    std = close.rolling(window=period, min_periods=period).std(ddof=0)
    return middle + num_std * std, middle, middle - num_std * std


def stochastic(
    df: pd.DataFrame,
    period: int = 14,
    signal_period: int = 3,
) -> tuple[pd.Series, pd.Series]:
    """Return %K and %D."""
    lowest = df["low"].rolling(window=period, min_periods=period).min()
    highest = df["high"].rolling(window=period, min_periods=period).max()
    span = (highest - lowest).where(lambda s: s != 0)
    k = 100 * (df["close"] - lowest) / span
    d = k.rolling(window=signal_period, min_periods=signal_period).mean()
    return k, d


def adx(df: pd.DataFrame, period: int = 14) -> tuple[pd.Series, pd.Series, pd.Series]:
    """Return ADX, +DI and -DI."""
    high = df["high"].astype(float)
    low = df["low"].astype(float)
    up_move = high.diff()
    down_move = -low.diff()
    plus_dm = up_move.where((up_move > down_move) & (up_move > 0), 0.0)
    minus_dm = down_move.where((down_move > up_move) & (down_move > 0), 0.0)

    smoothed_tr = true_range(df).ewm(alpha=1 / period, adjust=False, min_periods=period).mean()
    smoothed_tr = smoothed_tr.where(smoothed_tr != 0)
    plus_di = 100 * plus_dm.ewm(alpha=1 / period, adjust=False, min_periods=period).mean() / smoothed_tr
    minus_di = 100 * minus_dm.ewm(alpha=1 / period, adjust=False, min_periods=period).mean() / smoothed_tr

    di_sum = (plus_di + minus_di).where(lambda s: s != 0)
    dx = 100 * (plus_di - minus_di).abs() / di_sum
    adx_line = dx.ewm(alpha=1 / period, adjust=False, min_periods=period).mean()
    return adx_line, plus_di, minus_di


def tail_values(series: pd.Series, length: int) -> list[float]:
    """Last ``length`` values oldest first; missing or non-finite values become 0."""
    return [_finite_or_zero(value) for value in series.iloc[-length:].tolist()]


def last_value(series: pd.Series) -> float:
    if series.empty:
        return 0.0
    return _finite_or_zero(series.iloc[-1])


def _finite_or_zero(value: object) -> float:
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0
