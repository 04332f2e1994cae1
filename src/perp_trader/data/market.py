"""Market snapshot builder: candles, auxiliary metrics and indicators per symbol."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable
from typing import TypeVar

import pandas as pd  # type: ignore[import-untyped]

from perp_trader.config import Settings
from perp_trader.errors import DataFetchError
from perp_trader.features import indicators as ind
from perp_trader.symbols import BaseSymbol, to_base_symbol, to_market_symbol
from perp_trader.types import IntradaySeries, LongerTermContext, MarketState, OpenInterest
from perp_trader.utils.logging import get_logger
from perp_trader.venue.base import Venue

T = TypeVar("T")

# slow EMA (26) plus signal line (9) for MACD
MIN_CANDLES = 35
_ATR_PERIOD = 14
_ATR_CANDLES = 20
_OI_WINDOW = 30


class MarketSnapshotBuilder:
    """Build ``MarketState`` values from venue candles."""

    def __init__(self, venue: Venue, settings: Settings) -> None:
        self._venue = venue
        self._settings = settings
        self._oi_history: dict[BaseSymbol, deque[float]] = {}
        self._logger = get_logger("perp_trader.data.market")

    async def get_market_state(self, symbol: str) -> MarketState:
        """Fetch candles and compute the snapshot for one symbol.

        Raises ``DataFetchError`` when candles are unavailable or too short.
        Open interest and funding rate degrade to zero.
        """
        base = to_base_symbol(symbol, self._settings.quote_currency)
        market = to_market_symbol(base, self._settings.quote_currency)
        limit = self._settings.candle_limit

        intraday_rows, longer_rows = await asyncio.gather(
            self._guard(
                self._venue.fetch_ohlcv(market, self._settings.intraday_interval, limit=limit),
                f"intraday_ohlcv:{base}",
            ),
            self._guard(
                self._venue.fetch_ohlcv(market, self._settings.longer_term_interval, limit=limit),
                f"longer_term_ohlcv:{base}",
            ),
        )
        intraday_df = self._validated_frame(intraday_rows, base, self._settings.intraday_interval)
        longer_df = self._validated_frame(longer_rows, base, self._settings.longer_term_interval)

        open_interest_latest, funding_rate = await asyncio.gather(
            self._auxiliary(self._venue.fetch_open_interest(market), "open_interest", base),
            self._auxiliary(self._venue.fetch_funding_rate(market), "funding_rate", base),
        )
        open_interest = self._record_open_interest(base, open_interest_latest)

        return _build_state(
            base,
            intraday_df,
            longer_df,
            open_interest=open_interest,
            funding_rate=funding_rate,
            length=self._settings.series_length,
        )

    async def get_all_market_states(self, symbols: list[str]) -> dict[BaseSymbol, MarketState]:
        """Fetch every symbol concurrently; failed symbols are logged and omitted."""
        results = await asyncio.gather(
            *(self.get_market_state(symbol) for symbol in symbols),
            return_exceptions=True,
        )
        states: dict[BaseSymbol, MarketState] = {}
        for symbol, result in zip(symbols, results):
            if isinstance(result, MarketState):
                states[result.symbol] = result
                continue
            if not isinstance(result, Exception):
                raise result
            self._logger.warning(
                "market_state_failed",
                symbol=symbol,
                error=str(result),
                error_type=type(result).__name__,
            )
        return states

    async def get_current_atr(self, symbol: str, period: int = _ATR_PERIOD) -> float:
        """ATR on ``atr_interval`` candles, used as the execution volatility proxy."""
        base = to_base_symbol(symbol, self._settings.quote_currency)
        market = to_market_symbol(base, self._settings.quote_currency)
        rows = await self._guard(
            self._venue.fetch_ohlcv(
                market, self._settings.atr_interval, limit=max(_ATR_CANDLES, period + 1)
            ),
            f"atr_ohlcv:{base}",
        )
        df = ind.candles_to_frame(rows)
        if len(df) < period + 1:
            raise DataFetchError(f"insufficient_atr_history: {base} rows={len(df)}")
        value = ind.last_value(ind.atr(df, period))
        if value <= 0:
            raise DataFetchError(f"atr_non_positive: {base}")
        return value

    async def _guard(self, call: Awaitable[T], what: str) -> T:
        try:
            return await asyncio.wait_for(call, self._settings.venue_timeout)
        except asyncio.TimeoutError as exc:
            raise DataFetchError(f"timeout: {what}") from exc

    async def _auxiliary(self, call: Awaitable[float], what: str, base: BaseSymbol) -> float:
        try:
            value = await asyncio.wait_for(call, self._settings.venue_timeout)
            return float(value)
        except Exception as exc:  # noqa: BLE001 - auxiliary metrics degrade to defaults.
            self._logger.warning(f"{what}_fetch_failed", symbol=base, error=str(exc))
            return 0.0

    def _validated_frame(self, rows: list[list[float]], base: BaseSymbol, interval: str) -> pd.DataFrame:
        if not rows:
            raise DataFetchError(f"empty_ohlcv_response: {base} {interval}")
        df = ind.candles_to_frame(rows)
        if len(df) < MIN_CANDLES:
            raise DataFetchError(
                f"insufficient_candle_history: {base} {interval} rows={len(df)} min={MIN_CANDLES}"
            )
        if not ind.is_time_ascending(df):
            raise DataFetchError(f"ohlcv_timestamp_not_ascending: {base} {interval}")
        return df

    def _record_open_interest(self, base: BaseSymbol, latest: float) -> OpenInterest:
        history = self._oi_history.setdefault(base, deque(maxlen=_OI_WINDOW))
        if latest > 0:
            history.append(latest)
        average = sum(history) / len(history) if history else latest
        return OpenInterest(latest=latest, average=average)


def _build_state(
    base: BaseSymbol,
    intraday_df: pd.DataFrame,
    longer_df: pd.DataFrame,
    *,
    open_interest: OpenInterest,
    funding_rate: float,
    length: int,
) -> MarketState:
    close = intraday_df["close"]
    ema20 = ind.ema(close, 20)
    macd_line, _, _ = ind.macd(close)
    rsi7 = ind.rsi(close, 7)
    rsi14 = ind.rsi(close, 14)
    bb_upper, bb_middle, bb_lower = ind.bollinger(close)
    stoch_k, stoch_d = ind.stochastic(intraday_df)
    adx_line, plus_di, minus_di = ind.adx(intraday_df)

    intraday = IntradaySeries(
        mid_prices=ind.tail_values(close, length),
        ema_20=ind.tail_values(ema20, length),
        macd=ind.tail_values(macd_line, length),
        rsi_7=ind.tail_values(rsi7, length),
        rsi_14=ind.tail_values(rsi14, length),
        bollinger_upper=ind.tail_values(bb_upper, length),
        bollinger_middle=ind.tail_values(bb_middle, length),
        bollinger_lower=ind.tail_values(bb_lower, length),
        stochastic_k=ind.tail_values(stoch_k, length),
        stochastic_d=ind.tail_values(stoch_d, length),
        adx=ind.tail_values(adx_line, length),
        plus_di=ind.tail_values(plus_di, length),
        minus_di=ind.tail_values(minus_di, length),
    )

    long_close = longer_df["close"]
    long_macd, _, _ = ind.macd(long_close)
    long_bb_upper, long_bb_middle, long_bb_lower = ind.bollinger(long_close)
    long_k, long_d = ind.stochastic(longer_df)
    long_adx, _, _ = ind.adx(longer_df)
    volume = longer_df["volume"]

    longer_term = LongerTermContext(
        ema_20=ind.last_value(ind.ema(long_close, 20)),
        ema_50=ind.last_value(ind.ema(long_close, 50)),
        atr_3=ind.last_value(ind.atr(longer_df, 3)),
        atr_14=ind.last_value(ind.atr(longer_df, 14)),
        current_volume=ind.last_value(volume),
        average_volume=float(volume.mean()) if not volume.empty else 0.0,
        macd=ind.tail_values(long_macd, length),
        rsi_14=ind.tail_values(ind.rsi(long_close, 14), length),
        bollinger_upper=ind.tail_values(long_bb_upper, length),
        bollinger_middle=ind.tail_values(long_bb_middle, length),
        bollinger_lower=ind.tail_values(long_bb_lower, length),
        stochastic_k=ind.tail_values(long_k, length),
        stochastic_d=ind.tail_values(long_d, length),
        adx=ind.tail_values(long_adx, length),
    )

    return MarketState(
        symbol=base,
        current_price=ind.last_value(close),
        current_ema20=ind.last_value(ema20),
        current_macd=ind.last_value(macd_line),
        current_rsi=ind.last_value(rsi7),
        open_interest=open_interest,
        funding_rate=funding_rate,
        intraday=intraday,
        longer_term=longer_term,
        current_bollinger_upper=ind.last_value(bb_upper),
        current_bollinger_middle=ind.last_value(bb_middle),
        current_bollinger_lower=ind.last_value(bb_lower),
        current_stochastic_k=ind.last_value(stoch_k),
        current_stochastic_d=ind.last_value(stoch_d),
        current_adx=ind.last_value(adx_line),
        current_plus_di=ind.last_value(plus_di),
        current_minus_di=ind.last_value(minus_di),
    )
