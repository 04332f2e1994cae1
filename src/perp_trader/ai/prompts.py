"""Prompt construction for the decision oracle."""

from __future__ import annotations

from datetime import datetime, timezone

from perp_trader.config import OracleMode, Settings
from perp_trader.data.account import format_account_performance
from perp_trader.symbols import BaseSymbol
from perp_trader.types import AccountSnapshot, MarketState

_SYSTEM_TEMPLATE = """\
# ROLE
You are an autonomous trading agent for USDT-margined perpetual futures on Binance.
Goal: maximize risk-adjusted PnL with systematic, disciplined decisions.

# ENVIRONMENT
- Universe: {universe}
- Starting capital: ${initial_capital:,.0f}
- Leverage range: 1x to {max_leverage}x
- Funding: positive rate means longs pay shorts, negative means shorts pay longs.

# ACTIONS
Exactly one of four signals per coin:
1. buy_to_enter: open a LONG position.
2. sell_to_enter: open a SHORT position.
3. hold: keep the current state; you may restate profit_target and stop_loss to move
   the standing protective orders.
4. close: exit the whole existing position.
Constraints: one position per coin, no adding to a position, no long and short on the
same coin, no partial exits.

# SIZING
Position size (USD) = available cash x allocation (0-1) x leverage
Quantity (coins) = position size (USD) / current price
Only available cash may be allocated, never total account value.
Liquidation rule: |entry - liquidation| / entry >= max(3 x |entry - stop_loss| / entry, 0.03).
Without an exact liquidation price, approximate the distance as 1 / leverage and cap
leverage so the rule holds.

# EXIT PLAN (MANDATORY FOR ENTRIES)
- profit_target: price level to take profit, at least 2:1 reward to risk.
- stop_loss: price level to cut the loss, below entry for longs, above for shorts.
- invalidation_condition: objective market signal that voids the thesis.
- confidence: 0-1 conviction; low confidence trades are sized down.
- risk_usd: dollars lost if the stop is hit.

# DATA
All series are ordered OLDEST to NEWEST; the last element is the most recent value.
Intraday series use {intraday_interval} candles, context series use {longer_interval} candles.

# OUTPUT
{output_rules}
"""

_MULTI_RULES = """\
Return one JSON object: {{"decisions": [...], "justification": "..."}}.
- Exactly {count} decisions, one for each of {universe}.
- Each decision has signal, coin, quantity or cost, leverage, profit_target, stop_loss,
  invalidation_condition, confidence, risk_usd, justification.
- Size entries with quantity (coin units) or cost (margin in USD, quantity = cost * leverage / price).
- For hold use quantity=0 and leverage=1.
- justification: one combined analysis of all coins, at most 2000 characters."""

_SINGLE_RULES = """\
Return one JSON object with signal, coin, quantity or cost, leverage, profit_target, stop_loss,
invalidation_condition, confidence, risk_usd and justification (at most 2000 characters).
Size entries with quantity (coin units) or cost (margin in USD, quantity = cost * leverage / price).
For hold use quantity=0 and leverage=1."""


def build_system_prompt(settings: Settings) -> str:
    universe = ", ".join(settings.symbols)
    if settings.oracle_mode == OracleMode.MULTI:
        rules = _MULTI_RULES.format(count=len(settings.symbols), universe=universe)
    else:
        rules = _SINGLE_RULES
    return _SYSTEM_TEMPLATE.format(
        universe=universe,
        initial_capital=settings.initial_capital,
        max_leverage=settings.max_leverage,
        intraday_interval=settings.intraday_interval,
        longer_interval=settings.longer_term_interval,
        output_rules=rules,
    )


def build_user_prompt(
    market_states: dict[BaseSymbol, MarketState],
    account: AccountSnapshot,
    *,
    settings: Settings,
    first_chat_time: datetime | None,
    invocation_count: int,
    now: datetime | None = None,
) -> str:
    """Render the per-cycle user prompt: clock, per-coin market sections, account."""
    now = now or datetime.now(timezone.utc)
    minutes_elapsed = 0
    if first_chat_time is not None:
        minutes_elapsed = max(0, int((now - first_chat_time).total_seconds() // 60))

    sections = [
        f"It has been {minutes_elapsed} minutes since you started trading. "
        f"The current time is {now.isoformat()} and you have been invoked "
        f"{invocation_count} times.",
        "ALL PRICE AND SIGNAL DATA BELOW IS ORDERED: OLDEST -> NEWEST.",
        "## CURRENT MARKET STATE FOR ALL COINS",
    ]
    for symbol in settings.symbols:
        state = market_states.get(BaseSymbol(symbol))
        if state is None:
            sections.append(f"### {symbol}\nMarket data unavailable this cycle.")
            continue
        sections.append(format_market_state(state, settings))

    sections.append("## ACCOUNT INFORMATION & PERFORMANCE")
    sections.append(format_account_performance(account))
    return "\n\n".join(sections)


def format_market_state(state: MarketState, settings: Settings) -> str:
    intraday = state.intraday
    longer = state.longer_term
    lines = [
        f"### ALL {state.symbol} DATA",
        f"current_price = {state.current_price}, current_ema20 = {_num(state.current_ema20)}, "
        f"current_macd = {_num(state.current_macd)}, current_rsi (7 period) = {_num(state.current_rsi)}",
        f"current_bollinger = upper {_num(state.current_bollinger_upper)}, "
        f"middle {_num(state.current_bollinger_middle)}, lower {_num(state.current_bollinger_lower)}",
        f"current_stochastic = %K {_num(state.current_stochastic_k)}, %D {_num(state.current_stochastic_d)}",
        f"current_adx = {_num(state.current_adx)} (+DI {_num(state.current_plus_di)}, "
        f"-DI {_num(state.current_minus_di)})",
        f"Open Interest: Latest: {_num(state.open_interest.latest)} "
        f"Average: {_num(state.open_interest.average)}",
        f"Funding Rate: {state.funding_rate:.6g}",
        f"Intraday series ({settings.intraday_interval} intervals, oldest -> latest):",
        f"Mid prices: {_series(intraday.mid_prices)}",
        f"EMA indicators (20-period): {_series(intraday.ema_20)}",
        f"MACD indicators: {_series(intraday.macd)}",
        f"RSI indicators (7-Period): {_series(intraday.rsi_7)}",
        f"RSI indicators (14-Period): {_series(intraday.rsi_14)}",
        f"Bollinger upper: {_series(intraday.bollinger_upper)}",
        f"Bollinger lower: {_series(intraday.bollinger_lower)}",
        f"Stochastic %K: {_series(intraday.stochastic_k)}",
        f"Stochastic %D: {_series(intraday.stochastic_d)}",
        f"ADX: {_series(intraday.adx)}",
        f"Longer-term context ({settings.longer_term_interval} timeframe):",
        f"20-Period EMA: {_num(longer.ema_20)} vs. 50-Period EMA: {_num(longer.ema_50)}",
        f"3-Period ATR: {_num(longer.atr_3)} vs. 14-Period ATR: {_num(longer.atr_14)}",
        f"Current Volume: {_num(longer.current_volume)} vs. Average Volume: {_num(longer.average_volume)}",
        f"MACD indicators: {_series(longer.macd)}",
        f"RSI indicators (14-Period): {_series(longer.rsi_14)}",
        f"Bollinger upper: {_series(longer.bollinger_upper)}",
        f"Bollinger lower: {_series(longer.bollinger_lower)}",
        f"Stochastic %K: {_series(longer.stochastic_k)}",
        f"ADX: {_series(longer.adx)}",
    ]
    return "\n".join(lines)


def _num(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.4f}".rstrip("0").rstrip(".") if value != 0 else "0"


def _series(values: list[float]) -> str:
    return "[" + ", ".join(_num(value) for value in values) + "]"
