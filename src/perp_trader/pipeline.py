"""Decision cycle pipeline: snapshots, oracle, execution and journaling."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from time import perf_counter

from perp_trader.ai.openrouter_client import OpenRouterClient
from perp_trader.ai.oracle import DecisionOracle, DecisionOracleAdapter
from perp_trader.ai.schemas import Decision, DecisionBatch
from perp_trader.config import OracleMode, Settings
from perp_trader.data.account import AccountSnapshotBuilder
from perp_trader.data.market import MarketSnapshotBuilder
from perp_trader.errors import OracleResponseInvalid, TradingError
from perp_trader.exec.service import ExecutionService
from perp_trader.journal.store import JournalStore
from perp_trader.risk.ledger import PositionRiskLedger
from perp_trader.risk.rules import RiskEngine
from perp_trader.symbols import BaseSymbol, to_base_symbol
from perp_trader.types import (
    AccountSnapshot,
    CycleResult,
    ExecutionResult,
    MarketState,
    TradeRecord,
    operation_for_signal,
)
from perp_trader.utils.logging import get_logger
from perp_trader.venue.base import Venue
from perp_trader.venue.binance import BinanceFuturesVenue
from perp_trader.venue.paper import PaperVenue

_PAPER_STATE_FILE = "paper_state.json"


class TradingAgent:
    """Owns one instance of every component for the lifetime of the process."""

    def __init__(
        self,
        settings: Settings,
        venue: Venue,
        oracle: DecisionOracle,
        journal: JournalStore,
    ) -> None:
        self._settings = settings
        self._venue = venue
        self._journal = journal
        self._market = MarketSnapshotBuilder(venue, settings)
        self._account = AccountSnapshotBuilder(venue, journal, settings)
        self._oracle = DecisionOracleAdapter(oracle, settings, journal)
        self._risk = RiskEngine(settings)
        self._execution = ExecutionService(
            venue,
            settings,
            risk_engine=self._risk,
            market=self._market,
        )
        self._logger = get_logger("perp_trader.pipeline")

    @property
    def venue(self) -> Venue:
        return self._venue

    @property
    def ledger(self) -> PositionRiskLedger:
        return self._risk.ledger

    @property
    def execution(self) -> ExecutionService:
        return self._execution

    async def account_snapshot(self) -> AccountSnapshot:
        return await self._account.get_account_information_and_performance()

    async def run_decision_cycle(self, dry_run: bool = False) -> CycleResult:
        """Run one full decision cycle."""
        started = perf_counter()
        cycle_result = CycleResult(status="unknown")
        symbols = list(self._settings.symbols)

        self._journal.append(
            "cycle_start",
            {
                "symbols": symbols,
                "mode": self._settings.mode.value,
                "oracle_mode": self._settings.oracle_mode.value,
                "dry_run": dry_run,
                "started_at": datetime.now(timezone.utc).isoformat(),
            },
        )

        try:
            market_states, account = await asyncio.gather(
                self._market.get_all_market_states(symbols),
                self._account.get_account_information_and_performance(),
            )
            quote = self._settings.quote_currency
            missing = [
                symbol for symbol in symbols if to_base_symbol(symbol, quote) not in market_states
            ]
            if missing:
                cycle_result.warnings.append(f"market_data_missing: {', '.join(missing)}")
            self._journal.append(
                "market_data",
                {
                    "symbols": sorted(market_states),
                    "missing": missing,
                    "prices": {
                        symbol: state.current_price for symbol, state in market_states.items()
                    },
                },
            )
            self._journal.append(
                "account_snapshot",
                {
                    "available_cash": account.available_cash,
                    "account_value": account.current_account_value,
                    "total_return": account.current_total_return,
                    "sharpe_ratio": account.sharpe_ratio,
                    "positions": [position.symbol for position in account.positions],
                },
            )
            self._risk.ledger.reconcile(account.positions, account.current_account_value)

            if not market_states:
                return _finish_cycle(cycle_result, self._journal, started, status="no_market_data")

            batches = await self._collect_decisions(market_states, account, cycle_result)
            if not batches:
                return _finish_cycle(cycle_result, self._journal, started, status="oracle_failed")

            available = account.available_cash
            for batch in batches:
                trades: list[TradeRecord] = []
                for decision in batch.decisions:
                    cycle_result.decisions.append(decision.model_dump())
                    self._journal.append("ai_decision", decision.model_dump())
                    if dry_run:
                        cycle_result.orders.append(_dry_run_order(decision))
                        continue

                    result = await self._execute(decision, available, account.current_account_value)
                    cycle_result.executions.append(result)
                    cycle_result.warnings.extend(
                        f"{result.symbol}: {warning}" for warning in result.warnings
                    )
                    self._journal.append("execution", _execution_payload(result))
                    if result.execution is not None and result.execution.order_id is not None:
                        cycle_result.orders.append(_order_payload(result))
                    trades.append(_trade_record(decision, result))

                    if self._settings.refresh_capital_between_decisions:
                        available = await self._refresh_capital(available)

                for trade in trades:
                    self._journal.append_trade(trade)
                self._journal.append_chat(
                    reasoning=batch.reasoning,
                    justification=batch.justification,
                    user_prompt=batch.user_prompt,
                    trades=trades,
                )

            if dry_run:
                status = "completed_dry_run"
            elif any(not result.success for result in cycle_result.executions):
                status = "completed_with_errors"
            else:
                status = "completed"
            return _finish_cycle(cycle_result, self._journal, started, status=status)

        except Exception as exc:  # noqa: BLE001 - top-level guard for loop resilience.
            self._logger.exception("pipeline_failed", error=str(exc))
            self._journal.append("error", {"error": str(exc), "error_type": type(exc).__name__})
            return _finish_cycle(cycle_result, self._journal, started, status="failed")

    async def run_metrics_snapshot(self) -> AccountSnapshot:
        """Append one account snapshot to the rolling metrics series."""
        snapshot = await self._account.get_account_information_and_performance()
        stored = self._journal.append_metrics(snapshot)
        self._journal.append(
            "metrics_snapshot",
            {
                "account_value": snapshot.current_account_value,
                "total_return": snapshot.current_total_return,
                "sharpe_ratio": snapshot.sharpe_ratio,
                "stored_points": stored,
            },
        )
        self._logger.info(
            "metrics_snapshot_saved",
            account_value=round(snapshot.current_account_value, 2),
            stored_points=stored,
        )
        return snapshot

    async def close(self) -> None:
        await self._venue.close()

    async def _collect_decisions(
        self,
        market_states: dict[BaseSymbol, MarketState],
        account: AccountSnapshot,
        cycle_result: CycleResult,
    ) -> list[DecisionBatch]:
        if self._settings.oracle_mode == OracleMode.MULTI:
            try:
                return [await self._oracle.decide(market_states, account)]
            except OracleResponseInvalid as exc:
                self._record_oracle_failure(None, exc, cycle_result)
                return []

        symbols = list(market_states)
        results = await asyncio.gather(
            *(self._oracle.decide_for_symbol(symbol, market_states, account) for symbol in symbols),
            return_exceptions=True,
        )
        batches: list[DecisionBatch] = []
        for symbol, result in zip(symbols, results):
            if isinstance(result, DecisionBatch):
                batches.append(result)
                continue
            if not isinstance(result, Exception):
                raise result
            self._record_oracle_failure(symbol, result, cycle_result)
        return batches

    def _record_oracle_failure(
        self,
        symbol: str | None,
        exc: Exception,
        cycle_result: CycleResult,
    ) -> None:
        self._logger.warning("oracle_failed", symbol=symbol, error=str(exc))
        self._journal.append(
            "error",
            {"stage": "oracle", "symbol": symbol, "error": str(exc), "error_type": type(exc).__name__},
        )
        cycle_result.warnings.append(
            f"oracle_failed: {exc}" if symbol is None else f"{symbol}: oracle_failed: {exc}"
        )

    async def _execute(
        self,
        decision: Decision,
        available_capital: float,
        portfolio_value: float,
    ) -> ExecutionResult:
        try:
            return await self._execution.execute_decision(
                decision,
                available_capital,
                portfolio_value=portfolio_value,
            )
        except Exception as exc:  # noqa: BLE001 - one symbol must not abort the others.
            self._logger.exception("execution_crashed", symbol=decision.coin, error=str(exc))
            return ExecutionResult(
                success=False,
                symbol=BaseSymbol(decision.coin),
                signal=decision.signal,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def _refresh_capital(self, current: float) -> float:
        try:
            balances = await asyncio.wait_for(
                self._venue.fetch_balance(), self._settings.venue_timeout
            )
        except asyncio.TimeoutError:
            self._logger.warning("capital_refresh_failed", error="venue_call_timeout")
            return current
        except TradingError as exc:
            self._logger.warning("capital_refresh_failed", error=str(exc))
            return current
        entry = balances.get(self._settings.quote_currency)
        return entry.free if entry is not None else current


async def build_agent(settings: Settings) -> TradingAgent:
    """Create the venue for the configured mode and wire up the agent."""
    journal = JournalStore(settings.journal_dir, metrics_max_points=settings.metrics_max_points)
    if settings.is_live_mode:
        venue: Venue = await BinanceFuturesVenue.create(settings)
    else:
        venue = PaperVenue(
            settings.paper_initial_balance,
            quote_currency=settings.quote_currency,
            state_file=settings.journal_dir / _PAPER_STATE_FILE,
            market=await BinanceFuturesVenue.create(settings),
        )
    return TradingAgent(settings, venue, OpenRouterClient(settings), journal)


def _trade_record(decision: Decision, result: ExecutionResult) -> TradeRecord:
    executed = result.execution.executed_quantity if result.execution else None
    return TradeRecord(
        symbol=result.symbol,
        operation=operation_for_signal(decision.signal),
        leverage=decision.leverage,
        quantity=executed if executed is not None else (decision.quantity or 0.0),
        stop_loss=decision.stop_loss,
        take_profit=decision.profit_target,
        invalidation_condition=decision.invalidation_condition,
        confidence=decision.confidence,
        risk_usd=decision.risk_usd,
        justification=decision.justification,
        success=result.success,
        error=result.error,
    )


def _execution_payload(result: ExecutionResult) -> dict[str, object]:
    execution = result.execution
    return {
        "symbol": result.symbol,
        "signal": result.signal,
        "success": result.success,
        "type": execution.type if execution else None,
        "order_id": execution.order_id if execution else None,
        "executed_price": execution.executed_price if execution else None,
        "executed_quantity": execution.executed_quantity if execution else None,
        "error": result.error,
        "error_type": result.error_type,
        "warnings": result.warnings,
    }


def _order_payload(result: ExecutionResult) -> dict[str, object]:
    execution = result.execution
    assert execution is not None
    return {
        "action": execution.type,
        "symbol": result.symbol,
        "order_id": execution.order_id,
        "qty": execution.executed_quantity,
        "price": execution.executed_price,
        "stop_loss_order_id": execution.stop_loss_order_id,
        "take_profit_order_id": execution.take_profit_order_id,
        "timestamp": result.timestamp,
    }


def _dry_run_order(decision: Decision) -> dict[str, object]:
    return {
        "action": operation_for_signal(decision.signal),
        "symbol": decision.coin,
        "qty": decision.quantity,
        "cost": decision.cost,
        "leverage": decision.leverage,
        "stop_loss": decision.stop_loss,
        "take_profit": decision.profit_target,
        "status": "dry_run",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def _finish_cycle(
    result: CycleResult,
    journal: JournalStore,
    started: float,
    *,
    status: str,
) -> CycleResult:
    elapsed_ms = (perf_counter() - started) * 1000
    result.status = status
    result.elapsed_ms = elapsed_ms
    journal.append("cycle_end", {"status": status, "elapsed_ms": elapsed_ms})
    return result
