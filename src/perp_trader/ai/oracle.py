"""Decision oracle adapter: prompts in, validated decisions out."""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

from perp_trader.ai.openrouter_client import OpenRouterError, OracleReply
from perp_trader.ai.prompts import build_system_prompt, build_user_prompt
from perp_trader.ai.schemas import DecisionBatch, decision_json_schema
from perp_trader.config import Settings
from perp_trader.errors import OracleResponseInvalid
from perp_trader.journal.store import JournalStore
from perp_trader.symbols import BaseSymbol, to_base_symbol
from perp_trader.types import AccountSnapshot, MarketState
from perp_trader.utils.logging import get_logger, log_decision

# three attempts with exponential backoff between them
_ATTEMPTS = 3
_BACKOFF_BUDGET_SEC = 15


class DecisionOracle(Protocol):
    async def generate_decision(
        self,
        system_prompt: str,
        user_prompt: str,
        schema: dict[str, Any],
    ) -> OracleReply: ...


class DecisionOracleAdapter:
    """Package snapshots into prompts, call the oracle and validate its answer."""

    def __init__(
        self,
        oracle: DecisionOracle,
        settings: Settings,
        journal: JournalStore | None = None,
    ) -> None:
        self._oracle = oracle
        self._settings = settings
        self._journal = journal
        self._timeout = settings.openrouter_timeout * _ATTEMPTS + _BACKOFF_BUDGET_SEC
        self._logger = get_logger("perp_trader.ai.oracle")

    async def decide(
        self,
        market_states: dict[BaseSymbol, MarketState],
        account: AccountSnapshot,
    ) -> DecisionBatch:
        """One call returning exactly one decision per configured symbol."""
        symbols = list(self._settings.symbols)
        user_prompt = self._user_prompt(market_states, account)
        return await self._ask(symbols, user_prompt, "multi")

    async def decide_for_symbol(
        self,
        symbol: str,
        market_states: dict[BaseSymbol, MarketState],
        account: AccountSnapshot,
    ) -> DecisionBatch:
        """One call for one symbol; the single decision is wrapped in a batch."""
        base = to_base_symbol(symbol, self._settings.quote_currency)
        user_prompt = (
            self._user_prompt(market_states, account)
            + f"\n\nDecide for {base} only and return a single decision object."
        )
        return await self._ask([str(base)], user_prompt, "single")

    async def _ask(self, symbols: list[str], user_prompt: str, mode: str) -> DecisionBatch:
        system_prompt = build_system_prompt(self._settings)
        schema = decision_json_schema(symbols, "single" if mode == "single" else "multi")
        try:
            reply = await asyncio.wait_for(
                self._oracle.generate_decision(system_prompt, user_prompt, schema),
                self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise OracleResponseInvalid("oracle_call_timeout") from exc
        except OpenRouterError as exc:
            raise OracleResponseInvalid(f"oracle_call_failed: {exc}") from exc

        try:
            batch = DecisionBatch.parse_response_text(
                reply.content,
                symbols,
                "single" if mode == "single" else "multi",
            )
        except OracleResponseInvalid as exc:
            self._logger.warning(
                "oracle_response_invalid",
                symbols=symbols,
                error=str(exc),
                content_preview=reply.content[:500],
            )
            raise

        batch.reasoning = reply.reasoning
        batch.user_prompt = user_prompt
        for decision in batch.decisions:
            log_decision(
                self._logger,
                symbol=decision.coin,
                signal=decision.signal,
                confidence=decision.confidence,
                quantity=decision.quantity,
                leverage=decision.leverage,
            )
        return batch

    def _user_prompt(
        self,
        market_states: dict[BaseSymbol, MarketState],
        account: AccountSnapshot,
    ) -> str:
        first_chat = self._journal.first_chat_time() if self._journal else None
        invocations = self._journal.count_chats() if self._journal else 0
        return build_user_prompt(
            market_states,
            account,
            settings=self._settings,
            first_chat_time=first_chat,
            invocation_count=invocations,
        )
