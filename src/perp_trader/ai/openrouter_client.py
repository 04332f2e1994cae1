"""OpenRouter chat-completions client acting as the decision oracle."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from perp_trader.config import Settings
from perp_trader.utils.logging import get_logger, log_llm_call

_OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"


class OpenRouterError(Exception):
    """Base OpenRouter error."""


class OpenRouterAPIError(OpenRouterError):
    """Raised when API transport/request fails."""


@dataclass(slots=True)
class OracleReply:
    content: str
    reasoning: str = ""


class OpenRouterClient:
    """Thin async client for the OpenRouter chat completion endpoint."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http_client = http_client
        self._logger = get_logger("perp_trader.ai.openrouter_client")

    async def generate_decision(
        self,
        system_prompt: str,
        user_prompt: str,
        schema: dict[str, Any],
    ) -> OracleReply:
        """Send both prompts and return the raw assistant content plus reasoning."""
        started = time.perf_counter()
        try:
            reply = await self._request_completion(system_prompt, user_prompt, schema)
        except OpenRouterAPIError as exc:
            log_llm_call(
                self._logger,
                model=self._settings.openrouter_model,
                success=False,
                latency_ms=(time.perf_counter() - started) * 1000,
                reason="api_error",
                error=str(exc),
            )
            raise

        log_llm_call(
            self._logger,
            model=self._settings.openrouter_model,
            success=True,
            latency_ms=(time.perf_counter() - started) * 1000,
            content_chars=len(reply.content),
        )
        return reply

    @retry(
        retry=retry_if_exception_type(OpenRouterAPIError),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _request_completion(
        self,
        system_prompt: str,
        user_prompt: str,
        schema: dict[str, Any],
    ) -> OracleReply:
        if not self._settings.openrouter_api_key:
            raise OpenRouterAPIError("missing_openrouter_api_key")

        headers = {
            "Authorization": f"Bearer {self._settings.openrouter_api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": self._settings.openrouter_model,
            "temperature": self._settings.oracle_temperature,
            "response_format": {"type": "json_object"},
            "messages": [
                {
                    "role": "system",
                    "content": (
                        f"{system_prompt}\n\nRespond with JSON matching this schema:\n"
                        f"{json.dumps(schema, ensure_ascii=True)}"
                    ),
                },
                {"role": "user", "content": user_prompt},
            ],
        }

        try:
            if self._http_client is not None:
                response = await self._http_client.post(_OPENROUTER_URL, headers=headers, json=payload)
            else:
                async with httpx.AsyncClient(timeout=self._settings.openrouter_timeout) as client:
                    response = await client.post(_OPENROUTER_URL, headers=headers, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise OpenRouterAPIError(str(exc)) from exc

        return _extract_reply(response.json())


def _extract_reply(payload: dict[str, Any]) -> OracleReply:
    """Read assistant content and optional reasoning from the response payload."""
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return OracleReply(content="")
    first = choices[0]
    if not isinstance(first, dict):
        return OracleReply(content="")
    message = first.get("message")
    if not isinstance(message, dict):
        return OracleReply(content="")
    content = message.get("content")
    reasoning = message.get("reasoning")
    return OracleReply(
        content=content if isinstance(content, str) else "",
        reasoning=reasoning if isinstance(reasoning, str) else "",
    )
