"""Decision schemas and strict response parsing."""

from __future__ import annotations

import json
import re
from typing import Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

from perp_trader.errors import OracleResponseInvalid
from perp_trader.symbols import to_base_symbol

SIGNALS = ("buy_to_enter", "sell_to_enter", "hold", "close")
ENTRY_SIGNALS = ("buy_to_enter", "sell_to_enter")
MAX_JUSTIFICATION_LENGTH = 2000


class Decision(BaseModel):
    """One structured trading decision for one coin."""

    model_config = ConfigDict(extra="forbid")

    signal: Literal["buy_to_enter", "sell_to_enter", "hold", "close"]
    coin: str
    quantity: float | None = Field(default=None, ge=0.0)
    cost: float | None = Field(default=None, ge=0.0)
    leverage: int = Field(default=1, ge=1, le=125)
    order_type: Literal["market", "limit"] = "market"
    limit_price: float | None = Field(default=None, gt=0.0)
    profit_target: float | None = None
    stop_loss: float | None = None
    invalidation_condition: str | None = None
    confidence: float = Field(ge=0.0, le=1.0)
    risk_usd: float | None = Field(default=None, ge=0.0)
    justification: str = Field(default="", max_length=MAX_JUSTIFICATION_LENGTH)

    @field_validator("coin", mode="before")
    @classmethod
    def normalize_coin(cls, v: Any, info: ValidationInfo) -> str:
        if not isinstance(v, str):
            raise ValueError("coin must be a string")
        coin = str(to_base_symbol(v))
        allowed = (info.context or {}).get("symbols")
        if allowed is not None and coin not in allowed:
            raise ValueError(f"coin {coin} is not one of {', '.join(allowed)}")
        return coin

    @field_validator("profit_target", "stop_loss", mode="before")
    @classmethod
    def zero_means_unset(cls, v: Any) -> Any:
        if v is None:
            return None
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            if v == 0:
                return None
            if v < 0:
                raise ValueError("price levels must be positive")
        return v

    @model_validator(mode="after")
    def check_order_shape(self) -> "Decision":
        if self.order_type == "limit" and self.limit_price is None:
            raise ValueError("limit orders require limit_price")
        if self.signal == "hold" and self.quantity is None:
            self.quantity = 0.0
        return self

    @property
    def is_entry(self) -> bool:
        return self.signal in ("buy_to_enter", "sell_to_enter")

    @property
    def is_long(self) -> bool:
        return self.signal == "buy_to_enter"


class DecisionBatch(BaseModel):
    """Oracle output: always a list of decisions, one per coin."""

    model_config = ConfigDict(extra="forbid")

    decisions: list[Decision]
    justification: str = ""
    reasoning: str = ""
    user_prompt: str = ""

    @classmethod
    def parse_response_text(
        cls,
        text: str,
        symbols: list[str],
        mode: Literal["single", "multi"] = "multi",
    ) -> "DecisionBatch":
        """Parse model text into a batch; any violation raises ``OracleResponseInvalid``."""
        try:
            json_obj = _extract_json_obj(text)
        except ValueError as exc:
            raise OracleResponseInvalid(str(exc)) from exc

        if mode == "multi" or "decisions" in json_obj:
            raw_decisions = json_obj.get("decisions")
            if not isinstance(raw_decisions, list):
                raise OracleResponseInvalid("model_response_missing_decisions")
            justification = json_obj.get("justification", "")
        else:
            raw_decisions = [json_obj]
            justification = json_obj.get("justification", "")

        decisions = [_parse_decision(raw, symbols) for raw in raw_decisions]

        expected = set(symbols)
        coins = [decision.coin for decision in decisions]
        if len(decisions) != len(symbols) or set(coins) != expected:
            raise OracleResponseInvalid(
                f"decision_count_mismatch: expected one decision for each of "
                f"{sorted(expected)}, got {coins}"
            )
        if not isinstance(justification, str):
            raise OracleResponseInvalid("justification must be a string")
        return cls(decisions=decisions, justification=justification[:MAX_JUSTIFICATION_LENGTH])


def decision_json_schema(symbols: list[str], mode: Literal["single", "multi"] = "multi") -> dict[str, Any]:
    """JSON schema handed to the oracle for schema-constrained output."""
    decision_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "signal": {"type": "string", "enum": list(SIGNALS)},
            "coin": {"type": "string", "enum": list(symbols)},
            "quantity": {"type": "number", "minimum": 0},
            "cost": {"type": "number", "minimum": 0},
            "order_type": {"type": "string", "enum": ["market", "limit"]},
            "limit_price": {"type": "number", "exclusiveMinimum": 0},
            "leverage": {"type": "integer", "minimum": 1, "maximum": 125},
            "profit_target": {"type": "number"},
            "stop_loss": {"type": "number"},
            "invalidation_condition": {"type": "string"},
            "confidence": {"type": "number", "minimum": 0, "maximum": 1},
            "risk_usd": {"type": "number", "minimum": 0},
            "justification": {"type": "string", "maxLength": MAX_JUSTIFICATION_LENGTH},
        },
        "required": ["signal", "coin", "leverage", "confidence", "justification"],
        "additionalProperties": False,
    }
    if mode == "single":
        return decision_schema
    return {
        "type": "object",
        "properties": {
            "decisions": {
                "type": "array",
                "items": decision_schema,
                "minItems": len(symbols),
                "maxItems": len(symbols),
            },
            "justification": {"type": "string", "maxLength": MAX_JUSTIFICATION_LENGTH},
        },
        "required": ["decisions", "justification"],
        "additionalProperties": False,
    }


def _parse_decision(raw: Any, symbols: list[str]) -> Decision:
    if not isinstance(raw, dict):
        raise OracleResponseInvalid("decision_not_object")
    if raw.get("signal") in ENTRY_SIGNALS and raw.get("quantity") is None and raw.get("cost") is None:
        raise OracleResponseInvalid(f"quantity_or_cost_required_for_signal: {raw.get('signal')}")
    try:
        return Decision.model_validate(raw, context={"symbols": symbols})
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise OracleResponseInvalid(f"schema_validation_error: {location}: {first['msg']}") from exc


def _extract_json_obj(text: str) -> dict[str, Any]:
    """Extract the first JSON object from plain text or fenced content."""
    stripped = text.strip()
    if stripped.startswith("{") and stripped.endswith("}"):
        return _as_object(stripped)

    fenced_match = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", stripped, re.DOTALL)
    if fenced_match:
        return _as_object(fenced_match.group(1))

    brace_match = re.search(r"\{.*\}", stripped, re.DOTALL)
    if brace_match:
        return _as_object(brace_match.group(0))

    raise ValueError("model_response_not_json")


def _as_object(raw: str) -> dict[str, Any]:
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"model_response_invalid_json: {exc.msg}") from exc
    if isinstance(decoded, dict):
        return decoded
    raise ValueError("model_response_json_not_object")
