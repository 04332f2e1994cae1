"""JSONL journal store: pipeline events, trade records, chat log and metrics series."""

from __future__ import annotations

import json
from dataclasses import asdict, fields
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, TypeVar

from perp_trader.symbols import BaseSymbol
from perp_trader.types import AccountSnapshot, TradeRecord

T = TypeVar("T")

_ALLOWED_EVENT_TYPES = {
    "cycle_start",
    "market_data",
    "account_snapshot",
    "ai_decision",
    "risk_check",
    "order",
    "execution",
    "position_update",
    "metrics_snapshot",
    "cycle_end",
    "error",
}

_TRADES_FILE = "trades.jsonl"
_CHATS_FILE = "chats.jsonl"
_METRICS_FILE = "metrics.json"
_DAILY_GLOB = "[0-9][0-9][0-9][0-9]-[0-9][0-9]-[0-9][0-9].jsonl"
_TRADE_FIELDS = {f.name for f in fields(TradeRecord)}


class JournalStore:
    """Append-only JSONL store rooted at one directory."""

    def __init__(self, journal_dir: Path, *, metrics_max_points: int = 100) -> None:
        self._journal_dir = journal_dir
        self._metrics_max_points = metrics_max_points
        self._journal_dir.mkdir(parents=True, exist_ok=True)

    # ---------------------------------------------------------------- events
    def append(self, event_type: str, payload: dict[str, Any]) -> None:
        """Append one event line to daily JSONL file."""
        if event_type not in _ALLOWED_EVENT_TYPES:
            raise ValueError(f"unsupported_event_type: {event_type}")
        now = datetime.now(timezone.utc)
        record = {
            "timestamp": now.isoformat(),
            "event_type": event_type,
            "payload": payload,
        }
        self._append_line(self._file_path_for_day(now.date()), record)

    def load_recent(self, limit: int) -> list[dict[str, Any]]:
        """Load recent events from the most recent daily files, oldest first."""
        if limit <= 0:
            return []

        rows: list[dict[str, Any]] = []
        files = sorted(self._journal_dir.glob(_DAILY_GLOB), reverse=True)
        for file in files:
            for row in reversed(_read_jsonl(file)):
                rows.append(row)
                if len(rows) >= limit:
                    return list(reversed(rows))
        return list(reversed(rows))

    # ---------------------------------------------------------------- trades
    def append_trade(self, record: TradeRecord) -> None:
        self._append_line(self._journal_dir / _TRADES_FILE, asdict(record))

    def load_recent_trades(
        self,
        limit: int = 20,
        operations: tuple[str, ...] | None = None,
    ) -> list[TradeRecord]:
        """Most recent trade records, newest first, optionally filtered by operation."""
        if limit <= 0:
            return []
        records: list[TradeRecord] = []
        for row in reversed(_read_jsonl(self._journal_dir / _TRADES_FILE)):
            if operations is not None and row.get("operation") not in operations:
                continue
            payload = {key: value for key, value in row.items() if key in _TRADE_FIELDS}
            payload["symbol"] = BaseSymbol(str(payload.get("symbol", "")))
            records.append(TradeRecord(**payload))
            if len(records) >= limit:
                break
        return records

    # ----------------------------------------------------------------- chats
    def append_chat(
        self,
        *,
        reasoning: str,
        justification: str,
        user_prompt: str,
        trades: list[TradeRecord],
    ) -> None:
        """Persist the oracle's reasoning together with the trades it produced."""
        self._append_line(
            self._journal_dir / _CHATS_FILE,
            {
                "created_at": datetime.now(timezone.utc).isoformat(),
                "model": "decision_oracle",
                "reasoning": reasoning,
                "justification": justification,
                "user_prompt": user_prompt,
                "trades": [asdict(trade) for trade in trades],
            },
        )

    def load_chats(self, limit: int = 10) -> list[dict[str, Any]]:
        rows = _read_jsonl(self._journal_dir / _CHATS_FILE)
        return rows[-limit:] if limit > 0 else []

    def count_chats(self) -> int:
        return len(_read_jsonl(self._journal_dir / _CHATS_FILE))

    def first_chat_time(self) -> datetime | None:
        path = self._journal_dir / _CHATS_FILE
        if not path.exists():
            return None
        with path.open("r", encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    return datetime.fromisoformat(json.loads(line)["created_at"])
        return None

    # --------------------------------------------------------------- metrics
    def append_metrics(self, snapshot: AccountSnapshot) -> int:
        """Append one account snapshot to the metrics series; return the stored size."""
        series = self.load_metrics()
        series.append(
            {
                "account": asdict(snapshot),
                "created_at": datetime.now(timezone.utc).isoformat(),
            }
        )
        series = uniform_sample(series, self._metrics_max_points)
        path = self._journal_dir / _METRICS_FILE
        path.write_text(json.dumps(series, ensure_ascii=True, indent=2), encoding="utf-8")
        return len(series)

    def load_metrics(self) -> list[dict[str, Any]]:
        path = self._journal_dir / _METRICS_FILE
        if not path.exists():
            return []
        decoded = json.loads(path.read_text(encoding="utf-8"))
        return decoded if isinstance(decoded, list) else []

    def _append_line(self, path: Path, record: dict[str, Any]) -> None:
        with path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=True) + "\n")

    def _file_path_for_day(self, day: date) -> Path:
        return self._journal_dir / f"{day.isoformat()}.jsonl"


def uniform_sample(items: list[T], max_points: int) -> list[T]:
    """Evenly thin ``items`` to ``max_points``, always keeping the first and last."""
    if max_points <= 0:
        return []
    if len(items) <= max_points:
        return list(items)
    if max_points == 1:
        return [items[-1]]
    step = (len(items) - 1) / (max_points - 1)
    return [items[round(i * step)] for i in range(max_points)]


def _read_jsonl(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        return []
    return [
        json.loads(line)
        for line in path.read_text(encoding="utf-8").splitlines()
        if line.strip()
    ]
