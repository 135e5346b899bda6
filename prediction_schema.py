"""Canonical prediction record shared by the orchestrator, store and reports.

Two kinds of record live in the same collection:

* ``raw`` records, written once per orchestrator run and never updated
  except for the dispatch flag;
* ``rollup`` records, upserted nightly per (asset, bucket_start) and kept
  indefinitely.  Rollups never carry a raw inference payload.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from market_models import parse_number, parse_timestamp

ACTIONS = ("BUY", "HOLD", "SELL")
SOURCE_RAW = "raw"
SOURCE_ROLLUP = "rollup"
SOURCE_TYPES = (SOURCE_RAW, SOURCE_ROLLUP)

_DATETIME_FIELDS = ("bucket_start", "dispatched_at", "created_at", "updated_at")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class PredictionRecord:
    asset_id: str
    symbol: str
    market_price: float
    action: str
    confidence: float
    reason: str
    change_24h: float
    average_price: float
    volatility: float
    period_days: float = 7
    source_type: str = SOURCE_RAW
    bucket_start: Optional[datetime] = None
    raw_payload: Optional[Dict[str, Any]] = None
    fallback_used: bool = False
    signal_counts: Optional[Dict[str, int]] = None
    alert_dispatched: bool = False
    dispatched_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None
    id: str = field(default_factory=_new_id)

    def __post_init__(self) -> None:
        if self.action not in ACTIONS:
            raise ValueError(f"action must be one of {ACTIONS}, got {self.action!r}")
        if self.source_type not in SOURCE_TYPES:
            raise ValueError(f"source_type must be one of {SOURCE_TYPES}, got {self.source_type!r}")
        if not (isinstance(self.confidence, (int, float)) and 0 <= self.confidence <= 1):
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence!r}")
        if self.source_type == SOURCE_ROLLUP:
            if self.raw_payload is not None:
                raise ValueError("rollup records cannot carry a raw inference payload")
            if self.bucket_start is None:
                raise ValueError("rollup records require bucket_start")

    def with_dispatch(self, when: Optional[datetime] = None) -> "PredictionRecord":
        when = when or _utcnow()
        return replace(self, alert_dispatched=True, dispatched_at=when, updated_at=when)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        for key in _DATETIME_FIELDS:
            value = payload.get(key)
            payload[key] = value.isoformat() if isinstance(value, datetime) else None
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PredictionRecord":
        def number(key: str, default: float = 0.0) -> float:
            value = parse_number(data.get(key))
            return default if value is None else value

        counts = data.get("signal_counts")
        return cls(
            asset_id=str(data.get("asset_id") or ""),
            symbol=str(data.get("symbol") or ""),
            market_price=number("market_price"),
            action=str(data.get("action") or "HOLD").upper(),
            confidence=min(1.0, max(0.0, number("confidence"))),
            reason=str(data.get("reason") or ""),
            change_24h=number("change_24h"),
            average_price=number("average_price"),
            volatility=number("volatility"),
            period_days=number("period_days", 7),
            source_type=str(data.get("source_type") or SOURCE_RAW),
            bucket_start=parse_timestamp(data.get("bucket_start")),
            raw_payload=data.get("raw_payload"),
            fallback_used=bool(data.get("fallback_used", False)),
            signal_counts={str(k): int(v) for k, v in counts.items()} if isinstance(counts, Mapping) else None,
            alert_dispatched=bool(data.get("alert_dispatched", False)),
            dispatched_at=parse_timestamp(data.get("dispatched_at")),
            created_at=parse_timestamp(data.get("created_at")) or _utcnow(),
            updated_at=parse_timestamp(data.get("updated_at")),
            id=str(data.get("id") or _new_id()),
        )


def finite_or_zero(value: Any) -> float:
    number = parse_number(value)
    return 0.0 if number is None else number


__all__ = [
    "ACTIONS",
    "PredictionRecord",
    "SOURCE_RAW",
    "SOURCE_ROLLUP",
    "SOURCE_TYPES",
    "finite_or_zero",
]
