"""Canonical market snapshot shape and the numeric helpers that build it."""

from __future__ import annotations

import math
import re
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Mapping, Optional, Tuple

VOLATILITY_WINDOW_DAYS = 7
HISTORY_POINTS = VOLATILITY_WINDOW_DAYS + 1
MAX_HISTORY_POINTS = VOLATILITY_WINDOW_DAYS * 24
ONE_DAY_MS = 24 * 60 * 60 * 1000


def parse_number(value: Any) -> Optional[float]:
    """Return ``value`` as a finite float, or ``None`` when it is not numeric."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def round_half_up(value: Any, decimals: int = 2) -> Optional[float]:
    """Round half away from zero on the exact binary value.

    ``round()`` ties to even, which disagrees with how historical figures were
    rounded for values such as ``0.125``.
    """

    number = parse_number(value)
    if number is None:
        return None
    quantum = Decimal(1).scaleb(-decimals)
    return float(Decimal(number).quantize(quantum, rounding=ROUND_HALF_UP))


def format_price(value: Any) -> Optional[float]:
    number = parse_number(value)
    if number is None:
        return None
    if number >= 1:
        return round_half_up(number, 2)
    if number >= 0.01:
        return round_half_up(number, 4)
    return float(f"{number:.8g}")


def fallback_name_for(asset_id: str) -> str:
    if not asset_id:
        return "Unknown"
    segments = [s for s in re.split(r"[-_]", asset_id) if s]
    return " ".join(s[:1].upper() + s[1:] for s in segments)


def fallback_symbol_for(asset_id: str) -> str:
    if not asset_id:
        return "UNK"
    cleaned = re.sub(r"[^a-z0-9]", "", asset_id, flags=re.IGNORECASE).upper()
    if len(cleaned) >= 3:
        return cleaned[:5]
    base = (cleaned or asset_id[:3].upper() or "UNK").ljust(3, "X")
    return base[:3]


def normalize_asset_id(asset_id: Any) -> str:
    if not isinstance(asset_id, str):
        raise ValueError("asset id must be a non-empty string")
    normalized = asset_id.strip().lower()
    if not normalized:
        raise ValueError("asset id must be a non-empty string")
    return normalized


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO strings, epoch milliseconds or datetimes into aware UTC."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    number = parse_number(value)
    if number is not None:
        try:
            return datetime.fromtimestamp(number / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class PricePoint:
    timestamp: float  # epoch milliseconds
    price: float


def _coerce_point(entry: Any) -> Optional[PricePoint]:
    if isinstance(entry, PricePoint):
        ts, price = entry.timestamp, entry.price
    elif isinstance(entry, Mapping):
        ts, price = entry.get("timestamp"), entry.get("price")
    elif isinstance(entry, (list, tuple)) and len(entry) >= 2:
        ts, price = entry[0], entry[1]
    else:
        return None
    ts_value = parse_number(ts)
    price_value = parse_number(price)
    if ts_value is None or price_value is None or price_value <= 0:
        return None
    return PricePoint(timestamp=ts_value, price=price_value)


def clean_history(entries: Iterable[Any] | None, *, limit: int = MAX_HISTORY_POINTS) -> Tuple[PricePoint, ...]:
    """Return a chronological, de-duplicated, bounded price series.

    Points with a non-finite timestamp or a non-positive / non-finite price
    are dropped.  When a provider repeats a timestamp the later value wins.
    """

    by_ts: dict[float, PricePoint] = {}
    for entry in entries or ():
        point = _coerce_point(entry)
        if point is not None:
            by_ts[point.timestamp] = point
    ordered = sorted(by_ts.values(), key=lambda p: p.timestamp)
    if limit and len(ordered) > limit:
        ordered = ordered[-limit:]
    return tuple(ordered)


@dataclass(frozen=True)
class Snapshot:
    """Normalized latest market state for one asset."""

    asset_id: str
    name: str
    symbol: str
    price: float
    change_24h: Optional[float] = None
    volatility_7d: Optional[float] = None
    market_cap: Optional[float] = None
    total_volume: Optional[float] = None
    image: Optional[str] = None
    history: Tuple[PricePoint, ...] = field(default_factory=tuple)
    source: str = "Unknown"
    last_updated: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    cached: bool = False

    @property
    def prices(self) -> list[float]:
        return [point.price for point in self.history]

    def as_cached(self) -> "Snapshot":
        return replace(self, cached=True)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["history"] = [[p.timestamp, p.price] for p in self.history]
        payload["last_updated"] = self.last_updated.isoformat()
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Snapshot":
        asset_id = str(data.get("asset_id") or "")
        return cls(
            asset_id=asset_id,
            name=str(data.get("name") or fallback_name_for(asset_id)),
            symbol=str(data.get("symbol") or fallback_symbol_for(asset_id)),
            price=float(data["price"]),
            change_24h=parse_number(data.get("change_24h")),
            volatility_7d=parse_number(data.get("volatility_7d")),
            market_cap=parse_number(data.get("market_cap")),
            total_volume=parse_number(data.get("total_volume")),
            image=data.get("image") or None,
            history=clean_history(data.get("history")),
            source=str(data.get("source") or "Unknown"),
            last_updated=parse_timestamp(data.get("last_updated")) or datetime.now(timezone.utc),
            cached=bool(data.get("cached", False)),
        )


__all__ = [
    "HISTORY_POINTS",
    "MAX_HISTORY_POINTS",
    "ONE_DAY_MS",
    "PricePoint",
    "Snapshot",
    "VOLATILITY_WINDOW_DAYS",
    "clean_history",
    "fallback_name_for",
    "fallback_symbol_for",
    "format_price",
    "normalize_asset_id",
    "parse_number",
    "parse_timestamp",
    "round_half_up",
]
