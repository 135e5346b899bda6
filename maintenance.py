"""Nightly rollup and retention maintenance for prediction records."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from log_utils import setup_logger
from observability import log_event
from prediction_schema import ACTIONS, SOURCE_RAW, PredictionRecord
from storage import PredictionStore

logger = setup_logger(__name__)

ROLLUP_REASON = "Hourly rollup"


def utc_midnight(now: datetime) -> datetime:
    current = now.astimezone(timezone.utc)
    return current.replace(hour=0, minute=0, second=0, microsecond=0)


def build_rollups(records: Iterable[PredictionRecord], interval_hours: int = 1) -> List[Dict[str, Any]]:
    """Aggregate raw records into per-asset time buckets.

    Returns one entry per (asset, bucket) with ``asset_id``, ``bucket_start``
    and the ``fields`` to store on the rollup record.  The first symbol and
    the last action are taken in creation order.
    """

    rows = [
        {
            "asset_id": r.asset_id,
            "symbol": r.symbol,
            "market_price": r.market_price,
            "confidence": r.confidence,
            "action": r.action,
            "volatility": r.volatility,
            "change_24h": r.change_24h,
            "created_at": r.created_at,
        }
        for r in records
        if r.source_type == SOURCE_RAW
    ]
    if not rows:
        return []

    df = pd.DataFrame(rows)
    df["created_at"] = pd.to_datetime(df["created_at"], utc=True)
    df = df.sort_values("created_at", kind="mergesort")
    df["bucket_start"] = df["created_at"].dt.floor(pd.Timedelta(hours=max(1, int(interval_hours))))
    for action in ACTIONS:
        df[f"n_{action}"] = (df["action"] == action).astype(int)

    grouped = df.groupby(["asset_id", "bucket_start"], sort=True).agg(
        symbol=("symbol", "first"),
        average_price=("market_price", "mean"),
        average_confidence=("confidence", "mean"),
        last_action=("action", "last"),
        volatility=("volatility", "mean"),
        change_24h=("change_24h", "mean"),
        **{f"n_{action}": (f"n_{action}", "sum") for action in ACTIONS},
    )

    rollups: List[Dict[str, Any]] = []
    for (asset_id, bucket_start), row in grouped.iterrows():
        average_price = float(row["average_price"])
        rollups.append(
            {
                "asset_id": asset_id,
                "bucket_start": bucket_start.to_pydatetime(),
                "fields": {
                    "symbol": row["symbol"],
                    "market_price": average_price,
                    "action": row["last_action"],
                    "confidence": min(1.0, max(0.0, float(row["average_confidence"]))),
                    "reason": ROLLUP_REASON,
                    "change_24h": float(row["change_24h"]),
                    "average_price": average_price,
                    "volatility": float(row["volatility"]),
                    "period_days": interval_hours / 24,
                    "signal_counts": {action: int(row[f"n_{action}"]) for action in ACTIONS},
                },
            }
        )
    return rollups


@dataclass(frozen=True)
class MaintenanceReport:
    window_start: datetime
    window_end: datetime
    raw_scanned: int
    rollups_created: int
    rollups_updated: int
    rollups_failed: int
    raw_deleted: int
    retention_cutoff: datetime


def run_nightly_maintenance(
    store: PredictionStore,
    *,
    retention_days: int = 90,
    rollup_interval_hours: int = 1,
    now: Optional[datetime] = None,
) -> MaintenanceReport:
    """Roll up the previous UTC day, then purge raw records past retention.

    Safe to rerun: rollups are upserted by (asset, bucket) and the purge only
    removes raw records created before ``now - retention_days``.
    """

    now = now or datetime.now(timezone.utc)
    window_end = utc_midnight(now)
    window_start = window_end - timedelta(days=1)
    logger.info("Running nightly maintenance for %s", window_start.date().isoformat())

    raw = store.raw_between(window_start, window_end)
    created = updated = failed = 0
    for entry in build_rollups(raw, rollup_interval_hours):
        try:
            _, is_new = store.upsert_rollup(entry["asset_id"], entry["bucket_start"], entry["fields"])
        except (TypeError, ValueError, OSError) as exc:
            failed += 1
            logger.error(
                "Failed to upsert rollup for %s @ %s: %s", entry["asset_id"], entry["bucket_start"], exc
            )
            continue
        if is_new:
            created += 1
        else:
            updated += 1

    cutoff = now - timedelta(days=retention_days)
    deleted = store.delete_older_than(SOURCE_RAW, cutoff)

    report = MaintenanceReport(
        window_start=window_start,
        window_end=window_end,
        raw_scanned=len(raw),
        rollups_created=created,
        rollups_updated=updated,
        rollups_failed=failed,
        raw_deleted=deleted,
        retention_cutoff=cutoff,
    )
    log_event(
        logger,
        "nightly_maintenance_complete",
        window_start=window_start,
        raw_scanned=len(raw),
        rollups_created=created,
        rollups_updated=updated,
        rollups_failed=failed,
        raw_deleted=deleted,
    )
    return report


__all__ = ["MaintenanceReport", "ROLLUP_REASON", "build_rollups", "run_nightly_maintenance", "utc_midnight"]
