"""Produce, persist and announce one prediction for one asset.

A run always walks the same path: fetch the snapshot, derive window stats,
ask the inference service (or fall back to the heuristic), persist exactly
one raw record, then decide whether to notify.  Only a missing snapshot
aborts a run; inference and notification failures are absorbed here.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from errors import InferenceUnavailableError
from heuristic import heuristic_prediction
from inference_client import InferenceClient, PredictionFeatures
from log_utils import setup_logger
from market_models import VOLATILITY_WINDOW_DAYS, normalize_asset_id
from notification_dispatcher import NotificationDispatcher
from observability import log_event
from prediction_schema import SOURCE_RAW, PredictionRecord, finite_or_zero
from snapshot_cache import MarketDataService
from storage import PredictionStore
from volatility import history_stats

logger = setup_logger(__name__)

SOURCE_INFERENCE = "inference"
SOURCE_HEURISTIC = "heuristic"
SOURCE_CACHE = "cache"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PredictionStats:
    avg_price: float
    volatility: float
    change_24h: float
    period_days: float = VOLATILITY_WINDOW_DAYS

    def to_dict(self) -> Dict[str, float]:
        return {
            "avg_price": self.avg_price,
            "volatility": self.volatility,
            "change_24h": self.change_24h,
            "period_days": self.period_days,
        }


@dataclass(frozen=True)
class PredictionOutcome:
    record: PredictionRecord
    stats: PredictionStats
    fallback_used: bool
    previous: Optional[PredictionRecord] = None
    error: Optional[str] = None
    notified: Optional[int] = None
    reused: bool = False

    @property
    def source(self) -> str:
        if self.fallback_used:
            return SOURCE_HEURISTIC
        return SOURCE_CACHE if self.reused else SOURCE_INFERENCE


class PredictionOrchestrator:
    def __init__(
        self,
        market: MarketDataService,
        store: PredictionStore,
        *,
        inference: Optional[InferenceClient] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        send_on_change_only: bool = True,
        period_days: int = VOLATILITY_WINDOW_DAYS,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.market = market
        self.store = store
        self.inference = inference
        self.dispatcher = dispatcher
        self.send_on_change_only = send_on_change_only
        self.period_days = period_days
        self._now = now

    def _infer(self, features: PredictionFeatures) -> Dict[str, Any]:
        if self.inference is None:
            raise InferenceUnavailableError("inference client not configured")
        result = self.inference.predict(features)
        return {
            "action": result.action,
            "confidence": min(max(result.confidence, 0.0), 1.0),
            "reason": result.reason,
            "raw": result.raw,
        }

    def run(self, asset_id: str, notify: bool = True) -> PredictionOutcome:
        """Run one prediction for ``asset_id``.

        Raises ``DataUnavailableError`` when no snapshot can be obtained; in
        that case nothing is persisted.
        """

        asset_id = normalize_asset_id(asset_id)
        snapshot = self.market.get_snapshot(asset_id)

        window = history_stats(snapshot.prices)
        stats = PredictionStats(
            avg_price=window.avg_price,
            volatility=window.volatility,
            change_24h=finite_or_zero(snapshot.change_24h),
            period_days=self.period_days,
        )
        previous = self.store.find_latest(asset_id, SOURCE_RAW)

        features = PredictionFeatures(
            asset_id=asset_id,
            name=snapshot.name,
            period_days=self.period_days,
            avg_price=stats.avg_price,
            volatility=stats.volatility,
            change_24h=stats.change_24h,
            market_price=snapshot.price,
        )
        fallback_used = False
        error: Optional[str] = None
        try:
            prediction = self._infer(features)
            raw_payload = prediction["raw"]
        except Exception as exc:  # noqa: BLE001 - every inference failure falls back
            fallback_used = True
            error = str(exc) or exc.__class__.__name__
            logger.warning("Inference unavailable for %s; using heuristic fallback: %s", asset_id, error)
            prediction = heuristic_prediction(
                stats.change_24h,
                stats.volatility,
                stats.avg_price,
                market_price=snapshot.price,
                name=snapshot.name,
            )
            raw_payload = {"fallback": True, "error": error, "payload": prediction["raw"]}

        record = self.store.insert(
            PredictionRecord(
                asset_id=asset_id,
                symbol=snapshot.symbol,
                market_price=snapshot.price,
                action=prediction["action"],
                confidence=prediction["confidence"],
                reason=prediction["reason"],
                change_24h=stats.change_24h,
                average_price=stats.avg_price,
                volatility=stats.volatility,
                period_days=self.period_days,
                source_type=SOURCE_RAW,
                raw_payload=raw_payload,
                fallback_used=fallback_used,
                created_at=self._now(),
            )
        )

        notified = None
        action_changed = previous is None or previous.action != record.action
        if (
            notify
            and not fallback_used
            and self.dispatcher is not None
            and (not self.send_on_change_only or action_changed)
        ):
            try:
                notified = self.dispatcher.notify(
                    asset_id,
                    record.action,
                    record.confidence,
                    record.reason,
                    record.market_price,
                    name=snapshot.name,
                )
            except Exception as exc:  # noqa: BLE001 - the record stays persisted
                logger.exception("Notification dispatch failed for %s: %s", asset_id, exc)
            else:
                record = self.store.mark_dispatched(record.id, self._now()) or record

        log_event(
            logger,
            "prediction_completed",
            asset_id=asset_id,
            action=record.action,
            confidence=record.confidence,
            fallback_used=fallback_used,
            snapshot_source=snapshot.source,
            snapshot_cached=snapshot.cached,
            notified=notified,
        )
        return PredictionOutcome(
            record=record,
            stats=stats,
            fallback_used=fallback_used,
            previous=previous,
            error=error,
            notified=notified,
        )

    def latest_or_run(
        self, asset_id: str, max_age: timedelta, *, force: bool = False
    ) -> PredictionOutcome:
        """Reuse the latest raw prediction while it is younger than ``max_age``."""

        asset_id = normalize_asset_id(asset_id)
        latest = self.store.find_latest(asset_id, SOURCE_RAW)
        stale = latest is None or self._now() - latest.created_at > max_age
        if force or stale:
            return self.run(asset_id, notify=False)
        return PredictionOutcome(
            record=latest,
            stats=PredictionStats(
                avg_price=latest.average_price,
                volatility=latest.volatility,
                change_24h=latest.change_24h,
                period_days=latest.period_days,
            ),
            fallback_used=latest.fallback_used,
            reused=True,
        )


__all__ = [
    "PredictionOrchestrator",
    "PredictionOutcome",
    "PredictionStats",
    "SOURCE_CACHE",
    "SOURCE_HEURISTIC",
    "SOURCE_INFERENCE",
]
