"""Composition root wiring settings into a runnable signal pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from functools import partial
from typing import Optional

import requests

from config import PipelineSettings
from errors import ConfigurationError
from inference_client import InferenceClient
from log_utils import setup_logger
from maintenance import run_nightly_maintenance
from notification_dispatcher import NotificationDispatcher
from notifier import EmailSender
from prediction_orchestrator import PredictionOrchestrator
from provider_chain import ProviderChain, build_provider_chain
from quota import QuotaCounters
from scheduler import Scheduler
from snapshot_cache import MarketDataService, SnapshotCache
from storage import (
    PREDICTIONS_FILE,
    RECIPIENTS_FILE,
    SNAPSHOTS_FILE,
    JsonFileBackend,
    PredictionStore,
    RecipientStore,
    SnapshotStore,
)

logger = setup_logger(__name__)


@dataclass
class Pipeline:
    settings: PipelineSettings
    quota: QuotaCounters
    chain: ProviderChain
    market: MarketDataService
    predictions: PredictionStore
    recipients: RecipientStore
    dispatcher: NotificationDispatcher
    orchestrator: PredictionOrchestrator
    scheduler: Optional[Scheduler] = None

    def run_maintenance(self):
        return run_nightly_maintenance(
            self.predictions,
            retention_days=self.settings.raw_retention_days,
            rollup_interval_hours=self.settings.rollup_interval_hours,
        )


def build_pipeline(
    settings: PipelineSettings,
    *,
    session: Optional[requests.Session] = None,
    inference: Optional[InferenceClient] = None,
    persist: bool = True,
) -> Pipeline:
    """Assemble every component from ``settings``.

    ``persist=False`` keeps all stores in memory.  A missing inference key is
    logged and every run falls back to the heuristic.
    """

    def backend(filename: str, default=dict) -> JsonFileBackend:
        path = os.path.join(settings.data_dir, filename) if persist else None
        return JsonFileBackend(path, default=default)

    quota = QuotaCounters(settings.quota_caps)
    chain = build_provider_chain(settings, quota, session=session)
    market = MarketDataService(SnapshotCache(SnapshotStore(backend(SNAPSHOTS_FILE))), chain)
    predictions = PredictionStore(backend(PREDICTIONS_FILE, default=list))
    recipients = RecipientStore(backend(RECIPIENTS_FILE))

    if inference is None:
        try:
            inference = InferenceClient.from_settings(settings, quota, session=session)
        except ConfigurationError as exc:
            logger.warning("%s", exc)

    dispatcher = NotificationDispatcher(
        recipients,
        EmailSender(settings.smtp, quota=quota),
        tracked=settings.coins,
        min_gap=timedelta(minutes=settings.email_min_gap_min),
    )
    orchestrator = PredictionOrchestrator(
        market,
        predictions,
        inference=inference,
        dispatcher=dispatcher,
        send_on_change_only=settings.send_email_on_change_only,
        period_days=settings.period_days,
    )
    pipeline = Pipeline(
        settings=settings,
        quota=quota,
        chain=chain,
        market=market,
        predictions=predictions,
        recipients=recipients,
        dispatcher=dispatcher,
        orchestrator=orchestrator,
    )
    pipeline.scheduler = Scheduler(
        partial(orchestrator.run, notify=True),
        settings.coins,
        per_cycle=settings.predict_coins_per_cycle,
        interval=settings.predict_refresh_min * 60.0,
        inter_asset_delay=settings.inter_asset_delay,
        maintenance=pipeline.run_maintenance,
        maintenance_hour=settings.maintenance_hour_utc,
        maintenance_minute=settings.maintenance_minute_utc,
    )
    return pipeline


__all__ = ["Pipeline", "build_pipeline"]
