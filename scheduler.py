"""Periodic prediction rotation and nightly maintenance timers."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from errors import DataUnavailableError
from log_utils import setup_logger
from observability import log_event

logger = setup_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RotationCursor:
    """Cursor over the tracked assets that advances one slice per cycle."""

    def __init__(self, start: int = 0) -> None:
        self.index = start
        self._lock = threading.Lock()

    def next_slice(self, assets: Sequence[str], size: int) -> List[str]:
        if not assets or size <= 0:
            return []
        count = len(assets)
        size = min(size, count)
        with self._lock:
            chosen = [assets[(self.index + i) % count] for i in range(size)]
            self.index = (self.index + size) % count
        return chosen


@dataclass
class CycleReport:
    assets: List[str]
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)


def next_daily_run(now: datetime, hour: int, minute: int) -> datetime:
    """First ``hour:minute`` UTC strictly after ``now``."""

    current = now.astimezone(timezone.utc)
    candidate = current.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= current:
        candidate += timedelta(days=1)
    return candidate


class Scheduler:
    """Two independent timers driving the pipeline.

    The prediction cycle runs every ``interval`` seconds over a rotating
    slice of ``assets``, one asset at a time.  Maintenance runs once a day at
    ``maintenance_hour:maintenance_minute`` UTC; a missed trigger (process
    down) is not caught up.
    """

    def __init__(
        self,
        run_asset: Callable[[str], Any],
        assets: Sequence[str],
        *,
        per_cycle: int,
        interval: float,
        inter_asset_delay: float = 0.0,
        maintenance: Optional[Callable[[], Any]] = None,
        maintenance_hour: int = 2,
        maintenance_minute: int = 15,
        cursor: Optional[RotationCursor] = None,
        sleep: Optional[Callable[[float], Any]] = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.run_asset = run_asset
        self.assets = tuple(assets)
        self.per_cycle = per_cycle
        self.interval = interval
        self.inter_asset_delay = inter_asset_delay
        self.maintenance = maintenance
        self.maintenance_hour = maintenance_hour
        self.maintenance_minute = maintenance_minute
        self.cursor = cursor or RotationCursor()
        self._stop = threading.Event()
        self._sleep = sleep or self._stop.wait
        self._now = now
        self._threads: List[threading.Thread] = []

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def run_prediction_cycle(self) -> CycleReport:
        if not self.assets:
            logger.warning("No assets configured for prediction cycle")
            return CycleReport(assets=[])
        chosen = self.cursor.next_slice(self.assets, self.per_cycle)
        report = CycleReport(assets=chosen)
        for position, asset_id in enumerate(chosen):
            if self.stopped:
                break
            try:
                self.run_asset(asset_id)
            except DataUnavailableError as exc:
                logger.error("Skipping %s: %s", asset_id, exc)
                report.failed[asset_id] = str(exc)
            except Exception as exc:  # noqa: BLE001 - one asset must not stop the cycle
                logger.exception("Failed to process %s: %s", asset_id, exc)
                report.failed[asset_id] = str(exc) or exc.__class__.__name__
            else:
                report.succeeded.append(asset_id)
            if self.inter_asset_delay > 0 and position < len(chosen) - 1:
                self._sleep(self.inter_asset_delay)
        log_event(
            logger,
            "prediction_cycle_complete",
            assets=report.assets,
            succeeded=len(report.succeeded),
            failed=report.failed,
            next_cursor=self.cursor.index,
        )
        return report

    def run_maintenance(self) -> Any:
        if self.maintenance is None:
            return None
        try:
            return self.maintenance()
        except Exception as exc:  # noqa: BLE001 - retried at the next trigger
            logger.exception("Nightly maintenance failed: %s", exc)
            return None

    def _prediction_loop(self) -> None:
        logger.info("Starting prediction cycle every %.0f s", self.interval)
        while not self._stop.is_set():
            try:
                self.run_prediction_cycle()
            except Exception as exc:  # noqa: BLE001
                logger.exception("Prediction cycle failed: %s", exc)
            self._stop.wait(self.interval)

    def _maintenance_loop(self) -> None:
        while not self._stop.is_set():
            due = next_daily_run(self._now(), self.maintenance_hour, self.maintenance_minute)
            logger.info("Next nightly maintenance at %s", due.isoformat())
            wait = max(0.0, (due - self._now()).total_seconds())
            if self._stop.wait(wait):
                break
            self.run_maintenance()

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        targets = [("prediction-cycle", self._prediction_loop)]
        if self.maintenance is not None:
            targets.append(("nightly-maintenance", self._maintenance_loop))
        for name, target in targets:
            thread = threading.Thread(target=target, name=name, daemon=True)
            thread.start()
            self._threads.append(thread)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads.clear()

    def wait(self) -> None:
        """Block until ``stop`` is called (or the process is interrupted)."""

        while not self._stop.wait(1.0):
            pass


__all__ = ["CycleReport", "RotationCursor", "Scheduler", "next_daily_run"]
