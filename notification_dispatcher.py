"""Fan a signal out to subscribed recipients, honouring per-asset cooldowns."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, List, Mapping, Optional, Tuple

from errors import DailyLimitExceededError, DispatchError
from log_utils import setup_logger
from notifier import EmailSender, render_alert_email
from observability import log_event
from preferences import RecipientPreferences, can_notify, mark_throttle
from storage import RecipientStore

logger = setup_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationDispatcher:
    def __init__(
        self,
        recipients: RecipientStore,
        sender: EmailSender,
        *,
        tracked: Iterable[str] = (),
        min_gap: timedelta = timedelta(minutes=60),
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.recipients = recipients
        self.sender = sender
        self.tracked = tuple(tracked)
        self.min_gap = min_gap
        self._now = now

    def subscribers(self, asset_id: str) -> List[RecipientPreferences]:
        """Recipients with ``asset_id`` enabled, after backfilling defaults."""

        return self.recipients.subscribed_to(asset_id, self.tracked)

    def notify(
        self,
        asset_id: str,
        action: str,
        confidence: float,
        reason: str,
        price: Any,
        *,
        name: Optional[str] = None,
    ) -> int:
        """Email every eligible subscriber; returns how many were notified.

        A failure for one recipient is logged and the batch continues.
        """

        subscribers = self.subscribers(asset_id)
        if not subscribers:
            return 0

        subject, body = render_alert_email(
            asset_id=asset_id, name=name, action=action, confidence=confidence, price=price, reason=reason
        )
        updates: List[Tuple[str, Mapping[str, Any]]] = []
        notified = 0
        skipped = 0
        for prefs in subscribers:
            now = self._now()
            if not can_notify(prefs, asset_id, self.min_gap, now):
                skipped += 1
                continue
            try:
                self.sender.send(prefs.email, subject, body)
            except DailyLimitExceededError as exc:
                logger.warning("Not notifying %s for %s: %s", prefs.email, asset_id, exc)
                continue
            except DispatchError as exc:
                logger.error("Failed to notify %s for %s: %s", prefs.email, asset_id, exc)
                continue
            except Exception as exc:  # noqa: BLE001 - one recipient must not abort the batch
                logger.exception("Unexpected error notifying %s for %s: %s", prefs.email, asset_id, exc)
                continue
            prefs = mark_throttle(prefs, asset_id, now)
            notified += 1
            updates.append(
                (
                    prefs.email,
                    {
                        "alert_preferences": dict(prefs.alert_preferences),
                        "notification_throttle": dict(prefs.notification_throttle),
                    },
                )
            )

        if updates:
            try:
                _, failures = self.recipients.bulk_upsert(updates)
            except Exception as exc:  # noqa: BLE001 - emails already went out
                logger.exception("Throttle persistence failed for %s: %s", asset_id, exc)
            else:
                for email, message in failures:
                    logger.error("Throttle update for %s failed: %s", email, message)

        log_event(
            logger,
            "notifications_completed",
            asset_id=asset_id,
            notifications=notified,
            throttled=skipped,
            subscribers=len(subscribers),
        )
        return notified


__all__ = ["NotificationDispatcher"]
