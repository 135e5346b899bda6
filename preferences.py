"""Recipient alert preferences and per-asset notification throttling.

Preferences are immutable values; every helper returns a new instance and
leaves persistence to the caller (``RecipientStore``).
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from market_models import parse_timestamp


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: Any) -> str:
    text = str(email or "").strip().lower()
    if not text:
        raise ValueError("recipient email is required")
    return text


@dataclass(frozen=True)
class RecipientPreferences:
    email: str
    alert_preferences: Dict[str, bool] = field(default_factory=dict)
    notification_throttle: Dict[str, datetime] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None

    def is_enabled(self, asset_id: str) -> bool:
        return bool(self.alert_preferences.get(asset_id, False))

    def last_notified(self, asset_id: str) -> Optional[datetime]:
        return self.notification_throttle.get(asset_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "alert_preferences": dict(self.alert_preferences),
            "notification_throttle": {k: v.isoformat() for k, v in self.notification_throttle.items()},
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RecipientPreferences":
        prefs = data.get("alert_preferences") or {}
        if isinstance(prefs, list):
            # [{"asset_id": ..., "enabled": ...}] as exported by older stores
            prefs = {str(p.get("asset_id")): bool(p.get("enabled", True)) for p in prefs if isinstance(p, Mapping)}
        throttle: Dict[str, datetime] = {}
        for key, value in (data.get("notification_throttle") or {}).items():
            parsed = parse_timestamp(value)
            if parsed is not None:
                throttle[str(key)] = parsed
        return cls(
            email=normalize_email(data.get("email")),
            alert_preferences={str(k): bool(v) for k, v in prefs.items()},
            notification_throttle=throttle,
            created_at=parse_timestamp(data.get("created_at")) or _utcnow(),
            updated_at=parse_timestamp(data.get("updated_at")),
        )


def new_preferences(email: str, tracked: Iterable[str], now: Optional[datetime] = None) -> RecipientPreferences:
    now = now or _utcnow()
    return RecipientPreferences(
        email=normalize_email(email),
        alert_preferences={asset: True for asset in tracked},
        created_at=now,
        updated_at=now,
    )


def ensure_default_preferences(
    prefs: RecipientPreferences, tracked: Iterable[str]
) -> Tuple[RecipientPreferences, bool]:
    """Backfill ``enabled=True`` for tracked assets with no explicit entry."""

    missing = [asset for asset in tracked if asset not in prefs.alert_preferences]
    if not missing:
        return prefs, False
    updated = dict(prefs.alert_preferences)
    for asset in missing:
        updated[asset] = True
    return replace(prefs, alert_preferences=updated), True


def can_notify(
    prefs: RecipientPreferences,
    asset_id: str,
    cooldown: timedelta,
    now: Optional[datetime] = None,
) -> bool:
    """True when the asset is enabled and the cooldown since the last alert has passed."""

    if not prefs.is_enabled(asset_id):
        return False
    last_sent = prefs.last_notified(asset_id)
    if last_sent is None:
        return True
    return (now or _utcnow()) - last_sent >= cooldown


def mark_throttle(
    prefs: RecipientPreferences, asset_id: str, now: Optional[datetime] = None
) -> RecipientPreferences:
    now = now or _utcnow()
    throttle = dict(prefs.notification_throttle)
    throttle[asset_id] = now
    return replace(prefs, notification_throttle=throttle, updated_at=now)


def apply_preference_update(
    prefs: RecipientPreferences,
    mapping: Mapping[str, Any],
    tracked: Iterable[str],
    now: Optional[datetime] = None,
) -> RecipientPreferences:
    """Set every tracked asset to ``bool(mapping.get(asset))``.

    Assets outside ``tracked`` keep their existing value.
    """

    if not isinstance(mapping, Mapping):
        raise ValueError("Invalid preferences payload")
    updated = dict(prefs.alert_preferences)
    for asset in tracked:
        updated[asset] = bool(mapping.get(asset))
    return replace(prefs, alert_preferences=updated, updated_at=now or _utcnow())


def load_preferences(store: Any, email: str, tracked: Iterable[str]) -> RecipientPreferences:
    """Return preferences for ``email``, creating or backfilling them as needed."""

    tracked = tuple(tracked)
    prefs = store.find(email)
    if prefs is None:
        prefs = new_preferences(email, tracked)
        store.save(prefs)
        return prefs
    prefs, mutated = ensure_default_preferences(prefs, tracked)
    if mutated:
        store.save(prefs)
    return prefs


def update_preferences(
    store: Any, email: str, mapping: Mapping[str, Any], tracked: Iterable[str]
) -> RecipientPreferences:
    tracked = tuple(tracked)
    prefs = load_preferences(store, email, tracked)
    prefs = apply_preference_update(prefs, mapping, tracked)
    store.save(prefs)
    return prefs


__all__ = [
    "RecipientPreferences",
    "apply_preference_update",
    "can_notify",
    "ensure_default_preferences",
    "load_preferences",
    "mark_throttle",
    "new_preferences",
    "normalize_email",
    "update_preferences",
]
