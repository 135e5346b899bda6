"""JSON-file persistence for snapshots, predictions and recipients.

Each store keeps its documents in memory and rewrites a single JSON file on
every mutation (write to ``<file>.tmp`` then ``os.replace``).  Passing
``path=None`` gives a memory-only store, which is what the tests use.
"""

from __future__ import annotations

import json
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from log_utils import setup_logger
from market_models import Snapshot
from prediction_schema import SOURCE_RAW, SOURCE_ROLLUP, PredictionRecord
from preferences import RecipientPreferences, ensure_default_preferences, normalize_email

logger = setup_logger(__name__)

SNAPSHOTS_FILE = "snapshots.json"
PREDICTIONS_FILE = "predictions.json"
RECIPIENTS_FILE = "recipients.json"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JsonFileBackend:
    """Load/save one JSON document with atomic replacement."""

    def __init__(self, path: Optional[os.PathLike | str], default: Callable[[], Any] = dict) -> None:
        self.path = Path(path).expanduser() if path else None
        self._default = default
        self.lock = threading.RLock()

    def load(self) -> Any:
        if self.path is None or not self.path.exists():
            return self._default()
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                content = fh.read().strip()
        except OSError as exc:
            logger.error("Failed to read %s: %s", self.path, exc)
            return self._default()
        if not content:
            logger.warning("Store file %s is empty; starting fresh", self.path)
            return self._default()
        try:
            return json.loads(content)
        except json.JSONDecodeError as exc:
            logger.error("Store file %s contains invalid JSON: %s", self.path, exc)
            return self._default()

    def save(self, data: Any) -> None:
        if self.path is None:
            return
        with self.lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_name(self.path.name + ".tmp")
            try:
                with tmp_path.open("w", encoding="utf-8") as fh:
                    json.dump(data, fh, indent=2, default=str)
                os.replace(tmp_path, self.path)
            finally:
                if tmp_path.exists():
                    tmp_path.unlink()


class SnapshotStore:
    """Latest snapshot per asset with the time it was stored."""

    def __init__(self, backend: Optional[JsonFileBackend] = None) -> None:
        self.backend = backend or JsonFileBackend(None)
        self._docs: Dict[str, Dict[str, Any]] = {}
        raw = self.backend.load()
        if isinstance(raw, Mapping):
            for asset_id, doc in raw.items():
                if isinstance(doc, Mapping) and "snapshot" in doc:
                    self._docs[str(asset_id)] = dict(doc)

    def find(self, asset_id: str) -> Optional[Tuple[Snapshot, datetime]]:
        with self.backend.lock:
            doc = self._docs.get(asset_id)
        if doc is None:
            return None
        try:
            snapshot = Snapshot.from_dict(doc["snapshot"])
            stored_at = datetime.fromisoformat(doc["stored_at"])
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("[Cache] read failed for %s: %s", asset_id, exc)
            return None
        if stored_at.tzinfo is None:
            stored_at = stored_at.replace(tzinfo=timezone.utc)
        return snapshot, stored_at

    def upsert(self, asset_id: str, snapshot: Snapshot, stored_at: datetime) -> None:
        with self.backend.lock:
            self._docs[asset_id] = {"snapshot": snapshot.to_dict(), "stored_at": stored_at.isoformat()}
            self.backend.save(self._docs)


class PredictionStore:
    """Raw and rollup prediction records."""

    def __init__(self, backend: Optional[JsonFileBackend] = None) -> None:
        self.backend = backend or JsonFileBackend(None, default=list)
        self._records: Dict[str, PredictionRecord] = {}
        raw = self.backend.load()
        for doc in raw if isinstance(raw, list) else []:
            try:
                record = PredictionRecord.from_dict(doc)
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping malformed prediction record: %s", exc)
                continue
            self._records[record.id] = record

    def _persist(self) -> None:
        self.backend.save([r.to_dict() for r in self._records.values()])

    def _select(self, predicate: Callable[[PredictionRecord], bool]) -> List[PredictionRecord]:
        with self.backend.lock:
            return [r for r in self._records.values() if predicate(r)]

    def insert(self, record: PredictionRecord) -> PredictionRecord:
        with self.backend.lock:
            if record.id in self._records:
                raise ValueError(f"prediction {record.id} already exists")
            self._records[record.id] = record
            self._persist()
        return record

    def get(self, record_id: str) -> Optional[PredictionRecord]:
        with self.backend.lock:
            return self._records.get(record_id)

    def find_latest(self, asset_id: str, source_type: str = SOURCE_RAW) -> Optional[PredictionRecord]:
        matches = self._select(lambda r: r.asset_id == asset_id and r.source_type == source_type)
        return max(matches, key=lambda r: r.created_at, default=None)

    def latest_predictions(self, limit: int = 20) -> List[PredictionRecord]:
        raws = self._select(lambda r: r.source_type == SOURCE_RAW)
        raws.sort(key=lambda r: r.created_at, reverse=True)
        return raws[:limit]

    def history(self, asset_id: str, limit: int = 100) -> List[PredictionRecord]:
        matches = self._select(lambda r: r.asset_id == asset_id)
        matches.sort(key=lambda r: r.bucket_start or r.created_at, reverse=True)
        return matches[:limit]

    def dispatched(self, asset_id: Optional[str] = None, limit: int = 50) -> List[PredictionRecord]:
        matches = self._select(
            lambda r: r.alert_dispatched
            and r.source_type == SOURCE_RAW
            and (asset_id is None or r.asset_id == asset_id)
        )
        matches.sort(key=lambda r: r.dispatched_at or r.created_at, reverse=True)
        return matches[:limit]

    def raw_between(self, start: datetime, end: datetime) -> List[PredictionRecord]:
        """Raw records with ``start <= created_at < end``, oldest first."""

        matches = self._select(lambda r: r.source_type == SOURCE_RAW and start <= r.created_at < end)
        matches.sort(key=lambda r: r.created_at)
        return matches

    def rollups(self, asset_id: Optional[str] = None) -> List[PredictionRecord]:
        matches = self._select(
            lambda r: r.source_type == SOURCE_ROLLUP and (asset_id is None or r.asset_id == asset_id)
        )
        matches.sort(key=lambda r: (r.asset_id, r.bucket_start))
        return matches

    def mark_dispatched(self, record_id: str, when: Optional[datetime] = None) -> Optional[PredictionRecord]:
        with self.backend.lock:
            record = self._records.get(record_id)
            if record is None:
                return None
            updated = record.with_dispatch(when)
            self._records[record_id] = updated
            self._persist()
            return updated

    def upsert_rollup(self, asset_id: str, bucket_start: datetime, fields: Mapping[str, Any]) -> Tuple[PredictionRecord, bool]:
        """Insert or replace the rollup for ``(asset_id, bucket_start)``.

        Returns the stored record and whether it was newly created.
        """

        now = _utcnow()
        with self.backend.lock:
            existing = next(
                (
                    r
                    for r in self._records.values()
                    if r.source_type == SOURCE_ROLLUP and r.asset_id == asset_id and r.bucket_start == bucket_start
                ),
                None,
            )
            values = dict(fields)
            values.update(
                asset_id=asset_id,
                bucket_start=bucket_start,
                source_type=SOURCE_ROLLUP,
                raw_payload=None,
                updated_at=now,
            )
            if existing is not None:
                values.update(id=existing.id, created_at=existing.created_at)
            else:
                values.setdefault("created_at", now)
            record = PredictionRecord(**values)
            self._records[record.id] = record
            self._persist()
        return record, existing is None

    def delete_older_than(self, source_type: str, cutoff: datetime) -> int:
        with self.backend.lock:
            doomed = [
                r.id for r in self._records.values() if r.source_type == source_type and r.created_at < cutoff
            ]
            for record_id in doomed:
                del self._records[record_id]
            if doomed:
                self._persist()
        return len(doomed)

    def __len__(self) -> int:
        with self.backend.lock:
            return len(self._records)


class RecipientStore:
    """Recipient preference documents keyed by email."""

    def __init__(self, backend: Optional[JsonFileBackend] = None) -> None:
        self.backend = backend or JsonFileBackend(None)
        self._docs: Dict[str, RecipientPreferences] = {}
        raw = self.backend.load()
        for doc in raw.values() if isinstance(raw, Mapping) else []:
            try:
                prefs = RecipientPreferences.from_dict(doc)
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping malformed recipient record: %s", exc)
                continue
            self._docs[prefs.email] = prefs

    def _persist(self) -> None:
        self.backend.save({email: prefs.to_dict() for email, prefs in self._docs.items()})

    def find(self, email: str) -> Optional[RecipientPreferences]:
        with self.backend.lock:
            return self._docs.get(normalize_email(email))

    def all(self) -> List[RecipientPreferences]:
        with self.backend.lock:
            return list(self._docs.values())

    def save(self, prefs: RecipientPreferences) -> RecipientPreferences:
        with self.backend.lock:
            self._docs[prefs.email] = prefs
            self._persist()
        return prefs

    def subscribed_to(self, asset_id: str, tracked: Iterable[str] = ()) -> List[RecipientPreferences]:
        """Recipients with ``asset_id`` enabled; tracked assets with no entry count as enabled."""

        tracked = tuple(tracked)
        with self.backend.lock:
            docs = list(self._docs.values())
        return [p for p in (ensure_default_preferences(d, tracked)[0] for d in docs) if p.is_enabled(asset_id)]

    def upsert_throttle(self, email: str, fields: Mapping[str, Any]) -> RecipientPreferences:
        """Merge ``fields`` (``notification_throttle`` / ``alert_preferences``) into one recipient."""

        written, failures = self.bulk_upsert([(email, fields)])
        if failures:
            raise ValueError(failures[0][1])
        return written[0]

    def bulk_upsert(
        self, updates: Iterable[Tuple[str, Mapping[str, Any]]]
    ) -> Tuple[List[RecipientPreferences], List[Tuple[str, str]]]:
        """Apply every update independently and persist once.

        A failing update is reported in the second element and does not stop
        the others.
        """

        written: List[RecipientPreferences] = []
        failures: List[Tuple[str, str]] = []
        with self.backend.lock:
            for email, fields in updates:
                try:
                    key = normalize_email(email)
                    current = self._docs.get(key) or RecipientPreferences(email=key)
                    throttle = dict(current.notification_throttle)
                    throttle.update(fields.get("notification_throttle") or {})
                    prefs = dict(current.alert_preferences)
                    prefs.update(fields.get("alert_preferences") or {})
                    merged = RecipientPreferences(
                        email=key,
                        alert_preferences=prefs,
                        notification_throttle=throttle,
                        created_at=current.created_at,
                        updated_at=_utcnow(),
                    )
                except (TypeError, ValueError, AttributeError) as exc:
                    failures.append((str(email), str(exc)))
                    continue
                self._docs[key] = merged
                written.append(merged)
            if written:
                self._persist()
        return written, failures


__all__ = [
    "JsonFileBackend",
    "PREDICTIONS_FILE",
    "PredictionStore",
    "RECIPIENTS_FILE",
    "RecipientStore",
    "SNAPSHOTS_FILE",
    "SnapshotStore",
]
