"""Persisted, TTL-gated snapshot cache and the read-through market data service."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from errors import DataUnavailableError
from log_utils import setup_logger
from market_models import Snapshot, normalize_asset_id
from provider_chain import ProviderChain
from storage import SnapshotStore

logger = setup_logger(__name__)

SNAPSHOT_TTL = timedelta(minutes=15)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SnapshotCache:
    """Latest canonical snapshot per asset, fresh for ``ttl`` after it was stored."""

    def __init__(
        self,
        store: Optional[SnapshotStore] = None,
        *,
        ttl: timedelta = SNAPSHOT_TTL,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store or SnapshotStore()
        self.ttl = ttl
        self._now = now

    def get(self, asset_id: str) -> Optional[Snapshot]:
        found = self.store.find(asset_id)
        if found is None:
            return None
        snapshot, stored_at = found
        if self._now() - stored_at > self.ttl:
            return None
        logger.info("[Cache] hit %s", asset_id)
        return snapshot.as_cached()

    def get_stale(self, asset_id: str) -> Optional[Snapshot]:
        found = self.store.find(asset_id)
        return found[0].as_cached() if found else None

    def put(self, asset_id: str, snapshot: Snapshot) -> None:
        try:
            self.store.upsert(asset_id, snapshot, self._now())
        except OSError as exc:
            logger.warning("[Cache] write failed for %s: %s", asset_id, exc)


class MarketDataService:
    """Read-through access: cache, then provider chain, then stale cache."""

    def __init__(self, cache: SnapshotCache, chain: ProviderChain) -> None:
        self.cache = cache
        self.chain = chain

    def get_snapshot(self, asset_id: str) -> Snapshot:
        asset_id = normalize_asset_id(asset_id)
        cached = self.cache.get(asset_id)
        if cached is not None:
            return cached
        try:
            snapshot = self.chain.resolve(asset_id)
        except Exception as exc:  # noqa: BLE001 - stale cache is the last resort
            stale = self.cache.get_stale(asset_id)
            if stale is not None:
                logger.warning("Serving stale snapshot for %s: %s", asset_id, exc)
                return stale
            raise DataUnavailableError(asset_id, exc) from exc
        if snapshot.cached:
            # Provider answered from its expired response cache; keep the
            # stored timestamp so the snapshot is not treated as fresh.
            logger.warning("Provider served stale data for %s via %s", asset_id, snapshot.source)
            return snapshot
        self.cache.put(asset_id, snapshot)
        return snapshot


__all__ = ["MarketDataService", "SNAPSHOT_TTL", "SnapshotCache"]
