from datetime import datetime, timedelta, timezone

import pytest

from errors import AllProvidersFailedError, DataUnavailableError
from market_models import Snapshot, clean_history
from snapshot_cache import MarketDataService, SnapshotCache
from storage import JsonFileBackend, SnapshotStore

T0 = datetime(2024, 1, 8, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class StubChain:
    def __init__(self, result):
        self.result = result
        self.calls = 0

    def resolve(self, asset_id):
        self.calls += 1
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


def _snapshot(price=100.0, source="CoinCap"):
    return Snapshot(
        asset_id="bitcoin",
        name="Bitcoin",
        symbol="BTC",
        price=price,
        change_24h=1.0,
        history=clean_history([[1, 99.0], [2, 100.0]]),
        source=source,
        last_updated=T0,
    )


def test_cache_is_fresh_within_ttl():
    clock = Clock(T0)
    cache = SnapshotCache(ttl=timedelta(minutes=15), now=clock)
    cache.put("bitcoin", _snapshot())

    clock.now = T0 + timedelta(minutes=10)
    hit = cache.get("bitcoin")
    assert hit is not None and hit.cached is True

    clock.now = T0 + timedelta(minutes=16)
    assert cache.get("bitcoin") is None
    stale = cache.get_stale("bitcoin")
    assert stale is not None and stale.price == 100.0


def test_cache_survives_a_new_store(tmp_path):
    path = tmp_path / "snapshots.json"
    clock = Clock(T0)
    SnapshotCache(SnapshotStore(JsonFileBackend(path)), now=clock).put("bitcoin", _snapshot())

    reopened = SnapshotCache(SnapshotStore(JsonFileBackend(path)), now=clock)
    hit = reopened.get("bitcoin")
    assert hit is not None
    assert hit.history == _snapshot().history


def test_service_serves_fresh_cache_without_chain():
    clock = Clock(T0)
    cache = SnapshotCache(now=clock)
    cache.put("bitcoin", _snapshot())
    chain = StubChain(_snapshot(price=200.0))

    snapshot = MarketDataService(cache, chain).get_snapshot("bitcoin")

    assert snapshot.price == 100.0
    assert snapshot.cached is True
    assert chain.calls == 0


def test_service_refreshes_and_stores_on_miss():
    clock = Clock(T0)
    cache = SnapshotCache(now=clock)
    chain = StubChain(_snapshot(price=200.0))

    snapshot = MarketDataService(cache, chain).get_snapshot("Bitcoin")

    assert snapshot.price == 200.0
    assert snapshot.cached is False
    assert cache.get("bitcoin").price == 200.0


def test_service_falls_back_to_stale_cache():
    clock = Clock(T0)
    cache = SnapshotCache(now=clock)
    cache.put("bitcoin", _snapshot(price=90.0))
    clock.now = T0 + timedelta(hours=2)
    chain = StubChain(AllProvidersFailedError("bitcoin", ["A: down"]))

    snapshot = MarketDataService(cache, chain).get_snapshot("bitcoin")

    assert snapshot.price == 90.0
    assert snapshot.cached is True


def test_service_raises_when_nothing_is_cached():
    chain = StubChain(AllProvidersFailedError("bitcoin", ["A: down"]))
    service = MarketDataService(SnapshotCache(now=Clock(T0)), chain)

    with pytest.raises(DataUnavailableError) as excinfo:
        service.get_snapshot("bitcoin")
    assert excinfo.value.asset_id == "bitcoin"
    assert isinstance(excinfo.value.cause, AllProvidersFailedError)


def test_service_does_not_restamp_stale_provider_data():
    clock = Clock(T0)
    cache = SnapshotCache(now=clock)
    cache.put("bitcoin", _snapshot(price=90.0))
    clock.now = T0 + timedelta(hours=2)
    chain = StubChain(_snapshot(price=95.0).as_cached())

    snapshot = MarketDataService(cache, chain).get_snapshot("bitcoin")

    assert snapshot.price == 95.0
    assert snapshot.cached is True
    assert cache.get("bitcoin") is None
    assert cache.get_stale("bitcoin").price == 90.0
