import json
from datetime import datetime, timezone

import pytest

from market_models import Snapshot
from prediction_schema import PredictionRecord
from preferences import new_preferences
from storage import JsonFileBackend, PredictionStore, RecipientStore, SnapshotStore

T0 = datetime(2024, 1, 1, 12, tzinfo=timezone.utc)


def _record(asset_id="bitcoin", created_at=T0, action="BUY"):
    return PredictionRecord(
        asset_id=asset_id,
        symbol="BTC",
        market_price=100.0,
        action=action,
        confidence=0.7,
        reason="Momentum rising",
        change_24h=2.0,
        average_price=98.0,
        volatility=3.0,
        raw_payload={"choices": []},
        created_at=created_at,
    )


def test_backend_tolerates_missing_empty_and_invalid_files(tmp_path):
    path = tmp_path / "store.json"
    assert JsonFileBackend(path).load() == {}
    path.write_text("")
    assert JsonFileBackend(path, default=list).load() == []
    path.write_text("{not json")
    assert JsonFileBackend(path).load() == {}


def test_backend_save_is_atomic(tmp_path):
    path = tmp_path / "nested" / "store.json"
    backend = JsonFileBackend(path)
    backend.save({"a": 1})
    assert json.loads(path.read_text()) == {"a": 1}
    assert not (tmp_path / "nested" / "store.json.tmp").exists()


def test_prediction_store_round_trip(tmp_path):
    path = tmp_path / "predictions.json"
    store = PredictionStore(JsonFileBackend(path, default=list))
    first = store.insert(_record())
    store.mark_dispatched(first.id, T0)

    reloaded = PredictionStore(JsonFileBackend(path, default=list))
    record = reloaded.get(first.id)
    assert record.alert_dispatched is True
    assert record.dispatched_at == T0
    assert record.raw_payload == {"choices": []}
    assert reloaded.dispatched("bitcoin")[0].id == first.id


def test_insert_rejects_duplicate_ids():
    store = PredictionStore()
    record = store.insert(_record())
    with pytest.raises(ValueError):
        store.insert(record)


def test_latest_and_history_ordering():
    store = PredictionStore()
    older = store.insert(_record(created_at=T0))
    newer = store.insert(_record(created_at=T0.replace(hour=13), action="SELL"))
    store.insert(_record(asset_id="ethereum", created_at=T0.replace(hour=14)))

    assert store.find_latest("bitcoin").id == newer.id
    assert [r.id for r in store.history("bitcoin")] == [newer.id, older.id]
    assert [r.asset_id for r in store.latest_predictions(limit=2)] == ["ethereum", "bitcoin"]
    assert store.find_latest("dogecoin") is None


def test_rollup_records_cannot_carry_raw_payload():
    with pytest.raises(ValueError):
        PredictionRecord(
            asset_id="bitcoin",
            symbol="BTC",
            market_price=1.0,
            action="HOLD",
            confidence=0.5,
            reason="Hourly rollup",
            change_24h=0.0,
            average_price=1.0,
            volatility=0.0,
            source_type="rollup",
            bucket_start=T0,
            raw_payload={"x": 1},
        )


def test_recipient_bulk_upsert_reports_partial_failure(tmp_path):
    path = tmp_path / "recipients.json"
    store = RecipientStore(JsonFileBackend(path))
    store.save(new_preferences("a@example.com", ["bitcoin"], now=T0))

    written, failures = store.bulk_upsert(
        [
            ("a@example.com", {"notification_throttle": {"bitcoin": T0}}),
            ("", {"notification_throttle": {"bitcoin": T0}}),
        ]
    )

    assert [p.email for p in written] == ["a@example.com"]
    assert len(failures) == 1
    reloaded = RecipientStore(JsonFileBackend(path))
    assert reloaded.find("A@Example.com").last_notified("bitcoin") == T0


def test_upsert_throttle_raises_on_failure():
    with pytest.raises(ValueError):
        RecipientStore().upsert_throttle("  ", {"alert_preferences": {"bitcoin": True}})


def test_subscribed_to_backfills_tracked_assets():
    store = RecipientStore()
    store.save(new_preferences("a@example.com", ["bitcoin"], now=T0))
    store.upsert_throttle("b@example.com", {"alert_preferences": {"bitcoin": False}})

    assert [p.email for p in store.subscribed_to("bitcoin")] == ["a@example.com"]
    assert [p.email for p in store.subscribed_to("ethereum", ["bitcoin", "ethereum"])] == [
        "a@example.com",
        "b@example.com",
    ]
    assert store.subscribed_to("ethereum") == []


def test_snapshot_store_skips_documents_with_bad_stored_at(tmp_path):
    path = tmp_path / "snapshots.json"
    snapshot = Snapshot(asset_id="bitcoin", name="Bitcoin", symbol="BTC", price=100.0, source="CoinCap")
    path.write_text(
        json.dumps(
            {
                "bitcoin": {"snapshot": snapshot.to_dict()},
                "ethereum": {"snapshot": snapshot.to_dict(), "stored_at": "yesterday"},
                "solana": {"snapshot": snapshot.to_dict(), "stored_at": "2024-01-01T12:00:00"},
            },
            default=str,
        )
    )
    store = SnapshotStore(JsonFileBackend(path))

    assert store.find("bitcoin") is None
    assert store.find("ethereum") is None
    found, stored_at = store.find("solana")
    assert found.price == 100.0
    assert stored_at == T0
