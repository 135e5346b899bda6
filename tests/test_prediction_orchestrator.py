from datetime import datetime, timedelta, timezone

import pytest

from errors import DataUnavailableError, InferenceUnavailableError
from inference_client import InferenceResult
from market_models import Snapshot, clean_history
from prediction_orchestrator import PredictionOrchestrator
from storage import PredictionStore

T0 = datetime(2024, 2, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class StubMarket:
    def __init__(self, change_24h=2.0, error=None):
        self.change_24h = change_24h
        self.error = error

    def get_snapshot(self, asset_id):
        if self.error:
            raise self.error
        return Snapshot(
            asset_id=asset_id,
            name="Bitcoin",
            symbol="BTC",
            price=110.0,
            change_24h=self.change_24h,
            history=clean_history([[1, 90.0], [2, 110.0]]),
            source="CoinCap",
            last_updated=T0,
        )


class StubInference:
    def __init__(self, action="BUY", error=None):
        self.action = action
        self.error = error
        self.calls = []

    def predict(self, features):
        self.calls.append(features)
        if self.error:
            raise self.error
        return InferenceResult(
            action=self.action,
            confidence=0.8,
            reason="Momentum rising",
            prompt="prompt",
            model="test-model",
            raw={"id": "cmpl-1"},
        )


class StubDispatcher:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def notify(self, asset_id, action, confidence, reason, price, *, name=None):
        self.calls.append((asset_id, action))
        if self.error:
            raise self.error
        return 3


def _orchestrator(store, *, inference=None, dispatcher=None, market=None, clock=None, change_only=True):
    return PredictionOrchestrator(
        market or StubMarket(),
        store,
        inference=inference,
        dispatcher=dispatcher,
        send_on_change_only=change_only,
        now=clock or Clock(T0),
    )


def test_inference_success_persists_and_dispatches():
    store = PredictionStore()
    dispatcher = StubDispatcher()
    inference = StubInference()

    outcome = _orchestrator(store, inference=inference, dispatcher=dispatcher).run("Bitcoin")

    assert outcome.fallback_used is False
    assert outcome.source == "inference"
    assert outcome.notified == 3
    assert dispatcher.calls == [("bitcoin", "BUY")]
    record = store.get(outcome.record.id)
    assert record.alert_dispatched is True
    assert record.dispatched_at == T0
    assert record.raw_payload == {"id": "cmpl-1"}
    assert record.average_price == pytest.approx(100.0)
    assert record.volatility == pytest.approx(10.0)
    features = inference.calls[0]
    assert (features.asset_id, features.change_24h, features.period_days) == ("bitcoin", 2.0, 7)


def test_inference_failure_uses_heuristic_and_never_notifies():
    store = PredictionStore()
    dispatcher = StubDispatcher()
    inference = StubInference(error=InferenceUnavailableError("inference API returned 500"))

    outcome = _orchestrator(store, inference=inference, dispatcher=dispatcher).run("bitcoin", notify=True)

    assert outcome.fallback_used is True
    assert outcome.source == "heuristic"
    assert outcome.error == "inference API returned 500"
    assert dispatcher.calls == []
    assert len(store) == 1
    record = outcome.record
    assert record.source_type == "raw"
    assert record.action == "BUY"
    assert record.alert_dispatched is False
    assert record.raw_payload["fallback"] is True
    assert record.raw_payload["error"] == "inference API returned 500"


def test_missing_inference_client_falls_back():
    store = PredictionStore()
    outcome = _orchestrator(store, market=StubMarket(change_24h=0.1)).run("bitcoin")
    assert outcome.fallback_used is True
    assert outcome.record.action == "HOLD"


def test_unchanged_action_is_not_renotified():
    store = PredictionStore()
    clock = Clock(T0)
    dispatcher = StubDispatcher()
    orchestrator = _orchestrator(store, inference=StubInference(), dispatcher=dispatcher, clock=clock)

    orchestrator.run("bitcoin")
    clock.now = T0 + timedelta(minutes=10)
    second = orchestrator.run("bitcoin")

    assert len(dispatcher.calls) == 1
    assert second.notified is None
    assert second.previous.action == "BUY"
    assert len(store) == 2


def test_every_signal_notifies_when_change_only_is_off():
    store = PredictionStore()
    clock = Clock(T0)
    dispatcher = StubDispatcher()
    orchestrator = _orchestrator(
        store, inference=StubInference(), dispatcher=dispatcher, clock=clock, change_only=False
    )

    orchestrator.run("bitcoin")
    clock.now = T0 + timedelta(minutes=10)
    orchestrator.run("bitcoin")

    assert len(dispatcher.calls) == 2


def test_dispatch_failure_keeps_record_undispatched():
    store = PredictionStore()
    dispatcher = StubDispatcher(error=RuntimeError("smtp exploded"))

    outcome = _orchestrator(store, inference=StubInference(), dispatcher=dispatcher).run("bitcoin")

    assert store.get(outcome.record.id).alert_dispatched is False
    assert outcome.notified is None


def test_unavailable_snapshot_persists_nothing():
    store = PredictionStore()
    market = StubMarket(error=DataUnavailableError("bitcoin"))
    with pytest.raises(DataUnavailableError):
        _orchestrator(store, inference=StubInference(), market=market).run("bitcoin")
    assert len(store) == 0


def test_latest_or_run_reuses_recent_prediction():
    store = PredictionStore()
    clock = Clock(T0)
    inference = StubInference()
    orchestrator = _orchestrator(store, inference=inference, clock=clock)

    first = orchestrator.latest_or_run("bitcoin", timedelta(minutes=10))
    clock.now = T0 + timedelta(minutes=5)
    reused = orchestrator.latest_or_run("bitcoin", timedelta(minutes=10))

    assert first.reused is False
    assert reused.reused is True
    assert reused.source == "cache"
    assert reused.record.id == first.record.id
    assert len(inference.calls) == 1

    forced = orchestrator.latest_or_run("bitcoin", timedelta(minutes=10), force=True)
    assert forced.reused is False
    assert len(inference.calls) == 2

    clock.now = T0 + timedelta(minutes=30)
    expired = orchestrator.latest_or_run("bitcoin", timedelta(minutes=10))
    assert expired.reused is False
    assert len(store) == 3
