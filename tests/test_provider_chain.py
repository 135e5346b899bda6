from datetime import datetime, timezone

import pytest

from config import PipelineSettings, ProviderSettings
from errors import AllProvidersFailedError, ProviderError
from market_models import ONE_DAY_MS, Snapshot
from market_providers import CoinCapAdapter, CoinGeckoAdapter, CoinPaprikaAdapter, auth_headers
from provider_chain import ProviderChain, build_provider_chain
from quota import QuotaCounters

NOW = datetime(2024, 1, 8, tzinfo=timezone.utc)


class StubAdapter:
    def __init__(self, name, error=None):
        self.name = name
        self.error = error
        self.calls = []

    def fetch_snapshot(self, asset_id):
        self.calls.append(asset_id)
        if self.error:
            raise ProviderError(self.name, self.error)
        return {"asset_id": asset_id}

    def normalize(self, raw):
        return Snapshot(asset_id=raw["asset_id"], name="Bitcoin", symbol="BTC", price=100.0, source=self.name)


class FakeFetcher:
    """Maps request paths to payloads (or exceptions)."""

    def __init__(self, routes, stale_paths=()):
        self.routes = routes
        self.stale_paths = set(stale_paths)
        self.requests = []

    def fetch(self, request):
        self.requests.append(request)
        result = self.routes[request.path]
        if isinstance(result, Exception):
            raise result
        return result

    def fetch_with_status(self, request):
        return self.fetch(request), request.path in self.stale_paths


def test_first_success_wins_after_failures():
    a = StubAdapter("A", error="a down")
    b = StubAdapter("B", error="b down")
    c = StubAdapter("C")
    d = StubAdapter("D")

    snapshot = ProviderChain([a, b, c, d]).resolve(" Bitcoin ")

    assert snapshot.source == "C"
    assert a.calls == b.calls == c.calls == ["bitcoin"]
    assert d.calls == []


def test_all_failures_are_aggregated_in_order():
    chain = ProviderChain(
        [StubAdapter("A", error="a down"), StubAdapter("B", error="b down"), StubAdapter("C", error="c down")]
    )

    with pytest.raises(AllProvidersFailedError) as excinfo:
        chain.resolve("bitcoin")

    assert str(excinfo.value) == "Unable to retrieve data for bitcoin. Attempts: A: a down | B: b down | C: c down"
    assert excinfo.value.errors == ["A: a down", "B: b down", "C: c down"]


def test_coingecko_sparkline_is_spread_evenly():
    fetcher = FakeFetcher(
        {
            "coins/bitcoin": {
                "name": "Bitcoin",
                "symbol": "btc",
                "last_updated": "2024-01-08T00:00:00Z",
                "image": {"large": "https://img.example/btc.png"},
                "market_data": {
                    "current_price": {"usd": 99.0},
                    "price_change_percentage_24h": -1.234,
                    "market_cap": {"usd": 1.9e12},
                    "total_volume": {"usd": 3.1e10},
                    "sparkline_7d": {"price": [100, 110, 99]},
                },
            }
        }
    )
    adapter = CoinGeckoAdapter(fetcher, now=lambda: NOW)

    snapshot = adapter.normalize(adapter.fetch_snapshot("bitcoin"))

    assert snapshot.source == "CoinGecko"
    assert snapshot.symbol == "BTC"
    assert snapshot.price == 99.0
    assert snapshot.change_24h == -1.23
    assert snapshot.volatility_7d == 14.19
    assert snapshot.image == "https://img.example/btc.png"
    assert snapshot.last_updated == NOW
    last_ms = NOW.timestamp() * 1000
    step = 7 * ONE_DAY_MS / 2
    assert [p.timestamp for p in snapshot.history] == [last_ms - 2 * step, last_ms - step, last_ms]
    assert fetcher.requests[0].signature() == "coin:bitcoin:details"


def test_coinpaprika_history_failure_keeps_snapshot():
    fetcher = FakeFetcher(
        {
            "tickers/btc-bitcoin": {
                "name": "Bitcoin",
                "symbol": "BTC",
                "last_updated": "2024-01-08T00:00:00Z",
                "quotes": {"USD": {"price": 43000.126, "percent_change_24h": 2.5, "volume_24h": 1e9}},
            },
            "tickers/btc-bitcoin/historical": ProviderError("CoinPaprika", "HTTP 402 Payment Required"),
        }
    )
    adapter = CoinPaprikaAdapter(fetcher, now=lambda: NOW)

    snapshot = adapter.normalize(adapter.fetch_snapshot("btc-bitcoin"))

    assert snapshot.price == 43000.13
    assert snapshot.change_24h == 2.5
    assert snapshot.history == ()
    assert snapshot.volatility_7d is None
    history_request = fetcher.requests[1]
    assert history_request.cache_key == "btc-bitcoin:history"
    assert history_request.retries == 0
    assert history_request.params["interval"] == "24h"


def test_coincap_quote_and_daily_history():
    day = ONE_DAY_MS
    fetcher = FakeFetcher(
        {
            "assets/dogecoin": {
                "data": {
                    "name": "Dogecoin",
                    "symbol": "DOGE",
                    "priceUsd": "0.0812345",
                    "changePercent24Hr": "1.005",
                },
                "timestamp": 1704672000000,
            },
            "assets/dogecoin/history": {
                "data": [
                    {"priceUsd": "0.08", "time": 1704672000000 - 2 * day},
                    {"priceUsd": "0.088", "time": 1704672000000 - day},
                    {"priceUsd": "bad", "time": 1704672000000},
                ]
            },
        }
    )
    adapter = CoinCapAdapter(fetcher, now=lambda: NOW)

    snapshot = adapter.normalize(adapter.fetch_snapshot("dogecoin"))

    assert snapshot.price == 0.0812
    assert snapshot.image is None
    assert len(snapshot.history) == 2
    assert snapshot.volatility_7d == 0.0
    assert fetcher.requests[1].params["interval"] == "d1"


def test_missing_price_is_a_provider_error():
    adapter = CoinCapAdapter(FakeFetcher({"assets/bitcoin": {"data": {"priceUsd": None}}}), now=lambda: NOW)
    with pytest.raises(ProviderError):
        adapter.fetch_snapshot("bitcoin")


def test_auth_headers_per_provider():
    assert auth_headers("coingecko", "k") == {"x-cg-demo-api-key": "k"}
    assert auth_headers("coincap", "k") == {"Authorization": "Bearer k"}
    assert auth_headers("coincap", None) == {}


def test_build_provider_chain_skips_unknown_providers():
    settings = PipelineSettings(
        provider_order=("coinpaprika", "bogus", "coingecko"),
        providers=(ProviderSettings(name="coingecko", request_delay_ms=7000, base_url="https://gecko.test", api_key="k"),),
        markets_refresh_min=5,
    )

    chain = build_provider_chain(settings)

    assert [a.name for a in chain.adapters] == ["CoinPaprika", "CoinGecko"]
    paprika, gecko = chain.adapters
    assert paprika.fetcher.base_url == "https://api.coinpaprika.com/v1"
    assert gecko.fetcher.base_url == "https://gecko.test"
    assert gecko.fetcher.settings.request_delay_ms == 7000
    assert gecko.fetcher.default_ttl == 300.0


class RoutedResponse:
    def __init__(self, payload):
        self.status_code = 200
        self.headers = {}
        self.reason = "OK"
        self._payload = payload

    def json(self):
        return self._payload


class RoutedSession:
    """Answers every quote with a price and every history call with no points."""

    def __init__(self):
        self.urls = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.urls.append(url)
        if url.endswith("/history") or url.endswith("/historical"):
            return RoutedResponse({"data": []} if "coincap" in url else [])
        if "coincap" in url:
            return RoutedResponse({"data": {"name": "Ethereum", "symbol": "ETH", "priceUsd": "2500.5"}})
        return RoutedResponse({"name": "Bitcoin", "symbol": "BTC", "quotes": {"USD": {"price": 43000.0}}})


def test_exhausted_provider_quota_fails_over_to_next_provider():
    settings = PipelineSettings(
        provider_order=("coinpaprika", "coincap"),
        providers=(
            ProviderSettings(
                name="coinpaprika", request_delay_ms=0, base_url="https://paprika.test", max_requests_per_day=1
            ),
            ProviderSettings(name="coincap", request_delay_ms=0, base_url="https://coincap.test"),
        ),
    )
    quota = QuotaCounters(settings.quota_caps, clock=lambda: NOW)
    session = RoutedSession()
    chain = build_provider_chain(settings, quota, session=session, sleep=lambda _: None)

    first = chain.resolve("bitcoin")
    second = chain.resolve("ethereum")

    assert first.source == "CoinPaprika"
    assert second.source == "CoinCap"
    assert second.price == 2500.5
    assert session.urls == [
        "https://paprika.test/tickers/bitcoin",
        "https://coincap.test/assets/ethereum",
        "https://coincap.test/assets/ethereum/history",
    ]
    usage = quota.snapshot()
    assert usage["market_data:coinpaprika"]["remaining"] == 0
    assert usage["market_data:coincap"]["count"] == 2


def test_stale_quote_is_normalized_as_cached():
    fetcher = FakeFetcher(
        {
            "assets/bitcoin": {"data": {"name": "Bitcoin", "symbol": "BTC", "priceUsd": "100"}},
            "assets/bitcoin/history": {"data": []},
        },
        stale_paths={"assets/bitcoin"},
    )
    adapter = CoinCapAdapter(fetcher, now=lambda: NOW)

    raw = adapter.fetch_snapshot("bitcoin")
    snapshot = adapter.normalize(raw)

    assert raw["stale"] is True
    assert snapshot.cached is True
    assert snapshot.price == 100.0
