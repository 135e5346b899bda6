"""Market-data provider adapters.

Every adapter turns one upstream API into the canonical :class:`Snapshot`.
``fetch_snapshot`` performs the HTTP work (quote plus an optional history
call) and returns a raw payload; ``normalize`` maps that payload onto the
canonical shape.  History failures never fail the adapter: the snapshot is
returned with an empty series and no volatility.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from errors import ProviderError
from log_utils import setup_logger
from market_models import (
    HISTORY_POINTS,
    ONE_DAY_MS,
    VOLATILITY_WINDOW_DAYS,
    Snapshot,
    clean_history,
    fallback_name_for,
    fallback_symbol_for,
    format_price,
    parse_number,
    parse_timestamp,
    round_half_up,
)
from rate_limited_fetcher import FetchRequest, RateLimitedFetcher
from volatility import estimate_volatility

logger = setup_logger(__name__)

RawPayload = Dict[str, Any]

QUOTE_TTL = 60.0
HISTORY_TTL = 15 * 60.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _get(data: Any, *path: str) -> Any:
    current = data
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


class ProviderAdapter:
    """Base adapter; subclasses implement ``fetch_snapshot``."""

    label = "Unknown"

    def __init__(self, fetcher: RateLimitedFetcher, *, now: Optional[Callable[[], datetime]] = None) -> None:
        self.fetcher = fetcher
        self._now = now or _utcnow

    @property
    def name(self) -> str:
        return self.label

    def fetch_snapshot(self, asset_id: str) -> RawPayload:
        raise NotImplementedError

    def fetch_history(self, asset_id: str) -> List[List[float]]:
        return []

    def _safe_history(self, asset_id: str) -> List[List[float]]:
        try:
            return self.fetch_history(asset_id)
        except ProviderError as exc:
            logger.warning("[%s] history fetch failed for %s: %s", self.label, asset_id, exc)
            return []

    def _payload(self, asset_id: str, history: List[List[float]], **fields: Any) -> RawPayload:
        payload: RawPayload = {
            "asset_id": asset_id,
            "history": history,
            "volatility": estimate_volatility(price for _, price in history),
            "source": self.label,
        }
        payload.update(fields)
        if payload.get("stale"):
            logger.warning("[%s] serving stale quote for %s", self.label, asset_id)
        else:
            logger.info("[%s] success %s", self.label, asset_id)
        return payload

    def normalize(self, raw: Mapping[str, Any]) -> Snapshot:
        """Map a raw payload onto the canonical snapshot shape."""

        asset_id = str(raw.get("asset_id") or "")
        price = format_price(raw.get("price"))
        if price is None:
            raise ProviderError(self.label, f"{self.label} price data unavailable")
        volatility = raw.get("volatility")
        return Snapshot(
            asset_id=asset_id,
            name=str(raw.get("name") or fallback_name_for(asset_id)),
            symbol=str(raw.get("symbol") or fallback_symbol_for(asset_id)).upper(),
            price=price,
            change_24h=round_half_up(raw.get("change_24h"), 2),
            volatility_7d=None if volatility is None else round_half_up(volatility, 2),
            market_cap=parse_number(raw.get("market_cap")),
            total_volume=parse_number(raw.get("total_volume")),
            image=raw.get("image") or None,
            history=clean_history(raw.get("history")),
            source=self.label,
            last_updated=parse_timestamp(raw.get("last_updated")) or self._now(),
            cached=bool(raw.get("stale")),
        )


class CoinPaprikaAdapter(ProviderAdapter):
    label = "CoinPaprika"

    def fetch_history(self, asset_id: str) -> List[List[float]]:
        start = self._now() - timedelta(days=HISTORY_POINTS)
        data = self.fetcher.fetch(
            FetchRequest(
                path=f"tickers/{asset_id}/historical",
                params={
                    "start": start.strftime("%Y-%m-%dT%H:%M:%SZ"),
                    "interval": "24h",
                    "limit": HISTORY_POINTS,
                },
                cache_key=f"{asset_id}:history",
                ttl=HISTORY_TTL,
                retries=0,
            )
        )
        if not isinstance(data, list):
            return []
        history = []
        for entry in data:
            price = parse_number(_get(entry, "price"))
            ts = parse_timestamp(_get(entry, "timestamp"))
            if price is None or ts is None:
                continue
            history.append([ts.timestamp() * 1000, price])
        return history

    def fetch_snapshot(self, asset_id: str) -> RawPayload:
        data, stale = self.fetcher.fetch_with_status(FetchRequest(path=f"tickers/{asset_id}", ttl=QUOTE_TTL))
        quote = _get(data, "quotes", "USD")
        price = parse_number(_get(quote, "price"))
        if price is None:
            raise ProviderError(self.label, "CoinPaprika price data unavailable")
        image = None
        for key in ("logo", "logo_32", "logo_64", "logo_128", "logo_256", "logo_512"):
            if _get(data, key):
                image = data[key]
                break
        history = self._safe_history(asset_id)
        return self._payload(
            asset_id,
            history,
            price=price,
            change_24h=parse_number(_get(quote, "percent_change_24h")),
            market_cap=parse_number(_get(quote, "market_cap")),
            total_volume=parse_number(_get(quote, "volume_24h")),
            name=_get(data, "name"),
            symbol=_get(data, "symbol"),
            image=image,
            last_updated=_get(data, "last_updated"),
            stale=stale,
        )


class CoinCapAdapter(ProviderAdapter):
    label = "CoinCap"

    def fetch_history(self, asset_id: str) -> List[List[float]]:
        end = int(self._now().timestamp() * 1000)
        start = end - ONE_DAY_MS * HISTORY_POINTS
        data = self.fetcher.fetch(
            FetchRequest(
                path=f"assets/{asset_id}/history",
                params={"interval": "d1", "start": start, "end": end},
                cache_key=f"{asset_id}:history",
                ttl=HISTORY_TTL,
                retries=0,
            )
        )
        entries = _get(data, "data")
        history = []
        for entry in entries if isinstance(entries, list) else []:
            price = parse_number(_get(entry, "priceUsd"))
            ts = parse_number(_get(entry, "time"))
            if price is None or ts is None:
                continue
            history.append([ts, price])
        return history

    def fetch_snapshot(self, asset_id: str) -> RawPayload:
        data, stale = self.fetcher.fetch_with_status(FetchRequest(path=f"assets/{asset_id}", ttl=QUOTE_TTL))
        asset = _get(data, "data")
        price = parse_number(_get(asset, "priceUsd"))
        if price is None:
            raise ProviderError(self.label, "CoinCap price data unavailable")
        history = self._safe_history(asset_id)
        ts = parse_number(_get(asset, "timestamp"))
        if ts is None:
            ts = parse_number(_get(data, "timestamp"))
        return self._payload(
            asset_id,
            history,
            price=price,
            change_24h=parse_number(_get(asset, "changePercent24Hr")),
            market_cap=parse_number(_get(asset, "marketCapUsd")),
            total_volume=parse_number(_get(asset, "volumeUsd24Hr")),
            name=_get(asset, "name"),
            symbol=_get(asset, "symbol"),
            image=None,
            last_updated=ts,
            stale=stale,
        )


class CoinGeckoAdapter(ProviderAdapter):
    """Coin detail endpoint; history comes from the embedded 7-day sparkline."""

    label = "CoinGecko"

    DETAIL_PARAMS = {
        "localization": "false",
        "tickers": "false",
        "community_data": "false",
        "developer_data": "false",
        "sparkline": "true",
        "market_data": "true",
    }

    def fetch_snapshot(self, asset_id: str) -> RawPayload:
        data, stale = self.fetcher.fetch_with_status(
            FetchRequest(
                path=f"coins/{asset_id}",
                params=self.DETAIL_PARAMS,
                cache_key=f"coin:{asset_id}:details",
                ttl=5 * 60.0,
                error_message=f"Failed to fetch coin details for {asset_id}",
            )
        )
        market = _get(data, "market_data")
        price = parse_number(_get(market, "current_price", "usd"))
        if price is None:
            raise ProviderError(self.label, "CoinGecko price data unavailable")

        last_updated = _get(data, "last_updated") or _get(market, "last_updated")
        anchor = parse_timestamp(last_updated) or self._now()
        sparkline = _get(market, "sparkline_7d", "price")
        sparkline = sparkline if isinstance(sparkline, list) else []
        # Sparkline points carry no timestamps; spread them evenly back from
        # the update time.
        interval_ms = (
            VOLATILITY_WINDOW_DAYS * ONE_DAY_MS / (len(sparkline) - 1) if len(sparkline) > 1 else ONE_DAY_MS
        )
        last_ms = anchor.timestamp() * 1000
        history = []
        for index, value in enumerate(sparkline):
            point = parse_number(value)
            if point is None:
                continue
            history.append([last_ms - (len(sparkline) - 1 - index) * interval_ms, point])

        image = _get(data, "image", "large") or _get(data, "image", "small") or _get(data, "image", "thumb")
        return self._payload(
            asset_id,
            history,
            price=price,
            change_24h=parse_number(_get(market, "price_change_percentage_24h")),
            market_cap=parse_number(_get(market, "market_cap", "usd")),
            total_volume=parse_number(_get(market, "total_volume", "usd")),
            name=_get(data, "name"),
            symbol=_get(data, "symbol"),
            image=image,
            last_updated=last_updated,
            stale=stale,
        )


ADAPTERS = {
    "coinpaprika": CoinPaprikaAdapter,
    "coincap": CoinCapAdapter,
    "coingecko": CoinGeckoAdapter,
}


def auth_headers(provider: str, api_key: Optional[str]) -> Dict[str, str]:
    """Return the authentication headers a provider expects, if keyed."""

    if not api_key:
        return {}
    if provider == "coingecko":
        return {"x-cg-demo-api-key": api_key}
    return {"Authorization": f"Bearer {api_key}"}


__all__ = [
    "ADAPTERS",
    "CoinCapAdapter",
    "CoinGeckoAdapter",
    "CoinPaprikaAdapter",
    "ProviderAdapter",
    "auth_headers",
]
