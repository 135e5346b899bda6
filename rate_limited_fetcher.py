"""Serialized, rate-limited HTTP access to one market-data provider.

Each provider owns a ``RateLimitedFetcher``.  Calls are funnelled through a
single lock so at most one request per provider is in flight, and every
attempt waits until ``request_delay_ms`` has elapsed since the previous one.
Successful payloads land in a :class:`ResponseCache`; when a provider fails
the last cached payload is served even if it has expired.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Tuple

import requests

from config import ProviderSettings, market_data_quota_key
from errors import DailyLimitExceededError, ProviderError
from log_utils import setup_logger
from quota import QuotaCounters
from response_cache import ResponseCache

logger = setup_logger(__name__)

RETRYABLE_STATUSES = frozenset({429, 503})
DEFAULT_CACHE_TTL = 300.0


def _param_value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ",".join(str(v) for v in value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _clean_params(params: Optional[Mapping[str, Any]]) -> Tuple[Tuple[str, str], ...]:
    if not params:
        return ()
    return tuple(
        (str(k), _param_value(v)) for k, v in params.items() if v is not None and v != ""
    )


@dataclass(frozen=True)
class FetchRequest:
    """One GET against a provider, relative to its base URL."""

    path: str
    params: Mapping[str, Any] = field(default_factory=dict)
    cache_key: Optional[str] = None
    ttl: Optional[float] = None
    error_message: Optional[str] = None
    retries: Optional[int] = None

    def signature(self) -> str:
        """Canonical cache key: explicit key, else ``path?k=v&...``."""

        if self.cache_key:
            return self.cache_key
        parts = _clean_params(self.params)
        if not parts:
            return self.path
        return self.path + "?" + "&".join(f"{k}={v}" for k, v in parts)


def _retry_after_seconds(response: Any) -> Optional[float]:
    headers = getattr(response, "headers", None) or {}
    raw = headers.get("Retry-After") if hasattr(headers, "get") else None
    if raw is None:
        return None
    try:
        seconds = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(seconds) or seconds <= 0:
        return None
    return seconds


def _error_message(response: Any) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, Mapping):
        for key in ("error", "message", "status"):
            value = payload.get(key)
            if isinstance(value, Mapping):
                value = value.get("error_message") or value.get("message")
            if value:
                return str(value)
    reason = getattr(response, "reason", "") or ""
    return f"HTTP {response.status_code} {reason}".strip()


class RateLimitedFetcher:
    """Fetch JSON from one provider with spacing, retry and stale fallback."""

    def __init__(
        self,
        settings: ProviderSettings,
        base_url: str,
        *,
        session: Optional[requests.Session] = None,
        cache: Optional[ResponseCache] = None,
        quota: Optional[QuotaCounters] = None,
        headers: Optional[Mapping[str, str]] = None,
        default_ttl: float = DEFAULT_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.name = settings.name
        self.quota_key = market_data_quota_key(settings.name)
        self.base_url = base_url.rstrip("/")
        self.cache = cache or ResponseCache(clock=clock)
        self.quota = quota
        self.default_ttl = default_ttl
        self._session = session
        self._headers = dict(headers or {})
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_request: Optional[float] = None

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            sess = requests.Session()
            sess.headers.update({"User-Agent": "market-signal-agent/1.0", "Accept": "application/json"})
            self._session = sess
        return self._session

    def _wait_for_slot(self) -> None:
        delay = self.settings.request_delay_ms / 1000.0
        if delay <= 0 or self._last_request is None:
            return
        elapsed = self._clock() - self._last_request
        if elapsed < delay:
            self._sleep(delay - elapsed)

    def _stale(self, key: str) -> Any:
        return self.cache.get(key, allow_stale=True)

    def fetch(self, request: FetchRequest) -> Any:
        """Return the decoded JSON payload for ``request``.

        Raises :class:`ProviderError` when every attempt failed and nothing is
        cached for the request signature.
        """

        return self.fetch_with_status(request)[0]

    def fetch_with_status(self, request: FetchRequest) -> Tuple[Any, bool]:
        """Like :meth:`fetch`, also returning whether the payload is stale.

        The flag is ``True`` only when an expired cache entry stood in for a
        refresh that was refused by the quota or failed upstream.
        """

        key = request.signature()
        cached = self.cache.get(key)
        if cached is not None:
            return cached, False

        with self._lock:
            # Another caller may have filled the cache while we queued.
            cached = self.cache.get(key)
            if cached is not None:
                return cached, False
            return self._fetch_locked(request, key)

    def _fetch_locked(self, request: FetchRequest, key: str) -> Tuple[Any, bool]:
        url = f"{self.base_url}/{request.path.lstrip('/')}"
        params = dict(_clean_params(request.params)) or None
        retries = self.settings.retry_attempts if request.retries is None else request.retries
        attempts = max(0, int(retries))
        ttl = self.default_ttl if request.ttl is None else request.ttl
        last_message = f"{self.name} request failed"
        last_status: Optional[int] = None

        for attempt in range(attempts + 1):
            self._wait_for_slot()
            if self.quota is not None:
                try:
                    self.quota.touch(self.quota_key)
                except DailyLimitExceededError as exc:
                    stale = self._stale(key)
                    if stale is not None:
                        logger.warning("[%s] %s; serving stale %s", self.name, exc, key)
                        return stale, True
                    raise ProviderError(self.name, str(exc)) from exc

            logger.info("[%s] GET %s (attempt %d/%d)", self.name, url, attempt + 1, attempts + 1)
            response = None
            try:
                response = self.session.get(
                    url, params=params, headers=self._headers or None, timeout=self.settings.timeout
                )
            except requests.RequestException as exc:
                last_status, last_message = None, str(exc)
            else:
                if response.status_code < 400:
                    try:
                        data = response.json()
                    except ValueError:
                        last_status, last_message = response.status_code, "invalid JSON payload"
                    else:
                        self.cache.set(key, data, ttl)
                        self._last_request = self._clock()
                        return data, False
                else:
                    last_status, last_message = response.status_code, _error_message(response)
            self._last_request = self._clock()
            logger.error("[%s] Error (%s): %s", self.name, last_status or "NO_STATUS", last_message)

            if last_status in RETRYABLE_STATUSES and attempt < attempts:
                wait = _retry_after_seconds(response)
                if wait is None:
                    wait = self.settings.retry_delay_ms / 1000.0 * (attempt + 1)
                logger.warning("[%s] Hit rate limit. Retrying in %.1f s.", self.name, wait)
                self._sleep(wait)
                continue

            stale = self._stale(key)
            if stale is not None:
                logger.warning("[%s] Using stale fallback for %s", self.name, key)
                return stale, True
            break

        raise ProviderError(self.name, request.error_message or last_message, status_code=last_status)


__all__ = ["FetchRequest", "RateLimitedFetcher", "RETRYABLE_STATUSES"]
