"""Ordered failover across market-data providers."""

from __future__ import annotations

import time
from typing import Callable, Iterable, List, Optional

import requests

from config import PipelineSettings
from errors import AllProvidersFailedError
from log_utils import setup_logger
from market_models import Snapshot, normalize_asset_id
from market_providers import ADAPTERS, ProviderAdapter, auth_headers
from quota import QuotaCounters
from rate_limited_fetcher import RateLimitedFetcher

logger = setup_logger(__name__)


class ProviderChain:
    """Try each adapter in order and return the first canonical snapshot."""

    def __init__(self, adapters: Iterable[ProviderAdapter]) -> None:
        self.adapters: List[ProviderAdapter] = list(adapters)

    def resolve(self, asset_id: str) -> Snapshot:
        asset_id = normalize_asset_id(asset_id)
        errors: List[str] = []
        for index, adapter in enumerate(self.adapters):
            try:
                raw = adapter.fetch_snapshot(asset_id)
                return adapter.normalize(raw)
            except Exception as exc:  # noqa: BLE001 - any adapter failure moves on
                message = str(exc) or exc.__class__.__name__
                logger.error("[%s] failed for %s: %s", adapter.name, asset_id, message)
                errors.append(f"{adapter.name}: {message}")
                if index + 1 < len(self.adapters):
                    logger.info("[Fallback: %s]", self.adapters[index + 1].name)
        raise AllProvidersFailedError(asset_id, errors)


def build_provider_chain(
    settings: PipelineSettings,
    quota: Optional[QuotaCounters] = None,
    *,
    session: Optional[requests.Session] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> ProviderChain:
    """Build one rate-limited adapter per configured provider, in order."""

    adapters: List[ProviderAdapter] = []
    for name in settings.provider_order:
        adapter_cls = ADAPTERS.get(name)
        if adapter_cls is None:
            logger.warning("Unknown market-data provider %r ignored", name)
            continue
        provider = settings.provider(name)
        fetcher = RateLimitedFetcher(
            provider,
            provider.base_url,
            session=session,
            quota=quota,
            headers=auth_headers(name, provider.api_key),
            default_ttl=settings.markets_refresh_min * 60.0,
            clock=clock,
            sleep=sleep,
        )
        adapters.append(adapter_cls(fetcher))
    return ProviderChain(adapters)


__all__ = ["ProviderChain", "build_provider_chain"]
