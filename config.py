"""Central configuration loader for environment variables."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Tuple

from dotenv import load_dotenv

# Load environment variables once when this module is imported.
load_dotenv()

import os


def _clean_path(value: str | None) -> str:
    """Return ``value`` without inline comments or surrounding whitespace."""

    if not value:
        return ""
    return value.split("#", 1)[0].strip()


# ---------------------------------------------------------------------------
# Environment helpers
# ---------------------------------------------------------------------------


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        return float(raw)
    except (TypeError, ValueError):
        return float(default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return int(default)
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        return int(default)


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return default
    items = tuple(item.strip() for item in raw.split(",") if item.strip())
    return items or default


# ---------------------------------------------------------------------------
# Inference (Groq OpenAI-compatible endpoint)
# ---------------------------------------------------------------------------

DEFAULT_PREDICTION_MODEL = "llama-3.3-70b-versatile"
DEFAULT_GROQ_API_URL = "https://api.groq.com/openai/v1/chat/completions"


def get_groq_api_key() -> str | None:
    """Return the inference API key, or ``None`` when it is not configured."""

    key = os.getenv("GROQ_API_KEY", "").strip()
    return key or None


def get_prediction_model() -> str:
    """Return the model identifier used for prediction prompts."""

    raw = os.getenv("PREDICTION_LLM_MODEL", "").strip()
    return raw or DEFAULT_PREDICTION_MODEL


def get_groq_api_url() -> str:
    return os.getenv("GROQ_API_URL", DEFAULT_GROQ_API_URL) or DEFAULT_GROQ_API_URL


# ---------------------------------------------------------------------------
# Market data providers
# ---------------------------------------------------------------------------

DEFAULT_COINS: Tuple[str, ...] = ("bitcoin", "ethereum", "solana", "dogecoin", "cardano")
DEFAULT_PROVIDER_ORDER: Tuple[str, ...] = ("coinpaprika", "coincap", "coingecko")

_DEFAULT_PROVIDER_BASE_URL = {
    "coinpaprika": "https://api.coinpaprika.com/v1",
    "coincap": "https://api.coincap.io/v2",
    "coingecko": "https://api.coingecko.com/api/v3",
}

# CoinGecko's public tier throttles aggressively; the other providers tolerate
# roughly one request per second.
_DEFAULT_PROVIDER_DELAY_MS = {
    "coinpaprika": 1000,
    "coincap": 1000,
    "coingecko": 7000,
}

# Daily request caps per provider; 0 leaves a provider uncapped.
_DEFAULT_PROVIDER_MAX_PER_DAY = {
    "coingecko": 250,
}


@dataclass(frozen=True)
class ProviderSettings:
    """Rate-limit and retry knobs for one upstream market-data provider."""

    name: str
    request_delay_ms: int = 1000
    retry_attempts: int = 2
    retry_delay_ms: int = 10000
    timeout: float = 10.0
    base_url: str = ""
    api_key: str | None = None
    max_requests_per_day: int = 0


def market_data_quota_key(provider: str) -> str:
    """Quota counter key charged for requests to ``provider``."""

    return f"market_data:{provider}"


def load_provider_settings(name: str) -> ProviderSettings:
    """Load settings for provider ``name`` from ``<NAME>_*`` variables."""

    prefix = name.strip().upper()
    return ProviderSettings(
        name=name.strip().lower(),
        request_delay_ms=max(0, _env_int(f"{prefix}_REQUEST_DELAY_MS", _DEFAULT_PROVIDER_DELAY_MS.get(name, 1000))),
        retry_attempts=max(0, _env_int(f"{prefix}_RETRY_ATTEMPTS", 2)),
        retry_delay_ms=max(0, _env_int(f"{prefix}_RETRY_DELAY_MS", 10000)),
        timeout=max(1.0, _env_float(f"{prefix}_HTTP_TIMEOUT", 12.0 if name == "coingecko" else 10.0)),
        base_url=os.getenv(f"{prefix}_API", "") or _DEFAULT_PROVIDER_BASE_URL.get(name, ""),
        api_key=os.getenv(f"{prefix}_API_KEY") or None,
        max_requests_per_day=max(
            0, _env_int(f"{prefix}_MAX_REQ_PER_DAY", _DEFAULT_PROVIDER_MAX_PER_DAY.get(name, 0))
        ),
    )


# ---------------------------------------------------------------------------
# Pipeline runtime
# ---------------------------------------------------------------------------

DEFAULT_DATA_DIR = "signal_data"


@dataclass(frozen=True)
class SmtpSettings:
    address: str | None = None
    password: str | None = None
    server: str = "smtp.gmail.com"
    port: int = 587


@dataclass(frozen=True)
class PipelineSettings:
    """Runtime configuration for the signal pipeline."""

    coins: Tuple[str, ...] = DEFAULT_COINS
    markets_refresh_min: int = 5
    predict_refresh_min: int = 10
    predict_coins_per_cycle: int = 5
    max_inference_per_day: int = 800
    email_max_per_day: int = 100
    email_min_gap_min: int = 60
    send_email_on_change_only: bool = True
    raw_retention_days: int = 90
    rollup_interval_hours: int = 1
    maintenance_hour_utc: int = 2
    maintenance_minute_utc: int = 15
    period_days: int = 7
    provider_order: Tuple[str, ...] = DEFAULT_PROVIDER_ORDER
    providers: Tuple[ProviderSettings, ...] = field(default_factory=tuple)
    data_dir: str = DEFAULT_DATA_DIR
    inference_timeout: float = 20.0
    smtp: SmtpSettings = field(default_factory=SmtpSettings)

    @property
    def quota_caps(self) -> dict[str, int]:
        caps = {
            market_data_quota_key(name): self.provider(name).max_requests_per_day
            for name in self.provider_order
        }
        caps["inference"] = self.max_inference_per_day
        caps["email"] = self.email_max_per_day
        return caps

    @property
    def inter_asset_delay(self) -> float:
        """Seconds to wait between assets inside one prediction cycle."""

        delays = [p.request_delay_ms for p in self.providers] or [0]
        return max(delays) / 1000.0

    def provider(self, name: str) -> ProviderSettings:
        for candidate in self.providers:
            if candidate.name == name:
                return candidate
        return ProviderSettings(
            name=name,
            request_delay_ms=_DEFAULT_PROVIDER_DELAY_MS.get(name, 1000),
            base_url=_DEFAULT_PROVIDER_BASE_URL.get(name, ""),
            max_requests_per_day=_DEFAULT_PROVIDER_MAX_PER_DAY.get(name, 0),
        )


def load_pipeline_settings() -> PipelineSettings:
    """Load pipeline settings from environment variables."""

    coins = tuple(c.lower() for c in _env_list("COINS", DEFAULT_COINS))
    order = tuple(p.lower() for p in _env_list("PROVIDER_ORDER", DEFAULT_PROVIDER_ORDER))
    return PipelineSettings(
        coins=coins,
        markets_refresh_min=max(1, _env_int("MARKETS_REFRESH_MIN", 5)),
        predict_refresh_min=max(1, _env_int("PREDICT_REFRESH_MIN", 10)),
        predict_coins_per_cycle=max(1, _env_int("PREDICT_COINS_PER_CYCLE", 5)),
        max_inference_per_day=_env_int("MAX_INFERENCE_REQ_PER_DAY", 800),
        email_max_per_day=_env_int("EMAIL_MAX_PER_DAY", 100),
        email_min_gap_min=max(0, _env_int("EMAIL_MIN_GAP_MIN", 60)),
        send_email_on_change_only=_env_bool("SEND_EMAIL_ON_CHANGE_ONLY", True),
        raw_retention_days=max(1, _env_int("RAW_PREDICTION_RETENTION_DAYS", 90)),
        rollup_interval_hours=max(1, _env_int("ROLLUP_INTERVAL_HOURS", 1)),
        maintenance_hour_utc=min(23, max(0, _env_int("MAINTENANCE_HOUR_UTC", 2))),
        maintenance_minute_utc=min(59, max(0, _env_int("MAINTENANCE_MINUTE_UTC", 15))),
        provider_order=order,
        providers=tuple(load_provider_settings(name) for name in order),
        data_dir=_clean_path(os.getenv("SIGNAL_DATA_DIR")) or DEFAULT_DATA_DIR,
        inference_timeout=max(1.0, _env_float("INFERENCE_HTTP_TIMEOUT", 20.0)),
        smtp=SmtpSettings(
            address=os.getenv("EMAIL_ADDRESS") or None,
            password=os.getenv("EMAIL_PASSWORD") or None,
            server=os.getenv("SMTP_SERVER", "smtp.gmail.com") or "smtp.gmail.com",
            port=_env_int("SMTP_PORT", 587),
        ),
    )


__all__ = [
    "get_groq_api_key",
    "get_groq_api_url",
    "get_prediction_model",
    "load_pipeline_settings",
    "load_provider_settings",
    "market_data_quota_key",
    "PipelineSettings",
    "ProviderSettings",
    "SmtpSettings",
]
