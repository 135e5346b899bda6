"""Prediction calls against the Groq OpenAI-compatible chat completions API."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import requests

import config
from errors import ConfigurationError, InferenceUnavailableError
from json_utils import PredictionSchemaError, parse_prediction_json
from log_utils import setup_logger
from market_models import round_half_up
from quota import QuotaCounters

logger = setup_logger(__name__)

INFERENCE_QUOTA_KEY = "inference"
TEMPERATURE = 0.2
MAX_TOKENS = 300


@dataclass(frozen=True)
class PredictionFeatures:
    asset_id: str
    name: str
    period_days: int
    avg_price: float
    volatility: float
    change_24h: float
    market_price: Optional[float] = None


@dataclass(frozen=True)
class InferenceResult:
    action: str
    confidence: float
    reason: str
    prompt: str
    model: str
    raw: Dict[str, Any] = field(default_factory=dict)


def _fixed(value: float) -> str:
    return f"{round_half_up(value, 2) or 0.0:.2f}"


def build_prompt(features: PredictionFeatures) -> str:
    """Render the fixed prompt template for ``features``."""

    return "\n".join(
        [
            f"Coin: {features.name}",
            f"Period: {features.period_days} days historical",
            f"Avg Price: {_fixed(features.avg_price)}",
            f"Volatility: {_fixed(features.volatility)} %",
            f"24 h Change: {_fixed(features.change_24h)} %",
            "Task: Predict next trend (BUY/HOLD/SELL), confidence 0-1, reason.",
            'Respond JSON only: {"action":"BUY","confidence":0.78,"reason":"Momentum rising"}',
        ]
    )


def extract_error_payload(response: Any) -> Any:
    """Best-effort extraction of an error payload from ``response``."""

    try:
        return response.json()
    except ValueError:
        return getattr(response, "text", "")


def extract_content(payload: Mapping[str, Any] | None) -> str:
    if not isinstance(payload, Mapping):
        return ""
    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0]
        if isinstance(first, Mapping):
            message = first.get("message")
            if isinstance(message, Mapping):
                content = message.get("content")
                if isinstance(content, str):
                    return content
    return ""


class InferenceClient:
    """Send one prompt per prediction and validate the structured reply."""

    def __init__(
        self,
        api_key: Optional[str],
        *,
        model: str = config.DEFAULT_PREDICTION_MODEL,
        api_url: str = config.DEFAULT_GROQ_API_URL,
        timeout: float = 20.0,
        quota: Optional[QuotaCounters] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.api_url = api_url
        self.timeout = timeout
        self.quota = quota
        self._session = session

    @classmethod
    def from_settings(
        cls,
        settings: config.PipelineSettings,
        quota: Optional[QuotaCounters] = None,
        *,
        session: Optional[requests.Session] = None,
    ) -> "InferenceClient":
        api_key = config.get_groq_api_key()
        if not api_key:
            raise ConfigurationError("GROQ_API_KEY is not configured; predictions will use the heuristic")
        return cls(
            api_key,
            model=config.get_prediction_model(),
            api_url=config.get_groq_api_url(),
            timeout=settings.inference_timeout,
            quota=quota,
            session=session,
        )

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def _post(self, messages: List[Mapping[str, str]]) -> Dict[str, Any]:
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": TEMPERATURE,
            "max_tokens": MAX_TOKENS,
            "response_format": {"type": "json_object"},
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        logger.info("[Inference] POST chat completion model=%s", self.model)
        try:
            response = self.session.post(self.api_url, headers=headers, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise InferenceUnavailableError(f"inference request failed: {exc}") from exc
        if response.status_code >= 400:
            error_payload = extract_error_payload(response)
            raise InferenceUnavailableError(f"inference API returned {response.status_code}: {error_payload}")
        try:
            data = response.json()
        except ValueError as exc:
            raise InferenceUnavailableError("inference response was not JSON") from exc
        return data if isinstance(data, dict) else {"body": data}

    def predict(self, features: PredictionFeatures) -> InferenceResult:
        """Return a validated prediction or raise ``InferenceUnavailableError``.

        ``DailyLimitExceededError`` propagates unchanged when the inference
        quota is exhausted; no request is made in that case.
        """

        if not self.api_key:
            raise InferenceUnavailableError("inference API key missing")
        if self.quota is not None:
            self.quota.touch(INFERENCE_QUOTA_KEY)

        prompt = build_prompt(features)
        logger.debug("Sending prompt for %s: %s", features.asset_id, prompt)
        data = self._post([{"role": "user", "content": prompt}])
        content = extract_content(data)
        if not content:
            raise InferenceUnavailableError("inference response missing content")
        try:
            parsed = parse_prediction_json(content)
        except PredictionSchemaError as exc:
            logger.error("Inference reply rejected for %s: %s", features.asset_id, exc)
            raise InferenceUnavailableError(str(exc)) from exc

        return InferenceResult(
            action=parsed["action"],
            confidence=parsed["confidence"],
            reason=parsed["reason"],
            prompt=prompt,
            model=self.model,
            raw=data,
        )


__all__ = [
    "INFERENCE_QUOTA_KEY",
    "InferenceClient",
    "InferenceResult",
    "PredictionFeatures",
    "build_prompt",
    "extract_content",
]
