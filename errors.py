"""Exception taxonomy shared by the signal pipeline.

Provider and inference failures are absorbed by fallback layers; only
``DataUnavailableError`` and ``ConfigurationError`` are expected to reach the
scheduler, which logs them and skips the affected asset.
"""

from __future__ import annotations

from typing import Optional, Sequence


class PipelineError(RuntimeError):
    """Base class for all pipeline failures."""


class ConfigurationError(PipelineError):
    """Raised when a required credential or setting is missing."""


class ProviderError(PipelineError):
    """A single upstream provider failed; recoverable by chain fallback."""

    def __init__(self, provider: str, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.message = message
        self.status_code = status_code


class AllProvidersFailedError(PipelineError):
    """Every adapter in the provider chain failed for one asset."""

    def __init__(self, asset_id: str, errors: Sequence[str]) -> None:
        self.asset_id = asset_id
        self.errors = list(errors)
        attempts = " | ".join(self.errors) if self.errors else "no providers configured"
        super().__init__(f"Unable to retrieve data for {asset_id}. Attempts: {attempts}")


class DataUnavailableError(PipelineError):
    """No provider succeeded and no cached snapshot (even stale) exists."""

    def __init__(self, asset_id: str, cause: Optional[BaseException] = None) -> None:
        self.asset_id = asset_id
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Market data unavailable for {asset_id}{detail}")


class InferenceUnavailableError(PipelineError):
    """The inference call failed or returned an unusable payload."""


class DailyLimitExceededError(PipelineError):
    """A guarded call would exceed its configured daily cap."""

    def __init__(self, key: str, cap: int) -> None:
        self.key = key
        self.cap = cap
        super().__init__(f"{key} daily limit reached (cap={cap})")


class DispatchError(PipelineError):
    """Sending one notification failed."""

    def __init__(self, recipient: Optional[str], message: str) -> None:
        self.recipient = recipient
        self.message = message
        super().__init__(message)


__all__ = [
    "AllProvidersFailedError",
    "ConfigurationError",
    "DailyLimitExceededError",
    "DataUnavailableError",
    "DispatchError",
    "InferenceUnavailableError",
    "PipelineError",
    "ProviderError",
]
