"""Helpers for parsing JSON emitted by the prediction model.

Models frequently wrap their JSON in Markdown code fences or prefix it with a
``json`` label.  ``strip_markdown_json`` removes that noise; the prediction
parser is strict after that point and rejects anything that does not match
the expected schema instead of guessing.
"""

from __future__ import annotations

import json
import math
import re
from typing import Any, Dict

from prediction_schema import ACTIONS

REASON_MIN_LENGTH = 3
REASON_MAX_LENGTH = 500


class PredictionSchemaError(ValueError):
    """The model's reply is not a valid prediction payload."""


def strip_markdown_json(text: str) -> str:
    """Remove Markdown fences and leading ``json`` labels from *text*."""

    cleaned = str(text or "").strip()
    cleaned = re.sub(r"```(?:json)?", "", cleaned, flags=re.IGNORECASE).strip()
    if cleaned.lower().startswith("json"):
        cleaned = cleaned[4:].strip()
        cleaned = cleaned.lstrip(":").strip()
    return cleaned


def _coerce_confidence(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        raise PredictionSchemaError(f"confidence must be a number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise PredictionSchemaError(f"confidence must be a number, got {value!r}") from exc
    if not math.isfinite(number) or not 0 <= number <= 1:
        raise PredictionSchemaError(f"confidence must be within [0, 1], got {value!r}")
    return number


def parse_prediction_json(raw_text: str) -> Dict[str, Any]:
    """Parse ``{"action", "confidence", "reason"}`` from a model reply.

    Parameters
    ----------
    raw_text:
        Text content returned by the model, optionally code-fenced.

    Returns
    -------
    dict
        ``action`` (one of BUY/HOLD/SELL), ``confidence`` as a float in
        ``[0, 1]`` and a stripped ``reason`` of 3-500 characters.

    Raises
    ------
    PredictionSchemaError
        On malformed JSON or any schema violation.
    """

    cleaned = strip_markdown_json(raw_text)
    if not cleaned:
        raise PredictionSchemaError("empty prediction payload")
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise PredictionSchemaError(f"malformed prediction JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise PredictionSchemaError("prediction payload must be a JSON object")

    action = data.get("action")
    if action not in ACTIONS:
        raise PredictionSchemaError(f"action must be one of {ACTIONS}, got {action!r}")

    confidence = _coerce_confidence(data.get("confidence"))

    reason = data.get("reason")
    if not isinstance(reason, str):
        raise PredictionSchemaError("reason must be a string")
    reason = reason.strip()
    if not REASON_MIN_LENGTH <= len(reason) <= REASON_MAX_LENGTH:
        raise PredictionSchemaError(
            f"reason must be {REASON_MIN_LENGTH}-{REASON_MAX_LENGTH} characters, got {len(reason)}"
        )

    return {"action": action, "confidence": confidence, "reason": reason}


__all__ = ["PredictionSchemaError", "parse_prediction_json", "strip_markdown_json"]
