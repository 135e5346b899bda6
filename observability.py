"""Structured log events for the signal pipeline.

``log_event`` emits one JSON encoded line per pipeline event (cycle summary,
maintenance report, notification batch, quota snapshot) with a consistent
schema so the caller's logger configuration can ship them to any sink.
"""
from __future__ import annotations

import json
import logging
import time
from datetime import datetime
from typing import Any, MutableMapping, Optional

_OBSERVABILITY_LOGGER = logging.getLogger("observability")


def log_event(logger: Optional[logging.Logger], event: str, **fields: Any) -> None:
    """Emit a structured JSON log entry.

    Parameters
    ----------
    logger:
        Logger instance to use.  When ``None`` the module level observability
        logger is used.
    event:
        Short event identifier.  Stored under the ``event`` key in the emitted
        payload.
    **fields:
        Additional key/value pairs to include in the log entry.  Datetimes are
        rendered as ISO strings; anything else that is not JSON serialisable
        falls back to ``repr``.
    """

    payload: MutableMapping[str, Any] = {"event": event, "ts": time.time()}
    payload.update(fields)
    target = logger or _OBSERVABILITY_LOGGER
    try:
        target.info(json.dumps(payload, sort_keys=True, default=_default))
    except (TypeError, ValueError):
        serialisable = {k: _safe_json_value(v) for k, v in payload.items()}
        target.info(json.dumps(serialisable, sort_keys=True))


def _default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"{type(value).__name__} is not JSON serialisable")


def _safe_json_value(value: Any) -> Any:
    try:
        json.dumps(value, default=_default)
        return json.loads(json.dumps(value, default=_default))
    except (TypeError, ValueError):
        return repr(value)


__all__ = ["log_event"]
