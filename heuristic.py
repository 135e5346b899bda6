"""Deterministic rule-based prediction used when inference is unavailable."""

from __future__ import annotations

import math
from typing import Any, Dict, Optional

from market_models import round_half_up

BUY_THRESHOLD = 1.5
SELL_THRESHOLD = -1.5

_CLOSING_SENTENCE = {
    "HOLD": "Price movement within neutral band; maintaining position.",
    "BUY": "Positive momentum suggests upside continuation.",
    "SELL": "Negative momentum suggests near-term downside risk.",
}


def heuristic_prediction(
    change_24h: float,
    volatility: float,
    avg_price: float,
    *,
    market_price: Optional[float] = None,
    name: Optional[str] = None,
) -> Dict[str, Any]:
    """Return ``{"action", "confidence", "reason", "raw"}`` from momentum alone.

    BUY at a 24h change of +1.5% or more, SELL at -1.5% or less, otherwise
    HOLD.  Confidence grows with the size of the move (capped at 0.5), is
    penalised by volatility (capped at 0.3) and never drops below 0.2.
    """

    magnitude = abs(change_24h)
    if change_24h >= BUY_THRESHOLD:
        action = "BUY"
    elif change_24h <= SELL_THRESHOLD:
        action = "SELL"
    else:
        action = "HOLD"

    base = min(magnitude / 10, 0.5)
    penalty = min(volatility / 100, 0.3) if math.isfinite(volatility) else 0.3
    confidence = round_half_up(max(0.2, base + 0.2 - penalty), 2)

    parts = [
        "Inference service unavailable; heuristic fallback engaged.",
        f"24h change {round_half_up(change_24h, 2):.2f}%.",
    ]
    if math.isfinite(volatility):
        parts.append(f"7d volatility {round_half_up(volatility, 2):.2f}%.")
    parts.append(_CLOSING_SENTENCE[action])

    return {
        "action": action,
        "confidence": confidence,
        "reason": " ".join(parts),
        "raw": {
            "fallback": True,
            "source": "heuristic",
            "change_24h": change_24h,
            "volatility": volatility,
            "avg_price": avg_price,
            "market_price": market_price,
            "name": name,
        },
    }


__all__ = ["BUY_THRESHOLD", "SELL_THRESHOLD", "heuristic_prediction"]
