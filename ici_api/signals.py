"""
Derived views computed from the snapshot on every read.
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Any, Dict, List, Optional

from .fetchers import to_number

TOP_DRIVER_MOVERS = 3


class Signal(str, Enum):
    EXTREME_FEAR = "extreme_fear"
    FEAR = "fear"
    NEUTRAL = "neutral"
    GREED = "greed"
    EXTREME_GREED = "extreme_greed"


# Upper bounds (exclusive), ascending; anything above the last is EXTREME_GREED.
SIGNAL_BANDS = (
    (20.0, Signal.EXTREME_FEAR),
    (40.0, Signal.FEAR),
    (60.0, Signal.NEUTRAL),
    (80.0, Signal.GREED),
)


def signal_from_score(score: Any) -> Signal:
    value = _coerce_score(score)
    for upper, signal in SIGNAL_BANDS:
        if value < upper:
            return signal
    return Signal.EXTREME_GREED


def _coerce_score(score: Any) -> float:
    if isinstance(score, bool) or score is None:
        return 0.0
    try:
        value = float(score)
    except (TypeError, ValueError):
        return 0.0
    return 0.0 if math.isnan(value) else value


def _entry_date(entry: Dict[str, Any]) -> Optional[str]:
    for key in ("date", "updatedAt", "timestamp"):
        value = entry.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _driver_values(drivers: Any) -> Dict[str, float]:
    """Normalize drivers to name -> value.

    Accepts a mapping of name to number (or to an object with ``value`` /
    ``score``) and a list of objects carrying ``name``/``key``/``id``.
    """
    values: Dict[str, float] = {}
    if isinstance(drivers, dict):
        items = list(drivers.items())
    elif isinstance(drivers, list):
        items = []
        for item in drivers:
            if isinstance(item, dict):
                name = item.get("name") or item.get("key") or item.get("id")
                if name is not None:
                    items.append((str(name), item))
    else:
        return values
    for name, raw in items:
        if isinstance(raw, dict):
            raw = raw.get("value", raw.get("score"))
        number = to_number(raw)
        if number is not None:
            values[str(name)] = number
    return values


def reference_entry(document: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Most recent history entry that predates the current document."""
    history = document.get("history")
    if not isinstance(history, list):
        return None
    entries = [entry for entry in history if isinstance(entry, dict)]
    if not entries:
        return None
    current_date = document.get("updatedAt")
    current_day = current_date[:10] if isinstance(current_date, str) else None
    for entry in reversed(entries):
        date = _entry_date(entry)
        if current_day is None or date is None or date[:10] < current_day:
            return entry
    return None


def what_changed(document: Dict[str, Any]) -> Dict[str, Any]:
    score_to = to_number(document.get("score"))
    signal_to = signal_from_score(document.get("score"))
    reference = reference_entry(document)

    result: Dict[str, Any] = {
        "since": None,
        "scoreFrom": None,
        "scoreTo": score_to,
        "scoreDelta": None,
        "signalFrom": None,
        "signalTo": signal_to,
        "signalChanged": False,
        "drivers": [],
    }
    if reference is None:
        return result

    score_from = to_number(reference.get("score"))
    result["since"] = _entry_date(reference)
    result["scoreFrom"] = score_from
    if score_from is not None:
        signal_from = signal_from_score(score_from)
        result["signalFrom"] = signal_from
        result["signalChanged"] = signal_from != signal_to
        if score_to is not None:
            result["scoreDelta"] = round(score_to - score_from, 4)

    current = _driver_values(document.get("drivers"))
    previous = _driver_values(reference.get("drivers"))
    movers: List[Dict[str, Any]] = []
    for name, value in current.items():
        if name not in previous:
            continue
        delta = value - previous[name]
        if delta:
            movers.append({"name": name, "from": previous[name], "to": value, "delta": round(delta, 4)})
    movers.sort(key=lambda mover: abs(mover["delta"]), reverse=True)
    result["drivers"] = movers[:TOP_DRIVER_MOVERS]
    return result
