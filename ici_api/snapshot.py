"""
In-memory snapshot of the composite index document.

The cache holds one document plus two freshness timestamps. Every mutation
builds a complete new document and swaps a single reference, and no mutation
awaits, so readers on the event loop (or reading the reference from a worker
thread) always see a whole document: either the previous one or the next one.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .errors import IndexNotReady


def iso_utc_now() -> str:
    return datetime.utcnow().isoformat() + "Z"


@dataclass(frozen=True)
class Snapshot:
    document: Dict[str, Any]
    base_updated_at: str
    markets_updated_at: Optional[str] = None

    @property
    def score(self) -> Any:
        return self.document.get("score")

    @property
    def markets(self) -> Any:
        return self.document.get("markets")


class SnapshotCache:
    """Single-writer cache owned by the refresh scheduler."""

    def __init__(self, clock: Callable[[], str] = iso_utc_now):
        self._clock = clock
        self._current: Optional[Snapshot] = None

    @property
    def ready(self) -> bool:
        return self._current is not None

    def read(self) -> Optional[Snapshot]:
        """Current snapshot, or None until the first base document lands."""
        return self._current

    def require(self) -> Snapshot:
        snapshot = self._current
        if snapshot is None:
            raise IndexNotReady()
        return snapshot

    def write_base(self, document: Dict[str, Any]) -> Snapshot:
        """Replace the whole document.

        Markets merged by the market refresh belong to that refresh, so they
        are carried onto the new document together with their timestamp.
        Once any merge has happened, the ``markets`` field of the incoming
        document is discarded and replaced by the last merged quotes; before
        the first merge the incoming ``markets`` is kept as published.
        """
        if not isinstance(document, dict):
            raise TypeError("base document must be a JSON object")
        previous = self._current
        new_document = dict(document)
        markets_updated_at = None
        if previous is not None and previous.markets_updated_at is not None:
            new_document["markets"] = previous.document.get("markets")
            markets_updated_at = previous.markets_updated_at
        snapshot = Snapshot(
            document=new_document,
            base_updated_at=self._clock(),
            markets_updated_at=markets_updated_at,
        )
        self._current = snapshot
        return snapshot

    def merge_markets(self, markets: Dict[str, Any]) -> bool:
        """Overwrite only ``markets`` and its timestamp; no-op before a base write."""
        previous = self._current
        if previous is None:
            return False
        new_document = dict(previous.document)
        new_document["markets"] = markets
        self._current = Snapshot(
            document=new_document,
            base_updated_at=previous.base_updated_at,
            markets_updated_at=self._clock(),
        )
        return True
