"""
tracky/ledger.py

Location Ledger: append-only, timestamp-keyed position history for mobile trackers.

Entries are never reordered, mutated in bulk or pruned here. Appends with
distinct timestamps never conflict; an append at an existing timestamp replaces
that single entry (last writer wins on equal keys).
"""

from __future__ import annotations

from collections import OrderedDict
from typing import Any, Dict, Optional, Tuple

try:
    from tracky.config import IS_DEV
    from tracky.errors import PreconditionFailed
    from tracky.models import EntityKind
    from tracky.store import EntityStore
    from tracky.validation import parse_position
except ModuleNotFoundError:
    from config import IS_DEV
    from errors import PreconditionFailed
    from models import EntityKind
    from store import EntityStore
    from validation import parse_position


def _position_fields(row: Optional[Tuple[int, float, float]]) -> Dict[str, Any]:
    if row is None:
        return {}
    ts, lon, lat = row
    return {"timestamp": ts, "longitude": lon, "latitude": lat}


class LocationLedger:
    def __init__(self, store: EntityStore):
        self.store = store

    def append(self, tracker_id: str, timestamp: Any, longitude: Any, latitude: Any) -> Dict[str, Any]:
        """
        Record one position for a mobile tracker.

        Returns:
            The stored entry: {"id", "timestamp", "longitude", "latitude"}

        Raises:
            InvalidArgument: If timestamp, longitude or latitude is absent or malformed.
            NotFound: If the tracker does not exist.
            PreconditionFailed: If the tracker is not flagged mobile.
        """
        ts, lon, lat = parse_position(timestamp, longitude, latitude)

        tracker = self.store.get(EntityKind.tracker, tracker_id)
        if tracker.get("mobile") is not True:
            raise PreconditionFailed("Location history is only kept for mobile trackers")

        self.store.append_location(tracker_id, ts, lon, lat)
        if IS_DEV:
            print(f"[LEDGER] tracker={tracker_id} ts={ts} lon={lon} lat={lat}")
        return {"id": str(tracker_id), "timestamp": ts, "longitude": lon, "latitude": lat}

    def history(self, tracker_id: str) -> "OrderedDict[int, Tuple[float, float]]":
        """Timestamp -> (longitude, latitude), oldest first."""
        return OrderedDict(
            (ts, (lon, lat)) for ts, lon, lat in self.store.location_history(tracker_id)
        )

    def latest(self, tracker_id: str) -> Dict[str, Any]:
        """Newest position as document fields ({} when the ledger is empty)."""
        return _position_fields(self.store.latest_location(tracker_id))

    def latest_by_tracker(self) -> Dict[str, Dict[str, Any]]:
        """Newest position of every tracker that has one, keyed by tracker id."""
        return {tracker_id: _position_fields(row) for tracker_id, row in self.store.latest_locations().items()}
