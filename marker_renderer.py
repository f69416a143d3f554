"""Turn snapshots into map markers with short position animations.

``render_markers`` is a pure function: given the markers drawn for the
previous snapshot and a new snapshot it returns the next set of markers and
one animation record per marker that moved. Callers keep only the returned
markers between ticks.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from transit_models import Snapshot

MAX_ANIMATION_S = 2.0
DEFAULT_ANIMATION_S = 1.5


@dataclass(frozen=True)
class Marker:
    key: str
    vehicle_id: str
    kind: str
    latitude: float
    longitude: float
    route_label: str
    last_seen: float  # epoch seconds of the snapshot that last reported it
    stale: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "vehicle_id": self.vehicle_id,
            "kind": self.kind,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "route_label": self.route_label,
            "stale": self.stale,
        }


@dataclass(frozen=True)
class MarkerAnimation:
    """Linear move from one coordinate to another, starting at ``started_at``."""
    key: str
    from_lat: float
    from_lon: float
    to_lat: float
    to_lon: float
    started_at: float
    duration_s: float

    def progress(self, t: float) -> float:
        if self.duration_s <= 0:
            return 1.0
        return min(1.0, max(0.0, (t - self.started_at) / self.duration_s))

    def position_at(self, t: float) -> Tuple[float, float]:
        p = self.progress(t)
        return (
            self.from_lat + (self.to_lat - self.from_lat) * p,
            self.from_lon + (self.to_lon - self.from_lon) * p,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "from": [self.from_lat, self.from_lon],
            "to": [self.to_lat, self.to_lon],
            "started_at": self.started_at,
            "duration_s": self.duration_s,
        }


@dataclass(frozen=True)
class MarkerFrame:
    markers: Dict[str, Marker]
    animations: Dict[str, MarkerAnimation] = field(default_factory=dict)
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "markers": [m.to_dict() for m in self.markers.values()],
            "animations": [a.to_dict() for a in self.animations.values()],
            "added": list(self.added),
            "removed": list(self.removed),
        }


def render_markers(
    previous: Mapping[str, Marker],
    snapshot: Snapshot,
    *,
    now: Optional[float] = None,
    duration_s: float = DEFAULT_ANIMATION_S,
    grace_s: float = 0.0,
) -> MarkerFrame:
    """Diff ``previous`` against ``snapshot``.

    Moved markers get an animation capped at ``MAX_ANIMATION_S``; new ones
    appear in place; missing ones are removed, or kept as stale while they
    have been missing for less than ``grace_s`` seconds.
    """
    seen_at = snapshot.captured_at.timestamp()
    start = seen_at if now is None else now
    duration = min(max(duration_s, 0.0), MAX_ANIMATION_S)

    markers: Dict[str, Marker] = {}
    animations: Dict[str, MarkerAnimation] = {}
    added: List[str] = []
    removed: List[str] = []

    for vehicle in snapshot.vehicles:
        key = vehicle.marker_key
        if key in markers:
            continue
        marker = Marker(
            key=key,
            vehicle_id=vehicle.vehicle_id,
            kind=vehicle.kind,
            latitude=vehicle.latitude,
            longitude=vehicle.longitude,
            route_label=vehicle.route_label,
            last_seen=seen_at,
        )
        markers[key] = marker
        old = previous.get(key)
        if old is None:
            added.append(key)
            continue
        if (old.latitude, old.longitude) != (marker.latitude, marker.longitude) and duration > 0:
            animations[key] = MarkerAnimation(
                key=key,
                from_lat=old.latitude,
                from_lon=old.longitude,
                to_lat=marker.latitude,
                to_lon=marker.longitude,
                started_at=start,
                duration_s=duration,
            )

    for key, old in previous.items():
        if key in markers:
            continue
        if grace_s > 0 and seen_at - old.last_seen < grace_s:
            markers[key] = Marker(
                key=old.key,
                vehicle_id=old.vehicle_id,
                kind=old.kind,
                latitude=old.latitude,
                longitude=old.longitude,
                route_label=old.route_label,
                last_seen=old.last_seen,
                stale=True,
            )
        else:
            removed.append(key)

    return MarkerFrame(markers=markers, animations=animations, added=added, removed=removed)


__all__ = [
    "MAX_ANIMATION_S",
    "DEFAULT_ANIMATION_S",
    "Marker",
    "MarkerAnimation",
    "MarkerFrame",
    "render_markers",
]
