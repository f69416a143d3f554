"""Data model shared by the transit fetcher, scheduler and marker renderer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

BUS = "bus"
TRAIN = "train"
VEHICLE_KINDS: Tuple[str, str] = (BUS, TRAIN)


def _isoformat(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class VehiclePosition:
    """One vehicle as reported by a feed on a single tick."""
    vehicle_id: str
    kind: str  # BUS or TRAIN
    latitude: float
    longitude: float
    route_label: str

    @property
    def marker_key(self) -> str:
        return f"{self.kind}:{self.vehicle_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vehicle_id": self.vehicle_id,
            "kind": self.kind,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "route_label": self.route_label,
        }


@dataclass(frozen=True)
class Snapshot:
    """Normalized capture of both feeds.

    ``partial`` is set whenever at least one feed failed; ``errors`` maps the
    failed feed kind to a short description.
    """
    vehicles: Tuple[VehiclePosition, ...]
    captured_at: datetime
    partial: bool = False
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def buses(self) -> List[VehiclePosition]:
        return [v for v in self.vehicles if v.kind == BUS]

    @property
    def trains(self) -> List[VehiclePosition]:
        return [v for v in self.vehicles if v.kind == TRAIN]

    @property
    def timestamp(self) -> str:
        return _isoformat(self.captured_at)

    @property
    def all_failed(self) -> bool:
        return all(kind in self.errors for kind in VEHICLE_KINDS)

    @classmethod
    def empty(cls, captured_at: datetime, errors: Optional[Dict[str, str]] = None) -> "Snapshot":
        return cls(vehicles=(), captured_at=captured_at, partial=True, errors=dict(errors or {}))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "buses": [v.to_dict() for v in self.buses],
            "trains": [v.to_dict() for v in self.trains],
            "timestamp": self.timestamp,
            "partial": self.partial,
            "errors": dict(self.errors),
        }


@dataclass(frozen=True)
class RefreshState:
    """Last completed refresh as seen by readers. Replaced, never mutated."""
    latest_snapshot: Optional[Snapshot] = None
    last_error: Optional[Exception] = None
    is_loading: bool = False
    last_error_ts: float = 0.0

    @property
    def has_error(self) -> bool:
        return self.last_error is not None

    def to_dict(self) -> Dict[str, Any]:
        snapshot = self.latest_snapshot
        payload: Dict[str, Any] = {
            "buses": [],
            "trains": [],
            "timestamp": None,
            "partial": False,
            "errors": {},
        }
        if snapshot is not None:
            payload.update(snapshot.to_dict())
        payload["is_loading"] = self.is_loading
        payload["has_error"] = self.has_error
        payload["last_error"] = str(self.last_error) if self.last_error is not None else None
        return payload


__all__ = [
    "BUS",
    "TRAIN",
    "VEHICLE_KINDS",
    "VehiclePosition",
    "Snapshot",
    "RefreshState",
]
