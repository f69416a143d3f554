"""Async client for the bus and train vehicle-position feeds."""
from __future__ import annotations

import asyncio
import math
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from transit_models import BUS, TRAIN, Snapshot, VehiclePosition

DEFAULT_BUS_URL = "https://developer.itsmarta.com/BRDRestService/RestBusRealTimeService/GetAllBus"
DEFAULT_TRAIN_URL = (
    "https://developerservices.itsmarta.com:18096/itsmarta/railrealtimearrivals/"
    "developerservices/traindata"
)
DEFAULT_KEY_HEADER = "apikey"
DEFAULT_FEED_TIMEOUT_S = 4.0


class TransitFeedError(Exception):
    """Base class for everything the fetcher reports."""


class UpstreamError(TransitFeedError):
    """A whole feed could not be read on this tick."""

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(f"{kind} feed: {message}")
        self.kind = kind


class UpstreamTimeout(UpstreamError):
    pass


class UpstreamHTTPError(UpstreamError):
    def __init__(self, kind: str, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(kind, message)
        self.status_code = status_code


class UpstreamPayloadError(UpstreamError):
    pass


class MalformedRecord(TransitFeedError):
    """A single record could not be normalized; only that record is dropped."""


class BothFeedsFailed(TransitFeedError):
    def __init__(self, errors: Dict[str, str]) -> None:
        detail = "; ".join(f"{kind}: {msg}" for kind, msg in sorted(errors.items()))
        super().__init__(f"both feeds failed ({detail})")
        self.errors = dict(errors)


@dataclass
class FeedConfig:
    """Where and how to reach one upstream feed."""
    kind: str
    url: str
    id_field: str
    route_field: str
    api_key: Optional[str] = None
    key_header: str = DEFAULT_KEY_HEADER
    lat_field: str = "LATITUDE"
    lon_field: str = "LONGITUDE"


def bus_feed_config(url: str = DEFAULT_BUS_URL, api_key: Optional[str] = None,
                    key_header: str = DEFAULT_KEY_HEADER) -> FeedConfig:
    return FeedConfig(kind=BUS, url=url, id_field="VEHICLE", route_field="ROUTE",
                      api_key=api_key, key_header=key_header)


def train_feed_config(url: str = DEFAULT_TRAIN_URL, api_key: Optional[str] = None,
                      key_header: str = DEFAULT_KEY_HEADER) -> FeedConfig:
    return FeedConfig(kind=TRAIN, url=url, id_field="TRAIN_ID", route_field="LINE",
                      api_key=api_key, key_header=key_header)


def _coerce_coordinate(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        result = float(str(value).strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def _clean_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def parse_vehicle_record(record: Any, feed: FeedConfig) -> VehiclePosition:
    """Normalize one upstream record, raising ``MalformedRecord`` on bad input."""
    if not isinstance(record, dict):
        raise MalformedRecord(f"{feed.kind} record is not an object: {record!r}")
    vehicle_id = _clean_text(record.get(feed.id_field))
    if not vehicle_id:
        raise MalformedRecord(f"{feed.kind} record missing {feed.id_field}")
    lat = _coerce_coordinate(record.get(feed.lat_field))
    lon = _coerce_coordinate(record.get(feed.lon_field))
    if lat is None or lon is None:
        raise MalformedRecord(
            f"{feed.kind} {vehicle_id}: bad coordinates "
            f"{record.get(feed.lat_field)!r},{record.get(feed.lon_field)!r}"
        )
    return VehiclePosition(
        vehicle_id=vehicle_id,
        kind=feed.kind,
        latitude=lat,
        longitude=lon,
        route_label=_clean_text(record.get(feed.route_field)),
    )


def normalize_feed(records: List[Any], feed: FeedConfig) -> List[VehiclePosition]:
    """Parse records in feed order, keeping the first record per vehicle id."""
    vehicles: List[VehiclePosition] = []
    seen: set[str] = set()
    dropped = 0
    for record in records:
        try:
            vehicle = parse_vehicle_record(record, feed)
        except MalformedRecord as exc:
            dropped += 1
            print(f"[transit_feeds] dropped record: {exc}")
            continue
        if vehicle.vehicle_id in seen:
            continue
        seen.add(vehicle.vehicle_id)
        vehicles.append(vehicle)
    if dropped:
        print(f"[transit_feeds] {feed.kind}: kept {len(vehicles)} vehicles, dropped {dropped} records")
    return vehicles


class TransitFetcher:
    """Fetch both feeds concurrently and merge them into one ``Snapshot``.

    Upstream failures never propagate: each feed is caught on its own and
    recorded in ``Snapshot.errors``. There is no retry here; the scheduler's
    next tick is the retry.
    """

    def __init__(
        self,
        bus: FeedConfig,
        train: FeedConfig,
        *,
        timeout_s: float = DEFAULT_FEED_TIMEOUT_S,
        client: Optional[httpx.AsyncClient] = None,
        record_api_call_fn: Optional[Callable[[str, str, int], None]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.bus = bus
        self.train = train
        self.timeout_s = timeout_s
        self._client = client
        self._owns_client = client is None
        self._record_api_call = record_api_call_fn
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_env(cls, **kwargs: Any) -> "TransitFetcher":
        """Build a ``TransitFetcher`` from environment configuration.

        Missing API keys are allowed here; the affected feed then fails on
        every fetch instead of blocking startup.

        * ``TRANSIT_BUS_URL`` / ``TRANSIT_TRAIN_URL`` - feed endpoints.
        * ``TRANSIT_BUS_API_KEY`` / ``TRANSIT_TRAIN_API_KEY`` - API keys.
        * ``TRANSIT_BUS_KEY_HEADER`` / ``TRANSIT_TRAIN_KEY_HEADER`` - header names.
        * ``TRANSIT_FEED_TIMEOUT_S`` - per-feed timeout in seconds.
        """

        def env(name: str, default: str = "") -> str:
            return (os.getenv(name) or default).strip()

        bus = bus_feed_config(
            url=env("TRANSIT_BUS_URL", DEFAULT_BUS_URL),
            api_key=env("TRANSIT_BUS_API_KEY") or None,
            key_header=env("TRANSIT_BUS_KEY_HEADER", DEFAULT_KEY_HEADER),
        )
        train = train_feed_config(
            url=env("TRANSIT_TRAIN_URL", DEFAULT_TRAIN_URL),
            api_key=env("TRANSIT_TRAIN_API_KEY") or None,
            key_header=env("TRANSIT_TRAIN_KEY_HEADER", DEFAULT_KEY_HEADER),
        )
        timeout_s = float(env("TRANSIT_FEED_TIMEOUT_S", str(DEFAULT_FEED_TIMEOUT_S)))
        return cls(bus, train, timeout_s=timeout_s, **kwargs)

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_s)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _record(self, url: str, status: int) -> None:
        if self._record_api_call:
            self._record_api_call("GET", url, status)

    async def _get_records(self, feed: FeedConfig) -> List[Any]:
        if not feed.api_key:
            raise UpstreamHTTPError(feed.kind, "API key not configured")
        client = await self._ensure_client()
        headers = {feed.key_header: feed.api_key, "Accept": "application/json"}
        try:
            response = await client.get(feed.url, headers=headers, timeout=self.timeout_s)
        except httpx.TimeoutException as exc:
            self._record(feed.url, 0)
            raise UpstreamTimeout(feed.kind, f"timed out after {self.timeout_s:g}s") from exc
        except httpx.HTTPError as exc:
            self._record(feed.url, 0)
            raise UpstreamHTTPError(feed.kind, f"request failed: {exc}") from exc

        self._record(feed.url, response.status_code)
        if response.status_code >= 400:
            raise UpstreamHTTPError(
                feed.kind, f"HTTP {response.status_code}", status_code=response.status_code
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamPayloadError(feed.kind, "response is not JSON") from exc
        if not isinstance(payload, list):
            raise UpstreamPayloadError(feed.kind, f"expected a JSON array, got {type(payload).__name__}")
        return payload

    async def fetch_feed(self, feed: FeedConfig) -> List[VehiclePosition]:
        """Fetch and normalize one feed, bounded by the per-feed timeout."""
        try:
            records = await asyncio.wait_for(self._get_records(feed), timeout=self.timeout_s)
        except asyncio.TimeoutError as exc:
            self._record(feed.url, 0)
            raise UpstreamTimeout(feed.kind, f"timed out after {self.timeout_s:g}s") from exc
        return normalize_feed(records, feed)

    async def fetch_snapshot(self) -> Snapshot:
        bus_result, train_result = await asyncio.gather(
            self.fetch_feed(self.bus),
            self.fetch_feed(self.train),
            return_exceptions=True,
        )
        captured_at = self._clock()

        vehicles: List[VehiclePosition] = []
        errors: Dict[str, str] = {}
        results: Tuple[Tuple[str, Any], ...] = ((BUS, bus_result), (TRAIN, train_result))
        for kind, result in results:
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                errors[kind] = str(result) if isinstance(result, UpstreamError) else f"{kind} feed: {result!r}"
                print(f"[transit_feeds] {kind} fetch failed: {errors[kind]}")
                continue
            vehicles.extend(result)

        if len(errors) == len(results):
            return Snapshot.empty(captured_at, errors)
        return Snapshot(
            vehicles=tuple(vehicles),
            captured_at=captured_at,
            partial=bool(errors),
            errors=errors,
        )


__all__ = [
    "TransitFeedError",
    "UpstreamError",
    "UpstreamTimeout",
    "UpstreamHTTPError",
    "UpstreamPayloadError",
    "MalformedRecord",
    "BothFeedsFailed",
    "FeedConfig",
    "bus_feed_config",
    "train_feed_config",
    "parse_vehicle_record",
    "normalize_feed",
    "TransitFetcher",
]
