"""Ship-by deadline computation.

The ship-by date is ``booking start - lead days`` at local midnight. Lead
days are either a fixed number or derived from the great-circle distance
between origin and destination postal codes.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta, tzinfo

from fastapi_rentalship.protocols import Geocoder
from fastapi_rentalship.types import Coordinates, LeadMode

logger = logging.getLogger(__name__)

EARTH_RADIUS_MILES = 3958.8

# (upper bound in miles, lead days); anything beyond the last bound uses
# FAR_LEAD_DAYS.
DISTANCE_STEPS: tuple[tuple[float, int], ...] = ((200.0, 1), (1000.0, 2))
FAR_LEAD_DAYS = 3


def haversine_miles(origin: Coordinates, destination: Coordinates) -> float:
    lat1, lat2 = math.radians(origin.lat), math.radians(destination.lat)
    d_lat = lat2 - lat1
    d_lng = math.radians(destination.lng - origin.lng)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_MILES * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def lead_days_for_distance(miles: float, max_days: int) -> int:
    """Monotonic step function from distance to lead days, capped."""
    for bound, days in DISTANCE_STEPS:
        if miles <= bound:
            return min(days, max_days)
    return min(FAR_LEAD_DAYS, max_days)


def parse_booking_start(value: str | None) -> datetime | None:
    """Parse an ISO-8601 booking start; naive values are taken as UTC."""
    if not value:
        return None
    try:
        text = str(value).strip().replace("Z", "+00:00")
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def local_midnight(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, time(0, 0), tzinfo=tz)


def format_ship_by(value: datetime | date | None) -> str | None:
    """``Jan 18th`` style date for SMS copy."""
    if value is None:
        return None
    day = value.day
    if 11 <= day % 100 <= 13:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(day % 10, "th")
    return f"{value.strftime('%b')} {day}{suffix}"


class ZipCoordinateCache:
    """Postal code → coordinates map with no eviction.

    Growth is bounded only by the number of distinct postal codes seen,
    which is finite in practice. Construct one per process and pass it in.
    """

    def __init__(self) -> None:
        self._entries: dict[str, Coordinates] = {}

    def get(self, postal_code: str) -> Coordinates | None:
        return self._entries.get(postal_code)

    def set(self, postal_code: str, coordinates: Coordinates) -> None:
        self._entries[postal_code] = coordinates

    def __contains__(self, postal_code: object) -> bool:
        return postal_code in self._entries

    def __len__(self) -> int:
        return len(self._entries)


@dataclass(frozen=True)
class ShipByResult:
    ship_by: datetime | None
    lead_days: int | None
    mode: LeadMode
    miles: float | None = None


class ShipByCalculator:
    """Computes ship-by dates; falls back to static lead days silently."""

    def __init__(
        self,
        *,
        geocoder: Geocoder | None,
        cache: ZipCoordinateCache | None = None,
        tz: tzinfo = UTC,
    ) -> None:
        self.geocoder = geocoder
        self.cache = cache if cache is not None else ZipCoordinateCache()
        self.tz = tz
        self._warned: set[str] = set()

    def _warn_once(self, reason: str, message: str, *args: object) -> None:
        if reason in self._warned:
            return
        self._warned.add(reason)
        logger.warning(message, *args)

    async def _coordinates(self, postal_code: str) -> Coordinates | None:
        key = postal_code.strip()
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        if self.geocoder is None:
            return None
        coordinates = await self.geocoder.geocode(key)
        if coordinates is not None:
            self.cache.set(key, coordinates)
        return coordinates

    async def _distance_miles(
        self, origin_zip: str | None, dest_zip: str | None
    ) -> float | None:
        if not origin_zip or not dest_zip:
            self._warn_once(
                "missing_zip",
                "Distance lead mode without both postal codes; "
                "using static lead days",
            )
            return None
        if self.geocoder is None and not (
            origin_zip.strip() in self.cache and dest_zip.strip() in self.cache
        ):
            self._warn_once(
                "no_geocoder",
                "No geocoding credential configured; distance lead mode "
                "falls back to static lead days",
            )
            return None
        origin = await self._coordinates(origin_zip)
        destination = await self._coordinates(dest_zip)
        if origin is None or destination is None:
            self._warn_once(
                "lookup_failed",
                "Geocoding lookup failed; distance lead mode falls back to "
                "static lead days",
            )
            return None
        return haversine_miles(origin, destination)

    async def compute(
        self,
        booking_start_iso: str | None,
        mode: LeadMode,
        lead_days_static: int,
        lead_days_max: int,
        origin_zip: str | None = None,
        dest_zip: str | None = None,
    ) -> ShipByResult:
        start = parse_booking_start(booking_start_iso)
        if start is None:
            return ShipByResult(ship_by=None, lead_days=None, mode=mode)

        lead_days = lead_days_static
        miles = None
        effective_mode = LeadMode.STATIC
        if mode is LeadMode.DISTANCE:
            miles = await self._distance_miles(origin_zip, dest_zip)
            if miles is not None:
                lead_days = lead_days_for_distance(miles, lead_days_max)
                effective_mode = LeadMode.DISTANCE

        start_day = start.astimezone(self.tz).date()
        ship_day = start_day - timedelta(days=lead_days)
        ship_by = local_midnight(ship_day, self.tz)
        return ShipByResult(
            ship_by=ship_by,
            lead_days=lead_days,
            mode=effective_mode,
            miles=miles,
        )

    async def compute_ship_by(
        self,
        booking_start_iso: str | None,
        mode: LeadMode,
        lead_days_static: int,
        lead_days_max: int,
        origin_zip: str | None = None,
        dest_zip: str | None = None,
    ) -> datetime | None:
        result = await self.compute(
            booking_start_iso,
            mode,
            lead_days_static,
            lead_days_max,
            origin_zip,
            dest_zip,
        )
        return result.ship_by
