from __future__ import annotations

import json
import re
from typing import Any, Mapping
from urllib.parse import quote, urlencode

from hns_sync.common.json_logger import JsonLogger, log_event
from hns_sync.common.kv_store import KeyValueStore

from .errors import HardLimitExceeded
from .fetcher import Fetcher
from .models import GeoPoint, RouteLeg

NOMINATIM_URL = "https://nominatim.openstreetmap.org/search"
OSRM_ROUTE_URL = "https://router.project-osrm.org/route/v1/driving/{coords}?overview=false"
GOOGLE_GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
GOOGLE_DIRECTIONS_URL = "https://maps.googleapis.com/maps/api/directions/json"
NOMINATIM_USER_AGENT = "hns-sync/0.1"


def _geo_key(address: str) -> str:
    return "geo:" + re.sub(r"[^a-z0-9]", "_", address.strip().lower())


def _route_key(origin: str, destination: str) -> str:
    raw = f"dir:{origin.strip().lower()}_to_{destination.strip().lower()}"
    return re.sub(r"[^a-z0-9_:-]", "", raw)


class Router:
    """Geocoding and drive-time lookup with a permanent cache.

    Nominatim and OSRM are tried first and are not charged to the portal
    request budget; Google is the fallback when an API key is configured.
    """

    def __init__(
        self,
        *,
        cache: KeyValueStore,
        fetcher: Fetcher,
        logger: JsonLogger,
        google_api_key: str = "",
    ) -> None:
        self.cache = cache
        self.fetcher = fetcher
        self.logger = logger
        self.google_api_key = google_api_key

    async def _cached(self, key: str) -> Mapping[str, Any] | None:
        raw = await self.cache.get(key)
        if not raw:
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            await self.cache.delete(key)
            return None
        return payload if isinstance(payload, Mapping) else None

    async def _get_json(self, url: str, *, budgeted: bool, headers: Mapping[str, str] | None = None) -> Any:
        response = await self.fetcher.fetch(url, headers=headers, budgeted=budgeted)
        if not response.ok:
            return None
        return response.json()

    async def resolve_address(self, text: str) -> GeoPoint | None:
        address = (text or "").strip()
        if not address:
            return None
        key = _geo_key(address)
        cached = await self._cached(key)
        if cached is not None:
            return GeoPoint(lat=float(cached["lat"]), lon=float(cached["lon"]), formatted=str(cached.get("formatted", "")))

        point = await self._geocode_nominatim(address)
        if point is None and self.google_api_key:
            point = await self._geocode_google(address)
        if point is not None:
            await self.cache.put(key, json.dumps({"lat": point.lat, "lon": point.lon, "formatted": point.formatted}))
        return point

    async def _geocode_nominatim(self, address: str) -> GeoPoint | None:
        url = f"{NOMINATIM_URL}?{urlencode({'q': address, 'format': 'json', 'limit': 1})}"
        try:
            data = await self._get_json(url, budgeted=False, headers={"User-Agent": NOMINATIM_USER_AGENT})
        except HardLimitExceeded:
            raise
        except Exception as exc:
            log_event(logger=self.logger, phase="trips", status="warn", message="Nominatim lookup failed", error=str(exc))
            return None
        if isinstance(data, list) and data:
            first = data[0]
            return GeoPoint(lat=float(first["lat"]), lon=float(first["lon"]), formatted=str(first.get("display_name", "")))
        return None

    async def _geocode_google(self, address: str) -> GeoPoint | None:
        url = f"{GOOGLE_GEOCODE_URL}?{urlencode({'address': address, 'key': self.google_api_key})}"
        try:
            data = await self._get_json(url, budgeted=True)
        except HardLimitExceeded:
            raise
        except Exception as exc:
            log_event(logger=self.logger, phase="trips", status="warn", message="Google geocode failed", error=str(exc))
            return None
        results = (data or {}).get("results") or []
        if results and results[0].get("geometry", {}).get("location"):
            location = results[0]["geometry"]["location"]
            return GeoPoint(
                lat=float(location["lat"]),
                lon=float(location["lng"]),
                formatted=str(results[0].get("formatted_address", "")),
            )
        return None

    async def get_route_info(self, origin: str, destination: str) -> RouteLeg | None:
        """Driving distance/duration between two addresses; ``None`` when unroutable.

        Raises :class:`HardLimitExceeded` when a budgeted fallback call finds
        the request budget spent.
        """

        key = _route_key(origin, destination)
        cached = await self._cached(key)
        if cached is not None:
            return RouteLeg(
                distance_meters=float(cached["distance_meters"]),
                duration_seconds=float(cached["duration_seconds"]),
            )

        leg = None
        start = await self.resolve_address(origin)
        end = await self.resolve_address(destination)
        if start is not None and end is not None:
            leg = await self._route_osrm(start, end)
        if leg is None and self.google_api_key:
            leg = await self._route_google(origin, destination)
        if leg is not None:
            await self.cache.put(
                key,
                json.dumps({"distance_meters": leg.distance_meters, "duration_seconds": leg.duration_seconds}),
            )
        return leg

    async def _route_osrm(self, start: GeoPoint, end: GeoPoint) -> RouteLeg | None:
        url = OSRM_ROUTE_URL.format(coords=f"{start.lon},{start.lat};{end.lon},{end.lat}")
        try:
            data = await self._get_json(url, budgeted=False)
        except HardLimitExceeded:
            raise
        except Exception as exc:
            log_event(logger=self.logger, phase="trips", status="warn", message="OSRM route failed", error=str(exc))
            return None
        routes = (data or {}).get("routes") or []
        if routes:
            return RouteLeg(distance_meters=float(routes[0]["distance"]), duration_seconds=float(routes[0]["duration"]))
        return None

    async def _route_google(self, origin: str, destination: str) -> RouteLeg | None:
        url = (
            f"{GOOGLE_DIRECTIONS_URL}?origin={quote(origin)}&destination={quote(destination)}"
            f"&key={quote(self.google_api_key)}"
        )
        try:
            data = await self._get_json(url, budgeted=True)
        except HardLimitExceeded:
            raise
        except Exception as exc:
            log_event(logger=self.logger, phase="trips", status="warn", message="Google directions failed", error=str(exc))
            return None
        routes = (data or {}).get("routes") or []
        if routes and routes[0].get("legs"):
            first_leg = routes[0]["legs"][0]
            return RouteLeg(
                distance_meters=float(first_leg["distance"]["value"]),
                duration_seconds=float(first_leg["duration"]["value"]),
            )
        return None
