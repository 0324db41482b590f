"""Route, stop and fleet catalog.

Routes are immutable once loaded and shared read-only by every vehicle that
runs on them. The catalog is loaded from a JSON file shaped like::

    {
      "routes": [
        {"id": "R1", "name": "...",
         "stops": [{"id": "S1", "name": "...", "lat": 28.63, "lng": 77.21}],
         "polyline": [{"lat": 28.63, "lng": 77.21}, ...]}
      ],
      "fleet": {"BUS_101": "R1"}
    }
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from geo_math import LatLng, cumulative_distance, haversine


DEFAULT_ROUTES_CONFIG_PATH = Path(__file__).resolve().parent / "config" / "routes.json"


def _parse_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class Stop:
    stop_id: str
    name: str
    lat: float
    lng: float

    @property
    def point(self) -> LatLng:
        return (self.lat, self.lng)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.stop_id, "name": self.name, "lat": self.lat, "lng": self.lng}


@dataclass(frozen=True)
class Route:
    route_id: str
    name: str
    stops: Tuple[Stop, ...]
    polyline: Tuple[LatLng, ...]
    cum: Tuple[float, ...] = field(repr=False)  # meters at each polyline vertex
    length_m: float = 0.0

    @classmethod
    def build(cls, route_id: str, name: str, stops: Iterable[Stop], polyline: Iterable[LatLng]) -> "Route":
        poly = tuple((float(lat), float(lng)) for lat, lng in polyline)
        cum, total = cumulative_distance(poly)
        return cls(
            route_id=str(route_id),
            name=name,
            stops=tuple(stops),
            polyline=poly,
            cum=tuple(cum),
            length_m=total,
        )

    @property
    def length_km(self) -> float:
        return self.length_m / 1000.0

    def get_stop(self, stop_id: Optional[str]) -> Optional[Stop]:
        if stop_id is None:
            return None
        for stop in self.stops:
            if stop.stop_id == str(stop_id):
                return stop
        return None

    def stop_index(self, stop_id: str) -> int:
        for idx, stop in enumerate(self.stops):
            if stop.stop_id == stop_id:
                return idx
        return -1

    def find_nearest_stop(self, lat: float, lng: float) -> Optional[Stop]:
        """Return the stop closest to ``(lat, lng)`` by great-circle distance."""
        best: Optional[Stop] = None
        best_dist = float("inf")
        for stop in self.stops:
            d = haversine((lat, lng), stop.point)
            if d < best_dist:
                best_dist = d
                best = stop
        return best

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.route_id,
            "name": self.name,
            "stops": [s.to_dict() for s in self.stops],
            "polyline": [{"lat": lat, "lng": lng} for lat, lng in self.polyline],
        }


class TransitCatalog:
    """Routes keyed by id plus the vehicle -> route fleet assignment."""

    def __init__(self, routes: Iterable[Route] = (), fleet: Optional[Mapping[str, str]] = None):
        self.routes: Dict[str, Route] = {r.route_id: r for r in routes}
        self.fleet: Dict[str, str] = {str(k): str(v) for k, v in (fleet or {}).items()}

    def get_route(self, route_id: Optional[str]) -> Optional[Route]:
        if route_id is None:
            return None
        return self.routes.get(str(route_id))

    def route_id_for_vehicle(self, vehicle_id: Optional[str]) -> Optional[str]:
        if vehicle_id is None:
            return None
        return self.fleet.get(str(vehicle_id))

    def route_for_vehicle(self, vehicle_id: Optional[str]) -> Optional[Route]:
        return self.get_route(self.route_id_for_vehicle(vehicle_id))

    def list_routes(self) -> List[Dict[str, Any]]:
        return [route.to_dict() for route in self.routes.values()]


def _parse_stop(raw: Any) -> Optional[Stop]:
    if not isinstance(raw, dict):
        return None
    stop_id = raw.get("id") or raw.get("stop_id")
    lat = _parse_float(raw.get("lat"))
    lng = _parse_float(raw.get("lng", raw.get("lon")))
    if stop_id is None or lat is None or lng is None:
        return None
    name = str(raw.get("name") or stop_id).strip()
    return Stop(stop_id=str(stop_id), name=name, lat=lat, lng=lng)


def _parse_point(raw: Any) -> Optional[LatLng]:
    if isinstance(raw, dict):
        lat = _parse_float(raw.get("lat"))
        lng = _parse_float(raw.get("lng", raw.get("lon")))
    elif isinstance(raw, (list, tuple)) and len(raw) == 2:
        lat = _parse_float(raw[0])
        lng = _parse_float(raw[1])
    else:
        return None
    if lat is None or lng is None:
        return None
    return (lat, lng)


def parse_route(raw: Any) -> Optional[Route]:
    """Build a :class:`Route` from a JSON mapping, or ``None`` if unusable."""
    if not isinstance(raw, dict):
        return None
    route_id = raw.get("id") or raw.get("route_id")
    if route_id is None:
        return None
    stops = [s for s in (_parse_stop(item) for item in raw.get("stops") or []) if s is not None]
    polyline = [p for p in (_parse_point(item) for item in raw.get("polyline") or []) if p is not None]
    if len(polyline) < 2:
        # fall back to the stop sequence as the path
        polyline = [s.point for s in stops]
    if len(polyline) < 2:
        return None
    name = str(raw.get("name") or route_id).strip()
    return Route.build(str(route_id), name, stops, polyline)


def build_catalog(raw: Any) -> TransitCatalog:
    routes: List[Route] = []
    fleet: Dict[str, str] = {}
    if not isinstance(raw, dict):
        return TransitCatalog()
    for item in raw.get("routes") or []:
        route = parse_route(item)
        if route is None:
            print(f"[catalog] skipping malformed route entry: {str(item)[:80]}")
            continue
        routes.append(route)
    known = {r.route_id for r in routes}
    fleet_raw = raw.get("fleet")
    if isinstance(fleet_raw, dict):
        for vid, rid in fleet_raw.items():
            if vid is None or rid is None:
                continue
            if str(rid) not in known:
                print(f"[catalog] vehicle {vid} assigned to unknown route {rid}; ignored")
                continue
            fleet[str(vid).strip()] = str(rid)
    return TransitCatalog(routes, fleet)


def load_transit_catalog(path: Path = DEFAULT_ROUTES_CONFIG_PATH) -> TransitCatalog:
    """Load the route catalog from JSON; a missing or broken file yields an empty catalog."""
    if not path.exists():
        print(f"[catalog] config {path} not found; no routes loaded")
        return TransitCatalog()
    try:
        raw = json.loads(path.read_text())
    except (json.JSONDecodeError, OSError) as exc:
        print(f"[catalog] failed to load config {path}: {exc}")
        return TransitCatalog()
    catalog = build_catalog(raw)
    print(f"[catalog] loaded {len(catalog.routes)} routes and {len(catalog.fleet)} vehicles from {path}")
    return catalog


__all__ = [
    "DEFAULT_ROUTES_CONFIG_PATH",
    "Stop",
    "Route",
    "TransitCatalog",
    "parse_route",
    "build_catalog",
    "load_transit_catalog",
]
