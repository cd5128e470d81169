"""Client for the MBTA v3 JSON:API: nearby stops and real-time predictions."""
from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import requests

from ttimes.errors import (
    STAGE_PREDICTIONS,
    STAGE_STOPS,
    UpstreamContractError,
    UpstreamUnavailableError,
)
from ttimes.models import Prediction, RouteType, Stop
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="mbta_client")

session = requests.Session()

MBTA_BASE_URL = "https://api-v3.mbta.com"
DEFAULT_ROUTE_TYPES = ",".join(str(int(t)) for t in RouteType)


@dataclass(frozen=True)
class RouteInfo:
    """Display metadata for a route, side-loaded via `include=route`."""
    color: str = ""
    text_color: str = ""
    description: str = ""
    route_type: Optional[int] = None
    direction_names: Tuple[str, ...] = ()

    @classmethod
    def from_resource(cls, resource: Mapping[str, Any]) -> "RouteInfo":
        attrs = resource.get("attributes") or {}
        names = attrs.get("direction_names") or ()
        route_type = attrs.get("type")
        return cls(
            color=attrs.get("color") or "",
            text_color=attrs.get("text_color") or "",
            description=attrs.get("description") or "",
            route_type=route_type if isinstance(route_type, int) else None,
            direction_names=tuple(n if isinstance(n, str) else "" for n in names),
        )


@dataclass(frozen=True)
class TripInfo:
    """Rider-facing metadata for a trip, side-loaded via `include=trip`."""
    headsign: str = ""

    @classmethod
    def from_resource(cls, resource: Mapping[str, Any]) -> "TripInfo":
        attrs = resource.get("attributes") or {}
        return cls(headsign=attrs.get("headsign") or "")


EMPTY_ROUTE = RouteInfo()


@dataclass
class RouteTable:
    """Typed lookup over the `included` records of one predictions response."""
    routes: Dict[str, RouteInfo] = field(default_factory=dict)
    trips: Dict[str, TripInfo] = field(default_factory=dict)

    @classmethod
    def from_included(cls, included: Optional[Sequence[Any]]) -> "RouteTable":
        """Decode included resources by their `type` tag; unknown tags are ignored."""
        table = cls()
        for resource in included or ():
            if not isinstance(resource, dict) or not resource.get("id"):
                continue
            kind = resource.get("type")
            if kind == "route":
                table.routes[resource["id"]] = RouteInfo.from_resource(resource)
            elif kind == "trip":
                table.trips[resource["id"]] = TripInfo.from_resource(resource)
        return table

    def route(self, route_id: str) -> RouteInfo:
        return self.routes.get(route_id, EMPTY_ROUTE)

    def headsign(self, trip_id: str, route_id: str, direction_id: Optional[int]) -> str:
        """
        Resolve the headsign for a prediction.

        The trip's own headsign wins; otherwise fall back to the route's
        direction name for `direction_id`; otherwise empty.
        """
        trip = self.trips.get(trip_id)
        if trip and trip.headsign:
            return trip.headsign
        names = self.route(route_id).direction_names
        if direction_id is not None and 0 <= direction_id < len(names):
            return names[direction_id]
        return ""


def parse_departure_time(raw: Any) -> Optional[dt.datetime]:
    """Parse an RFC 3339 timestamp; None when missing, malformed or offset-less."""
    if not raw or not isinstance(raw, str):
        return None
    try:
        parsed = dt.datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return parsed


def _related_id(resource: Mapping[str, Any], relation: str) -> str:
    """Return relationships.<relation>.data.id, or "" if any level is missing."""
    rel = (resource.get("relationships") or {}).get(relation) or {}
    data = rel.get("data") if isinstance(rel, dict) else None
    if not isinstance(data, dict):
        return ""
    return data.get("id") or ""


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def normalize_stops(payload: Mapping[str, Any]) -> List[Stop]:
    """
    Turn a /stops response into Stop records, keeping upstream order.

    `data` may be a list of resources, a single resource object, or absent.
    Resources missing an id or usable coordinates are dropped, and repeated
    ids keep their first occurrence.
    """
    data = payload.get("data")
    if data is None:
        resources: Sequence[Any] = []
    elif isinstance(data, dict):
        resources = [data]
    elif isinstance(data, list):
        resources = data
    else:
        raise UpstreamContractError(STAGE_STOPS, f"unexpected 'data' of type {type(data).__name__}")

    stops: List[Stop] = []
    seen: set[str] = set()
    for resource in resources:
        if not isinstance(resource, dict):
            continue
        stop_id = resource.get("id")
        attrs = resource.get("attributes") or {}
        lat = _as_float(attrs.get("latitude"))
        lon = _as_float(attrs.get("longitude"))
        if not stop_id or lat is None or lon is None:
            logger.debug("Dropping stop record without id or coordinates", extra={"stop_id": stop_id})
            continue
        if stop_id in seen:
            continue
        seen.add(stop_id)
        stops.append(Stop(id=str(stop_id), name=attrs.get("name") or "", latitude=lat, longitude=lon))
    return stops


def normalize_predictions(payload: Mapping[str, Any]) -> Dict[str, List[Prediction]]:
    """Turn a /predictions response into per-stop lists sorted by departure time."""
    data = payload.get("data")
    if data is None:
        data = []
    if not isinstance(data, list):
        raise UpstreamContractError(STAGE_PREDICTIONS, f"unexpected 'data' of type {type(data).__name__}")

    table = RouteTable.from_included(payload.get("included"))

    grouped: Dict[str, List[Prediction]] = {}
    dropped = 0
    for resource in data:
        if not isinstance(resource, dict):
            dropped += 1
            continue
        attrs = resource.get("attributes") or {}
        departure = parse_departure_time(attrs.get("departure_time"))
        if departure is None:
            dropped += 1
            continue

        stop_id = _related_id(resource, "stop")
        route_id = _related_id(resource, "route")
        trip_id = _related_id(resource, "trip")
        direction_id = attrs.get("direction_id")
        if not isinstance(direction_id, int) or isinstance(direction_id, bool):
            direction_id = None

        route = table.route(route_id)
        grouped.setdefault(stop_id, []).append(
            Prediction(
                stop_id=stop_id,
                departure_time=departure,
                status=attrs.get("status") or "",
                route_id=route_id,
                route_color=route.color,
                route_type=route.route_type,
                direction_id=direction_id,
                headsign=table.headsign(trip_id, route_id, direction_id),
            )
        )

    for preds in grouped.values():
        preds.sort(key=lambda p: p.departure_time)

    if dropped:
        logger.debug("Dropped unschedulable prediction records", extra={"dropped": dropped})
    return grouped


class MbtaClient:
    """StopsProvider and PredictionsProvider backed by the MBTA v3 API."""

    def __init__(
        self,
        api_key: str = "",
        *,
        base_url: str = MBTA_BASE_URL,
        timeout: float = 10.0,
        search_radius: float = 0.02,
        stop_page_limit: int = 40,
        route_types: str = DEFAULT_ROUTE_TYPES,
        prediction_page_limit: int = 100,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.search_radius = search_radius
        self.stop_page_limit = stop_page_limit
        self.route_types = route_types
        self.prediction_page_limit = prediction_page_limit
        self._http = http

    @property
    def http(self):
        return self._http if self._http is not None else session

    def _headers(self) -> Dict[str, str]:
        # The MBTA API serves keyless requests at a lower rate limit.
        return {"x-api-key": self.api_key} if self.api_key else {}

    def _get_json(self, stage: str, path: str, params: Mapping[str, Any]) -> Mapping[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            resp = self.http.get(url, params=params, headers=self._headers(), timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as exc:
            logger.error("MBTA request failed", extra={"url": url, "error": str(exc)})
            raise UpstreamUnavailableError(stage, str(exc)) from exc

        try:
            payload = resp.json()
        except ValueError as exc:
            raise UpstreamContractError(stage, "MBTA response is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise UpstreamContractError(stage, "MBTA response is not a JSON object")
        return payload

    def nearby(self, latitude: float, longitude: float) -> List[Stop]:
        """Fetch stops within the search radius, nearest first."""
        params = {
            "filter[latitude]": f"{latitude:f}",
            "filter[longitude]": f"{longitude:f}",
            "filter[radius]": str(self.search_radius),
            "sort": "distance",
            "page[limit]": str(self.stop_page_limit),
            "filter[route_type]": self.route_types,
        }
        payload = self._get_json(STAGE_STOPS, "/stops", params)
        stops = normalize_stops(payload)
        logger.info("Fetched nearby stops", extra={"count": len(stops)})
        return stops

    def predictions_for(self, stop_ids: Sequence[str]) -> Dict[str, List[Prediction]]:
        """Fetch predictions for `stop_ids`; an empty list makes no request."""
        if not stop_ids:
            return {}
        params = {
            "filter[stop]": ",".join(stop_ids),
            "sort": "departure_time",
            "page[limit]": str(self.prediction_page_limit),
            "include": "route,trip",
        }
        payload = self._get_json(STAGE_PREDICTIONS, "/predictions", params)
        predictions = normalize_predictions(payload)
        logger.info(
            "Fetched predictions",
            extra={"stops_requested": len(stop_ids), "stops_with_predictions": len(predictions)},
        )
        return predictions
