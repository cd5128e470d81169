"""Client for the openrouteservice matrix API (walking durations)."""
from __future__ import annotations

from typing import Any, List, Optional, Sequence, Tuple

import requests

from ttimes.data_sources.base import Coordinate
from ttimes.errors import STAGE_WALK_TIMES, UpstreamContractError, UpstreamUnavailableError
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="ors_client")

session = requests.Session()

ORS_BASE_URL = "https://api.openrouteservice.org"
WALKING_PROFILE = "foot-walking"


def _duration_or_none(value: Any) -> Optional[float]:
    """ORS reports unroutable pairs as null; anything else must be a number."""
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise UpstreamContractError(STAGE_WALK_TIMES, f"non-numeric duration {value!r}")
    return float(value)


def build_matrix_request(origin: Coordinate, destinations: Sequence[Coordinate]) -> dict:
    """Build a one-to-many duration request; ORS wants [lon, lat] pairs."""
    locations: List[List[float]] = [[origin[1], origin[0]]]
    locations.extend([lon, lat] for lat, lon in destinations)
    return {
        "locations": locations,
        "sources": [0],
        "destinations": list(range(1, len(destinations) + 1)),
        "metrics": ["duration"],
    }


class OrsClient:
    """WalkTimeProvider backed by the openrouteservice matrix endpoint."""

    def __init__(
        self,
        api_key: str = "",
        *,
        base_url: str = ORS_BASE_URL,
        timeout: float = 10.0,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http = http

    @property
    def http(self):
        return self._http if self._http is not None else session

    def walk_times_from(
        self,
        origin: Coordinate,
        destinations: Sequence[Coordinate],
    ) -> Tuple[Optional[float], ...]:
        """Return walking seconds from `origin` to each destination, in order."""
        if not destinations:
            return ()

        url = f"{self.base_url}/v2/matrix/{WALKING_PROFILE}"
        headers = {"Authorization": self.api_key, "Content-Type": "application/json"}
        body = build_matrix_request(origin, destinations)

        try:
            resp = self.http.post(url, json=body, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as exc:
            logger.error("ORS matrix request failed", extra={"error": str(exc)})
            raise UpstreamUnavailableError(STAGE_WALK_TIMES, str(exc)) from exc

        try:
            payload = resp.json()
        except ValueError as exc:
            raise UpstreamContractError(STAGE_WALK_TIMES, "ORS response is not valid JSON") from exc

        durations = payload.get("durations") if isinstance(payload, dict) else None
        if not isinstance(durations, list) or not durations or not isinstance(durations[0], list):
            raise UpstreamContractError(STAGE_WALK_TIMES, "ORS response has no duration rows")

        row = durations[0]
        if len(row) != len(destinations):
            logger.warning(
                "ORS duration row does not match destinations",
                extra={"durations": len(row), "destinations": len(destinations)},
            )
            raise UpstreamContractError(
                STAGE_WALK_TIMES,
                f"expected {len(destinations)} durations, got {len(row)}",
            )

        walk_times = tuple(_duration_or_none(v) for v in row)
        logger.info("Fetched walk times", extra={"count": len(walk_times)})
        return walk_times
