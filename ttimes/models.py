"""Records exchanged between the upstream clients and the commute aggregator."""
from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional


class RouteType(IntEnum):
    """GTFS route types the stop search is allowed to return."""
    LIGHT_RAIL = 0
    SUBWAY = 1
    RAIL = 2
    BUS = 3
    FERRY = 4


@dataclass(frozen=True)
class Stop:
    """A boarding location near the rider."""
    id: str
    name: str
    latitude: float
    longitude: float


@dataclass(frozen=True)
class Prediction:
    """One forecast departure at a stop, with its route metadata resolved."""
    stop_id: str
    departure_time: dt.datetime  # timezone-aware
    status: str
    route_id: str
    route_color: str
    route_type: Optional[int]
    direction_id: Optional[int]
    headsign: str


@dataclass(frozen=True)
class StopWalk:
    """A stop paired with the walking time to reach it (None if unroutable)."""
    stop: Stop
    walk_seconds: Optional[float]


@dataclass(frozen=True)
class CommuteOption:
    """A departure worth showing, with the latest instant the rider can leave."""
    stop_name: str
    line: str
    headsign: str
    route_color: str
    route_type: Optional[int]
    departure_time: dt.datetime
    walk_time_sec: float
    time_to_leave: dt.datetime
    status: str = ""
