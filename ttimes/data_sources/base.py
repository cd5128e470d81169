"""Interfaces for the upstream providers the commute aggregator fans out to."""

from __future__ import annotations

from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from ttimes.models import Prediction, Stop

Coordinate = Tuple[float, float]  # (latitude, longitude)


class StopsProvider(Protocol):
    """Anything that can list transit stops near a coordinate."""

    def nearby(self, latitude: float, longitude: float) -> List[Stop]:
        """Return stops ordered by proximity."""
        ...


class PredictionsProvider(Protocol):
    """Anything that can forecast departures for a set of stops."""

    def predictions_for(self, stop_ids: Sequence[str]) -> Dict[str, List[Prediction]]:
        """Return predictions grouped by stop id, each list sorted by departure time."""
        ...


class WalkTimeProvider(Protocol):
    """Anything that can estimate walking durations from one origin."""

    def walk_times_from(
        self,
        origin: Coordinate,
        destinations: Sequence[Coordinate],
    ) -> Tuple[Optional[float], ...]:
        """Return one duration in seconds per destination, in destination order."""
        ...
