"""Merge nearby stops, walking times and live predictions into commute options."""
from __future__ import annotations

import datetime as dt
import math
from concurrent.futures import ThreadPoolExecutor
from types import MappingProxyType
from typing import Any, Callable, Iterable, List, Mapping, Sequence, Tuple

from ttimes import config
from ttimes.cache import TTLCache
from ttimes.data_sources.base import PredictionsProvider, StopsProvider, WalkTimeProvider
from ttimes.errors import (
    STAGE_PREDICTIONS,
    STAGE_STOPS,
    STAGE_WALK_TIMES,
    CommuteError,
    InvalidRequestError,
    UpstreamContractError,
    UpstreamUnavailableError,
)
from ttimes.models import CommuteOption, Prediction, Stop, StopWalk
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="commute_service")

_LINE_PREFIXES = (
    ("Red", "RL"),
    ("Blue", "BL"),
    ("Orange", "OL"),
    ("Silver", "SL"),
)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def line_code(route_id: str) -> str:
    """
    Short display code for a route id.

    Rapid-transit lines collapse to their two-letter code, Green Line branches
    to their branch letter ("Green-B" -> "B", bare "Green" -> "GL"); anything
    else is returned unchanged.
    """
    if route_id.startswith("Green"):
        parts = route_id.split("-")
        return parts[1] if len(parts) > 1 else "GL"
    for prefix, code in _LINE_PREFIXES:
        if route_id.startswith(prefix):
            return code
    return route_id


def validate_coordinate(latitude: Any, longitude: Any) -> Tuple[float, float]:
    """Return (lat, lon) as floats or raise InvalidRequestError."""
    for name, value, bound in (("lat", latitude, 90.0), ("lon", longitude, 180.0)):
        if value is None or isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidRequestError(f"{name} must be a number")
        if not math.isfinite(value) or abs(value) > bound:
            raise InvalidRequestError(f"{name} must be within [-{bound:g}, {bound:g}]")
    return float(latitude), float(longitude)


def location_scope_key(latitude: float, longitude: float, precision: int = 4) -> str:
    """Cache scope for location-bound data; nearby requests share one key."""
    return f"loc:{latitude:.{precision}f},{longitude:.{precision}f}"


def predictions_scope_key(stop_ids: Iterable[str]) -> str:
    """Cache scope for predictions: the stop-id set, independent of order."""
    return "preds:" + ",".join(sorted(set(stop_ids)))


def build_options(
    stop_walks: Sequence[StopWalk],
    predictions: Mapping[str, Sequence[Prediction]],
    *,
    now: dt.datetime,
    grace: dt.timedelta,
) -> List[CommuteOption]:
    """
    Turn paired stops and their predictions into options worth showing.

    Departed predictions are skipped. A departure is kept while its
    time-to-leave is no more than `grace` in the past. Output keeps stop order,
    then each stop's departure order.
    """
    options: List[CommuteOption] = []
    earliest_leave = now - grace

    for pair in stop_walks:
        stop = pair.stop
        preds = predictions.get(stop.id)
        if not preds:
            logger.debug("No predictions for stop", extra={"stop_id": stop.id})
            continue
        if pair.walk_seconds is None:
            logger.debug("Stop is not reachable on foot", extra={"stop_id": stop.id})
            continue

        walk = dt.timedelta(seconds=pair.walk_seconds)
        for pred in preds:
            if pred.departure_time < now:
                continue
            time_to_leave = pred.departure_time - walk
            if time_to_leave < earliest_leave:
                logger.debug(
                    "Skipping departure that can no longer be caught",
                    extra={"stop": stop.name, "route_id": pred.route_id, "time_to_leave": time_to_leave.isoformat()},
                )
                continue
            options.append(
                CommuteOption(
                    stop_name=stop.name,
                    line=line_code(pred.route_id),
                    headsign=pred.headsign,
                    route_color=pred.route_color,
                    route_type=pred.route_type,
                    departure_time=pred.departure_time,
                    walk_time_sec=pair.walk_seconds,
                    time_to_leave=time_to_leave,
                    status=pred.status,
                )
            )
    return options


class CommuteService:
    """
    Answer "what should I take right now from (lat, lon)?".

    One instance is created at process start and shared by every request; the
    only state it carries between requests is its TTLCache. Stops are cached
    per rounded location, walk times per rounded location (paired with the
    stops they were computed for), predictions per stop-id set. A failed
    upstream call fails the whole request; cached data is never used as a
    fallback for a failed refresh.
    """

    def __init__(
        self,
        stops_provider: StopsProvider,
        predictions_provider: PredictionsProvider,
        walk_time_provider: WalkTimeProvider,
        cache: TTLCache,
        *,
        settings: config.Settings | None = None,
        clock: Callable[[], dt.datetime] = _utcnow,
    ) -> None:
        self.stops_provider = stops_provider
        self.predictions_provider = predictions_provider
        self.walk_time_provider = walk_time_provider
        self.cache = cache
        self.settings = settings or config.settings
        self._clock = clock

    # ------------------------------------------------------------------
    # Stage helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _call(stage: str, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a provider call, naming the stage on any unexpected failure."""
        try:
            return fn(*args)
        except CommuteError:
            raise
        except Exception as exc:
            logger.error("Upstream call failed", extra={"stage": stage, "error": str(exc)})
            raise UpstreamUnavailableError(stage, str(exc)) from exc

    def _resolve_stops(self, loc_key: str, latitude: float, longitude: float) -> Tuple[Stop, ...]:
        key = f"stops:{loc_key}"
        cached, hit = self.cache.get(key)
        if hit:
            logger.info("Cache HIT: stops", extra={"key": key, "count": len(cached)})
            return cached

        stops = tuple(self._call(STAGE_STOPS, self.stops_provider.nearby, latitude, longitude))
        self.cache.set(key, stops, self.settings.stops_ttl_seconds)
        logger.info("Cache MISS: stops", extra={"key": key, "count": len(stops)})
        return stops

    def _resolve_walk_times(
        self,
        loc_key: str,
        origin: Tuple[float, float],
        stops: Tuple[Stop, ...],
    ) -> Tuple[StopWalk, ...]:
        key = f"walk:{loc_key}"
        cached, hit = self.cache.get(key)
        if hit and tuple(pair.stop for pair in cached) == stops:
            logger.info("Cache HIT: walk times", extra={"key": key})
            return cached
        if hit:
            logger.info("Cached walk times were computed for other stops; refetching", extra={"key": key})

        destinations = [(stop.latitude, stop.longitude) for stop in stops]
        durations = self._call(STAGE_WALK_TIMES, self.walk_time_provider.walk_times_from, origin, destinations)
        if len(durations) != len(stops):
            raise UpstreamContractError(
                STAGE_WALK_TIMES,
                f"expected {len(stops)} durations, got {len(durations)}",
            )

        pairs = tuple(StopWalk(stop=stop, walk_seconds=secs) for stop, secs in zip(stops, durations))
        self.cache.set(key, pairs, self.settings.walk_times_ttl_seconds)
        logger.info("Cache MISS: walk times", extra={"key": key, "count": len(pairs)})
        return pairs

    def _resolve_predictions(self, stops: Tuple[Stop, ...]) -> Mapping[str, Tuple[Prediction, ...]]:
        stop_ids = [stop.id for stop in stops]
        key = predictions_scope_key(stop_ids)
        cached, hit = self.cache.get(key)
        if hit:
            logger.info("Cache HIT: predictions", extra={"key": key})
            return cached

        fetched = self._call(STAGE_PREDICTIONS, self.predictions_provider.predictions_for, stop_ids)
        predictions = MappingProxyType({stop_id: tuple(preds) for stop_id, preds in fetched.items()})
        self.cache.set(key, predictions, self.settings.predictions_ttl_seconds)
        logger.info("Cache MISS: predictions", extra={"key": key, "stops": len(predictions)})
        return predictions

    # ------------------------------------------------------------------
    # Public entrypoint
    # ------------------------------------------------------------------

    def compute_commute_options(self, latitude: float, longitude: float) -> List[CommuteOption]:
        """Return the commute options for a rider standing at (latitude, longitude)."""
        lat, lon = validate_coordinate(latitude, longitude)
        logger.info("Computing commute options", extra={"latitude": lat, "longitude": lon})

        loc_key = location_scope_key(lat, lon, self.settings.location_precision)
        stops = self._resolve_stops(loc_key, lat, lon)
        if not stops:
            logger.info("No stops near location", extra={"key": loc_key})
            return []

        if self.settings.parallel_fetch:
            # Predictions go to a pool owned by this request; walk times resolve on
            # the calling thread. Slow upstreams never hold another request.
            with ThreadPoolExecutor(max_workers=1, thread_name_prefix="ttimes-preds") as pool:
                preds_future = pool.submit(self._resolve_predictions, stops)
                stop_walks = self._resolve_walk_times(loc_key, (lat, lon), stops)
                predictions = preds_future.result()
        else:
            stop_walks = self._resolve_walk_times(loc_key, (lat, lon), stops)
            predictions = self._resolve_predictions(stops)

        options = build_options(
            stop_walks,
            predictions,
            now=self._clock(),
            grace=dt.timedelta(seconds=self.settings.leave_grace_seconds),
        )
        logger.info("Returning commute options", extra={"count": len(options)})
        return options
