import datetime as dt
import threading
import unittest

from ttimes.cache import TTLCache
from ttimes.commute_service import (
    CommuteService,
    build_options,
    line_code,
    location_scope_key,
    predictions_scope_key,
)
from ttimes.config import Settings
from ttimes.errors import (
    STAGE_PREDICTIONS,
    STAGE_STOPS,
    STAGE_WALK_TIMES,
    InvalidRequestError,
    UpstreamContractError,
    UpstreamUnavailableError,
)
from ttimes.models import Prediction, Stop, StopWalk

UTC = dt.timezone.utc
NOW = dt.datetime(2025, 1, 6, 12, 0, tzinfo=UTC)
LAT, LON = 42.35221, -71.05521

SOUTH = Stop(id="place-sstat", name="South Station", latitude=42.352271, longitude=-71.055242)
SUMMER = Stop(id="6565", name="Summer St @ Atlantic Ave", latitude=42.3527, longitude=-71.0566)


def _pred(stop_id, minutes, route_id="Red", headsign="Alewife", status=""):
    return Prediction(
        stop_id=stop_id,
        departure_time=NOW + dt.timedelta(minutes=minutes),
        status=status,
        route_id=route_id,
        route_color="DA291C",
        route_type=1,
        direction_id=1,
        headsign=headsign,
    )


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeStops:
    def __init__(self, stops=(), error=None):
        self.stops = list(stops)
        self.error = error
        self.calls = []

    def nearby(self, latitude, longitude):
        self.calls.append((latitude, longitude))
        if self.error:
            raise self.error
        return list(self.stops)


class FakePredictions:
    def __init__(self, predictions=None, error=None):
        self.predictions = predictions or {}
        self.error = error
        self.calls = []

    def predictions_for(self, stop_ids):
        self.calls.append(list(stop_ids))
        if self.error:
            raise self.error
        return {k: list(v) for k, v in self.predictions.items()}


class FakeWalks:
    def __init__(self, durations=None, error=None):
        self.durations = durations
        self.error = error
        self.calls = []

    def walk_times_from(self, origin, destinations):
        self.calls.append((origin, list(destinations)))
        if self.error:
            raise self.error
        if self.durations is not None:
            return tuple(self.durations)
        return tuple(60.0 for _ in destinations)


class TestLineCode(unittest.TestCase):
    def test_green_branch_uses_branch_letter(self):
        self.assertEqual(line_code("Green-B"), "B")
        self.assertEqual(line_code("Green-E"), "E")

    def test_green_branch_ignores_later_segments(self):
        self.assertEqual(line_code("Green-B-x"), "B")

    def test_bare_green(self):
        self.assertEqual(line_code("Green"), "GL")

    def test_rapid_transit_codes(self):
        self.assertEqual(line_code("Red"), "RL")
        self.assertEqual(line_code("Blue"), "BL")
        self.assertEqual(line_code("Orange"), "OL")
        self.assertEqual(line_code("Silver"), "SL")

    def test_other_routes_pass_through(self):
        self.assertEqual(line_code("CR-Fitchburg"), "CR-Fitchburg")
        self.assertEqual(line_code("Mattapan"), "Mattapan")
        self.assertEqual(line_code("741"), "741")
        self.assertEqual(line_code(""), "")


class TestScopeKeys(unittest.TestCase):
    def test_location_key_rounds_to_precision(self):
        self.assertEqual(location_scope_key(42.352221, -71.055249), "loc:42.3522,-71.0552")
        self.assertEqual(
            location_scope_key(42.352221, -71.055249),
            location_scope_key(42.352238, -71.055241),
        )

    def test_predictions_key_ignores_order(self):
        self.assertEqual(predictions_scope_key(["b", "a", "c"]), predictions_scope_key(["c", "a", "b"]))
        self.assertEqual(predictions_scope_key(["b", "a"]), "preds:a,b")


class TestBuildOptions(unittest.TestCase):
    def _options(self, walk_seconds, minutes):
        pairs = [StopWalk(stop=SOUTH, walk_seconds=walk_seconds)]
        preds = {SOUTH.id: [_pred(SOUTH.id, minutes)]}
        return build_options(pairs, preds, now=NOW, grace=dt.timedelta(minutes=5))

    def test_leave_time_within_grace_is_included(self):
        options = self._options(walk_seconds=180, minutes=2)
        self.assertEqual(len(options), 1)
        self.assertEqual(options[0].time_to_leave, NOW - dt.timedelta(minutes=1))
        self.assertEqual(options[0].walk_time_sec, 180)

    def test_leave_time_beyond_grace_is_excluded(self):
        # departs T+2min with an 8 minute walk: leave by T-6min
        self.assertEqual(self._options(walk_seconds=480, minutes=2), [])

    def test_leave_time_at_grace_boundary_is_included(self):
        self.assertEqual(len(self._options(walk_seconds=420, minutes=2)), 1)

    def test_departed_predictions_are_skipped(self):
        self.assertEqual(self._options(walk_seconds=0, minutes=-1), [])

    def test_unroutable_stop_contributes_nothing(self):
        self.assertEqual(self._options(walk_seconds=None, minutes=10), [])

    def test_keeps_stop_then_departure_order(self):
        pairs = [StopWalk(SUMMER, 120.0), StopWalk(SOUTH, 60.0)]
        preds = {
            SOUTH.id: [_pred(SOUTH.id, 3), _pred(SOUTH.id, 9)],
            SUMMER.id: [_pred(SUMMER.id, 20, route_id="7", headsign="City Point")],
        }
        options = build_options(pairs, preds, now=NOW, grace=dt.timedelta(minutes=5))
        self.assertEqual([o.stop_name for o in options], ["Summer St @ Atlantic Ave", "South Station", "South Station"])
        self.assertEqual([o.line for o in options], ["7", "RL", "RL"])
        self.assertEqual(options[1].departure_time, NOW + dt.timedelta(minutes=3))


class TestCommuteService(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.cache = TTLCache(clock=self.clock)
        self.settings = Settings(
            parallel_fetch=False,
            stops_ttl_seconds=300,
            walk_times_ttl_seconds=1800,
            predictions_ttl_seconds=15,
            leave_grace_seconds=300,
            location_precision=4,
        )
        self.stops = FakeStops([SOUTH, SUMMER])
        self.walks = FakeWalks([180.0, 240.0])
        self.preds = FakePredictions({
            SOUTH.id: [_pred(SOUTH.id, 2, route_id="Red", headsign="Ashmont"), _pred(SOUTH.id, 8)],
            SUMMER.id: [_pred(SUMMER.id, 12, route_id="7", headsign="City Point", status="On time")],
        })

    def _service(self, **kwargs):
        return CommuteService(
            kwargs.get("stops", self.stops),
            kwargs.get("preds", self.preds),
            kwargs.get("walks", self.walks),
            self.cache,
            settings=kwargs.get("settings", self.settings),
            clock=lambda: NOW,
        )

    def test_merges_stops_walks_and_predictions(self):
        options = self._service().compute_commute_options(LAT, LON)

        self.assertEqual(len(options), 3)
        first = options[0]
        self.assertEqual(first.stop_name, "South Station")
        self.assertEqual(first.line, "RL")
        self.assertEqual(first.headsign, "Ashmont")
        self.assertEqual(first.route_color, "DA291C")
        self.assertEqual(first.walk_time_sec, 180.0)
        self.assertEqual(first.time_to_leave, NOW - dt.timedelta(minutes=1))
        self.assertEqual(options[2].status, "On time")
        self.assertEqual(options[2].walk_time_sec, 240.0)

    def test_walk_times_requested_for_stop_coordinates_in_order(self):
        self._service().compute_commute_options(LAT, LON)
        origin, destinations = self.walks.calls[0]
        self.assertEqual(origin, (LAT, LON))
        self.assertEqual(destinations, [(SOUTH.latitude, SOUTH.longitude), (SUMMER.latitude, SUMMER.longitude)])

    def test_zero_stops_short_circuits(self):
        stops = FakeStops([])
        options = self._service(stops=stops).compute_commute_options(LAT, LON)
        self.assertEqual(options, [])
        self.assertEqual(len(stops.calls), 1)
        self.assertEqual(self.walks.calls, [])
        self.assertEqual(self.preds.calls, [])

    def test_stops_hit_and_predictions_miss_makes_one_prediction_call(self):
        loc_key = location_scope_key(LAT, LON)
        self.cache.set(f"stops:{loc_key}", (SOUTH, SUMMER), 300)

        self._service().compute_commute_options(LAT, LON)

        self.assertEqual(self.stops.calls, [])
        self.assertEqual(len(self.preds.calls), 1)
        self.assertEqual(sorted(self.preds.calls[0]), sorted([SOUTH.id, SUMMER.id]))

        key = predictions_scope_key([SUMMER.id, SOUTH.id])
        cached, found = self.cache.get(key)
        self.assertTrue(found)
        self.assertEqual(len(cached[SOUTH.id]), 2)
        self.clock.advance(14)
        self.assertTrue(self.cache.get(key)[1])
        self.clock.advance(2)
        self.assertFalse(self.cache.get(key)[1])

    def test_repeat_request_is_served_from_cache(self):
        service = self._service()
        first = service.compute_commute_options(LAT, LON)
        # rounds onto the same 4-decimal scope
        second = service.compute_commute_options(LAT + 0.00001, LON - 0.00001)

        self.assertEqual(first, second)
        self.assertEqual(len(self.stops.calls), 1)
        self.assertEqual(len(self.walks.calls), 1)
        self.assertEqual(len(self.preds.calls), 1)

    def test_predictions_refetched_after_short_ttl(self):
        service = self._service()
        service.compute_commute_options(LAT, LON)
        self.clock.advance(16)
        service.compute_commute_options(LAT, LON)

        self.assertEqual(len(self.stops.calls), 1)
        self.assertEqual(len(self.walks.calls), 1)
        self.assertEqual(len(self.preds.calls), 2)

    def test_stops_and_walk_times_have_separate_ttls(self):
        service = self._service()
        service.compute_commute_options(LAT, LON)
        self.clock.advance(301)
        service.compute_commute_options(LAT, LON)

        self.assertEqual(len(self.stops.calls), 2)
        self.assertEqual(len(self.walks.calls), 1)

    def test_cached_walk_times_for_other_stops_are_refetched(self):
        loc_key = location_scope_key(LAT, LON)
        self.cache.set(f"walk:{loc_key}", (StopWalk(SUMMER, 30.0),), 1800)

        options = self._service().compute_commute_options(LAT, LON)

        self.assertEqual(len(self.walks.calls), 1)
        self.assertEqual(options[0].walk_time_sec, 180.0)

    def test_short_walk_time_row_is_contract_violation(self):
        walks = FakeWalks([180.0])
        with self.assertRaises(UpstreamContractError) as ctx:
            self._service(walks=walks).compute_commute_options(LAT, LON)
        self.assertEqual(ctx.exception.stage, STAGE_WALK_TIMES)
        self.assertFalse(self.cache.get(f"walk:{location_scope_key(LAT, LON)}")[1])

    def test_stops_failure_fails_request(self):
        stops = FakeStops(error=UpstreamUnavailableError(STAGE_STOPS, "503 Service Unavailable"))
        with self.assertRaises(UpstreamUnavailableError) as ctx:
            self._service(stops=stops).compute_commute_options(LAT, LON)
        self.assertEqual(ctx.exception.stage, STAGE_STOPS)
        self.assertEqual(self.walks.calls, [])
        self.assertEqual(self.preds.calls, [])

    def test_unexpected_provider_error_names_stage(self):
        preds = FakePredictions(error=RuntimeError("socket closed"))
        with self.assertRaises(UpstreamUnavailableError) as ctx:
            self._service(preds=preds).compute_commute_options(LAT, LON)
        self.assertEqual(ctx.exception.stage, STAGE_PREDICTIONS)
        self.assertIn("Failed to get predictions", str(ctx.exception))

    def test_failed_refresh_does_not_fall_back_to_stale_cache(self):
        self._service().compute_commute_options(LAT, LON)
        self.clock.advance(16)

        failing = FakePredictions(error=UpstreamUnavailableError(STAGE_PREDICTIONS, "timeout"))
        with self.assertRaises(UpstreamUnavailableError):
            self._service(preds=failing).compute_commute_options(LAT, LON)
        self.assertEqual(len(failing.calls), 1)

    def test_invalid_coordinates_rejected_before_upstream_calls(self):
        service = self._service()
        for lat, lon in ((91.0, 0.0), (0.0, -180.5), (float("nan"), 0.0), (None, 0.0), (True, 1.0)):
            with self.assertRaises(InvalidRequestError):
                service.compute_commute_options(lat, lon)
        self.assertEqual(self.stops.calls, [])

    def test_stop_without_predictions_contributes_nothing(self):
        preds = FakePredictions({SUMMER.id: [_pred(SUMMER.id, 12, route_id="7")]})
        options = self._service(preds=preds).compute_commute_options(LAT, LON)
        self.assertEqual([o.stop_name for o in options], ["Summer St @ Atlantic Ave"])

    def test_parallel_fetch_matches_sequential(self):
        sequential = self._service().compute_commute_options(LAT, LON)

        self.cache.clear()
        service = self._service(settings=Settings(parallel_fetch=True))
        parallel = service.compute_commute_options(LAT, LON)
        self.assertEqual(parallel, sequential)

    def test_parallel_fetch_surfaces_walk_failure(self):
        walks = FakeWalks(error=UpstreamUnavailableError(STAGE_WALK_TIMES, "401 Unauthorized"))
        service = self._service(walks=walks, settings=Settings(parallel_fetch=True))
        with self.assertRaises(UpstreamUnavailableError) as ctx:
            service.compute_commute_options(LAT, LON)
        self.assertEqual(ctx.exception.stage, STAGE_WALK_TIMES)

    def test_parallel_fetch_surfaces_prediction_failure(self):
        preds = FakePredictions(error=RuntimeError("connection reset"))
        service = self._service(preds=preds, settings=Settings(parallel_fetch=True))
        with self.assertRaises(UpstreamUnavailableError) as ctx:
            service.compute_commute_options(LAT, LON)
        self.assertEqual(ctx.exception.stage, STAGE_PREDICTIONS)

    def test_parallel_fetch_leaves_no_worker_threads_behind(self):
        service = self._service(settings=Settings(parallel_fetch=True))
        service.compute_commute_options(LAT, LON)
        lingering = [t.name for t in threading.enumerate() if t.name.startswith("ttimes-preds")]
        self.assertEqual(lingering, [])


SLOW_STOP = Stop(id="slow-stop", name="Slow Stop", latitude=1.0, longitude=1.0)
FAST_STOP = Stop(id="fast-stop", name="Fast Stop", latitude=10.0, longitude=10.0)


class GatedStops:
    def nearby(self, latitude, longitude):
        return [SLOW_STOP] if latitude == SLOW_STOP.latitude else [FAST_STOP]


class GatedWalks:
    def __init__(self, release):
        self.release = release
        self.entered = threading.Event()

    def walk_times_from(self, origin, destinations):
        if origin == (SLOW_STOP.latitude, SLOW_STOP.longitude):
            self.entered.set()
            self.release.wait(5)
        return tuple(60.0 for _ in destinations)


class GatedPredictions:
    def __init__(self, release):
        self.release = release
        self.entered = threading.Event()

    def predictions_for(self, stop_ids):
        if SLOW_STOP.id in stop_ids:
            self.entered.set()
            self.release.wait(5)
        return {stop_id: [_pred(stop_id, 10)] for stop_id in stop_ids}


class TestRequestIsolation(unittest.TestCase):
    def test_slow_request_does_not_delay_other_requests(self):
        release = threading.Event()
        walks = GatedWalks(release)
        preds = GatedPredictions(release)
        service = CommuteService(
            GatedStops(),
            preds,
            walks,
            TTLCache(),
            settings=Settings(parallel_fetch=True),
            clock=lambda: NOW,
        )
        results = {}

        def run(name, lat, lon):
            results[name] = service.compute_commute_options(lat, lon)

        slow = threading.Thread(target=run, args=("slow", SLOW_STOP.latitude, SLOW_STOP.longitude))
        slow.start()
        try:
            self.assertTrue(walks.entered.wait(2))
            self.assertTrue(preds.entered.wait(2))

            fast = threading.Thread(target=run, args=("fast", FAST_STOP.latitude, FAST_STOP.longitude))
            fast.start()
            fast.join(timeout=2)
            self.assertFalse(fast.is_alive())
            self.assertNotIn("slow", results)
            self.assertEqual([o.stop_name for o in results["fast"]], ["Fast Stop"])
        finally:
            release.set()
            slow.join(timeout=5)
        self.assertEqual([o.stop_name for o in results["slow"]], ["Slow Stop"])


if __name__ == "__main__":
    unittest.main()
