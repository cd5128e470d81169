import unittest

from ttimes.data_sources.factory import build_providers
from ttimes.data_sources.mbta_client import MbtaClient
from ttimes.data_sources.ors_client import OrsClient


class DummySettings:
    def __init__(self, **kwargs):
        self.mbta_api_key = ""
        self.ors_api_key = ""
        self.mbta_base_url = "https://api-v3.mbta.com"
        self.ors_base_url = "https://api.openrouteservice.org"
        self.request_timeout_seconds = 10.0
        self.stop_search_radius = 0.02
        self.stop_page_limit = 40
        self.stop_route_types = "0,1,2,3,4"
        self.prediction_page_limit = 100
        for k, v in kwargs.items():
            setattr(self, k, v)


class TestDataSourceFactory(unittest.TestCase):
    def test_builds_mbta_and_ors_clients(self):
        providers = build_providers(DummySettings())
        self.assertIsInstance(providers.stops, MbtaClient)
        self.assertIs(providers.stops, providers.predictions)
        self.assertIsInstance(providers.walk_times, OrsClient)

    def test_settings_flow_into_clients(self):
        settings = DummySettings(
            mbta_api_key="mbta-key",
            ors_api_key="ors-key",
            mbta_base_url="http://mbta.local",
            request_timeout_seconds=3.0,
            stop_route_types="0,1",
        )
        providers = build_providers(settings)
        self.assertEqual(providers.stops.api_key, "mbta-key")
        self.assertEqual(providers.stops.base_url, "http://mbta.local")
        self.assertEqual(providers.stops.route_types, "0,1")
        self.assertEqual(providers.stops.timeout, 3.0)
        self.assertEqual(providers.walk_times.api_key, "ors-key")
        self.assertEqual(providers.walk_times.timeout, 3.0)


if __name__ == "__main__":
    unittest.main()
