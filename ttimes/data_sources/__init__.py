"""Upstream providers for stops, predictions and walking times."""

from .base import Coordinate, PredictionsProvider, StopsProvider, WalkTimeProvider
from .factory import Providers, build_providers
from .mbta_client import MbtaClient
from .ors_client import OrsClient

__all__ = [
    "build_providers",
    "Providers",
    "Coordinate",
    "StopsProvider",
    "PredictionsProvider",
    "WalkTimeProvider",
    "MbtaClient",
    "OrsClient",
]
