"""Factory helpers for building the upstream providers at startup."""

from __future__ import annotations

from dataclasses import dataclass

from ttimes import config
from ttimes.data_sources.base import PredictionsProvider, StopsProvider, WalkTimeProvider
from ttimes.data_sources.mbta_client import MbtaClient
from ttimes.data_sources.ors_client import OrsClient
from utils.logging_utils import get_tagged_logger, mask_secret

logger = get_tagged_logger(__name__, tag="data_sources/factory")


@dataclass
class Providers:
    """The three upstream collaborators the commute service needs."""
    stops: StopsProvider
    predictions: PredictionsProvider
    walk_times: WalkTimeProvider


def build_providers(settings: config.Settings | None = None) -> Providers:
    """Instantiate the MBTA and openrouteservice clients from settings."""
    settings = settings or config.settings

    if not settings.mbta_api_key:
        logger.warning("No MBTA API key configured; requests will be rate limited")
    if not settings.ors_api_key:
        logger.warning("No ORS API key configured; walk time requests may be rejected")

    mbta = MbtaClient(
        settings.mbta_api_key,
        base_url=settings.mbta_base_url,
        timeout=settings.request_timeout_seconds,
        search_radius=settings.stop_search_radius,
        stop_page_limit=settings.stop_page_limit,
        route_types=settings.stop_route_types,
        prediction_page_limit=settings.prediction_page_limit,
    )
    ors = OrsClient(
        settings.ors_api_key,
        base_url=settings.ors_base_url,
        timeout=settings.request_timeout_seconds,
    )
    logger.info(
        "Using MBTA and ORS providers",
        extra={
            "mbta_base_url": settings.mbta_base_url,
            "mbta_api_key": mask_secret(settings.mbta_api_key),
            "ors_base_url": settings.ors_base_url,
            "ors_api_key": mask_secret(settings.ors_api_key),
        },
    )
    return Providers(stops=mbta, predictions=mbta, walk_times=ors)
