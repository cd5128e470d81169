"""HTTP API for the commute planner."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, ConfigDict

from .cache import TTLCache
from .commute_service import CommuteService
from .config import settings
from .data_sources import build_providers
from .errors import InvalidRequestError, UpstreamError
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="app/api")


def build_service() -> CommuteService:
    """Wire the providers and a fresh process-lifetime cache into a service."""
    providers = build_providers(settings)
    return CommuteService(
        providers.stops,
        providers.predictions,
        providers.walk_times,
        TTLCache(),
        settings=settings,
    )


router = APIRouter()
SERVICE = build_service()


class CommuteRequest(BaseModel):
    """Rider position."""
    lat: float
    lon: float


class CommuteOptionOut(BaseModel):
    """One departure in the "leave by" schedule."""
    model_config = ConfigDict(from_attributes=True)

    stop_name: str
    line: str
    headsign: str
    route_color: str
    route_type: Optional[int] = None
    departure_time: datetime
    walk_time_sec: float
    time_to_leave: datetime
    status: str


class CommuteResponse(BaseModel):
    """Options in stop order, then departure order within a stop."""
    options: list[CommuteOptionOut]


@router.post("/commute", response_model=CommuteResponse)
def compute_commute(req: CommuteRequest):
    """Return commute options for the rider's current position."""
    logger.info(f"Received commute request: lat={req.lat}, lon={req.lon}")
    try:
        options = SERVICE.compute_commute_options(req.lat, req.lon)
    except InvalidRequestError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except UpstreamError as exc:
        logger.error("Commute request failed", extra={"stage": exc.stage, "error": exc.message})
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))

    return CommuteResponse(options=[CommuteOptionOut.model_validate(o) for o in options])
