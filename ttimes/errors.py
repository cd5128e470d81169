"""Error taxonomy shared by the upstream clients, the aggregator and the API."""

STAGE_STOPS = "stops"
STAGE_WALK_TIMES = "walk_times"
STAGE_PREDICTIONS = "predictions"

_STAGE_LABELS = {
    STAGE_STOPS: "stops",
    STAGE_WALK_TIMES: "walk times",
    STAGE_PREDICTIONS: "predictions",
}


class CommuteError(Exception):
    """Base class for every failure surfaced by the commute service."""


class InvalidRequestError(CommuteError):
    """The caller supplied a missing or out-of-range coordinate."""


class UpstreamError(CommuteError):
    """An upstream stage could not produce a usable result."""

    def __init__(self, stage: str, message: str) -> None:
        self.stage = stage
        self.message = message
        super().__init__(f"Failed to get {_STAGE_LABELS.get(stage, stage)}: {message}")


class UpstreamUnavailableError(UpstreamError):
    """Transport failure or non-success status from an upstream API."""


class UpstreamContractError(UpstreamError):
    """Upstream answered, but the payload is structurally unusable."""
