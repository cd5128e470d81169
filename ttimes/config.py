"""Application configuration pulled from environment variables via pydantic."""
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from utils.logging_utils import get_tagged_logger, mask_secret
logger = get_tagged_logger(__name__, tag="config")


class Settings(BaseSettings):
    """Environment-driven configuration for the ttimes commute service."""
    model_config = SettingsConfigDict(env_prefix="TTIMES_", extra="ignore", populate_by_name=True)

    # Upstream credentials; empty string means unauthenticated best-effort mode.
    # Unprefixed names are what existing deployments already export.
    mbta_api_key: str = Field(default="", validation_alias=AliasChoices("TTIMES_MBTA_API_KEY", "MBTA_API_KEY"))
    ors_api_key: str = Field(default="", validation_alias=AliasChoices("TTIMES_ORS_API_KEY", "ORS_API_KEY"))
    mbta_base_url: str = "https://api-v3.mbta.com"
    ors_base_url: str = "https://api.openrouteservice.org"
    request_timeout_seconds: float = 10.0

    # Upstream query shape
    stop_search_radius: float = 0.02
    stop_page_limit: int = 40
    stop_route_types: str = "0,1,2,3,4"
    prediction_page_limit: int = 100

    # Cache lifetimes
    stops_ttl_seconds: float = 300
    walk_times_ttl_seconds: float = 1800
    predictions_ttl_seconds: float = 15

    # Aggregation policy
    location_precision: int = Field(default=4, ge=0)
    leave_grace_seconds: float = 300
    parallel_fetch: bool = True

    log_level: str = "INFO"
    port: int = 8080

    @field_validator("mbta_base_url", "ors_base_url", mode="after")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize base URLs to avoid double slashes."""
        return str(v).rstrip("/")

    def describe(self) -> dict:
        """Settings as a dict with credentials masked, for startup logs."""
        data = self.model_dump()
        data["mbta_api_key"] = mask_secret(self.mbta_api_key)
        data["ors_api_key"] = mask_secret(self.ors_api_key)
        return data


settings = Settings()


if __name__ == "__main__":
    logger.setLevel("DEBUG")
    logger.debug(f"Loaded settings: {settings.describe()}")
