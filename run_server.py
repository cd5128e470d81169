import uvicorn

from ttimes.config import settings
from utils.logging_utils import get_tagged_logger, setup_logging

logger = get_tagged_logger(__name__, tag="server")


def main() -> None:
    """Configure logging and serve the API with uvicorn."""
    setup_logging(level=settings.log_level, job_name="ttimes")
    logger.info("Starting ttimes", extra={"settings": settings.describe()})

    uvicorn.run(
        "ttimes.main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=False,
        log_config=None,
    )


if __name__ == "__main__":
    main()
