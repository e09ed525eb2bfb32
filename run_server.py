import os

import uvicorn

from aerosync.config import settings
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="server")


def warn_on_demo_token() -> None:
    """
    Log a clear message when AQICN runs with the shared demo token.
    Set AEROSYNC_AQICN_API_TOKEN to a real token to enable weekly reports.
    """
    if settings.data_source == "aqicn" and settings.aqicn_api_token == "demo":
        logger.warning("AQICN demo token in use; weekly reports will fail until AEROSYNC_AQICN_API_TOKEN is set.")


if __name__ == "__main__":
    warn_on_demo_token()

    uvicorn.run(
        "aerosync.main:create_default_app",
        factory=True,
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=False,
    )
