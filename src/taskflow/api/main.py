"""TaskFlow API service entry point.

This module provides a run() function for direct execution and a
factory target for ASGI servers:

    uvicorn --factory taskflow.api.main:create_app
"""

import logging

from taskflow.api import create_app
from taskflow.core.settings import get_settings

logger = logging.getLogger(__name__)


def run() -> None:
    """Run the API server using uvicorn.

    Called by the taskflow-api console script.
    """
    import uvicorn

    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting TaskFlow API on %s:%d", settings.api_host, settings.api_port)

    uvicorn.run(
        "taskflow.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


__all__ = ["create_app", "run"]


if __name__ == "__main__":
    run()
