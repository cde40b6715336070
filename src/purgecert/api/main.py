"""purgecert API entry point.

`app` is what uvicorn references (purgecert.api.main:app); run() backs the
purgecert-api console script.
"""

import logging

from purgecert.api import create_app

logger = logging.getLogger(__name__)

app = create_app()


def run() -> None:
    """Run the API server using uvicorn."""
    import uvicorn

    from purgecert.core.settings import get_settings

    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting purgecert API on %s:%d", settings.api_host, settings.api_port)

    uvicorn.run(
        "purgecert.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


if __name__ == "__main__":
    run()
