"""Entry point: ``python -m codesync``."""

import logging

import uvicorn

from codesync.app import create_app
from codesync.config import Settings


def main() -> None:
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    logging.getLogger(__name__).info(
        "Starting CodeSync on %s:%d (allowed origins: %s)",
        settings.host,
        settings.port,
        ", ".join(settings.allowed_origins),
    )
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
