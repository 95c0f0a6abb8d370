from __future__ import annotations

import logging
import sys

import uvicorn
from dotenv import load_dotenv

from common.config import ConfigurationError, load_settings
from common.log import configure_logging

from .app import create_app


logger = logging.getLogger(__name__)


def main() -> int:
    """Console entry: load .env, validate configuration, serve with uvicorn."""
    load_dotenv()
    try:
        settings = load_settings()
    except ConfigurationError as e:
        configure_logging()
        logger.error("Refusing to start: %s", e)
        return 2
    configure_logging(settings.log_level)

    try:
        app = create_app(settings)
    except ConfigurationError as e:
        logger.error("Refusing to start: %s", e)
        return 2

    # A ConfigurationError raised during lifespan startup aborts uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port, log_level=settings.log_level.lower())
    return 0


if __name__ == "__main__":
    sys.exit(main())
