"""
Configures the loguru logger for the API process.
"""

import sys

from loguru import logger

from config import Settings


def setup_logging(settings: Settings) -> None:
    """Replace the default sink and optionally add a rotating file sink."""
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level)

    if settings.log_file:
        logger.add(
            settings.log_file,
            rotation="1 day",
            retention="7 days",
            level=settings.log_level,
            encoding="utf-8",
        )
