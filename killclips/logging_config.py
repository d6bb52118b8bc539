from __future__ import annotations

import logging

from killclips.config import LoggingSettings

DEFAULT_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(settings: LoggingSettings) -> None:
    """Configure process-wide logging once at startup."""

    level = getattr(logging, settings.level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format=DEFAULT_LOG_FORMAT,
        force=True,
    )
    # asyncio debug chatter drowns out the poll loop at DEBUG.
    logging.getLogger("asyncio").setLevel(max(level, logging.INFO))
