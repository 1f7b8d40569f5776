"""Logging configuration for the call queue, with Better Stack shipping."""
import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

from logtail import LogtailHandler

from callqueue import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _betterstack_handler(formatter: logging.Formatter) -> Optional[logging.Handler]:
    """Build the Better Stack handler, or None when no source token is set."""
    if not settings.BETTERSTACK_SOURCE_TOKEN:
        return None

    handler_kwargs = {"source_token": settings.BETTERSTACK_SOURCE_TOKEN}
    if settings.BETTERSTACK_INGEST_HOST:
        handler_kwargs["host"] = settings.BETTERSTACK_INGEST_HOST
    handler = LogtailHandler(**handler_kwargs)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(formatter)
    return handler


def setup_logging(level: Optional[str] = None):
    level_value = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level_value)
    root_logger.handlers = []

    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level_value)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Call history is kept on disk, rotated at 10 MB
    file_handler = RotatingFileHandler(
        settings.LOGS_DIR / "callqueue.log", maxBytes=10 * 1024 * 1024, backupCount=5
    )
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    try:
        betterstack_handler = _betterstack_handler(formatter)
        if betterstack_handler:
            root_logger.addHandler(betterstack_handler)
            host_info = settings.BETTERSTACK_INGEST_HOST or "default (in.logs.betterstack.com)"
            root_logger.info(f"BetterStack logging enabled (host: {host_info})")
    except Exception as e:
        root_logger.warning(f"Failed to initialize BetterStack logging: {e}")

    # requests/urllib3 are chatty at DEBUG during dispatch and PBX polling
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    return logging.getLogger("callqueue")


logger = setup_logging()
