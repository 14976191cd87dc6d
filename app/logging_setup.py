"""Root logger configuration for the API and worker processes."""

import logging

from config import settings

_FORMAT = "%(asctime)s %(levelname)-7s %(name)s %(message)s"


def setup_logging(level: str | None = None) -> None:
    """Configure the root logger once; repeated calls are no-ops."""
    root = logging.getLogger()
    if getattr(root, "_nudge_configured", False):
        return
    root.setLevel((level or settings.LOG_LEVEL).upper())
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_FORMAT))
    root.addHandler(handler)
    root._nudge_configured = True

    # Silence noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
