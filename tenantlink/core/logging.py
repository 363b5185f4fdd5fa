from __future__ import annotations

import logging

from tenantlink.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Configure root logging once for API and worker processes.
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    root.setLevel(level)
    # httpx logs full request URLs at INFO; keep them out of default output.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
