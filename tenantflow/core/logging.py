from __future__ import annotations

import logging

from tenantflow.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Configure the root logger once; repeated app factories must not stack handlers.
    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    root.setLevel(level)
    # SQL echo belongs to DEBUG sessions only.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
