from __future__ import annotations

import logging

from tenantcore.core.config import get_settings


def configure_logging(level: str | None = None) -> None:
    # Scripts call this once; library modules only ever create named loggers.
    resolved = (level or get_settings().log_level).upper()
    logging.basicConfig(
        level=resolved,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
