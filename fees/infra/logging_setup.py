from __future__ import annotations

import logging
import os

LOG_LEVEL = os.getenv("FEES_LOG_LEVEL", "INFO").strip().upper()
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str | None = None) -> None:
    resolved = (level or LOG_LEVEL).upper()
    logging.basicConfig(level=getattr(logging, resolved, logging.INFO), format=LOG_FORMAT)
