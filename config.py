"""
config.py
Environment-driven settings and logging setup.
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

DB_FILE = Path(os.getenv("GYM_DB_FILE", str(Path(__file__).with_name("gym.db"))))

LOG_LEVEL = os.getenv("GYM_LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("GYM_LOG_FILE")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Identification poller timing
POLL_INTERVAL = float(os.getenv("GYM_POLL_INTERVAL", "1.0"))
POLL_LOOKBACK = float(os.getenv("GYM_POLL_LOOKBACK", "5"))
HISTORY_LIMIT = int(os.getenv("GYM_HISTORY_LIMIT", "20"))

DUE_SOON_DAYS = int(os.getenv("GYM_DUE_SOON_DAYS", "7"))
DEVICE_TIMEOUT = float(os.getenv("GYM_DEVICE_TIMEOUT", "10"))


def configure_logging(level: str | None = None) -> None:
    """
    Install console (and optional rotating file) handlers on the root logger.
    Safe to call on every Streamlit rerun.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or LOG_LEVEL), logging.INFO))

    if getattr(root, "_gym_configured", False):
        return

    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(console)

    if LOG_FILE:
        file_handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    root._gym_configured = True
