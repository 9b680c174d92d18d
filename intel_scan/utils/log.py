from __future__ import annotations

import logging
import os
import sys


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Install one stderr handler on the root logger. Entry points only."""
    lvl = str(level or os.environ.get("SCAN_LOG_LEVEL", "INFO")).strip().upper() or "INFO"
    root = logging.getLogger()
    root.setLevel(getattr(logging, lvl, logging.INFO))
    for h in list(root.handlers):
        root.removeHandler(h)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
