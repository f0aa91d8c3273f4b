from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path


LOGGER_NAME = "usbide"


def setup_logger(path: Path, name: str = LOGGER_NAME, max_bytes: int = 1_000_000, backups: int = 2) -> logging.Logger:
    """
    Attach a rotating file handler under the workspace (idempotent).

    USBIDE_LOG_STDOUT=1 additionally mirrors records to stderr. Records carry
    operation names, paths and exit codes only, never environment values.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    fh = RotatingFileHandler(path, encoding="utf-8", maxBytes=max_bytes, backupCount=backups)
    fh.setFormatter(fmt)
    logger.addHandler(fh)
    if os.environ.get("USBIDE_LOG_STDOUT") == "1":
        sh = logging.StreamHandler()
        sh.setFormatter(fmt)
        logger.addHandler(sh)
    return logger
