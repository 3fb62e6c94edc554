from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: Optional[str] = None, log_file: Optional[Path] = None) -> None:
    """
    Console logging for the API and workers, plus an optional log file.
    Level and file default to LOG_LEVEL and LOG_FILE from the environment.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    log_path = log_file or (Path(os.environ["LOG_FILE"]) if os.getenv("LOG_FILE") else None)
    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
    )
