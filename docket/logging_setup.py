from __future__ import annotations

import logging
import sys
from pathlib import Path

from docket.models import LoggingConfig

LOG_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class _ConsoleNoiseFilter(logging.Filter):
    """Keep docket and server logs; third-party libraries only reach the console at ERROR."""

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name
        if name == "docket" or name.startswith("docket."):
            return True
        if name.startswith("uvicorn"):
            return record.levelno >= logging.INFO
        return record.levelno >= logging.ERROR


def setup_logging(config: LoggingConfig | None = None) -> None:
    config = config or LoggingConfig()
    level = logging.getLevelName(config.level)
    if not isinstance(level, int):
        level = logging.INFO

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(formatter)
    console.addFilter(_ConsoleNoiseFilter())
    root.addHandler(console)

    if config.log_dir:
        log_dir = Path(config.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(str(log_dir / "docket.log"), encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    logging.captureWarnings(True)
