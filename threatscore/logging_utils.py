import json
import logging
import sys
from typing import Optional

from threatscore.config import settings

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

_configured = False


class JsonFormatter(logging.Formatter):
    """One JSON object per log line"""

    def format(self, record: logging.LogRecord) -> str:
        log = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log)


def _resolve_log_level(level_name: Optional[str] = None) -> int:
    level_name = (level_name or settings.LOG_LEVEL).upper()
    return getattr(logging, level_name, logging.INFO)


def _resolve_formatter(fmt_choice: Optional[str] = None) -> logging.Formatter:
    fmt_choice = (fmt_choice or settings.LOG_FORMAT).lower()
    if fmt_choice == "json":
        return JsonFormatter(datefmt=DATE_FORMAT)
    return logging.Formatter(DEFAULT_FORMAT, DATE_FORMAT)


def configure_logging(force: bool = False) -> None:
    global _configured
    if _configured and not force:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_resolve_formatter())

    logging.basicConfig(
        level=_resolve_log_level(),
        handlers=[handler],
        force=True,
    )
    # urllib3 logs every pooled connection at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    _configured = True
