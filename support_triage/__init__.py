import json
import logging
import sys
from typing import Any, Dict


class JsonFormatter(logging.Formatter):
    """JSON-per-line log formatter; merges ``extra_data`` into the record."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, Any] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        extra_data = getattr(record, "extra_data", None)
        if isinstance(extra_data, dict):
            log_obj.update(extra_data)
        if record.exc_info:
            log_obj["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_obj, ensure_ascii=False, default=str)


def _configure_logging() -> None:
    root = logging.getLogger()
    if root.handlers:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
    root.setLevel(logging.INFO)


_configure_logging()
