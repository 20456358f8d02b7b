from __future__ import annotations

import logging
import sys
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger


SECURITY_LOGGER = "security"
_QUIET_LOGGERS = ("uvicorn.access", "botocore", "boto3", "urllib3", "PIL", "sqlalchemy.engine", "multipart")


class JsonFormatter(jsonlogger.JsonFormatter):
    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:  # type: ignore[override]
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("level"):
            log_record["level"] = record.levelname
        if not log_record.get("logger"):
            log_record["logger"] = record.name
        if record.exc_info and not log_record.get("exc_info"):
            log_record["exc_info"] = self.formatException(record.exc_info)


def setup_json_logging(level: str = "INFO", service: Optional[str] = None) -> None:
    """Send every log record to stdout as one JSON object per line.

    ``service`` is stamped on each record so logs from several deployments can
    share a sink. Security events are never filtered below WARNING, whatever
    the root level.
    """
    root = logging.getLogger()
    root.setLevel(level)
    # uvicorn installs its own handlers before the app factory runs
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(level)s %(name)s %(message)s",
            static_fields={"service": service} if service else {},
        )
    )
    root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger(SECURITY_LOGGER).setLevel(logging.WARNING)


def security_event(event: str, **fields: Any) -> None:
    """Emit an abuse-monitoring event on the dedicated security logger."""
    logging.getLogger(SECURITY_LOGGER).warning(event, extra={"security_event": event, **fields})
