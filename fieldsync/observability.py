from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


# Per-tick and per-request chatter from these libraries drowns out sync logs at INFO.
_NOISY_LOGGERS = ("apscheduler", "urllib3")


@dataclass(frozen=True)
class JsonLogConfig:
    service_name: str = "fieldsync"
    environment: str | None = None


def _record_fields(record: logging.LogRecord) -> dict[str, Any] | None:
    fields = getattr(record, "fields", None)
    return fields if isinstance(fields, dict) and fields else None


class JsonFormatter(logging.Formatter):
    """Structured log lines for log shippers.

    Context passed as `extra={"fields": {...}}` lands under `fields`.
    """

    def __init__(self, config: JsonLogConfig) -> None:
        super().__init__()
        self.config = config

    def format(self, record: logging.LogRecord) -> str:
        doc: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "severity": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.config.service_name,
            "thread": record.threadName,
        }
        if self.config.environment:
            doc["env"] = self.config.environment

        fields = _record_fields(record)
        if fields is not None:
            doc["fields"] = fields
        if record.exc_info:
            doc["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(doc, separators=(",", ":"), ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines; structured fields are appended as key=value."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = _record_fields(record)
        if fields is None:
            return line
        # Tracebacks stay on their own lines after the fields.
        head, sep, tail = line.partition("\n")
        rendered = " ".join(f"{k}={v}" for k, v in fields.items())
        return f"{head} [{rendered}]{sep}{tail}"


def configure_logging(*, level: int | str, log_format: str, environment: str | None = None) -> None:
    """Install a single stream handler on the root logger.

    Safe to call more than once; earlier handlers are replaced.
    """

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    handler = logging.StreamHandler()
    if log_format.strip().lower() == "json":
        handler.setFormatter(JsonFormatter(JsonLogConfig(environment=environment)))
    else:
        handler.setFormatter(TextFormatter())
    root.addHandler(handler)

    if root.getEffectiveLevel() > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
