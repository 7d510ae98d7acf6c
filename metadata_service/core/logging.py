"""
JSON-lines logging for the service.

Every record becomes one JSON object on stdout. Correlation fields passed via
`extra=` (job_id, program_hash, ...) are lifted to top-level keys, and the
current HTTP request id is attached automatically.

Archive contents, git URLs and metadata documents are never logged.
"""
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from metadata_service.core.request_logging import get_request_id

# Record attributes copied to the output when present
EXTRA_FIELDS = (
    "request_id",
    "job_id",
    "program_hash",
    "status",
    "reason",
    "method",
    "path",
    "status_code",
    "duration_ms",
    "client_ip",
)

QUIET_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
}


class RequestIdFilter(logging.Filter):
    """Stamp records emitted while serving a request with its id."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            request_id = get_request_id()
            if request_id:
                record.request_id = request_id
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update(
            (name, getattr(record, name))
            for name in EXTRA_FIELDS
            if getattr(record, name, None) is not None
        )
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Route all logging through a single JSON handler on stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    handler.addFilter(RequestIdFilter())

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Requests are logged by our middleware
    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)
