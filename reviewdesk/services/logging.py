"""
Structured logging for Review Desk.

All module loggers live under the "reviewdesk" logger, which gets one stdout
handler. JSON lines when USE_JSON_LOGS=true; otherwise a readable line with
the structured fields appended as key=value pairs.
"""
import logging
import sys
import json
from datetime import datetime, timezone
from typing import Dict, Any, Optional
import os

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
USE_JSON_LOGS = os.getenv("USE_JSON_LOGS", "false").lower() == "true"

logger = logging.getLogger("reviewdesk")


class JSONFormatter(logging.Formatter):
    """One JSON object per record, structured fields merged in."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.pathname:
            log_data["location"] = f"{record.module}:{record.funcName}:{record.lineno}"

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        log_data.update(getattr(record, "extra_fields", {}))
        return json.dumps(log_data, default=str)


class KeyValueFormatter(logging.Formatter):
    """Development format: the usual line, then ' | key=value ...' for structured fields."""

    def __init__(self):
        super().__init__("%(asctime)s - %(name)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = getattr(record, "extra_fields", None)
        if fields:
            pairs = " ".join(f"{k}={v}" for k, v in fields.items() if k != "type")
            line = f"{line} | {pairs}"
        return line


def configure_logging(level: Optional[str] = None, json_logs: Optional[bool] = None) -> logging.Logger:
    """(Re)install the reviewdesk handler. Runs once at import with the environment settings."""
    level_name = (level or LOG_LEVEL).upper()
    use_json = USE_JSON_LOGS if json_logs is None else json_logs

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if use_json else KeyValueFormatter())

    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level_name, logging.INFO))
    logger.propagate = False
    return logger


configure_logging()


def _emit(level: int, message: str, extra_fields: Dict[str, Any]) -> None:
    if not logger.isEnabledFor(level):
        return
    record = logger.makeRecord(logger.name, level, "", 0, message, (), None)
    record.extra_fields = extra_fields
    logger.handle(record)


def log_request(
    method: str,
    path: str,
    status_code: int,
    duration_ms: float,
    client_id: Optional[str] = None,
    **kwargs
):
    """Log HTTP request."""
    extra_fields = {
        "type": "http_request",
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": duration_ms,
    }
    if client_id:
        extra_fields["client_id"] = client_id
    extra_fields.update(kwargs)
    _emit(logging.INFO, f"{method} {path} {status_code} {duration_ms:.2f}ms", extra_fields)


def log_transition(
    kind: str,
    entity_id: str,
    action: str,
    from_status: str,
    to_status: str,
    actor_id: Optional[str] = None,
    **kwargs
):
    """Log a persisted status transition."""
    extra_fields = {
        "type": "status_transition",
        "kind": kind,
        "entity_id": str(entity_id),
        "action": action,
        "from_status": from_status,
        "to_status": to_status,
    }
    if actor_id:
        extra_fields["actor_id"] = str(actor_id)
    extra_fields.update(kwargs)
    _emit(logging.INFO, f"{kind} {entity_id}: {from_status} -> {to_status} ({action})", extra_fields)


def log_error(
    error_type: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    exception: Optional[Exception] = None,
    level: int = logging.ERROR,
):
    """Log error with context."""
    extra_fields = {
        "type": "error",
        "error_type": error_type,
    }
    if context:
        extra_fields.update(context)

    if exception and level >= logging.ERROR:
        logger.exception(message, extra={"extra_fields": extra_fields})
    else:
        if exception:
            extra_fields["exception"] = str(exception)
        _emit(level, message, extra_fields)
