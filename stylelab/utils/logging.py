"""
Structured JSON logging with correlation IDs and round context.

Each record becomes one JSON line. Besides timestamp, level, module and message
it carries:
- correlation_id: per HTTP request (middleware) or per round advance (scheduler)
- optimization ids bound for the current task with bind_log_context(), so every
  line written while a round advances names its process and round
- ids passed explicitly through `extra=`, which win over bound ones
"""
import json
import logging
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
log_context_ctx: ContextVar[Optional[dict]] = ContextVar("log_context", default=None)

EXTRA_FIELDS = ("process_id", "round_id", "segment_id", "style_key", "provider", "error_code")

NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx", "anthropic", "openai")


def get_correlation_id() -> Optional[str]:
    return correlation_id_ctx.get()


def set_correlation_id(cid: str) -> None:
    correlation_id_ctx.set(cid)


def generate_correlation_id() -> str:
    return uuid.uuid4().hex


def bind_log_context(**fields) -> None:
    """Attach ids to every record logged from the current task. None values unbind."""
    context = dict(log_context_ctx.get() or {})
    for key, value in fields.items():
        if key not in EXTRA_FIELDS:
            raise ValueError(f"Unknown log context field: {key}")
        if value is None:
            context.pop(key, None)
        else:
            context[key] = str(value)
    log_context_ctx.set(context)


def clear_log_context() -> None:
    log_context_ctx.set(None)


class StructuredJsonFormatter(logging.Formatter):
    """{"timestamp", "level", "correlation_id", "module", "message", ...ids, "exception"?}"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "correlation_id": get_correlation_id(),
            "module": record.name,
            "message": record.getMessage(),
        }
        entry.update(log_context_ctx.get() or {})

        for key in EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def configure_structured_logging(log_level: str = "INFO") -> None:
    """Route all logging through a single JSON stream handler. Call once at startup."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredJsonFormatter())
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
