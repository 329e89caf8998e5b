"""JSON logging for the CRM automation service.

Records carry a ``context`` dict. Identifiers that operators search by
(lead, conversation, rule, dedupe key) are lifted to top-level fields so a
single lead's history can be filtered without parsing nested JSON.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

CORRELATION_KEYS = ("lead_id", "conversation_id", "rule_id", "dedupe_key")

QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if isinstance(context, dict) and context:
            for key in CORRELATION_KEYS:
                if context.get(key) is not None:
                    log_data[key] = context[key]
            rest = {k: v for k, v in context.items() if k not in CORRELATION_KEYS}
            if rest:
                log_data["context"] = rest

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Route every logger to stdout as JSON. Replaces handlers installed earlier (uvicorn, tests)."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"crm.{name}")


class LoggerAdapter(logging.LoggerAdapter):
    """Binds rule-run identifiers once; per-call ``context=`` adds to them."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = kwargs.pop("context", None)
        if context or self.extra:
            kwargs["extra"] = {"context": {**self.extra, **(context or {})}}
        return msg, kwargs
