"""
Structured logging configuration.

- JSON format for production (machine-parseable), text for development
- Every record emitted inside a request carries request_id, user_id and
  institution_id, so module loggers need not pass them explicitly
- One access line per request
"""

from __future__ import annotations

import json
import logging
import time
import uuid

from flask import Flask, g, has_request_context, request

CONTEXT_FIELDS = ("request_id", "user_id", "institution_id")


class RequestContextFilter(logging.Filter):
    """Copy the acting user and request id onto records logged during a request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context():
            if not hasattr(record, "request_id"):
                record.request_id = g.get("request_id", "-")
            if not hasattr(record, "user_id") or not hasattr(record, "institution_id"):
                user_id, institution_id = _acting_user()
                if not hasattr(record, "user_id"):
                    record.user_id = user_id
                if not hasattr(record, "institution_id"):
                    record.institution_id = institution_id
        return True


def _acting_user() -> tuple:
    from flask_login import current_user
    try:
        if current_user and current_user.is_authenticated:
            return current_user.id, current_user.institution_id
    except RuntimeError:
        # Outside login manager setup (e.g. during app factory logging)
        pass
    return "-", "-"


class JSONFormatter(logging.Formatter):
    """Emit log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value not in (None, "-"):
                entry[key] = value
        if record.exc_info and record.exc_info[0]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, ensure_ascii=False)


class TextFormatter(logging.Formatter):
    def __init__(self):
        super().__init__("%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        request_id = getattr(record, "request_id", None)
        if request_id and request_id != "-":
            line += f" [req={request_id} user={getattr(record, 'user_id', '-')}]"
        return line


def init_logging(app: Flask) -> None:
    """Configure the root logger from LOG_FORMAT / LOG_LEVEL and hook request timing."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, app.config.get("LOG_LEVEL", "INFO").upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler()
    handler.addFilter(RequestContextFilter())
    handler.setFormatter(JSONFormatter() if app.config.get("LOG_FORMAT") == "json" else TextFormatter())
    root.addHandler(handler)

    for noisy in ("werkzeug", "apscheduler", "rq.worker"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    access = logging.getLogger("bienestar.access")

    @app.before_request
    def _start_request():
        g.request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex[:12]
        g.request_start = time.monotonic()

    @app.after_request
    def _log_request(response):
        duration_ms = (time.monotonic() - g.get("request_start", time.monotonic())) * 1000
        access.info("%s %s %s %.0fms", request.method, request.path, response.status_code, duration_ms)
        response.headers["X-Request-Id"] = g.get("request_id", "")
        return response
