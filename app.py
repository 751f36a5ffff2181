"""
Bienestar Escolar — Flask Web Application

JSON service for school well-being: emotional check-ins, alerts, incident
reports (DEC), confidential mailbox, direct chat with realtime unread
counters, Modo Pulso and staff dashboards.
"""

from __future__ import annotations

import hashlib
import os
from typing import Any

from flask import Flask, Response, request as flask_request

import database
from auth import auth_bp, login_manager
from blueprints import register_blueprints
from errors import register_error_handlers
from extensions import csrf, limiter


def create_app(test_config: dict[str, Any] | None = None) -> Flask:
    app = Flask(__name__)

    # Load config
    if test_config is not None:
        from config import TestingConfig
        app.config.from_object(TestingConfig)
        app.config.update(test_config)
    else:
        from config import config_by_name
        env = os.environ.get("FLASK_ENV", "development")
        cfg = config_by_name.get(env, config_by_name["development"])
        app.config.from_object(cfg)
        if hasattr(cfg, "validate"):
            cfg.validate()

    app.secret_key = app.config["SECRET_KEY"]

    # Structured logging
    from logging_config import init_logging
    init_logging(app)

    # CSRF protection (WTF_CSRF_ENABLED is False under TestingConfig)
    csrf.init_app(app)

    # Rate limiter (RATELIMIT_ENABLED is False under TestingConfig)
    limiter.init_app(app)

    register_error_handlers(app)

    # Per-request sqlite connection closed on teardown
    database.init_app(app)

    # Session login (JSON 401 for anonymous API calls)
    app.register_blueprint(auth_bp)
    login_manager.init_app(app)

    # Feature blueprints
    register_blueprints(app)

    # Realtime broker (Redis pub/sub or in-memory), background tasks, risk detector
    from realtime import init_realtime
    init_realtime(app)

    from tasks import init_tasks
    init_tasks(app)

    from risk_detector import init_detector
    init_detector(app)

    _register_response_hooks(app)

    # Outbox retry job
    if not app.config.get("TESTING"):
        from scheduler import init_scheduler
        init_scheduler(app)

    return app


ETAG_MAX_BYTES = 1_048_576


def _register_response_hooks(app: Flask) -> None:
    """Security headers on every response; ETag/304 on cacheable JSON reads."""

    @app.after_request
    def set_security_headers(response: Response) -> Response:
        headers = response.headers
        headers["X-Content-Type-Options"] = "nosniff"
        headers["X-Frame-Options"] = "DENY"
        headers["Referrer-Policy"] = "no-referrer"
        headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        if flask_request.path.startswith("/api/"):
            headers.setdefault("Cache-Control", "private, no-cache")
        if not app.debug:
            headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    @app.after_request
    def set_etag(response: Response) -> Response:
        if flask_request.method != "GET" or response.status_code != 200 or response.is_streamed:
            return response
        if response.mimetype != "application/json":
            return response
        if not response.content_length or response.content_length >= ETAG_MAX_BYTES:
            return response
        etag = hashlib.md5(response.get_data()).hexdigest()
        response.set_etag(etag)
        if etag in flask_request.if_none_match:
            response.status_code = 304
            response.set_data(b"")
        return response


if __name__ == "__main__":
    create_app().run(debug=True, port=int(os.environ.get("PORT", 5000)))
