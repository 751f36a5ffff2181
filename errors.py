"""
Domain exceptions and their JSON rendering.

Services raise these; blueprints never build error responses by hand for
them. Messages are user-facing (Spanish) and are returned verbatim.
"""

from __future__ import annotations

import logging

from flask import Flask, jsonify

logger = logging.getLogger(__name__)

GENERIC_ERROR = "Error interno del servidor."


class DomainError(Exception):
    status_code = 400
    default_message = "Solicitud inválida."

    def __init__(self, message: str | None = None, **payload):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.payload = payload

    def to_dict(self) -> dict:
        return {"error": self.message, **self.payload}


class ValidationError(DomainError):
    status_code = 400


class NotAuthenticatedError(DomainError):
    status_code = 401
    default_message = "No autorizado"


class NotAuthorizedError(DomainError):
    """Authorization failure. The message never says which check failed."""

    status_code = 403
    default_message = "Acceso denegado"


class NotFoundError(DomainError):
    status_code = 404
    default_message = "No encontrado."


class AlreadyExistsError(DomainError):
    status_code = 409
    default_message = "El registro ya existe."


class ThreadClosedError(DomainError):
    status_code = 409
    default_message = "Esta conversación está cerrada."


class InvalidTransitionError(DomainError):
    status_code = 409
    default_message = "Cambio de estado no permitido."


class RiskBlockedError(DomainError):
    """Submission blocked because the reflection matched a critical keyword."""

    status_code = 422
    default_message = "Por favor, contacta con emergencias."


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(DomainError)
    def _domain_error(exc: DomainError):
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(404)
    def _not_found(exc):
        return jsonify({"error": NotFoundError.default_message}), 404

    @app.errorhandler(405)
    def _method_not_allowed(exc):
        return jsonify({"error": "Método no permitido."}), 405

    @app.errorhandler(429)
    def _rate_limited(exc):
        return jsonify({"error": "Demasiadas solicitudes. Intenta más tarde."}), 429

    @app.errorhandler(Exception)
    def _unhandled(exc: Exception):
        from werkzeug.exceptions import HTTPException
        if isinstance(exc, HTTPException):
            return jsonify({"error": exc.description}), exc.code
        logger.exception("Unhandled error: %s", exc)
        return jsonify({"error": GENERIC_ERROR}), 500
