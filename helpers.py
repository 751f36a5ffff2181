"""
Shared helpers used across blueprints.

Request context, role guards and the JSON pagination envelope.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import jsonify, request
from flask_login import current_user

from auth import RequestContext, STAFF_ROLES, login_manager


def current_context() -> RequestContext:
    """Build the explicit RequestContext for the logged-in user."""
    return RequestContext.for_user(current_user)


def roles_required(*roles: str) -> Callable:
    """Decorator that requires an authenticated user holding one of ``roles``.

    Unauthenticated callers get 401; any other role gets a generic 403.
    """
    allowed = frozenset(roles)

    def decorator(f: Callable) -> Callable:
        @wraps(f)
        def decorated(*args: Any, **kwargs: Any) -> Any:
            if not current_user.is_authenticated:
                return login_manager.unauthorized()
            if current_user.role not in allowed:
                return jsonify({"error": "Acceso denegado"}), 403
            return f(*args, **kwargs)
        return decorated
    return decorator


def staff_required(f: Callable) -> Callable:
    return roles_required(*STAFF_ROLES)(f)


def admin_required(f: Callable) -> Callable:
    return roles_required("admin")(f)


def json_body() -> dict:
    """Request JSON as a dict; malformed or missing bodies become {}."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def loads_list(raw: str | None) -> list:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return value if isinstance(value, list) else []


def paginate_args(default_limit: int = 20, max_limit: int = 100) -> tuple[int, int]:
    """Extract page/limit from request.args. Returns (page, limit)."""
    try:
        page = max(1, int(request.args.get("page", 1)))
    except (ValueError, TypeError):
        page = 1
    try:
        limit = min(max_limit, max(1, int(request.args.get("limit", default_limit))))
    except (ValueError, TypeError):
        limit = default_limit
    return page, limit


def paginated_response(items: list, total: int, page: int, limit: int) -> dict:
    """Standard pagination envelope."""
    return {
        "items": items,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": max(1, (total + limit - 1) // limit),
        },
    }
