"""In-app notification routes."""

from __future__ import annotations

from dataclasses import asdict

from flask import Blueprint, jsonify
from flask_login import login_required

from db_stores import NotificationStoreDB
from errors import ValidationError
from helpers import current_context, json_body

bp = Blueprint("notifications", __name__)


@bp.route("/api/notifications")
@login_required
def api_notifications():
    """Return the 30 most recent notifications and the unread count."""
    store = NotificationStoreDB(current_context().user_id)
    return jsonify({
        "notifications": [asdict(n) for n in store.recent(30)],
        "unread_count": store.unread_count(),
    })


@bp.route("/api/notifications/read", methods=["POST"])
@login_required
def api_notifications_read():
    data = json_body()
    store = NotificationStoreDB(current_context().user_id)
    ids = data.get("ids")
    if ids == "all" or data.get("all"):
        updated = store.mark_all_read()
    elif isinstance(ids, list):
        try:
            updated = store.mark_read([int(i) for i in ids])
        except (TypeError, ValueError):
            raise ValidationError("Identificadores no válidos.")
    else:
        raise ValidationError("Indica las notificaciones a marcar como leídas.")
    return jsonify({"success": True, "updated": updated, "unread_count": store.unread_count()})
