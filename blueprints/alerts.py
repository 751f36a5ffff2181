"""Alert listing, manual alerts and resolution.

Rule alerts arrive through the outbox. A manual alert is the staff member's
own action, so it is written directly and a failure reaches the caller.
"""

from __future__ import annotations

from dataclasses import asdict

from flask import Blueprint, jsonify, request

from auth import STAFF_ROLES
from db_stores import AlertStoreDB, StudentStoreDB
from errors import NotFoundError, ValidationError
from events import ALERT_TYPES
from helpers import current_context, json_body, paginate_args, paginated_response, roles_required

bp = Blueprint("alerts", __name__)

# Default inbox per role; roles not listed see every type.
ROLE_ALERT_TYPES = {
    "dupla": ("registros_negativos", "discrepancia_docente", "sin_registro", "mental_health_concern"),
    "convivencia": ("dec_repetido", "registros_negativos"),
}


def inbox_types(role: str, requested: str = "", scope: str = "") -> tuple[str, ...]:
    """Types an alert listing is limited to; empty means no type filter."""
    if requested:
        return (requested,)
    if scope == "all":
        return ()
    return ROLE_ALERT_TYPES.get(role, ())


@bp.route("/api/alerts")
@roles_required(*STAFF_ROLES)
def api_alerts():
    ctx = current_context()
    page, limit = paginate_args()
    resolved = request.args.get("resolved")
    alerts, total = AlertStoreDB.list(
        ctx.institution_id,
        resolved=None if resolved is None else resolved in ("1", "true"),
        student_id=request.args.get("student_id", type=int),
        alert_types=inbox_types(ctx.role, request.args.get("type", ""), request.args.get("scope", "")),
        page=page, limit=limit,
    )
    result = paginated_response([asdict(a) for a in alerts], total, page, limit)
    result["alerts"] = result.pop("items")
    return jsonify(result)


@bp.route("/api/alerts", methods=["POST"])
@roles_required(*STAFF_ROLES)
def api_create_alert():
    ctx = current_context()
    data = json_body()
    alert_type = data.get("type")
    if alert_type not in ALERT_TYPES:
        raise ValidationError("Tipo de alerta no válido.")
    try:
        student_id = int(data.get("student_id"))
    except (TypeError, ValueError):
        raise ValidationError("Estudiante no válido.")
    if StudentStoreDB.get(student_id, ctx.institution_id) is None:
        raise NotFoundError("Estudiante no encontrado.")
    description = (data.get("description") or "").strip()
    alert_id = AlertStoreDB.create(
        ctx.institution_id, student_id, alert_type, description, triggered_by=str(ctx.user_id),
    )
    return jsonify({"alert": asdict(AlertStoreDB.get(alert_id, ctx.institution_id))}), 201


@bp.route("/api/alerts/<int:alert_id>")
@roles_required(*STAFF_ROLES)
def api_alert(alert_id):
    ctx = current_context()
    alert = AlertStoreDB.get(alert_id, ctx.institution_id)
    if alert is None:
        raise NotFoundError("Alerta no encontrada.")
    return jsonify({"alert": asdict(alert)})


@bp.route("/api/alerts/<int:alert_id>/resolve", methods=["POST"])
@roles_required(*STAFF_ROLES)
def api_resolve_alert(alert_id):
    alert = AlertStoreDB.resolve(alert_id, current_context())
    return jsonify({"alert": asdict(alert)})
