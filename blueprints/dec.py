"""Incident reports (DEC) and case derivation routes."""

from __future__ import annotations

from flask import Blueprint, jsonify, request

import incidents
import outbox
from auth import STAFF_ROLES
from db_stores import DerivationStoreDB, IncidentStoreDB, StudentStoreDB
from errors import NotFoundError
from helpers import admin_required, current_context, json_body, paginate_args, paginated_response, roles_required

bp = Blueprint("dec", __name__)

REPORTER_ROLES = (*STAFF_ROLES, "docente")


@bp.route("/api/dec", methods=["POST"])
@roles_required(*REPORTER_ROLES)
def api_create_incident():
    incident, events = incidents.create_incident(current_context(), json_body())
    outbox.process(events)
    return jsonify({"incident": incident}), 201


@bp.route("/api/dec")
@roles_required(*STAFF_ROLES)
def api_incidents():
    ctx = current_context()
    page, limit = paginate_args()
    resolved = request.args.get("resolved")
    items, total = IncidentStoreDB.list(
        ctx.institution_id,
        student_id=request.args.get("student_id", type=int),
        resolved=None if resolved is None else resolved in ("1", "true"),
        page=page, limit=limit,
    )
    result = paginated_response(items, total, page, limit)
    result["incidents"] = result.pop("items")
    return jsonify(result)


@bp.route("/api/dec/<int:incident_id>")
@roles_required(*REPORTER_ROLES)
def api_incident(incident_id):
    return jsonify({"incident": incidents.get_incident(current_context(), incident_id)})


@bp.route("/api/dec/<int:incident_id>", methods=["PATCH"])
@admin_required
def api_update_incident(incident_id):
    incident, events = incidents.update_incident(current_context(), incident_id, json_body())
    outbox.process(events)
    return jsonify({"incident": incident})


@bp.route("/api/dec/<int:incident_id>", methods=["DELETE"])
@admin_required
def api_delete_incident(incident_id):
    _, events = incidents.delete_incident(current_context(), incident_id)
    outbox.process(events)
    return jsonify({"success": True})


@bp.route("/api/dec/<int:incident_id>/resolve", methods=["POST"])
@roles_required(*STAFF_ROLES)
def api_resolve_incident(incident_id):
    incident, events = incidents.resolve_incident(current_context(), incident_id, json_body().get("notes"))
    outbox.process(events)
    return jsonify({"incident": incident})


@bp.route("/api/dec/<int:incident_id>/seen", methods=["POST"])
@roles_required(*REPORTER_ROLES)
def api_incident_seen(incident_id):
    return jsonify({"seen": incidents.mark_seen(current_context(), incident_id)})


@bp.route("/api/derivations", methods=["POST"])
@roles_required(*REPORTER_ROLES)
def api_derive_case():
    data = json_body()
    derivation, events = incidents.derive_case(
        current_context(), data.get("student_id"), data.get("to_role"), data.get("reason"),
    )
    outbox.process(events)
    return jsonify({"derivation": derivation}), 201


@bp.route("/api/students/<int:student_id>/derivations")
@roles_required(*STAFF_ROLES)
def api_student_derivations(student_id):
    ctx = current_context()
    if StudentStoreDB.get(student_id, ctx.institution_id) is None:
        raise NotFoundError("Estudiante no encontrado.")
    return jsonify({"derivations": DerivationStoreDB.for_student(student_id, ctx.institution_id)})
