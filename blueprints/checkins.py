"""Emotional check-in, classroom climate and teacher perception routes."""

from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import login_required

import checkins
import outbox
from auth import STAFF_ROLES
from db_stores import EmotionalLogStoreDB, PerceptionStoreDB, StudentStoreDB
from errors import NotFoundError
from extensions import limiter
from helpers import admin_required, current_context, json_body, loads_list, paginate_args, paginated_response, roles_required

bp = Blueprint("checkins", __name__)


@bp.route("/api/checkin", methods=["POST"])
@roles_required("estudiante")
def api_checkin():
    data = json_body()
    log, events = checkins.record_emotional_log(
        current_context(),
        emotion=data.get("emotion"),
        intensity=data.get("intensity"),
        reflection=data.get("reflection"),
        type=data.get("type", "daily"),
        stress_level=data.get("stress_level"),
        anxiety_level=data.get("anxiety_level"),
    )
    outbox.process(events)
    return jsonify({"log": log}), 201


@bp.route("/api/checkin/risk-preview", methods=["POST"])
@login_required
@limiter.limit("120 per minute")
def api_risk_preview():
    return jsonify(checkins.assess_reflection(json_body().get("text")))


@bp.route("/api/checkin/history")
@roles_required("estudiante")
def api_checkin_history():
    return jsonify({"logs": checkins.student_history(current_context())})


@bp.route("/api/emotional-logs")
@roles_required(*STAFF_ROLES)
def api_emotional_logs():
    ctx = current_context()
    page, limit = paginate_args()
    student_id = request.args.get("student_id", type=int)
    logs, total = EmotionalLogStoreDB.page(ctx.institution_id, student_id=student_id, page=page, limit=limit)
    result = paginated_response(logs, total, page, limit)
    result["logs"] = result.pop("items")
    return jsonify(result)


@bp.route("/api/admin/emotional-logs/<int:log_id>", methods=["PATCH"])
@admin_required
def api_update_emotional_log(log_id):
    log, events = checkins.update_emotional_log(current_context(), log_id, json_body())
    outbox.process(events)
    return jsonify({"log": log})


@bp.route("/api/admin/emotional-logs/<int:log_id>", methods=["DELETE"])
@admin_required
def api_delete_emotional_log(log_id):
    _, events = checkins.delete_emotional_log(current_context(), log_id)
    outbox.process(events)
    return jsonify({"success": True})


@bp.route("/api/teacher/climate", methods=["POST"])
@roles_required("docente")
def api_teacher_climate():
    data = json_body()
    entry, events = checkins.record_teacher_log(
        current_context(), data.get("course_id"), data.get("energy_level"),
        data.get("tags"), data.get("notes"),
    )
    outbox.process(events)
    return jsonify({"log": entry}), 201


@bp.route("/api/teacher/perceptions", methods=["POST"])
@roles_required("docente")
def api_teacher_perception():
    data = json_body()
    perception, events = checkins.record_perception(
        current_context(), data.get("student_id"), data.get("wellbeing_score"),
        data.get("indicators"), data.get("notes"),
    )
    outbox.process(events)
    return jsonify({"perception": perception}), 201


@bp.route("/api/students/<int:student_id>/perceptions")
@roles_required(*STAFF_ROLES, "docente")
def api_student_perceptions(student_id):
    ctx = current_context()
    if StudentStoreDB.get(student_id, ctx.institution_id) is None:
        raise NotFoundError("Estudiante no encontrado.")
    rows = PerceptionStoreDB.for_student(student_id)
    for r in rows:
        r["indicators"] = loads_list(r["indicators"])
    return jsonify({"perceptions": rows})
