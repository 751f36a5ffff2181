"""Core routes: health checks, CSRF token, institution directory and staff availability."""

from __future__ import annotations

import logging
import time

from flask import Blueprint, jsonify, request
from flask_login import login_required
from flask_wtf.csrf import generate_csrf

import outbox
from db_stores import AvailabilityStoreDB, CourseStoreDB, StudentStoreDB, UserStoreDB
from errors import NotFoundError, ValidationError
from events import BroadcastEvent
from helpers import current_context, json_body, roles_required
from realtime import availability_channel
from auth import STAFF_ROLES

logger = logging.getLogger(__name__)

bp = Blueprint("core", __name__)

_start_time = time.time()


@bp.route("/health")
def health():
    uptime = int(time.time() - _start_time)
    return jsonify({"status": "ok", "uptime_seconds": uptime})


@bp.route("/ready")
def ready():
    try:
        from database import get_db
        db = get_db()
        db.execute("SELECT 1").fetchone()
        return jsonify({"status": "ready"}), 200
    except Exception as exc:
        logger.error("Readiness check failed: %s", exc, exc_info=True)
        return jsonify({
            "status": "not_ready",
        }), 503


@bp.route("/api/csrf-token")
def csrf_token():
    return jsonify({"csrf_token": generate_csrf()})


@bp.route("/api/courses")
@login_required
def api_courses():
    ctx = current_context()
    return jsonify({"courses": CourseStoreDB.list(ctx.institution_id)})


@bp.route("/api/students")
@roles_required(*STAFF_ROLES, "docente")
def api_students():
    ctx = current_context()
    course_id = request.args.get("course_id", type=int)
    return jsonify({"students": StudentStoreDB.list(ctx.institution_id, course_id)})


@bp.route("/api/students/<int:student_id>")
@roles_required(*STAFF_ROLES, "docente")
def api_student(student_id):
    ctx = current_context()
    student = StudentStoreDB.get(student_id, ctx.institution_id)
    if student is None:
        raise NotFoundError("Estudiante no encontrado.")
    return jsonify({"student": student})


@bp.route("/api/staff")
@login_required
def api_staff():
    ctx = current_context()
    staff = [u for u in UserStoreDB.list_staff(ctx.institution_id) if u["active"]]
    return jsonify({"staff": staff})


# ── Staff availability ───────────────────────────────────────


@bp.route("/api/availability")
@login_required
def api_availability():
    ctx = current_context()
    statuses = AvailabilityStoreDB.for_institution(ctx.institution_id)
    return jsonify({"availability": {str(uid): status for uid, status in statuses.items()}})


@bp.route("/api/availability", methods=["PUT"])
@roles_required(*STAFF_ROLES, "docente")
def api_set_availability():
    ctx = current_context()
    status = json_body().get("status")
    if status not in AvailabilityStoreDB.STATUSES:
        raise ValidationError("Estado de disponibilidad no válido.")
    AvailabilityStoreDB.set(ctx.user_id, status)
    outbox.process([BroadcastEvent(
        availability_channel(ctx.institution_id), "availability",
        {"user_id": ctx.user_id, "status": status},
    )])
    return jsonify({"user_id": ctx.user_id, "status": status})
