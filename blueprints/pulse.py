"""Modo Pulso routes: weekly session activation and entries."""

from __future__ import annotations

from flask import Blueprint, jsonify
from flask_login import login_required

import outbox
import pulse
from auth import STAFF_ROLES
from db_stores import PulseStoreDB
from helpers import current_context, json_body, roles_required

bp = Blueprint("pulse", __name__)


@bp.route("/api/pulse/activate", methods=["POST"])
@roles_required(*pulse.ACTIVATOR_ROLES)
def api_activate():
    session, events = pulse.activate(current_context())
    outbox.process(events)
    return jsonify({"session": session}), 201


@bp.route("/api/pulse/<int:session_id>/deactivate", methods=["POST"])
@roles_required(*pulse.ACTIVATOR_ROLES)
def api_deactivate(session_id):
    session, events = pulse.deactivate(current_context(), session_id)
    outbox.process(events)
    return jsonify({"session": session})


@bp.route("/api/pulse/active")
@login_required
def api_active():
    return jsonify({"session": pulse.active_session(current_context())})


@bp.route("/api/pulse/sessions")
@roles_required(*STAFF_ROLES)
def api_sessions():
    return jsonify({"sessions": PulseStoreDB.list(current_context().institution_id)})


@bp.route("/api/pulse/student", methods=["POST"])
@roles_required("estudiante")
def api_student_entry():
    data = json_body()
    entry, events = pulse.submit_student_entry(
        current_context(), data.get("energy_level"), data.get("class_perception"),
    )
    outbox.process(events)
    return jsonify({"entry": entry}), 201


@bp.route("/api/pulse/teacher", methods=["POST"])
@roles_required("docente")
def api_teacher_entry():
    data = json_body()
    entry, events = pulse.submit_teacher_entry(
        current_context(), data.get("course_id"), data.get("energy_level"),
        data.get("tags"), data.get("notes"),
    )
    outbox.process(events)
    return jsonify({"entry": entry}), 201


@bp.route("/api/pulse/<int:session_id>/summary")
@roles_required(*STAFF_ROLES)
def api_summary(session_id):
    return jsonify(pulse.session_summary(current_context(), session_id))
