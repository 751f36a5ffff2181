"""Staff dashboards; every request re-aggregates from the database."""

from __future__ import annotations

from flask import Blueprint, jsonify, request

import analytics
from auth import STAFF_ROLES
from helpers import current_context, roles_required

bp = Blueprint("statistics", __name__)

ALLOWED_DAYS = (7, 30, 90, 365)


def _days(default: int = 30) -> int:
    days = request.args.get("days", default, type=int)
    return days if days in ALLOWED_DAYS else default


@bp.route("/api/statistics/dashboard")
@roles_required(*STAFF_ROLES)
def api_dashboard():
    return jsonify(analytics.dashboard_data(current_context().institution_id, _days()))


@bp.route("/api/statistics/climate")
@roles_required(*STAFF_ROLES, "docente")
def api_climate():
    return jsonify({"courses": analytics.course_climate(current_context().institution_id)})


@bp.route("/api/statistics/negative-trend")
@roles_required(*STAFF_ROLES)
def api_negative_trend():
    return jsonify({"months": analytics.monthly_negative_percentage(current_context().institution_id)})


@bp.route("/api/statistics/heatmap")
@roles_required(*STAFF_ROLES)
def api_heatmap():
    return jsonify({"courses": analytics.climate_heatmap(current_context().institution_id)})


@bp.route("/api/statistics/incidents")
@roles_required(*STAFF_ROLES)
def api_incident_stats():
    return jsonify(analytics.incident_stats(current_context().institution_id, _days()))


@bp.route("/api/statistics/director")
@roles_required("admin", "director")
def api_director():
    return jsonify(analytics.director_summary(current_context().institution_id))
