"""PAEC (individual support plan) routes. All mutations are audited."""

from __future__ import annotations

from datetime import date, timedelta

from flask import Blueprint, jsonify, request

import outbox
from analytics import PAEC_REVIEW_HORIZON_DAYS
from auth import STAFF_ROLES
from db_stores import PaecStoreDB, StudentStoreDB
from errors import NotFoundError, ValidationError
from events import AuditEvent
from helpers import current_context, json_body, roles_required

bp = Blueprint("paec", __name__)


def _paec_or_404(ctx, paec_id: int) -> dict:
    plan = PaecStoreDB.get(paec_id, ctx.institution_id)
    if plan is None:
        raise NotFoundError("PAEC no encontrado.")
    return plan


def _review_date(raw) -> str | None:
    if raw in (None, ""):
        return None
    try:
        return date.fromisoformat(str(raw)[:10]).isoformat()
    except ValueError:
        raise ValidationError("Fecha de revisión no válida.")


@bp.route("/api/paec", methods=["POST"])
@roles_required(*STAFF_ROLES)
def api_create_paec():
    ctx = current_context()
    data = json_body()
    try:
        student_id = int(data.get("student_id"))
    except (TypeError, ValueError):
        raise ValidationError("Estudiante no válido.")
    if StudentStoreDB.get(student_id, ctx.institution_id) is None:
        raise NotFoundError("Estudiante no encontrado.")
    strategies = data.get("support_strategies") or []
    if not isinstance(strategies, list):
        raise ValidationError("Las estrategias deben ser una lista.")
    paec_id = PaecStoreDB.create({
        "institution_id": ctx.institution_id,
        "student_id": student_id,
        "created_by": ctx.user_id,
        "diagnosis": (data.get("diagnosis") or "").strip(),
        "support_strategies": strategies,
        "review_date": _review_date(data.get("review_date")),
    })
    plan = PaecStoreDB.get(paec_id, ctx.institution_id)
    outbox.process([AuditEvent.of(ctx, "create", "paec", paec_id, after=plan)])
    return jsonify({"paec": plan}), 201


@bp.route("/api/paec")
@roles_required(*STAFF_ROLES)
def api_paec_list():
    ctx = current_context()
    return jsonify({"paec": PaecStoreDB.list(ctx.institution_id, request.args.get("student_id", type=int))})


@bp.route("/api/paec/pending")
@roles_required(*STAFF_ROLES)
def api_paec_pending():
    ctx = current_context()
    horizon = (date.today() + timedelta(days=PAEC_REVIEW_HORIZON_DAYS)).isoformat()
    return jsonify({"paec": PaecStoreDB.pending_review(ctx.institution_id, horizon)})


def _set_signature(paec_id: int, signed: bool):
    ctx = current_context()
    before = _paec_or_404(ctx, paec_id)
    signer = json_body().get("signer")
    PaecStoreDB.set_signature(paec_id, signer, signed)
    after = PaecStoreDB.get(paec_id, ctx.institution_id)
    action = "sign" if signed else "unsign"
    outbox.process([AuditEvent.of(ctx, action, "paec", paec_id, description=signer,
                                  before=before, after=after)])
    return jsonify({"paec": after})


@bp.route("/api/paec/<int:paec_id>/sign", methods=["POST"])
@roles_required(*STAFF_ROLES)
def api_paec_sign(paec_id):
    return _set_signature(paec_id, True)


@bp.route("/api/paec/<int:paec_id>/unsign", methods=["POST"])
@roles_required(*STAFF_ROLES)
def api_paec_unsign(paec_id):
    return _set_signature(paec_id, False)


@bp.route("/api/paec/<int:paec_id>/followup", methods=["PATCH"])
@roles_required(*STAFF_ROLES)
def api_paec_followup(paec_id):
    ctx = current_context()
    before = _paec_or_404(ctx, paec_id)
    data = json_body()
    PaecStoreDB.update_followup(
        paec_id,
        requires_adjustments=bool(data.get("requires_adjustments", before["requires_adjustments"])),
        review_date=_review_date(data.get("review_date", before["review_date"])),
        followup_notes=(data.get("followup_notes") or "").strip(),
    )
    after = PaecStoreDB.get(paec_id, ctx.institution_id)
    outbox.process([AuditEvent.of(ctx, "followup", "paec", paec_id, before=before, after=after)])
    return jsonify({"paec": after})
