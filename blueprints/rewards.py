"""Points balance and rewards catalogue."""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify

import outbox
from auth import STAFF_ROLES
from db_stores import PointsStoreDB, RewardStoreDB, StudentStoreDB
from errors import NotAuthorizedError, NotFoundError, ValidationError
from events import AuditEvent
from helpers import current_context, json_body, roles_required

logger = logging.getLogger(__name__)

bp = Blueprint("rewards", __name__)

REWARD_TYPES = ("avatar", "theme", "badge", "frame")


def _own_student(ctx) -> dict:
    student = StudentStoreDB.by_user(ctx.user_id)
    if student is None or student["institution_id"] != ctx.institution_id:
        raise NotAuthorizedError()
    return student


@bp.route("/api/rewards")
@roles_required(*STAFF_ROLES, "estudiante")
def api_rewards():
    ctx = current_context()
    result = {"rewards": RewardStoreDB.list(ctx.institution_id, include_inactive=ctx.is_staff)}
    if ctx.role == "estudiante":
        result["owned"] = RewardStoreDB.owned(_own_student(ctx)["id"])
    return jsonify(result)


@bp.route("/api/rewards", methods=["POST"])
@roles_required(*STAFF_ROLES)
def api_create_reward():
    ctx = current_context()
    data = json_body()
    name = (data.get("name") or "").strip()
    reward_type = data.get("type")
    if not name:
        raise ValidationError("El nombre es obligatorio.")
    if reward_type not in REWARD_TYPES:
        raise ValidationError("Tipo de recompensa no válido.")
    try:
        cost = int(data.get("cost_points"))
    except (TypeError, ValueError):
        raise ValidationError("El costo debe ser un número.")
    if cost < 0:
        raise ValidationError("El costo debe ser un número.")
    reward_id = RewardStoreDB.create(ctx.institution_id, name, reward_type, cost)
    reward = RewardStoreDB.get(reward_id, ctx.institution_id)
    outbox.process([AuditEvent.of(ctx, "create", "reward", reward_id, description=name, after=reward)])
    return jsonify({"reward": reward}), 201


@bp.route("/api/rewards/<int:reward_id>/redeem", methods=["POST"])
@roles_required("estudiante")
def api_redeem(reward_id):
    ctx = current_context()
    student = _own_student(ctx)
    reward = RewardStoreDB.get(reward_id, ctx.institution_id)
    if reward is None or not reward["active"]:
        raise NotFoundError("Recompensa no encontrada.")
    RewardStoreDB.redeem(student["id"], reward)
    logger.info("Reward redeemed", extra={"student_id": student["id"], "reward_id": reward_id})
    return jsonify({"reward": reward, "balance": PointsStoreDB(student["id"]).balance()}), 201


@bp.route("/api/points")
@roles_required("estudiante")
def api_points():
    store = PointsStoreDB(_own_student(current_context())["id"])
    return jsonify({
        "balance": store.balance(),
        "earned": store.earned(),
        "spent": store.spent(),
        "history": store.history(),
    })
