"""
Admin routes — staff user management, student enrolment, password resets,
the audit trail and the outbox retry trigger.

Every route is admin-only and every mutation is audited through the outbox.
"""

from __future__ import annotations

import logging

from flask import jsonify, request, Blueprint

import outbox
from audit import list_admin_actions
from db_stores import CourseStoreDB, StudentStoreDB, UserStoreDB
from errors import AlreadyExistsError, NotFoundError, ValidationError
from events import AuditEvent
from helpers import admin_required, current_context, json_body, paginate_args, paginated_response
from tasks import queue_length

logger = logging.getLogger(__name__)

bp = Blueprint("admin", __name__)

CREATABLE_ROLES = ("director", "inspector", "utp", "convivencia", "dupla", "docente")
MIN_PASSWORD_LENGTH = 8


def _target_user(ctx, user_id):
    """Fetch an editable user: same institution and never another admin."""
    try:
        user = UserStoreDB.get(int(user_id))
    except (TypeError, ValueError):
        user = None
    if user is None or user["institution_id"] != ctx.institution_id or user["role"] == "admin":
        return None
    return user


# ── Staff users ──────────────────────────────────────────────


@bp.route("/api/admin/users", methods=["POST"])
@admin_required
def api_create_user():
    ctx = current_context()
    data = json_body()
    email = (data.get("email") or "").strip()
    password = data.get("password") or ""
    name = (data.get("name") or "").strip()
    role = data.get("role") or ""

    if not email or not password or not name or not role:
        return jsonify({"error": "Faltan campos obligatorios"}), 400
    if role not in CREATABLE_ROLES:
        return jsonify({"error": "Rol no permitido"}), 400
    if len(password) < MIN_PASSWORD_LENGTH:
        return jsonify({"error": "La contraseña debe tener al menos 8 caracteres"}), 400

    user_id = UserStoreDB.create(
        ctx.institution_id, role, name, email, password,
        last_name=(data.get("last_name") or "").strip(), phone=(data.get("phone") or "").strip(),
    )
    user = UserStoreDB.get(user_id)
    outbox.process([AuditEvent.of(ctx, "create", "user", user_id, description=user["email"], after=user)])
    return jsonify({"user": user}), 201


@bp.route("/api/admin/users", methods=["PATCH"])
@admin_required
def api_update_user():
    ctx = current_context()
    data = json_body()
    if not data.get("userId"):
        return jsonify({"error": "userId es requerido"}), 400
    before = _target_user(ctx, data.get("userId"))
    if before is None:
        return jsonify({"error": "No autorizado para editar este usuario"}), 403

    fields = {k: data[k] for k in ("name", "last_name", "role", "phone", "active") if k in data}
    if "role" in fields and fields["role"] not in CREATABLE_ROLES:
        return jsonify({"error": "Rol no permitido"}), 400
    if "active" in fields:
        fields["active"] = 1 if fields["active"] else 0
    if not fields:
        return jsonify({"error": "No hay cambios que guardar"}), 400

    UserStoreDB.update(before["id"], fields)
    after = UserStoreDB.get(before["id"])
    outbox.process([AuditEvent.of(ctx, "update", "user", before["id"], description=after["email"],
                                  before=before, after=after)])
    return jsonify({"user": after})


@bp.route("/api/admin/users", methods=["DELETE"])
@admin_required
def api_delete_user():
    ctx = current_context()
    data = json_body()
    user_id = data.get("userId") or request.args.get("userId")
    if not user_id:
        return jsonify({"error": "userId es requerido"}), 400
    if str(user_id) == str(ctx.user_id):
        return jsonify({"error": "No puedes eliminarte a ti mismo"}), 400
    before = _target_user(ctx, user_id)
    if before is None:
        return jsonify({"error": "No autorizado"}), 403

    UserStoreDB.deactivate(before["id"])
    after = UserStoreDB.get(before["id"])
    outbox.process([AuditEvent.of(ctx, "delete", "user", before["id"], description=before["email"],
                                  before=before, after=after)])
    return jsonify({"success": True})


# ── Students ─────────────────────────────────────────────────


@bp.route("/api/admin/students", methods=["POST"])
@admin_required
def api_create_student():
    ctx = current_context()
    data = json_body()
    email = (data.get("email") or "").strip()
    password = data.get("password") or ""
    name = (data.get("name") or "").strip()
    last_name = (data.get("last_name") or "").strip()

    if not email or not password or not name or not last_name:
        return jsonify({"error": "Email, contraseña, nombre y apellido son obligatorios."}), 400
    if len(password) < MIN_PASSWORD_LENGTH:
        return jsonify({"error": "La contraseña debe tener al menos 8 caracteres."}), 400

    course_id = data.get("course_id")
    if course_id not in (None, ""):
        try:
            course_id = int(course_id)
        except (TypeError, ValueError):
            raise ValidationError("Curso no válido.")
        if CourseStoreDB.get(course_id, ctx.institution_id) is None:
            raise NotFoundError("Curso no encontrado.")
    else:
        course_id = None

    try:
        user_id = UserStoreDB.create(ctx.institution_id, "estudiante", name, email, password,
                                     last_name=last_name)
    except AlreadyExistsError:
        return jsonify({"error": "Este correo electrónico ya está registrado."}), 400

    student_id = StudentStoreDB.create(
        ctx.institution_id, name, last_name,
        user_id=user_id,
        course_id=course_id,
        rut=(data.get("rut") or "").strip(),
        birthdate=(data.get("birthdate") or "").strip(),
        guardian_name=(data.get("guardian_name") or "").strip(),
        guardian_phone=(data.get("guardian_phone") or "").strip(),
        guardian_email=(data.get("guardian_email") or "").strip(),
    )
    student = StudentStoreDB.get(student_id, ctx.institution_id)
    outbox.process([AuditEvent.of(ctx, "create", "student", student_id,
                                  description=f"{name} {last_name}", after=student)])
    return jsonify({"student": student, "user_id": user_id}), 201


# ── Courses and teacher assignment ───────────────────────────


def _course(ctx, course_id: int) -> dict:
    course = CourseStoreDB.get(course_id, ctx.institution_id)
    if course is None:
        raise NotFoundError("Curso no encontrado.")
    return course


def _course_label(course: dict) -> str:
    return f"{course['name']} {course['section']}".strip()


@bp.route("/api/admin/courses")
@admin_required
def api_admin_courses():
    return jsonify({"courses": CourseStoreDB.list_all(current_context().institution_id)})


@bp.route("/api/admin/courses", methods=["POST"])
@admin_required
def api_create_course():
    ctx = current_context()
    data = json_body()
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("El nombre del curso es obligatorio.")
    course_id = CourseStoreDB.create(
        ctx.institution_id, name,
        section=(data.get("section") or "").strip(), level=(data.get("level") or "").strip(),
    )
    course = CourseStoreDB.get(course_id, ctx.institution_id)
    outbox.process([AuditEvent.of(ctx, "create_course", "course", course_id,
                                  description=_course_label(course), after=course)])
    return jsonify({"course": course}), 201


@bp.route("/api/admin/courses/<int:course_id>", methods=["PATCH"])
@admin_required
def api_update_course(course_id):
    ctx = current_context()
    before = _course(ctx, course_id)
    data = json_body()
    fields = {k: str(data[k] or "").strip() for k in ("name", "section", "level") if k in data}
    if "name" in fields and not fields["name"]:
        raise ValidationError("El nombre del curso es obligatorio.")
    if not fields:
        raise ValidationError("No hay cambios que guardar.")

    CourseStoreDB.update(course_id, fields)
    after = CourseStoreDB.get(course_id, ctx.institution_id)
    outbox.process([AuditEvent.of(ctx, "edit_course", "course", course_id,
                                  description=_course_label(after), before=before, after=after)])
    return jsonify({"course": after})


@bp.route("/api/admin/courses/<int:course_id>/toggle", methods=["POST"])
@admin_required
def api_toggle_course(course_id):
    ctx = current_context()
    course = _course(ctx, course_id)
    active = 0 if course["active"] else 1
    CourseStoreDB.update(course_id, {"active": active})
    outbox.process([AuditEvent.of(ctx, "toggle_course_active", "course", course_id,
                                  description=_course_label(course),
                                  before={"active": bool(course["active"])}, after={"active": bool(active)})])
    return jsonify({"course": CourseStoreDB.get(course_id, ctx.institution_id)})


@bp.route("/api/admin/courses/<int:course_id>/teachers", methods=["POST"])
@admin_required
def api_assign_teacher(course_id):
    ctx = current_context()
    course = _course(ctx, course_id)
    try:
        teacher = UserStoreDB.get(int(json_body().get("teacher_id")))
    except (TypeError, ValueError):
        teacher = None
    if teacher is None or teacher["institution_id"] != ctx.institution_id:
        raise NotFoundError("Docente no encontrado.")
    if teacher["role"] != "docente":
        raise ValidationError("Solo se pueden asignar docentes a un curso.")

    if CourseStoreDB.assign_teacher(course_id, teacher["id"]):
        outbox.process([AuditEvent.of(
            ctx, "assign_teacher_to_course", "course", course_id,
            description=f"{_course_label(course)} → {teacher['name']} {teacher['last_name']}".strip(),
            after={"course_id": course_id, "teacher_id": teacher["id"]},
        )])
    return jsonify({"course_id": course_id, "teacher_id": teacher["id"]}), 201


@bp.route("/api/admin/courses/<int:course_id>/teachers/<int:teacher_id>", methods=["DELETE"])
@admin_required
def api_unassign_teacher(course_id, teacher_id):
    ctx = current_context()
    course = _course(ctx, course_id)
    if not CourseStoreDB.unassign_teacher(course_id, teacher_id):
        raise NotFoundError("El docente no está asignado a este curso.")
    outbox.process([AuditEvent.of(
        ctx, "remove_teacher_from_course", "course", course_id,
        description=_course_label(course),
        before={"course_id": course_id, "teacher_id": teacher_id},
    )])
    return jsonify({"success": True})


# ── Passwords ────────────────────────────────────────────────


@bp.route("/api/admin/reset-password", methods=["POST"])
@admin_required
def api_reset_password():
    ctx = current_context()
    data = json_body()
    user_id = data.get("userId")
    new_password = data.get("newPassword") or ""
    if not user_id or not new_password:
        return jsonify({"error": "userId y newPassword son requeridos."}), 400
    if len(new_password) < MIN_PASSWORD_LENGTH:
        return jsonify({"error": "La contraseña debe tener al menos 8 caracteres."}), 400

    try:
        target = UserStoreDB.get(int(user_id))
    except (TypeError, ValueError):
        target = None
    if target is None or target["institution_id"] != ctx.institution_id:
        raise NotFoundError("Usuario no encontrado.")

    UserStoreDB.set_password(target["id"], new_password)
    outbox.process([AuditEvent.of(ctx, "reset_password", "user", target["id"],
                                  description=target["email"])])
    return jsonify({"ok": True})


# ── Audit trail and outbox ───────────────────────────────────


@bp.route("/api/admin/audit-logs")
@admin_required
def api_audit_logs():
    ctx = current_context()
    page, limit = paginate_args(default_limit=50, max_limit=200)
    items, total = list_admin_actions(
        ctx.institution_id,
        action=request.args.get("action", ""),
        entity_type=request.args.get("entity_type", ""),
        page=page, limit=limit,
    )
    result = paginated_response(items, total, page, limit)
    result["logs"] = result.pop("items")
    return jsonify(result)


@bp.route("/api/admin/outbox/retry", methods=["POST"])
@admin_required
def api_outbox_retry():
    stats = outbox.retry_pending()
    logger.info("Manual outbox retry: %s", stats)
    return jsonify(dict(stats, pending=outbox.pending_count(), queued=queue_length()))
