"""
Modo Pulso — weekly institution-wide climate survey.

At most one active session per institution and one entry per participant
per session; both rules live in the schema's unique indexes.
"""

from __future__ import annotations

from collections import Counter
from datetime import date, timedelta

from checkins import CONDUCT_TAGS, ENERGY_LEVELS, MAX_TAGS
from db_stores import CourseStoreDB, PulseStoreDB, StudentStoreDB, UserStoreDB
from errors import NotAuthorizedError, NotFoundError, ValidationError
from events import AuditEvent, NotificationEvent

STUDENT_ENERGY = ("motivado", "con_animo", "neutral", "desmotivado", "sin_animo")
CLASS_PERCEPTION = ("muy_bien", "bien", "neutral", "mal", "muy_mal")

ACTIVATOR_ROLES = frozenset({"admin", "director", "convivencia", "dupla", "utp"})


def week_bounds(today: date | None = None) -> tuple[str, str]:
    """Monday..Sunday of the week containing ``today``."""
    today = today or date.today()
    monday = today - timedelta(days=today.weekday())
    return monday.isoformat(), (monday + timedelta(days=6)).isoformat()


def activate(ctx, today: date | None = None):
    if ctx.role not in ACTIVATOR_ROLES:
        raise NotAuthorizedError()
    week_start, week_end = week_bounds(today)
    session_id = PulseStoreDB.create_session(ctx.institution_id, ctx.user_id, week_start, week_end)
    session = PulseStoreDB.get(session_id, ctx.institution_id)

    recipients = [uid for uid in UserStoreDB.ids_for_institution(ctx.institution_id) if uid != ctx.user_id]
    events: list = [AuditEvent.of(ctx, "activate", "pulse_session", session_id,
                                  description=f"{week_start} a {week_end}", after=session)]
    if recipients:
        events.append(NotificationEvent(
            ctx.institution_id, recipients, "pulso_activo", "Modo Pulso activo",
            f"Responde el pulso de la semana {week_start} a {week_end}.",
            str(session_id), "/pulso",
        ))
    return session, events


def deactivate(ctx, session_id: int):
    if ctx.role not in ACTIVATOR_ROLES:
        raise NotAuthorizedError()
    session = PulseStoreDB.get(session_id, ctx.institution_id)
    if session is None:
        raise NotFoundError("Sesión no encontrada.")
    PulseStoreDB.deactivate(session_id)
    after = PulseStoreDB.get(session_id, ctx.institution_id)
    return after, [AuditEvent.of(ctx, "deactivate", "pulse_session", session_id,
                                 before=session, after=after)]


def _active_session(ctx) -> dict:
    session = PulseStoreDB.active(ctx.institution_id)
    if session is None:
        raise NotFoundError("No hay una sesión de pulso activa.")
    return session


def active_session(ctx) -> dict | None:
    return PulseStoreDB.active(ctx.institution_id)


def submit_student_entry(ctx, energy_level, class_perception):
    if ctx.role != "estudiante":
        raise NotAuthorizedError()
    if energy_level not in STUDENT_ENERGY:
        raise ValidationError("Nivel de energía no válido.")
    if class_perception not in CLASS_PERCEPTION:
        raise ValidationError("Percepción de clase no válida.")
    student = StudentStoreDB.by_user(ctx.user_id)
    if student is None or student["institution_id"] != ctx.institution_id:
        raise NotAuthorizedError()
    session = _active_session(ctx)
    entry_id = PulseStoreDB.add_student_entry(
        session["id"], ctx.institution_id, student["id"], energy_level, class_perception,
    )
    return {"id": entry_id, "pulse_session_id": session["id"], "student_id": student["id"],
            "energy_level": energy_level, "class_perception": class_perception}, []


def submit_teacher_entry(ctx, course_id, energy_level, tags=None, notes=None):
    if ctx.role != "docente":
        raise NotAuthorizedError()
    if energy_level not in ENERGY_LEVELS:
        raise ValidationError("Nivel de energía no válido.")
    tags = list(tags or [])
    if len(tags) > MAX_TAGS or any(t not in CONDUCT_TAGS for t in tags):
        raise ValidationError(f"Selecciona como máximo {MAX_TAGS} etiquetas válidas.")
    try:
        course_id = int(course_id)
    except (TypeError, ValueError):
        raise ValidationError("Curso no válido.")
    if CourseStoreDB.get(course_id, ctx.institution_id) is None \
            or not CourseStoreDB.is_teacher_of(course_id, ctx.user_id):
        raise NotAuthorizedError()
    session = _active_session(ctx)
    notes = (notes or "").strip() or None
    entry_id = PulseStoreDB.add_teacher_entry(
        session["id"], ctx.institution_id, ctx.user_id, course_id, energy_level, tags, notes,
    )
    return {"id": entry_id, "pulse_session_id": session["id"], "course_id": course_id,
            "energy_level": energy_level, "tags": tags, "notes": notes}, []


def session_summary(ctx, session_id: int) -> dict:
    if not ctx.is_staff:
        raise NotAuthorizedError()
    session = PulseStoreDB.get(session_id, ctx.institution_id)
    if session is None:
        raise NotFoundError("Sesión no encontrada.")
    students = PulseStoreDB.student_entries(session_id)
    teachers = PulseStoreDB.teacher_entries(session_id)

    energy = Counter(e["energy_level"] for e in students)
    perception = Counter(e["class_perception"] for e in students)
    climate = Counter(e["energy_level"] for e in teachers)
    return {
        "session": session,
        "student_count": len(students),
        "teacher_count": len(teachers),
        "student_energy": {k: energy.get(k, 0) for k in STUDENT_ENERGY},
        "class_perception": {k: perception.get(k, 0) for k in CLASS_PERCEPTION},
        "teacher_energy": {k: climate.get(k, 0) for k in ENERGY_LEVELS},
    }
