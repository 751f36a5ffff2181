"""
Emotional check-ins, classroom climate logs and teacher perceptions.

Each operation performs one primary insert and returns ``(result, events)``.
Uniqueness per day is left to the schema's unique indexes; the store raises
AlreadyExistsError when a second submission lands.
"""

from __future__ import annotations

import logging
from datetime import date, datetime

import alert_rules
from db_stores import (
    CourseStoreDB,
    EmotionalLogStoreDB,
    PerceptionStoreDB,
    StudentStoreDB,
    TeacherLogStoreDB,
)
from errors import NotAuthorizedError, NotFoundError, RiskBlockedError, ValidationError
from events import AuditEvent, PointsEvent
from risk_detector import RiskLevel, get_detector

logger = logging.getLogger(__name__)

EMOTIONS = ("muy_mal", "mal", "neutral", "bien", "muy_bien")
LOG_TYPES = ("daily", "weekly")
ENERGY_LEVELS = ("explosiva", "apatica", "inquieta", "regulada")

CONDUCT_TAGS = (
    "Trabajadores / Enfocados",
    "Participativos",
    "Desafiantes / Discutidores",
    "Agotados / Sin energía",
    "Colaborativos",
)
MAX_TAGS = 2

PERCEPTION_INDICATORS = (
    "Parece triste o desanimado",
    "Está aislado socialmente",
    "Cambio de conducta reciente",
    "Problemas de concentración",
    "Conflicto con compañeros",
    "Muestra signos de cansancio",
    "Participativo y motivado",
    "Bien integrado al curso",
)
MAX_INDICATORS = 3

DAILY_LOG_POINTS = 10
REFLECTION_BONUS_POINTS = 5

EDITABLE_LOG_FIELDS = ("emotion", "intensity", "stress_level", "anxiety_level", "reflection")


def _scale(value, field: str, *, required: bool = True) -> int | None:
    if value is None or value == "":
        if required:
            raise ValidationError(f"El campo {field} es obligatorio.")
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"El campo {field} debe ser un número entre 1 y 5.")
    if not 1 <= number <= 5:
        raise ValidationError(f"El campo {field} debe ser un número entre 1 y 5.")
    return number


def _student_for(ctx) -> dict:
    if ctx.role != "estudiante":
        raise NotAuthorizedError()
    student = StudentStoreDB.by_user(ctx.user_id)
    if student is None or student["institution_id"] != ctx.institution_id:
        raise NotAuthorizedError()
    return student


# ── Emotional logs ───────────────────────────────────────────────────


def assess_reflection(text: str | None) -> dict:
    return get_detector().assess(text).to_dict()


def record_emotional_log(ctx, emotion, intensity, reflection=None, type="daily",
                         stress_level=None, anxiety_level=None):
    """Insert a student's check-in and collect its side effects.

    A critical-risk reflection blocks the insert with RiskBlockedError and
    creates no alert. A high-risk reflection is saved and yields one
    mental_health_concern alert.
    """
    student = _student_for(ctx)

    if emotion not in EMOTIONS:
        raise ValidationError("Emoción no válida.")
    if type not in LOG_TYPES:
        raise ValidationError("Tipo de registro no válido.")
    intensity = _scale(intensity, "intensidad")
    stress_level = _scale(stress_level, "estrés", required=False)
    anxiety_level = _scale(anxiety_level, "ansiedad", required=False)
    reflection = (reflection or "").strip() or None

    assessment = get_detector().assess(reflection)
    if assessment.level is RiskLevel.CRITICAL:
        logger.warning(
            "Critical-risk reflection blocked for student %s", student["id"],
            extra={"user_id": ctx.user_id, "institution_id": ctx.institution_id},
        )
        raise RiskBlockedError(assessment.message, risk=assessment.to_dict())

    now = datetime.now()
    today = now.date()
    log = {
        "institution_id": ctx.institution_id,
        "student_id": student["id"],
        "emotion": emotion,
        "intensity": intensity,
        "stress_level": stress_level,
        "anxiety_level": anxiety_level,
        "reflection": reflection,
        "type": type,
        "week_number": today.isocalendar()[1],
        "year": today.year,
        "log_date": today.isoformat(),
        "created_at": now.isoformat(),
    }
    log["id"] = EmotionalLogStoreDB.insert(log)

    events: list = []
    points = 0
    if type == "daily":
        points = DAILY_LOG_POINTS + (REFLECTION_BONUS_POINTS if reflection else 0)
        events.append(PointsEvent(
            ctx.institution_id, student["id"], points,
            "daily_log_with_reflection" if reflection else "daily_log",
        ))
    events.extend(alert_rules.evaluate_safely(alert_rules.evaluate_emotional_log, log, assessment))

    result = dict(log, points_awarded=points)
    if assessment.level is RiskLevel.HIGH:
        result["risk"] = assessment.to_dict()
    return result, events


def student_history(ctx, limit: int = 30) -> list[dict]:
    student = _student_for(ctx)
    return EmotionalLogStoreDB.history(student["id"], limit)


def update_emotional_log(ctx, log_id: int, fields: dict):
    if not ctx.is_admin:
        raise NotAuthorizedError()
    before = EmotionalLogStoreDB.get(log_id, ctx.institution_id)
    if before is None:
        raise NotFoundError("Registro no encontrado.")

    changes = {k: v for k, v in fields.items() if k in EDITABLE_LOG_FIELDS}
    if "emotion" in changes and changes["emotion"] not in EMOTIONS:
        raise ValidationError("Emoción no válida.")
    if "intensity" in changes:
        changes["intensity"] = _scale(changes["intensity"], "intensidad")
    for key, label in (("stress_level", "estrés"), ("anxiety_level", "ansiedad")):
        if key in changes:
            changes[key] = _scale(changes[key], label, required=False)
    if not changes:
        raise ValidationError("No hay cambios que guardar.")

    EmotionalLogStoreDB.update(log_id, changes)
    after = EmotionalLogStoreDB.get(log_id, ctx.institution_id)
    audit = AuditEvent.of(ctx, "update", "emotional_log", log_id,
                          description=f"Registro emocional del estudiante {before['student_id']}",
                          before=before, after=after)
    return after, [audit]


def delete_emotional_log(ctx, log_id: int):
    if not ctx.is_admin:
        raise NotAuthorizedError()
    before = EmotionalLogStoreDB.get(log_id, ctx.institution_id)
    if before is None:
        raise NotFoundError("Registro no encontrado.")
    EmotionalLogStoreDB.delete(log_id)
    audit = AuditEvent.of(ctx, "delete", "emotional_log", log_id,
                          description=f"Registro emocional del estudiante {before['student_id']}",
                          before=before)
    return None, [audit]


# ── Teacher climate logs ─────────────────────────────────────────────


def record_teacher_log(ctx, course_id, energy_level, tags=None, notes=None):
    if ctx.role != "docente":
        raise NotAuthorizedError()
    if energy_level not in ENERGY_LEVELS:
        raise ValidationError("Nivel de energía no válido.")
    tags = list(tags or [])
    if len(tags) > MAX_TAGS:
        raise ValidationError(f"Puedes seleccionar como máximo {MAX_TAGS} etiquetas.")
    if any(t not in CONDUCT_TAGS for t in tags):
        raise ValidationError("Etiqueta no válida.")
    try:
        course_id = int(course_id)
    except (TypeError, ValueError):
        raise ValidationError("Curso no válido.")

    course = CourseStoreDB.get(course_id, ctx.institution_id)
    if course is None or not CourseStoreDB.is_teacher_of(course_id, ctx.user_id):
        raise NotAuthorizedError()

    now = datetime.now()
    entry = {
        "institution_id": ctx.institution_id,
        "teacher_id": ctx.user_id,
        "course_id": course_id,
        "energy_level": energy_level,
        "tags": tags,
        "notes": (notes or "").strip() or None,
        "log_date": now.date().isoformat(),
        "created_at": now.isoformat(),
    }
    entry["id"] = TeacherLogStoreDB.insert(entry)
    return entry, []


# ── Teacher perceptions ──────────────────────────────────────────────


def record_perception(ctx, student_id, wellbeing_score, indicators=None, notes=None):
    """Teacher's view of one student; runs the discrepancy rule against the latest self-report."""
    if ctx.role != "docente":
        raise NotAuthorizedError()
    score = _scale(wellbeing_score, "bienestar")
    indicators = list(indicators or [])
    if len(indicators) > MAX_INDICATORS:
        raise ValidationError(f"Puedes seleccionar como máximo {MAX_INDICATORS} indicadores.")
    if any(i not in PERCEPTION_INDICATORS for i in indicators):
        raise ValidationError("Indicador no válido.")
    try:
        student_id = int(student_id)
    except (TypeError, ValueError):
        raise ValidationError("Estudiante no válido.")
    student = StudentStoreDB.get(student_id, ctx.institution_id)
    if student is None:
        raise NotFoundError("Estudiante no encontrado.")

    now = datetime.now()
    perception = {
        "institution_id": ctx.institution_id,
        "teacher_id": ctx.user_id,
        "student_id": student_id,
        "wellbeing_score": score,
        "indicators": indicators,
        "notes": (notes or "").strip() or None,
        "log_date": date.today().isoformat(),
        "created_at": now.isoformat(),
    }
    perception["id"] = PerceptionStoreDB.insert(perception)
    return perception, alert_rules.evaluate_safely(alert_rules.evaluate_perception, perception)
