"""Alert rule evaluation.

Pure decision functions over already-fetched rows, plus evaluators that fetch
the small window a rule needs and return AlertEvents. Nothing here inserts an
alert; the caller hands the events to the outbox.

Repeated negative streaks are not deduplicated: every further bad day that
still closes a 3-day negative window emits another alert.
"""

from __future__ import annotations

import logging

from database import get_db
from events import AlertEvent
from risk_detector import RiskAssessment, RiskLevel

logger = logging.getLogger(__name__)

NEGATIVE_EMOTIONS = frozenset({"mal", "muy_mal"})
POSITIVE_EMOTIONS = frozenset({"bien", "muy_bien"})

STREAK_LENGTH = 3
DISCREPANCY_MAX_SCORE = 2

STREAK_DESCRIPTION = (
    "El estudiante lleva 3 o más días seguidos con registros negativos (mal o muy mal)."
)
DISCREPANCY_DESCRIPTION = (
    "El estudiante reportó sentirse bien, pero el docente percibe bajo bienestar. "
    "Podría estar ocultando su estado real."
)


def negative_streak(recent_emotions: list[str]) -> bool:
    """True iff exactly STREAK_LENGTH emotions are given and all are negative."""
    return (
        len(recent_emotions) == STREAK_LENGTH
        and all(e in NEGATIVE_EMOTIONS for e in recent_emotions)
    )


def teacher_discrepancy(wellbeing_score: int, last_emotion: str | None) -> bool:
    return wellbeing_score <= DISCREPANCY_MAX_SCORE and last_emotion in POSITIVE_EMOTIONS


def risk_alert_description(reflection: str) -> str:
    return "Preocupación: " + reflection[:100]


def recent_daily_emotions(student_id: int, n: int = STREAK_LENGTH) -> list[str]:
    db = get_db()
    rows = db.execute(
        "SELECT emotion FROM emotional_logs WHERE student_id = ? AND type = 'daily' "
        "ORDER BY created_at DESC, id DESC LIMIT ?",
        (student_id, n),
    ).fetchall()
    return [r["emotion"] for r in rows]


def evaluate_emotional_log(log: dict, assessment: RiskAssessment) -> list[AlertEvent]:
    """Alerts owed after a daily/weekly emotional log has been inserted."""
    events: list[AlertEvent] = []

    if log["type"] == "daily" and log["emotion"] in NEGATIVE_EMOTIONS:
        if negative_streak(recent_daily_emotions(log["student_id"])):
            events.append(AlertEvent(
                institution_id=log["institution_id"],
                student_id=log["student_id"],
                type="registros_negativos",
                description=STREAK_DESCRIPTION,
            ))

    if assessment.level is RiskLevel.HIGH and log.get("reflection"):
        events.append(AlertEvent(
            institution_id=log["institution_id"],
            student_id=log["student_id"],
            type="mental_health_concern",
            description=risk_alert_description(log["reflection"]),
        ))

    return events


def evaluate_perception(perception: dict) -> list[AlertEvent]:
    """Compare a teacher's low wellbeing score with the student's latest self-report."""
    if perception["wellbeing_score"] > DISCREPANCY_MAX_SCORE:
        return []
    latest = recent_daily_emotions(perception["student_id"], n=1)
    if not teacher_discrepancy(perception["wellbeing_score"], latest[0] if latest else None):
        return []
    return [AlertEvent(
        institution_id=perception["institution_id"],
        student_id=perception["student_id"],
        type="discrepancia_docente",
        description=DISCREPANCY_DESCRIPTION,
        triggered_by=str(perception["teacher_id"]),
    )]


def evaluate_incident(incident: dict, window_days: int = 30, threshold: int = 2) -> list[AlertEvent]:
    """dec_repetido when the student already had ``threshold`` incidents in the window."""
    db = get_db()
    row = db.execute(
        "SELECT COUNT(*) as cnt FROM incidents WHERE student_id = ? AND id != ? "
        "AND substr(incident_date, 1, 10) BETWEEN date(?, ?) AND ?",
        (incident["student_id"], incident["id"], incident["incident_date"][:10],
         f"-{window_days} days", incident["incident_date"][:10]),
    ).fetchone()
    if row["cnt"] < threshold:
        return []
    return [AlertEvent(
        institution_id=incident["institution_id"],
        student_id=incident["student_id"],
        type="dec_repetido",
        description=(
            f"El estudiante registra {row['cnt'] + 1} DEC en los últimos {window_days} días "
            f"(folio {incident['folio']})."
        ),
        triggered_by=str(incident["reporter_id"]),
    )]


def evaluate_safely(evaluator, *args) -> list[AlertEvent]:
    """Run an evaluator after the primary write; a failure costs the alert, never the write."""
    try:
        return evaluator(*args)
    except Exception:
        logger.exception("Alert evaluation %s failed", evaluator.__name__)
        return []
