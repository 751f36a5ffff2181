"""Aggregation and reporting.

Every function re-queries and re-aggregates from raw rows; nothing is cached.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from datetime import date, datetime, timedelta

from database import get_db
from db_stores import AlertStoreDB, PaecStoreDB

EMOTION_SCORE = {
    "muy_mal": 1.5,
    "mal": 2,
    "neutral": 3,
    "bien": 4,
    "muy_bien": 5,
}
DEFAULT_EMOTION_SCORE = 3
LOW_RISK_THRESHOLD = 2.5
LOW_STUDENTS_PER_COURSE = 3

ENERGY_SCORE = {
    "explosiva": 1,
    "apatica": 2,
    "inquieta": 3,
    "regulada": 4,
}
CLIMATE_WINDOW_DAYS = 28
HEATMAP_DAYS = 90
NEGATIVE_TREND_MONTHS = 6
PAEC_REVIEW_HORIZON_DAYS = 30


def emotion_score(emotion: str) -> float:
    return EMOTION_SCORE.get(emotion, DEFAULT_EMOTION_SCORE)


def climate_label(average: float | None) -> str:
    if average is None:
        return "Sin datos"
    if average >= 3.5:
        return "Regulada"
    if average >= 2.5:
        return "Inquieta"
    if average >= 1.5:
        return "Apática"
    return "Explosiva"


def _course_name(name: str, section: str | None) -> str:
    return f"{name} {section}" if section else name


def _student_name(name: str | None, last_name: str | None) -> str:
    return f"{name or ''} {last_name or ''}".strip() or "Sin nombre"


# ── Emotions ───────────────────────────────────────────────

def course_risks(institution_id: int, days: int = 30, today: datetime | None = None) -> dict:
    """Emotion distribution plus courses whose average is below the risk threshold."""
    to = today or datetime.now()
    since = (to - timedelta(days=days)).isoformat()
    db = get_db()
    rows = db.execute(
        "SELECT l.emotion, s.id AS student_id, s.name, s.last_name, "
        "c.id AS course_id, c.name AS course_name, c.section "
        "FROM emotional_logs l JOIN students s ON s.id = l.student_id "
        "LEFT JOIN courses c ON c.id = s.course_id "
        "WHERE l.institution_id = ? AND l.type = 'daily' AND l.created_at >= ? AND l.created_at <= ?",
        (institution_id, since, to.isoformat()),
    ).fetchall()

    distribution = Counter(r["emotion"] for r in rows)
    courses: dict = {}
    for r in rows:
        if r["course_id"] is None:
            continue
        score = emotion_score(r["emotion"])
        course = courses.setdefault(r["course_id"], {
            "course_name": _course_name(r["course_name"], r["section"]),
            "total": 0.0, "count": 0, "students": {},
        })
        course["total"] += score
        course["count"] += 1
        student = course["students"].setdefault(r["student_id"], {
            "name": _student_name(r["name"], r["last_name"]), "total": 0.0, "count": 0,
        })
        student["total"] += score
        student["count"] += 1

    risks = []
    for course_id, info in courses.items():
        avg = info["total"] / info["count"] if info["count"] else 0
        low_students = sorted(
            (
                {"student_id": sid, "name": s["name"], "avg_score": s["total"] / s["count"]}
                for sid, s in info["students"].items()
            ),
            key=lambda s: s["avg_score"],
        )[:LOW_STUDENTS_PER_COURSE]
        if 0 < avg < LOW_RISK_THRESHOLD:
            risks.append({
                "course_id": course_id,
                "course_name": info["course_name"],
                "avg_score": avg,
                "low_students": low_students,
            })
    risks.sort(key=lambda c: c["avg_score"])

    return {
        "total_logs": len(rows),
        "emotion_distribution": [{"emotion": e, "count": n} for e, n in distribution.items()],
        "course_risks": risks,
    }


def monthly_negative_percentage(institution_id: int, months: int = NEGATIVE_TREND_MONTHS,
                                today: date | None = None) -> list[dict]:
    """Share of mal/muy_mal daily logs per month, oldest month first."""
    today = today or date.today()
    keys = []
    year, month = today.year, today.month
    for _ in range(months):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    keys.reverse()

    db = get_db()
    rows = db.execute(
        "SELECT substr(created_at, 1, 7) AS month, COUNT(*) AS total, "
        "SUM(CASE WHEN emotion IN ('mal', 'muy_mal') THEN 1 ELSE 0 END) AS negatives "
        "FROM emotional_logs WHERE institution_id = ? AND type = 'daily' AND created_at >= ? "
        "GROUP BY month",
        (institution_id, keys[0] + "-01"),
    ).fetchall()
    by_month = {r["month"]: r for r in rows}

    result = []
    for key in keys:
        r = by_month.get(key)
        total = r["total"] if r else 0
        negatives = r["negatives"] if r else 0
        result.append({
            "month": key,
            "total": total,
            "negatives": negatives,
            "percentage": round(100 * negatives / total) if total else 0,
        })
    return result


# ── Classroom climate ──────────────────────────────────────

def course_climate(institution_id: int, days: int = CLIMATE_WINDOW_DAYS,
                   today: date | None = None) -> list[dict]:
    today = today or date.today()
    since = (today - timedelta(days=days)).isoformat()
    db = get_db()
    courses = db.execute(
        "SELECT id, name, section FROM courses WHERE institution_id = ? AND active = 1 ORDER BY name, section",
        (institution_id,),
    ).fetchall()
    logs = db.execute(
        "SELECT course_id, energy_level FROM teacher_logs WHERE institution_id = ? AND log_date >= ?",
        (institution_id, since),
    ).fetchall()

    scores: dict[int, list[int]] = defaultdict(list)
    for log in logs:
        if log["energy_level"] in ENERGY_SCORE:
            scores[log["course_id"]].append(ENERGY_SCORE[log["energy_level"]])

    result = []
    for c in courses:
        values = scores.get(c["id"], [])
        average = round(sum(values) / len(values), 1) if values else None
        result.append({
            "course_id": c["id"],
            "course_name": _course_name(c["name"], c["section"]),
            "logs": len(values),
            "average": average,
            "label": climate_label(average),
        })
    return result


def climate_heatmap(institution_id: int, days: int = HEATMAP_DAYS, today: date | None = None) -> list[dict]:
    """Teacher logs of the window, grouped per course then per day."""
    today = today or date.today()
    since = (today - timedelta(days=days)).isoformat()
    db = get_db()
    rows = db.execute(
        "SELECT t.course_id, c.name, c.section, t.log_date, t.energy_level "
        "FROM teacher_logs t JOIN courses c ON c.id = t.course_id "
        "WHERE t.institution_id = ? AND t.log_date >= ? ORDER BY c.name, c.section, t.log_date",
        (institution_id, since),
    ).fetchall()

    courses: dict = {}
    for r in rows:
        course = courses.setdefault(r["course_id"], {
            "course_id": r["course_id"],
            "course_name": _course_name(r["name"], r["section"]),
            "days": [],
        })
        course["days"].append({
            "date": r["log_date"],
            "energy_level": r["energy_level"],
            "score": ENERGY_SCORE.get(r["energy_level"]),
        })
    return list(courses.values())


# ── Incidents ──────────────────────────────────────────────

def incident_stats(institution_id: int, days: int = 30, today: datetime | None = None) -> dict:
    to = today or datetime.now()
    since = (to - timedelta(days=days)).isoformat()
    db = get_db()
    rows = db.execute(
        "SELECT i.id, i.folio, i.type, i.severity, i.incident_date, s.name, s.last_name, "
        "c.name AS course_name, c.section "
        "FROM incidents i JOIN students s ON s.id = i.student_id "
        "LEFT JOIN courses c ON c.id = s.course_id "
        "WHERE i.institution_id = ? AND i.incident_date >= ? AND i.incident_date <= ? "
        "ORDER BY i.incident_date DESC, i.id DESC",
        (institution_id, since, to.isoformat()),
    ).fetchall()

    by_month = Counter(r["incident_date"][:7] for r in rows)
    by_severity = Counter(r["severity"] for r in rows)
    by_type = Counter(r["type"] for r in rows)
    recent = [
        {
            "id": r["id"],
            "folio": r["folio"],
            "type": r["type"],
            "severity": r["severity"],
            "student_name": _student_name(r["name"], r["last_name"]),
            "course_name": _course_name(r["course_name"], r["section"]) if r["course_name"] else None,
            "incident_date": r["incident_date"],
        }
        for r in rows[:5]
    ]
    return {
        "total": len(rows),
        "by_month": [{"month": m, "count": n} for m, n in sorted(by_month.items())],
        "by_severity": [{"label": k, "count": n} for k, n in by_severity.items()],
        "by_type": [{"label": k, "count": n} for k, n in by_type.items()],
        "recent": recent,
    }


# ── Dashboards ─────────────────────────────────────────────

def dashboard_data(institution_id: int, days: int = 30) -> dict:
    emotions = course_risks(institution_id, days)
    incidents = incident_stats(institution_id, days)
    return {
        "emotion_distribution": emotions["emotion_distribution"],
        "course_risks": emotions["course_risks"],
        "incidents": incidents,
        "summary": {
            "total_emotion_logs": emotions["total_logs"],
            "total_incidents": incidents["total"],
            "days": days,
        },
    }


def director_summary(institution_id: int, today: date | None = None) -> dict:
    today = today or date.today()
    db = get_db()
    students = db.execute(
        "SELECT COUNT(*) as cnt FROM students WHERE institution_id = ? AND active = 1", (institution_id,),
    ).fetchone()["cnt"]
    open_incidents = db.execute(
        "SELECT COUNT(*) as cnt FROM incidents WHERE institution_id = ? AND resolved = 0", (institution_id,),
    ).fetchone()["cnt"]
    horizon = (today + timedelta(days=PAEC_REVIEW_HORIZON_DAYS)).isoformat()
    return {
        "students": students,
        "open_alerts": AlertStoreDB.count_open(institution_id),
        "open_incidents": open_incidents,
        "paec_pending_review": len(PaecStoreDB.pending_review(institution_id, horizon)),
        "climate": course_climate(institution_id, today=today),
    }
