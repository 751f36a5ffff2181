"""
DB-backed store classes for the well-being platform.

Every query is scoped by institution where the row carries one. Stores never
check for an existing row before inserting under a unique index; the
IntegrityError from the index is translated into AlreadyExistsError.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from werkzeug.security import generate_password_hash

from database import get_db, is_unique_violation
from errors import AlreadyExistsError, NotAuthorizedError, NotFoundError, ValidationError


def _now() -> str:
    return datetime.now().isoformat()


def _insert(sql: str, params: tuple, duplicate_message: str) -> int:
    """Run an INSERT, mapping unique-index violations to AlreadyExistsError."""
    db = get_db()
    try:
        cur = db.execute(sql, params)
    except sqlite3.IntegrityError as e:
        db.rollback()
        if is_unique_violation(e):
            raise AlreadyExistsError(duplicate_message) from e
        raise
    db.commit()
    return cur.lastrowid


# ── Users, courses, students ─────────────────────────────────────────


class UserStoreDB:
    PUBLIC_FIELDS = "id, institution_id, role, name, last_name, email, phone, active, created_at"

    @staticmethod
    def get(user_id: int) -> Optional[dict]:
        db = get_db()
        row = db.execute(
            f"SELECT {UserStoreDB.PUBLIC_FIELDS} FROM users WHERE id = ?", (user_id,),
        ).fetchone()
        return dict(row) if row else None

    @staticmethod
    def create(institution_id: int, role: str, name: str, email: str, password: str, *,
               last_name: str = "", phone: str = "",
               duplicate_message: str = "El email ya está registrado") -> int:
        return _insert(
            "INSERT INTO users (institution_id, role, name, last_name, email, phone, "
            "password_hash, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (institution_id, role, name, last_name, email.strip().lower(), phone,
             generate_password_hash(password), _now()),
            duplicate_message,
        )

    @staticmethod
    def update(user_id: int, fields: dict) -> None:
        allowed = {k: v for k, v in fields.items()
                   if k in ("name", "last_name", "phone", "role", "email", "active")}
        if not allowed:
            return
        db = get_db()
        sets = ", ".join(f"{k} = ?" for k in allowed)
        try:
            db.execute(f"UPDATE users SET {sets} WHERE id = ?", (*allowed.values(), user_id))
        except sqlite3.IntegrityError as e:
            db.rollback()
            if is_unique_violation(e):
                raise AlreadyExistsError("El email ya está registrado") from e
            raise
        db.commit()

    @staticmethod
    def deactivate(user_id: int) -> None:
        db = get_db()
        db.execute("UPDATE users SET active = 0 WHERE id = ?", (user_id,))
        db.commit()

    @staticmethod
    def set_password(user_id: int, password: str) -> None:
        db = get_db()
        db.execute(
            "UPDATE users SET password_hash = ?, login_attempts = 0, locked_until = '' WHERE id = ?",
            (generate_password_hash(password), user_id),
        )
        db.commit()

    @staticmethod
    def ids_with_roles(institution_id: int, roles) -> list[int]:
        roles = list(roles)
        if not roles:
            return []
        db = get_db()
        marks = ", ".join("?" for _ in roles)
        rows = db.execute(
            f"SELECT id FROM users WHERE institution_id = ? AND active = 1 AND role IN ({marks}) ORDER BY id",
            (institution_id, *roles),
        ).fetchall()
        return [r["id"] for r in rows]

    @staticmethod
    def ids_for_institution(institution_id: int) -> list[int]:
        db = get_db()
        rows = db.execute(
            "SELECT id FROM users WHERE institution_id = ? AND active = 1 ORDER BY id",
            (institution_id,),
        ).fetchall()
        return [r["id"] for r in rows]

    @staticmethod
    def list_staff(institution_id: int) -> list[dict]:
        db = get_db()
        rows = db.execute(
            f"SELECT {UserStoreDB.PUBLIC_FIELDS} FROM users "
            "WHERE institution_id = ? AND role != 'estudiante' ORDER BY last_name, name",
            (institution_id,),
        ).fetchall()
        return [dict(r) for r in rows]


class AvailabilityStoreDB:
    """Staff presence. Users with no row read as ``disponible``."""

    STATUSES = ("disponible", "en_clase", "en_reunion", "ausente")

    @staticmethod
    def set(user_id: int, status: str) -> None:
        db = get_db()
        db.execute(
            "INSERT INTO user_availability (user_id, status, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(user_id) DO UPDATE SET status = excluded.status, updated_at = excluded.updated_at",
            (user_id, status, _now()),
        )
        db.commit()

    @staticmethod
    def for_institution(institution_id: int) -> dict[int, str]:
        db = get_db()
        rows = db.execute(
            "SELECT u.id, COALESCE(a.status, 'disponible') AS status FROM users u "
            "LEFT JOIN user_availability a ON a.user_id = u.id "
            "WHERE u.institution_id = ? AND u.role != 'estudiante' AND u.active = 1",
            (institution_id,),
        ).fetchall()
        return {r["id"]: r["status"] for r in rows}


class CourseStoreDB:
    @staticmethod
    def get(course_id: int, institution_id: int) -> Optional[dict]:
        db = get_db()
        row = db.execute(
            "SELECT * FROM courses WHERE id = ? AND institution_id = ?", (course_id, institution_id),
        ).fetchone()
        return dict(row) if row else None

    @staticmethod
    def list(institution_id: int) -> list[dict]:
        db = get_db()
        rows = db.execute(
            "SELECT * FROM courses WHERE institution_id = ? AND active = 1 ORDER BY name, section",
            (institution_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    @staticmethod
    def is_teacher_of(course_id: int, teacher_id: int) -> bool:
        db = get_db()
        row = db.execute(
            "SELECT 1 FROM course_teachers WHERE course_id = ? AND teacher_id = ?",
            (course_id, teacher_id),
        ).fetchone()
        return row is not None

    @staticmethod
    def list_all(institution_id: int) -> list[dict]:
        """Every course, inactive included, with its assigned teacher ids."""
        db = get_db()
        rows = db.execute(
            "SELECT c.*, GROUP_CONCAT(ct.teacher_id) AS teacher_ids FROM courses c "
            "LEFT JOIN course_teachers ct ON ct.course_id = c.id "
            "WHERE c.institution_id = ? GROUP BY c.id ORDER BY c.active DESC, c.name, c.section",
            (institution_id,),
        ).fetchall()
        courses = []
        for r in rows:
            course = dict(r)
            raw = course.pop("teacher_ids")
            course["teacher_ids"] = sorted(int(t) for t in raw.split(",")) if raw else []
            courses.append(course)
        return courses

    @staticmethod
    def create(institution_id: int, name: str, section: str = "", level: str = "") -> int:
        return _insert(
            "INSERT INTO courses (institution_id, name, section, level, active) VALUES (?, ?, ?, ?, 1)",
            (institution_id, name, section, level),
            "El curso ya existe.",
        )

    @staticmethod
    def update(course_id: int, fields: dict) -> None:
        allowed = {k: v for k, v in fields.items() if k in ("name", "section", "level", "active")}
        if not allowed:
            return
        db = get_db()
        sets = ", ".join(f"{k} = ?" for k in allowed)
        db.execute(f"UPDATE courses SET {sets} WHERE id = ?", (*allowed.values(), course_id))
        db.commit()

    @staticmethod
    def assign_teacher(course_id: int, teacher_id: int) -> bool:
        """Link a teacher to a course. Returns False when already assigned."""
        db = get_db()
        cur = db.execute(
            "INSERT OR IGNORE INTO course_teachers (course_id, teacher_id) VALUES (?, ?)",
            (course_id, teacher_id),
        )
        db.commit()
        return cur.rowcount == 1

    @staticmethod
    def unassign_teacher(course_id: int, teacher_id: int) -> bool:
        db = get_db()
        cur = db.execute(
            "DELETE FROM course_teachers WHERE course_id = ? AND teacher_id = ?", (course_id, teacher_id),
        )
        db.commit()
        return cur.rowcount == 1


class StudentStoreDB:
    @staticmethod
    def get(student_id: int, institution_id: int) -> Optional[dict]:
        db = get_db()
        row = db.execute(
            "SELECT * FROM students WHERE id = ? AND institution_id = ?", (student_id, institution_id),
        ).fetchone()
        return dict(row) if row else None

    @staticmethod
    def by_user(user_id: int) -> Optional[dict]:
        db = get_db()
        row = db.execute(
            "SELECT * FROM students WHERE user_id = ? AND active = 1", (user_id,),
        ).fetchone()
        return dict(row) if row else None

    @staticmethod
    def create(institution_id: int, name: str, last_name: str, *, user_id: int | None = None,
               course_id: int | None = None, rut: str = "", birthdate: str = "",
               guardian_name: str = "", guardian_phone: str = "", guardian_email: str = "") -> int:
        return _insert(
            "INSERT INTO students (institution_id, user_id, course_id, name, last_name, rut, "
            "birthdate, guardian_name, guardian_phone, guardian_email, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (institution_id, user_id, course_id, name, last_name, rut, birthdate,
             guardian_name, guardian_phone, guardian_email, _now()),
            "El estudiante ya existe.",
        )

    @staticmethod
    def list(institution_id: int, course_id: int | None = None) -> list[dict]:
        db = get_db()
        sql = "SELECT * FROM students WHERE institution_id = ? AND active = 1"
        params: list = [institution_id]
        if course_id is not None:
            sql += " AND course_id = ?"
            params.append(course_id)
        rows = db.execute(sql + " ORDER BY last_name, name", params).fetchall()
        return [dict(r) for r in rows]


# ── Emotional check-ins ──────────────────────────────────────────────


class EmotionalLogStoreDB:
    @staticmethod
    def insert(entry: dict) -> int:
        return _insert(
            "INSERT INTO emotional_logs (institution_id, student_id, emotion, intensity, "
            "stress_level, anxiety_level, reflection, type, week_number, year, log_date, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (entry["institution_id"], entry["student_id"], entry["emotion"], entry["intensity"],
             entry.get("stress_level"), entry.get("anxiety_level"), entry.get("reflection"),
             entry["type"], entry["week_number"], entry["year"], entry["log_date"],
             entry["created_at"]),
            "Ya registraste tu emoción de hoy.",
        )

    @staticmethod
    def get(log_id: int, institution_id: int) -> Optional[dict]:
        db = get_db()
        row = db.execute(
            "SELECT * FROM emotional_logs WHERE id = ? AND institution_id = ?", (log_id, institution_id),
        ).fetchone()
        return dict(row) if row else None

    @staticmethod
    def history(student_id: int, limit: int = 30) -> list[dict]:
        db = get_db()
        rows = db.execute(
            "SELECT * FROM emotional_logs WHERE student_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
            (student_id, limit),
        ).fetchall()
        return [dict(r) for r in rows]

    @staticmethod
    def page(institution_id: int, *, student_id: int | None = None,
             page: int = 1, limit: int = 20) -> tuple[list[dict], int]:
        db = get_db()
        where = "institution_id = ?"
        params: list = [institution_id]
        if student_id is not None:
            where += " AND student_id = ?"
            params.append(student_id)
        total = db.execute(
            f"SELECT COUNT(*) as cnt FROM emotional_logs WHERE {where}", params,
        ).fetchone()["cnt"]
        rows = db.execute(
            f"SELECT * FROM emotional_logs WHERE {where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            params + [limit, (page - 1) * limit],
        ).fetchall()
        return [dict(r) for r in rows], total

    @staticmethod
    def update(log_id: int, fields: dict) -> None:
        if not fields:
            return
        db = get_db()
        sets = ", ".join(f"{k} = ?" for k in fields)
        db.execute(f"UPDATE emotional_logs SET {sets} WHERE id = ?", (*fields.values(), log_id))
        db.commit()

    @staticmethod
    def delete(log_id: int) -> None:
        db = get_db()
        db.execute("DELETE FROM emotional_logs WHERE id = ?", (log_id,))
        db.commit()


class TeacherLogStoreDB:
    @staticmethod
    def insert(entry: dict) -> int:
        return _insert(
            "INSERT INTO teacher_logs (institution_id, teacher_id, course_id, energy_level, "
            "tags, notes, log_date, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (entry["institution_id"], entry["teacher_id"], entry["course_id"], entry["energy_level"],
             json.dumps(entry.get("tags") or []), entry.get("notes"), entry["log_date"],
             entry["created_at"]),
            "Ya registraste el clima de este curso hoy.",
        )

    @staticmethod
    def since(institution_id: int, since_date: str, course_id: int | None = None) -> list[dict]:
        db = get_db()
        sql = "SELECT * FROM teacher_logs WHERE institution_id = ? AND log_date >= ?"
        params: list = [institution_id, since_date]
        if course_id is not None:
            sql += " AND course_id = ?"
            params.append(course_id)
        rows = db.execute(sql + " ORDER BY log_date DESC, id DESC", params).fetchall()
        return [dict(r) for r in rows]


class PerceptionStoreDB:
    @staticmethod
    def insert(entry: dict) -> int:
        return _insert(
            "INSERT INTO teacher_student_perceptions (institution_id, teacher_id, student_id, "
            "wellbeing_score, indicators, notes, log_date, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (entry["institution_id"], entry["teacher_id"], entry["student_id"], entry["wellbeing_score"],
             json.dumps(entry.get("indicators") or []), entry.get("notes"), entry["log_date"],
             entry["created_at"]),
            "Ya registraste tu percepción de este estudiante hoy.",
        )

    @staticmethod
    def for_student(student_id: int, limit: int = 30) -> list[dict]:
        db = get_db()
        rows = db.execute(
            "SELECT * FROM teacher_student_perceptions WHERE student_id = ? "
            "ORDER BY created_at DESC, id DESC LIMIT ?",
            (student_id, limit),
        ).fetchall()
        return [dict(r) for r in rows]


# ── Alerts ───────────────────────────────────────────────────────────


@dataclass
class Alert:
    id: int
    institution_id: int
    student_id: int
    type: str
    description: str
    resolved: bool
    resolved_at: Optional[str]
    resolved_by: Optional[int]
    triggered_by: str
    created_at: str
    student_name: str = ""


class AlertStoreDB:
    @staticmethod
    def create(institution_id: int, student_id: int, type: str, description: str,
               triggered_by: str = "system") -> int:
        db = get_db()
        cur = db.execute(
            "INSERT INTO alerts (institution_id, student_id, type, description, triggered_by, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (institution_id, student_id, type, description, triggered_by, _now()),
        )
        db.commit()
        return cur.lastrowid

    @staticmethod
    def get(alert_id: int, institution_id: int) -> Optional[Alert]:
        db = get_db()
        row = db.execute(
            "SELECT a.*, s.name || ' ' || s.last_name AS student_name FROM alerts a "
            "JOIN students s ON s.id = a.student_id WHERE a.id = ? AND a.institution_id = ?",
            (alert_id, institution_id),
        ).fetchone()
        return AlertStoreDB._row_to_alert(row) if row else None

    @staticmethod
    def list(institution_id: int, *, resolved: bool | None = None, student_id: int | None = None,
             alert_types: tuple = (), page: int = 1, limit: int = 20) -> tuple[list[Alert], int]:
        db = get_db()
        where = ["a.institution_id = ?"]
        params: list = [institution_id]
        if resolved is not None:
            where.append("a.resolved = ?")
            params.append(1 if resolved else 0)
        if student_id is not None:
            where.append("a.student_id = ?")
            params.append(student_id)
        if alert_types:
            where.append(f"a.type IN ({', '.join('?' * len(alert_types))})")
            params.extend(alert_types)
        clause = " AND ".join(where)
        total = db.execute(f"SELECT COUNT(*) as cnt FROM alerts a WHERE {clause}", params).fetchone()["cnt"]
        rows = db.execute(
            "SELECT a.*, s.name || ' ' || s.last_name AS student_name FROM alerts a "
            f"JOIN students s ON s.id = a.student_id WHERE {clause} "
            "ORDER BY a.created_at DESC, a.id DESC LIMIT ? OFFSET ?",
            params + [limit, (page - 1) * limit],
        ).fetchall()
        return [AlertStoreDB._row_to_alert(r) for r in rows], total

    @staticmethod
    def count_open(institution_id: int) -> int:
        db = get_db()
        return db.execute(
            "SELECT COUNT(*) as cnt FROM alerts WHERE institution_id = ? AND resolved = 0",
            (institution_id,),
        ).fetchone()["cnt"]

    @staticmethod
    def resolve(alert_id: int, ctx) -> Alert:
        """Mark resolved. Already-resolved alerts are returned unchanged."""
        if not ctx.is_staff:
            raise NotAuthorizedError()
        alert = AlertStoreDB.get(alert_id, ctx.institution_id)
        if alert is None:
            raise NotFoundError("Alerta no encontrada.")
        if alert.resolved:
            return alert
        db = get_db()
        db.execute(
            "UPDATE alerts SET resolved = 1, resolved_at = ?, resolved_by = ? "
            "WHERE id = ? AND resolved = 0",
            (_now(), ctx.user_id, alert_id),
        )
        db.commit()
        return AlertStoreDB.get(alert_id, ctx.institution_id)

    @staticmethod
    def _row_to_alert(r) -> Alert:
        return Alert(
            id=r["id"], institution_id=r["institution_id"], student_id=r["student_id"],
            type=r["type"], description=r["description"], resolved=bool(r["resolved"]),
            resolved_at=r["resolved_at"], resolved_by=r["resolved_by"],
            triggered_by=r["triggered_by"], created_at=r["created_at"],
            student_name=(r["student_name"] or "").strip(),
        )


# ── Incidents (DEC) ──────────────────────────────────────────────────


class IncidentStoreDB:
    JSON_FIELDS = ("conduct_types", "triggers", "actions_taken")

    @staticmethod
    def next_folio(institution_id: int, year: int) -> str:
        db = get_db()
        prefix = f"DEC-{year}-"
        row = db.execute(
            "SELECT MAX(CAST(substr(folio, ?) AS INTEGER)) AS seq FROM incidents "
            "WHERE institution_id = ? AND folio LIKE ?",
            (len(prefix) + 1, institution_id, prefix + "%"),
        ).fetchone()
        seq = (row["seq"] or 0) + 1
        return f"{prefix}{seq:04d}"

    @staticmethod
    def create(entry: dict) -> int:
        return _insert(
            "INSERT INTO incidents (institution_id, student_id, reporter_id, folio, type, severity, "
            "location, context, conduct_types, triggers, actions_taken, description, "
            "guardian_contacted, incident_date, end_date, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (entry["institution_id"], entry["student_id"], entry["reporter_id"], entry["folio"],
             entry.get("type", "DEC"), entry["severity"], entry["location"], entry.get("context", ""),
             json.dumps(entry.get("conduct_types") or []), json.dumps(entry.get("triggers") or []),
             json.dumps(entry.get("actions_taken") or []), entry.get("description"),
             1 if entry.get("guardian_contacted") else 0, entry["incident_date"],
             entry.get("end_date"), _now()),
            "El folio ya existe.",
        )

    @staticmethod
    def get(incident_id: int, institution_id: int) -> Optional[dict]:
        db = get_db()
        row = db.execute(
            "SELECT * FROM incidents WHERE id = ? AND institution_id = ?", (incident_id, institution_id),
        ).fetchone()
        return IncidentStoreDB._row_to_dict(row) if row else None

    @staticmethod
    def list(institution_id: int, *, student_id: int | None = None, resolved: bool | None = None,
             page: int = 1, limit: int = 20) -> tuple[list[dict], int]:
        db = get_db()
        where = ["institution_id = ?"]
        params: list = [institution_id]
        if student_id is not None:
            where.append("student_id = ?")
            params.append(student_id)
        if resolved is not None:
            where.append("resolved = ?")
            params.append(1 if resolved else 0)
        clause = " AND ".join(where)
        total = db.execute(f"SELECT COUNT(*) as cnt FROM incidents WHERE {clause}", params).fetchone()["cnt"]
        rows = db.execute(
            f"SELECT * FROM incidents WHERE {clause} ORDER BY incident_date DESC, id DESC LIMIT ? OFFSET ?",
            params + [limit, (page - 1) * limit],
        ).fetchall()
        return [IncidentStoreDB._row_to_dict(r) for r in rows], total

    @staticmethod
    def update(incident_id: int, fields: dict) -> None:
        if not fields:
            return
        values = {
            k: (json.dumps(v) if k in IncidentStoreDB.JSON_FIELDS else v) for k, v in fields.items()
        }
        db = get_db()
        sets = ", ".join(f"{k} = ?" for k in values)
        db.execute(f"UPDATE incidents SET {sets} WHERE id = ?", (*values.values(), incident_id))
        db.commit()

    @staticmethod
    def resolve(incident_id: int, notes: str) -> None:
        db = get_db()
        db.execute(
            "UPDATE incidents SET resolved = 1, resolved_at = ?, resolution_notes = ? WHERE id = ?",
            (_now(), notes, incident_id),
        )
        db.commit()

    @staticmethod
    def delete(incident_id: int) -> None:
        db = get_db()
        db.execute("DELETE FROM incidents WHERE id = ?", (incident_id,))
        db.commit()

    @staticmethod
    def add_recipients(incident_id: int, recipients: list[tuple[int, str]]) -> None:
        db = get_db()
        db.executemany(
            "INSERT OR IGNORE INTO incident_recipients (incident_id, recipient_id, role) VALUES (?, ?, ?)",
            [(incident_id, rid, role) for rid, role in recipients],
        )
        db.commit()

    @staticmethod
    def recipients(incident_id: int) -> list[dict]:
        db = get_db()
        rows = db.execute(
            "SELECT recipient_id, role, seen, seen_at FROM incident_recipients WHERE incident_id = ? ORDER BY id",
            (incident_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    @staticmethod
    def mark_seen(incident_id: int, recipient_id: int) -> bool:
        db = get_db()
        cur = db.execute(
            "UPDATE incident_recipients SET seen = 1, seen_at = ? "
            "WHERE incident_id = ? AND recipient_id = ? AND seen = 0",
            (_now(), incident_id, recipient_id),
        )
        db.commit()
        return cur.rowcount > 0

    @staticmethod
    def _row_to_dict(r) -> dict:
        d = dict(r)
        for key in IncidentStoreDB.JSON_FIELDS:
            d[key] = json.loads(d[key]) if d[key] else []
        d["resolved"] = bool(d["resolved"])
        d["guardian_contacted"] = bool(d["guardian_contacted"])
        return d


class DerivationStoreDB:
    @staticmethod
    def create(institution_id: int, student_id: int, from_user_id: int, to_role: str, reason: str) -> int:
        db = get_db()
        cur = db.execute(
            "INSERT INTO case_derivations (institution_id, student_id, from_user_id, to_role, reason, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (institution_id, student_id, from_user_id, to_role, reason, _now()),
        )
        db.commit()
        return cur.lastrowid

    @staticmethod
    def for_student(student_id: int, institution_id: int) -> list[dict]:
        db = get_db()
        rows = db.execute(
            "SELECT * FROM case_derivations WHERE student_id = ? AND institution_id = ? "
            "ORDER BY created_at DESC, id DESC",
            (student_id, institution_id),
        ).fetchall()
        return [dict(r) for r in rows]


# ── Direct chat ──────────────────────────────────────────────────────


@dataclass
class Message:
    id: int
    conversation_id: int
    sender_id: int
    content: str
    meta: Optional[dict]
    created_at: str


class ConversationStoreDB:
    @staticmethod
    def get_or_create(institution_id: int, user_id: int, other_id: int) -> dict:
        """One row per unordered pair, stored as (low, high)."""
        low, high = sorted((user_id, other_id))
        db = get_db()
        db.execute(
            "INSERT OR IGNORE INTO conversations (institution_id, user_a, user_b, created_at) "
            "VALUES (?, ?, ?, ?)",
            (institution_id, low, high, _now()),
        )
        db.commit()
        row = db.execute(
            "SELECT * FROM conversations WHERE user_a = ? AND user_b = ?", (low, high),
        ).fetchone()
        return dict(row)

    @staticmethod
    def get(conversation_id: int) -> Optional[dict]:
        db = get_db()
        row = db.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
        return dict(row) if row else None

    @staticmethod
    def ids_for_user(user_id: int) -> list[int]:
        db = get_db()
        rows = db.execute(
            "SELECT id FROM conversations WHERE user_a = ? OR user_b = ? ORDER BY id",
            (user_id, user_id),
        ).fetchall()
        return [r["id"] for r in rows]

    @staticmethod
    def list_for_user(user_id: int) -> list[dict]:
        db = get_db()
        rows = db.execute(
            "SELECT c.id, c.created_at, "
            "CASE WHEN c.user_a = ? THEN c.user_b ELSE c.user_a END AS other_id, "
            "u.name AS other_name, u.last_name AS other_last_name, u.role AS other_role, "
            "(SELECT MAX(m.created_at) FROM messages m WHERE m.conversation_id = c.id) AS last_message_at "
            "FROM conversations c "
            "JOIN users u ON u.id = CASE WHEN c.user_a = ? THEN c.user_b ELSE c.user_a END "
            "WHERE c.user_a = ? OR c.user_b = ? "
            "ORDER BY COALESCE(last_message_at, c.created_at) DESC",
            (user_id, user_id, user_id, user_id),
        ).fetchall()
        return [dict(r) for r in rows]


class MessageStoreDB:
    @staticmethod
    def insert(conversation_id: int, sender_id: int, content: str, meta: dict | None = None) -> Message:
        db = get_db()
        now = _now()
        cur = db.execute(
            "INSERT INTO messages (conversation_id, sender_id, content, meta, created_at) VALUES (?, ?, ?, ?, ?)",
            (conversation_id, sender_id, content, json.dumps(meta) if meta is not None else None, now),
        )
        db.commit()
        return Message(cur.lastrowid, conversation_id, sender_id, content, meta, now)

    @staticmethod
    def list(conversation_id: int, limit: int = 200) -> list[Message]:
        db = get_db()
        rows = db.execute(
            "SELECT * FROM (SELECT * FROM messages WHERE conversation_id = ? "
            "ORDER BY created_at DESC, id DESC LIMIT ?) ORDER BY created_at ASC, id ASC",
            (conversation_id, limit),
        ).fetchall()
        return [
            Message(r["id"], r["conversation_id"], r["sender_id"], r["content"],
                    json.loads(r["meta"]) if r["meta"] else None, r["created_at"])
            for r in rows
        ]

    @staticmethod
    def unread_count(conversation_id: int, user_id: int) -> int:
        db = get_db()
        row = db.execute(
            "SELECT COUNT(*) as cnt FROM messages WHERE conversation_id = ? AND sender_id != ? "
            "AND created_at > COALESCE("
            "(SELECT last_read_at FROM message_reads WHERE conversation_id = ? AND user_id = ?), "
            "'1970-01-01')",
            (conversation_id, user_id, conversation_id, user_id),
        ).fetchone()
        return row["cnt"]


class MessageReadStoreDB:
    @staticmethod
    def upsert(conversation_id: int, user_id: int) -> str:
        now = _now()
        db = get_db()
        db.execute(
            "INSERT INTO message_reads (conversation_id, user_id, last_read_at) VALUES (?, ?, ?) "
            "ON CONFLICT(conversation_id, user_id) DO UPDATE SET last_read_at = excluded.last_read_at",
            (conversation_id, user_id, now),
        )
        db.commit()
        return now

    @staticmethod
    def get(conversation_id: int, user_id: int) -> Optional[str]:
        db = get_db()
        row = db.execute(
            "SELECT last_read_at FROM message_reads WHERE conversation_id = ? AND user_id = ?",
            (conversation_id, user_id),
        ).fetchone()
        return row["last_read_at"] if row else None


# ── Staff mailbox ────────────────────────────────────────────────────


@dataclass
class MailboxThread:
    id: int
    institution_id: int
    created_by: int
    subject: str
    status: str
    created_at: str
    updated_at: str


class MailboxStoreDB:
    @staticmethod
    def create_thread(institution_id: int, created_by: int, subject: str) -> int:
        now = _now()
        db = get_db()
        cur = db.execute(
            "INSERT INTO mailbox_threads (institution_id, created_by, subject, status, created_at, updated_at) "
            "VALUES (?, ?, ?, 'abierto', ?, ?)",
            (institution_id, created_by, subject, now, now),
        )
        db.commit()
        return cur.lastrowid

    @staticmethod
    def get_thread(thread_id: int, institution_id: int) -> Optional[MailboxThread]:
        db = get_db()
        row = db.execute(
            "SELECT * FROM mailbox_threads WHERE id = ? AND institution_id = ?", (thread_id, institution_id),
        ).fetchone()
        return MailboxThread(**dict(row)) if row else None

    @staticmethod
    def list_threads(institution_id: int, *, created_by: int | None = None,
                     status: str = "") -> list[MailboxThread]:
        db = get_db()
        sql = "SELECT * FROM mailbox_threads WHERE institution_id = ?"
        params: list = [institution_id]
        if created_by is not None:
            sql += " AND created_by = ?"
            params.append(created_by)
        if status:
            sql += " AND status = ?"
            params.append(status)
        rows = db.execute(sql + " ORDER BY updated_at DESC, id DESC", params).fetchall()
        return [MailboxThread(**dict(r)) for r in rows]

    @staticmethod
    def add_message(thread_id: int, sender_id: int, content: str) -> Optional[dict]:
        """Append a message unless the thread is closed. Returns None for a closed thread."""
        now = _now()
        db = get_db()
        cur = db.execute(
            "INSERT INTO mailbox_messages (thread_id, sender_id, content, created_at) "
            "SELECT ?, ?, ?, ? WHERE EXISTS "
            "(SELECT 1 FROM mailbox_threads WHERE id = ? AND status != 'cerrado')",
            (thread_id, sender_id, content, now, thread_id),
        )
        if cur.rowcount == 0:
            db.rollback()
            return None
        db.execute("UPDATE mailbox_threads SET updated_at = ? WHERE id = ?", (now, thread_id))
        db.commit()
        return {"id": cur.lastrowid, "thread_id": thread_id, "sender_id": sender_id,
                "content": content, "created_at": now}

    @staticmethod
    def messages(thread_id: int) -> list[dict]:
        db = get_db()
        rows = db.execute(
            "SELECT * FROM mailbox_messages WHERE thread_id = ? ORDER BY created_at ASC, id ASC",
            (thread_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    @staticmethod
    def set_status(thread_id: int, status: str, expected: str) -> bool:
        """Move the thread from ``expected`` to ``status``. False if it changed meanwhile."""
        db = get_db()
        cur = db.execute(
            "UPDATE mailbox_threads SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
            (status, _now(), thread_id, expected),
        )
        db.commit()
        return cur.rowcount == 1


# ── Modo Pulso ───────────────────────────────────────────────────────


class PulseStoreDB:
    @staticmethod
    def create_session(institution_id: int, activated_by: int, week_start: str, week_end: str) -> int:
        return _insert(
            "INSERT INTO pulse_sessions (institution_id, activated_by, week_start, week_end, active, created_at) "
            "VALUES (?, ?, ?, ?, 1, ?)",
            (institution_id, activated_by, week_start, week_end, _now()),
            "Ya existe una sesión activa para este período.",
        )

    @staticmethod
    def get(session_id: int, institution_id: int) -> Optional[dict]:
        db = get_db()
        row = db.execute(
            "SELECT * FROM pulse_sessions WHERE id = ? AND institution_id = ?", (session_id, institution_id),
        ).fetchone()
        return dict(row) if row else None

    @staticmethod
    def active(institution_id: int) -> Optional[dict]:
        db = get_db()
        row = db.execute(
            "SELECT * FROM pulse_sessions WHERE institution_id = ? AND active = 1", (institution_id,),
        ).fetchone()
        return dict(row) if row else None

    @staticmethod
    def list(institution_id: int) -> list[dict]:
        db = get_db()
        rows = db.execute(
            "SELECT * FROM pulse_sessions WHERE institution_id = ? ORDER BY week_start DESC, id DESC",
            (institution_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    @staticmethod
    def deactivate(session_id: int) -> None:
        db = get_db()
        db.execute("UPDATE pulse_sessions SET active = 0 WHERE id = ?", (session_id,))
        db.commit()

    @staticmethod
    def add_student_entry(session_id: int, institution_id: int, student_id: int,
                          energy_level: str, class_perception: str) -> int:
        return _insert(
            "INSERT INTO pulse_student_entries (pulse_session_id, institution_id, student_id, "
            "energy_level, class_perception, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            (session_id, institution_id, student_id, energy_level, class_perception, _now()),
            "Ya respondiste el pulso de esta semana.",
        )

    @staticmethod
    def add_teacher_entry(session_id: int, institution_id: int, teacher_id: int, course_id: int,
                          energy_level: str, tags: list[str], notes: str | None) -> int:
        return _insert(
            "INSERT INTO pulse_teacher_entries (pulse_session_id, institution_id, teacher_id, course_id, "
            "energy_level, tags, notes, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (session_id, institution_id, teacher_id, course_id, energy_level, json.dumps(tags), notes, _now()),
            "Ya registraste el pulso de este curso esta semana.",
        )

    @staticmethod
    def student_entries(session_id: int) -> list[dict]:
        db = get_db()
        rows = db.execute(
            "SELECT * FROM pulse_student_entries WHERE pulse_session_id = ? ORDER BY id", (session_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    @staticmethod
    def teacher_entries(session_id: int) -> list[dict]:
        db = get_db()
        rows = db.execute(
            "SELECT * FROM pulse_teacher_entries WHERE pulse_session_id = ? ORDER BY id", (session_id,),
        ).fetchall()
        return [dict(r) for r in rows]


# ── Notifications ────────────────────────────────────────────────────


@dataclass
class Notification:
    id: int
    type: str
    title: str
    message: str
    related_id: Optional[str]
    related_url: Optional[str]
    read: bool
    created_at: str


class NotificationStoreDB:
    """Per-recipient in-app notifications."""

    def __init__(self, user_id: int):
        self.user_id = user_id

    @staticmethod
    def create_many(institution_id: int, recipient_ids: list[int], type: str, title: str,
                    message: str = "", related_id: str | None = None,
                    related_url: str | None = None) -> list[tuple[int, int]]:
        """Insert one row per recipient. Returns (recipient_id, notification_id) pairs."""
        db = get_db()
        now = _now()
        created = []
        for rid in dict.fromkeys(recipient_ids):
            cur = db.execute(
                "INSERT INTO notifications (institution_id, recipient_id, type, title, message, "
                "related_id, related_url, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (institution_id, rid, type, title, message,
                 str(related_id) if related_id is not None else None, related_url, now),
            )
            created.append((rid, cur.lastrowid))
        db.commit()
        return created

    def recent(self, n: int = 30) -> list[Notification]:
        db = get_db()
        rows = db.execute(
            "SELECT * FROM notifications WHERE recipient_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
            (self.user_id, n),
        ).fetchall()
        return [self._row_to_notif(r) for r in rows]

    def unread_count(self) -> int:
        db = get_db()
        row = db.execute(
            "SELECT COUNT(*) as cnt FROM notifications WHERE recipient_id = ? AND read = 0",
            (self.user_id,),
        ).fetchone()
        return row["cnt"]

    def mark_read(self, notif_ids: list[int]) -> int:
        if not notif_ids:
            return 0
        db = get_db()
        marks = ", ".join("?" for _ in notif_ids)
        cur = db.execute(
            f"UPDATE notifications SET read = 1, read_at = ? WHERE recipient_id = ? AND read = 0 AND id IN ({marks})",
            (_now(), self.user_id, *notif_ids),
        )
        db.commit()
        return cur.rowcount

    def mark_all_read(self) -> int:
        db = get_db()
        cur = db.execute(
            "UPDATE notifications SET read = 1, read_at = ? WHERE recipient_id = ? AND read = 0",
            (_now(), self.user_id),
        )
        db.commit()
        return cur.rowcount

    def _row_to_notif(self, r) -> Notification:
        return Notification(
            id=r["id"], type=r["type"], title=r["title"], message=r["message"],
            related_id=r["related_id"], related_url=r["related_url"],
            read=bool(r["read"]), created_at=r["created_at"],
        )


# ── Points and rewards ───────────────────────────────────────────────


class PointsStoreDB:
    def __init__(self, student_id: int):
        self.student_id = student_id

    def add(self, institution_id: int, amount: int, reason: str) -> int:
        db = get_db()
        cur = db.execute(
            "INSERT INTO points (institution_id, student_id, amount, reason, created_at) VALUES (?, ?, ?, ?, ?)",
            (institution_id, self.student_id, amount, reason, _now()),
        )
        db.commit()
        return cur.lastrowid

    def earned(self) -> int:
        db = get_db()
        row = db.execute(
            "SELECT COALESCE(SUM(amount), 0) as total FROM points WHERE student_id = ?", (self.student_id,),
        ).fetchone()
        return row["total"]

    def spent(self) -> int:
        db = get_db()
        row = db.execute(
            "SELECT COALESCE(SUM(cost_points), 0) as total FROM student_rewards WHERE student_id = ?",
            (self.student_id,),
        ).fetchone()
        return row["total"]

    def balance(self) -> int:
        return self.earned() - self.spent()

    def history(self, limit: int = 50) -> list[dict]:
        db = get_db()
        rows = db.execute(
            "SELECT amount, reason, created_at FROM points WHERE student_id = ? "
            "ORDER BY created_at DESC, id DESC LIMIT ?",
            (self.student_id, limit),
        ).fetchall()
        return [dict(r) for r in rows]


class RewardStoreDB:
    @staticmethod
    def list(institution_id: int, include_inactive: bool = False) -> list[dict]:
        db = get_db()
        sql = "SELECT * FROM rewards WHERE institution_id = ?"
        if not include_inactive:
            sql += " AND active = 1"
        rows = db.execute(sql + " ORDER BY cost_points, name", (institution_id,)).fetchall()
        return [dict(r) for r in rows]

    @staticmethod
    def get(reward_id: int, institution_id: int) -> Optional[dict]:
        db = get_db()
        row = db.execute(
            "SELECT * FROM rewards WHERE id = ? AND institution_id = ?", (reward_id, institution_id),
        ).fetchone()
        return dict(row) if row else None

    @staticmethod
    def create(institution_id: int, name: str, type: str, cost_points: int) -> int:
        db = get_db()
        cur = db.execute(
            "INSERT INTO rewards (institution_id, name, type, cost_points) VALUES (?, ?, ?, ?)",
            (institution_id, name, type, cost_points),
        )
        db.commit()
        return cur.lastrowid

    @staticmethod
    def owned(student_id: int) -> list[dict]:
        db = get_db()
        rows = db.execute(
            "SELECT r.id, r.name, r.type, sr.cost_points, sr.created_at FROM student_rewards sr "
            "JOIN rewards r ON r.id = sr.reward_id WHERE sr.student_id = ? ORDER BY sr.created_at DESC",
            (student_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    @staticmethod
    def redeem(student_id: int, reward: dict) -> int:
        if PointsStoreDB(student_id).balance() < reward["cost_points"]:
            raise ValidationError("No tienes puntos suficientes.")
        return _insert(
            "INSERT INTO student_rewards (student_id, reward_id, cost_points, created_at) VALUES (?, ?, ?, ?)",
            (student_id, reward["id"], reward["cost_points"], _now()),
            "Ya tienes esta recompensa.",
        )


# ── PAEC ─────────────────────────────────────────────────────────────


class PaecStoreDB:
    SIGNERS = ("representative", "guardian")

    @staticmethod
    def create(entry: dict) -> int:
        now = _now()
        db = get_db()
        cur = db.execute(
            "INSERT INTO paec (institution_id, student_id, created_by, diagnosis, support_strategies, "
            "review_date, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (entry["institution_id"], entry["student_id"], entry["created_by"], entry.get("diagnosis", ""),
             json.dumps(entry.get("support_strategies") or []), entry.get("review_date"), now, now),
        )
        db.commit()
        return cur.lastrowid

    @staticmethod
    def get(paec_id: int, institution_id: int) -> Optional[dict]:
        db = get_db()
        row = db.execute(
            "SELECT * FROM paec WHERE id = ? AND institution_id = ?", (paec_id, institution_id),
        ).fetchone()
        return PaecStoreDB._row_to_dict(row) if row else None

    @staticmethod
    def list(institution_id: int, student_id: int | None = None) -> list[dict]:
        db = get_db()
        sql = "SELECT * FROM paec WHERE institution_id = ? AND active = 1"
        params: list = [institution_id]
        if student_id is not None:
            sql += " AND student_id = ?"
            params.append(student_id)
        rows = db.execute(sql + " ORDER BY updated_at DESC, id DESC", params).fetchall()
        return [PaecStoreDB._row_to_dict(r) for r in rows]

    @staticmethod
    def set_signature(paec_id: int, signer: str, signed: bool) -> None:
        if signer not in PaecStoreDB.SIGNERS:
            raise ValidationError("Firmante no válido.")
        now = _now()
        db = get_db()
        db.execute(
            f"UPDATE paec SET {signer}_signed = ?, {signer}_signed_at = ?, updated_at = ? WHERE id = ?",
            (1 if signed else 0, now if signed else None, now, paec_id),
        )
        db.commit()

    @staticmethod
    def update_followup(paec_id: int, *, requires_adjustments: bool, review_date: str | None,
                        followup_notes: str) -> None:
        db = get_db()
        db.execute(
            "UPDATE paec SET requires_adjustments = ?, review_date = ?, followup_notes = ?, updated_at = ? "
            "WHERE id = ?",
            (1 if requires_adjustments else 0, review_date, followup_notes, _now(), paec_id),
        )
        db.commit()

    @staticmethod
    def pending_review(institution_id: int, horizon: str) -> list[dict]:
        """Plans needing adjustments, due for review by ``horizon``, or missing a signature."""
        db = get_db()
        rows = db.execute(
            "SELECT * FROM paec WHERE institution_id = ? AND active = 1 AND ("
            "requires_adjustments = 1 OR (review_date IS NOT NULL AND review_date <= ?) "
            "OR representative_signed = 0 OR guardian_signed = 0) ORDER BY review_date, id",
            (institution_id, horizon),
        ).fetchall()
        return [PaecStoreDB._row_to_dict(r) for r in rows]

    @staticmethod
    def _row_to_dict(r) -> dict:
        d = dict(r)
        d["support_strategies"] = json.loads(d["support_strategies"]) if d["support_strategies"] else []
        for key in ("requires_adjustments", "representative_signed", "guardian_signed", "active"):
            d[key] = bool(d[key])
        return d
