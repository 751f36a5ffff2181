"""
Test fixtures for Bienestar Escolar.

Provides app, client, per-role logged-in clients and a db fixture backed by
file-based SQLite. Seeded data:

    institution 1   "Liceo Test"
      users         1 admin, 2 director, 3 dupla, 4 convivencia,
                    5 docente, 6 estudiante, 7 inspector
      course 1      "1° Medio A", taught by user 5
      students      1 (linked to user 6), 2 (no login), both in course 1
    institution 2   "Otro Colegio" with admin user 20 and student 20
"""

from __future__ import annotations

import sqlite3
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

PASSWORD = "Password123"

USERS = [
    # id, institution, role, name, last_name, email
    (1, 1, "admin", "Ana", "Admin", "admin@test.cl"),
    (2, 1, "director", "Diego", "Director", "director@test.cl"),
    (3, 1, "dupla", "Daniela", "Dupla", "dupla@test.cl"),
    (4, 1, "convivencia", "Carla", "Convivencia", "convivencia@test.cl"),
    (5, 1, "docente", "Tomás", "Docente", "docente@test.cl"),
    (6, 1, "estudiante", "Sofía", "Pérez", "estudiante@test.cl"),
    (7, 1, "inspector", "Iván", "Inspector", "inspector@test.cl"),
    (20, 2, "admin", "Otro", "Admin", "otro@test.cl"),
]


@pytest.fixture
def app(tmp_path):
    """Create app with file-based SQLite for testing."""
    from app import create_app

    db_file = str(tmp_path / "test.db")
    app = create_app({
        "TESTING": True,
        "DATABASE": db_file,
        "SECRET_KEY": "test-secret-key",
        "WTF_CSRF_ENABLED": False,
        "REDIS_URL": "",
    })

    with app.app_context():
        from database import init_db, run_migrations, get_db
        from werkzeug.security import generate_password_hash

        init_db()
        run_migrations()
        app._db_initialized = True

        db = get_db()
        db.execute("INSERT INTO institutions (id, name, code) VALUES (1, 'Liceo Test', 'LT1')")
        db.execute("INSERT INTO institutions (id, name, code) VALUES (2, 'Otro Colegio', 'OC2')")
        password_hash = generate_password_hash(PASSWORD)
        for uid, inst, role, name, last_name, email in USERS:
            db.execute(
                "INSERT INTO users (id, institution_id, role, name, last_name, email, password_hash, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, '2026-01-01')",
                (uid, inst, role, name, last_name, email, password_hash),
            )
        db.execute("INSERT INTO courses (id, institution_id, name, section) VALUES (1, 1, '1° Medio', 'A')")
        db.execute("INSERT INTO course_teachers (course_id, teacher_id) VALUES (1, 5)")
        db.execute(
            "INSERT INTO students (id, institution_id, user_id, course_id, name, last_name) "
            "VALUES (1, 1, 6, 1, 'Sofía', 'Pérez')"
        )
        db.execute(
            "INSERT INTO students (id, institution_id, course_id, name, last_name) "
            "VALUES (2, 1, 1, 'Martín', 'Rojas')"
        )
        db.execute(
            "INSERT INTO students (id, institution_id, name, last_name) VALUES (20, 2, 'Lucas', 'Soto')"
        )
        db.commit()

    yield app

    from realtime import release_all_trackers
    from risk_detector import set_detector
    release_all_trackers()
    set_detector(None)


@pytest.fixture
def client(app):
    """Unauthenticated test client."""
    return app.test_client()


def _login(app, email):
    client = app.test_client()
    resp = client.post("/api/auth/login", json={"email": email, "password": PASSWORD})
    assert resp.status_code == 200, resp.get_json()
    return client


@pytest.fixture
def admin_client(app):
    return _login(app, "admin@test.cl")


@pytest.fixture
def director_client(app):
    return _login(app, "director@test.cl")


@pytest.fixture
def dupla_client(app):
    return _login(app, "dupla@test.cl")


@pytest.fixture
def convivencia_client(app):
    return _login(app, "convivencia@test.cl")


@pytest.fixture
def teacher_client(app):
    return _login(app, "docente@test.cl")


@pytest.fixture
def student_client(app):
    return _login(app, "estudiante@test.cl")


@pytest.fixture
def inspector_client(app):
    return _login(app, "inspector@test.cl")


@pytest.fixture
def other_admin_client(app):
    """Admin of institution 2."""
    return _login(app, "otro@test.cl")


@pytest.fixture
def db(app):
    """Direct connection to the test database file, outside any app context."""
    conn = sqlite3.connect(app.config["DATABASE"])
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    yield conn
    conn.close()


@pytest.fixture
def app_ctx(app):
    """Pushed app context for calling services and stores directly."""
    with app.app_context():
        yield app


@pytest.fixture
def ctx():
    """Build a RequestContext for a seeded user id."""
    from auth import RequestContext

    by_id = {u[0]: u for u in USERS}

    def make(user_id):
        uid, inst, role, *_ = by_id[user_id]
        return RequestContext(user_id=uid, role=role, institution_id=inst)
    return make


@pytest.fixture
def seed_daily_logs(db):
    """Insert past daily logs for a student: seed(student_id, [(days_ago, emotion), ...])."""
    from datetime import date, datetime, timedelta

    def seed(student_id, entries):
        for days_ago, emotion in entries:
            day = date.today() - timedelta(days=days_ago)
            created = datetime.combine(day, datetime.min.time()).replace(hour=9).isoformat()
            db.execute(
                "INSERT INTO emotional_logs (institution_id, student_id, emotion, intensity, type, "
                "log_date, week_number, year, created_at) VALUES (1, ?, ?, 3, 'daily', ?, ?, ?, ?)",
                (student_id, emotion, day.isoformat(), day.isocalendar()[1], day.year, created),
            )
        db.commit()
    return seed
