"""Tests for checkins.py — emotional logs, climate logs, perceptions and points."""

from __future__ import annotations

import pytest


class TestEmotionalLog:
    def test_daily_log_awards_points(self, student_client, db):
        resp = student_client.post("/api/checkin", json={"emotion": "bien", "intensity": 4})
        assert resp.status_code == 201
        log = resp.get_json()["log"]
        assert log["emotion"] == "bien"
        assert log["points_awarded"] == 10
        row = db.execute("SELECT amount, reason FROM points WHERE student_id = 1").fetchone()
        assert (row["amount"], row["reason"]) == (10, "daily_log")

    def test_reflection_bonus(self, student_client, db):
        resp = student_client.post("/api/checkin", json={
            "emotion": "neutral", "intensity": 3, "reflection": "  día normal  ",
        })
        log = resp.get_json()["log"]
        assert log["points_awarded"] == 15
        assert log["reflection"] == "día normal"
        row = db.execute("SELECT reason FROM points WHERE student_id = 1").fetchone()
        assert row["reason"] == "daily_log_with_reflection"

    def test_second_daily_log_same_day_rejected(self, student_client, db):
        student_client.post("/api/checkin", json={"emotion": "bien", "intensity": 4})
        resp = student_client.post("/api/checkin", json={"emotion": "mal", "intensity": 2})
        assert resp.status_code == 409
        assert resp.get_json()["error"] == "Ya registraste tu emoción de hoy."
        assert db.execute("SELECT COUNT(*) FROM emotional_logs").fetchone()[0] == 1
        assert db.execute("SELECT COUNT(*) FROM points").fetchone()[0] == 1

    def test_weekly_log_alongside_daily(self, student_client):
        student_client.post("/api/checkin", json={"emotion": "bien", "intensity": 4})
        resp = student_client.post("/api/checkin", json={"emotion": "bien", "intensity": 4, "type": "weekly"})
        assert resp.status_code == 201

    @pytest.mark.parametrize("payload", [
        {"emotion": "feliz", "intensity": 3},
        {"emotion": "bien"},
        {"emotion": "bien", "intensity": 6},
        {"emotion": "bien", "intensity": 3, "stress_level": 0},
        {"emotion": "bien", "intensity": 3, "type": "monthly"},
    ])
    def test_validation(self, student_client, payload):
        resp = student_client.post("/api/checkin", json=payload)
        assert resp.status_code == 400
        assert "error" in resp.get_json()

    def test_only_students(self, teacher_client):
        resp = teacher_client.post("/api/checkin", json={"emotion": "bien", "intensity": 4})
        assert resp.status_code == 403

    def test_history(self, student_client, seed_daily_logs):
        seed_daily_logs(1, [(2, "mal"), (1, "bien")])
        resp = student_client.get("/api/checkin/history")
        logs = resp.get_json()["logs"]
        assert [log["emotion"] for log in logs] == ["bien", "mal"]

    def test_staff_listing_paginated(self, dupla_client, seed_daily_logs):
        seed_daily_logs(1, [(3, "mal"), (2, "mal"), (1, "bien")])
        resp = dupla_client.get("/api/emotional-logs?limit=2")
        data = resp.get_json()
        assert len(data["logs"]) == 2
        assert data["pagination"]["total"] == 3
        assert data["pagination"]["pages"] == 2


class TestAdminLogEdits:
    def test_update_is_audited(self, admin_client, db, seed_daily_logs):
        seed_daily_logs(1, [(1, "mal")])
        log_id = db.execute("SELECT id FROM emotional_logs").fetchone()["id"]
        resp = admin_client.patch(f"/api/admin/emotional-logs/{log_id}", json={"emotion": "neutral"})
        assert resp.status_code == 200
        assert resp.get_json()["log"]["emotion"] == "neutral"

        audit = db.execute("SELECT * FROM admin_audit_logs WHERE entity_type = 'emotional_log'").fetchone()
        assert audit["action"] == "update"
        assert '"mal"' in audit["before_data"]
        assert '"neutral"' in audit["after_data"]

    def test_delete_is_audited(self, admin_client, db, seed_daily_logs):
        seed_daily_logs(1, [(1, "mal")])
        log_id = db.execute("SELECT id FROM emotional_logs").fetchone()["id"]
        resp = admin_client.delete(f"/api/admin/emotional-logs/{log_id}")
        assert resp.status_code == 200
        assert db.execute("SELECT COUNT(*) FROM emotional_logs").fetchone()[0] == 0
        assert db.execute(
            "SELECT action FROM admin_audit_logs WHERE entity_type = 'emotional_log'"
        ).fetchone()["action"] == "delete"

    def test_non_admin_forbidden(self, dupla_client, db, seed_daily_logs):
        seed_daily_logs(1, [(1, "mal")])
        log_id = db.execute("SELECT id FROM emotional_logs").fetchone()["id"]
        assert dupla_client.delete(f"/api/admin/emotional-logs/{log_id}").status_code == 403


class TestTeacherClimate:
    def test_record_climate(self, teacher_client):
        resp = teacher_client.post("/api/teacher/climate", json={
            "course_id": 1, "energy_level": "inquieta", "tags": ["Participativos"],
        })
        assert resp.status_code == 201
        assert resp.get_json()["log"]["tags"] == ["Participativos"]

    def test_one_per_course_per_day(self, teacher_client):
        teacher_client.post("/api/teacher/climate", json={"course_id": 1, "energy_level": "regulada"})
        resp = teacher_client.post("/api/teacher/climate", json={"course_id": 1, "energy_level": "apatica"})
        assert resp.status_code == 409
        assert resp.get_json()["error"] == "Ya registraste el clima de este curso hoy."

    def test_max_two_tags(self, teacher_client):
        resp = teacher_client.post("/api/teacher/climate", json={
            "course_id": 1, "energy_level": "regulada",
            "tags": ["Participativos", "Colaborativos", "Trabajadores / Enfocados"],
        })
        assert resp.status_code == 400

    def test_unassigned_course_forbidden(self, teacher_client, db):
        db.execute("INSERT INTO courses (id, institution_id, name, section) VALUES (2, 1, '2° Medio', 'B')")
        db.commit()
        resp = teacher_client.post("/api/teacher/climate", json={"course_id": 2, "energy_level": "regulada"})
        assert resp.status_code == 403


class TestPerceptions:
    def test_one_per_student_per_day(self, teacher_client):
        teacher_client.post("/api/teacher/perceptions", json={"student_id": 2, "wellbeing_score": 4})
        resp = teacher_client.post("/api/teacher/perceptions", json={"student_id": 2, "wellbeing_score": 3})
        assert resp.status_code == 409

    def test_max_three_indicators(self, teacher_client):
        resp = teacher_client.post("/api/teacher/perceptions", json={
            "student_id": 2, "wellbeing_score": 3,
            "indicators": [
                "Parece triste o desanimado", "Está aislado socialmente",
                "Cambio de conducta reciente", "Problemas de concentración",
            ],
        })
        assert resp.status_code == 400

    def test_student_from_other_institution(self, teacher_client):
        resp = teacher_client.post("/api/teacher/perceptions", json={"student_id": 20, "wellbeing_score": 3})
        assert resp.status_code == 404

    def test_listing_decodes_indicators(self, teacher_client, dupla_client):
        teacher_client.post("/api/teacher/perceptions", json={
            "student_id": 2, "wellbeing_score": 3, "indicators": ["Bien integrado al curso"],
        })
        resp = dupla_client.get("/api/students/2/perceptions")
        assert resp.get_json()["perceptions"][0]["indicators"] == ["Bien integrado al curso"]
