"""Tests for points and the rewards catalogue."""

from __future__ import annotations

import pytest


@pytest.fixture
def reward(dupla_client):
    resp = dupla_client.post("/api/rewards", json={"name": "Marco dorado", "type": "frame", "cost_points": 20})
    assert resp.status_code == 201
    return resp.get_json()["reward"]


def _give_points(db, amount, student_id=1):
    db.execute(
        "INSERT INTO points (institution_id, student_id, amount, reason, created_at) "
        "VALUES (1, ?, ?, 'registro diario', '2026-04-01T09:00:00')",
        (student_id, amount),
    )
    db.commit()


class TestCatalogue:
    def test_create_audited(self, reward, db):
        assert reward["cost_points"] == 20
        assert db.execute(
            "SELECT COUNT(*) FROM admin_audit_logs WHERE entity_type = 'reward'"
        ).fetchone()[0] == 1

    @pytest.mark.parametrize("payload", [
        {"name": "", "type": "frame", "cost_points": 5},
        {"name": "X", "type": "sticker", "cost_points": 5},
        {"name": "X", "type": "frame", "cost_points": -1},
        {"name": "X", "type": "frame", "cost_points": "mucho"},
    ])
    def test_validation(self, dupla_client, payload):
        assert dupla_client.post("/api/rewards", json=payload).status_code == 400

    def test_student_cannot_create(self, student_client):
        resp = student_client.post("/api/rewards", json={"name": "X", "type": "frame", "cost_points": 1})
        assert resp.status_code == 403

    def test_student_listing_includes_owned(self, reward, student_client):
        data = student_client.get("/api/rewards").get_json()
        assert [r["name"] for r in data["rewards"]] == ["Marco dorado"]
        assert data["owned"] == []


class TestRedeem:
    def test_redeem(self, reward, student_client, db):
        _give_points(db, 30)
        resp = student_client.post(f"/api/rewards/{reward['id']}/redeem")
        assert resp.status_code == 201
        assert resp.get_json()["balance"] == 10
        points = student_client.get("/api/points").get_json()
        assert points == {
            "balance": 10, "earned": 30, "spent": 20,
            "history": [{"amount": 30, "reason": "registro diario", "created_at": "2026-04-01T09:00:00"}],
        }

    def test_insufficient_points(self, reward, student_client, db):
        _give_points(db, 5)
        resp = student_client.post(f"/api/rewards/{reward['id']}/redeem")
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "No tienes puntos suficientes."

    def test_cannot_redeem_twice(self, reward, student_client, db):
        _give_points(db, 100)
        student_client.post(f"/api/rewards/{reward['id']}/redeem")
        resp = student_client.post(f"/api/rewards/{reward['id']}/redeem")
        assert resp.status_code == 409
        assert student_client.get("/api/points").get_json()["balance"] == 80

    def test_unknown_reward(self, student_client):
        assert student_client.post("/api/rewards/999/redeem").status_code == 404

    def test_points_for_students_only(self, dupla_client):
        assert dupla_client.get("/api/points").status_code == 403
