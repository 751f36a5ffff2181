"""Tests for PAEC support plans — signatures, follow-up and the pending-review list."""

from __future__ import annotations

from datetime import date, timedelta

import pytest


@pytest.fixture
def plan(dupla_client):
    resp = dupla_client.post("/api/paec", json={
        "student_id": 1,
        "diagnosis": "TEA",
        "support_strategies": ["Anticipar cambios", "Espacio de calma"],
        "review_date": (date.today() + timedelta(days=90)).isoformat(),
    })
    assert resp.status_code == 201
    return resp.get_json()["paec"]


def _sign_both(client, plan_id):
    for signer in ("representative", "guardian"):
        client.post(f"/api/paec/{plan_id}/sign", json={"signer": signer})


class TestCreate:
    def test_create(self, plan, db):
        assert plan["support_strategies"] == ["Anticipar cambios", "Espacio de calma"]
        assert plan["representative_signed"] is False
        assert db.execute("SELECT action FROM admin_audit_logs").fetchone()["action"] == "create"

    def test_invalid_review_date(self, dupla_client):
        resp = dupla_client.post("/api/paec", json={"student_id": 1, "review_date": "mañana"})
        assert resp.status_code == 400

    def test_unknown_student(self, dupla_client):
        assert dupla_client.post("/api/paec", json={"student_id": 20}).status_code == 404

    def test_list_by_student(self, plan, dupla_client):
        assert len(dupla_client.get("/api/paec?student_id=1").get_json()["paec"]) == 1
        assert dupla_client.get("/api/paec?student_id=2").get_json()["paec"] == []

    def test_teachers_forbidden(self, teacher_client):
        assert teacher_client.get("/api/paec").status_code == 403


class TestSignatures:
    def test_sign_and_unsign(self, plan, dupla_client, db):
        signed = dupla_client.post(f"/api/paec/{plan['id']}/sign", json={"signer": "guardian"}).get_json()["paec"]
        assert signed["guardian_signed"] is True
        assert signed["guardian_signed_at"]
        unsigned = dupla_client.post(f"/api/paec/{plan['id']}/unsign",
                                     json={"signer": "guardian"}).get_json()["paec"]
        assert unsigned["guardian_signed"] is False
        assert unsigned["guardian_signed_at"] is None
        actions = [r[0] for r in db.execute("SELECT action FROM admin_audit_logs ORDER BY id")]
        assert actions == ["create", "sign", "unsign"]

    def test_invalid_signer(self, plan, dupla_client):
        resp = dupla_client.post(f"/api/paec/{plan['id']}/sign", json={"signer": "director"})
        assert resp.status_code == 400


class TestPending:
    def test_unsigned_plan_is_pending(self, plan, dupla_client):
        pending = dupla_client.get("/api/paec/pending").get_json()["paec"]
        assert [p["id"] for p in pending] == [plan["id"]]

    def test_signed_plan_with_distant_review_is_not_pending(self, plan, dupla_client):
        _sign_both(dupla_client, plan["id"])
        assert dupla_client.get("/api/paec/pending").get_json()["paec"] == []

    def test_followup_brings_plan_back(self, plan, dupla_client):
        _sign_both(dupla_client, plan["id"])
        resp = dupla_client.patch(f"/api/paec/{plan['id']}/followup", json={
            "requires_adjustments": True, "followup_notes": "Revisar estrategias",
        })
        updated = resp.get_json()["paec"]
        assert updated["requires_adjustments"] is True
        assert updated["followup_notes"] == "Revisar estrategias"
        assert updated["review_date"] == plan["review_date"]
        assert len(dupla_client.get("/api/paec/pending").get_json()["paec"]) == 1

    def test_review_inside_horizon(self, plan, dupla_client):
        _sign_both(dupla_client, plan["id"])
        soon = (date.today() + timedelta(days=10)).isoformat()
        dupla_client.patch(f"/api/paec/{plan['id']}/followup", json={"review_date": soon})
        assert len(dupla_client.get("/api/paec/pending").get_json()["paec"]) == 1
