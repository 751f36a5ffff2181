"""Tests for alert listing, manual alerts and resolution."""

from __future__ import annotations

import pytest

from db_stores import AlertStoreDB
from errors import NotAuthorizedError, NotFoundError


@pytest.fixture
def alert_id(db):
    cur = db.execute(
        "INSERT INTO alerts (institution_id, student_id, type, description, triggered_by, created_at) "
        "VALUES (1, 1, 'registros_negativos', 'racha', 'system', '2026-03-01T09:00:00')"
    )
    db.commit()
    return cur.lastrowid


class TestResolve:
    def test_resolve_sets_fields(self, dupla_client, alert_id):
        resp = dupla_client.post(f"/api/alerts/{alert_id}/resolve")
        assert resp.status_code == 200
        alert = resp.get_json()["alert"]
        assert alert["resolved"] is True
        assert alert["resolved_by"] == 3
        assert alert["resolved_at"]

    def test_resolve_is_idempotent(self, dupla_client, director_client, alert_id):
        first = dupla_client.post(f"/api/alerts/{alert_id}/resolve").get_json()["alert"]
        second = director_client.post(f"/api/alerts/{alert_id}/resolve")
        assert second.status_code == 200
        assert second.get_json()["alert"]["resolved_at"] == first["resolved_at"]
        assert second.get_json()["alert"]["resolved_by"] == 3

    def test_store_requires_staff(self, app_ctx, ctx, alert_id):
        with pytest.raises(NotAuthorizedError):
            AlertStoreDB.resolve(alert_id, ctx(5))

    def test_store_scopes_by_institution(self, app_ctx, ctx, alert_id):
        with pytest.raises(NotFoundError):
            AlertStoreDB.resolve(alert_id, ctx(20))

    def test_docente_forbidden(self, teacher_client, alert_id):
        assert teacher_client.post(f"/api/alerts/{alert_id}/resolve").status_code == 403

    def test_unknown_alert(self, dupla_client):
        resp = dupla_client.post("/api/alerts/999/resolve")
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "Alerta no encontrada."


class TestListing:
    def test_filters(self, dupla_client, alert_id, db):
        db.execute(
            "INSERT INTO alerts (institution_id, student_id, type, description, triggered_by, resolved, created_at) "
            "VALUES (1, 2, 'sin_registro', 'x', 'system', 1, '2026-03-02T09:00:00')"
        )
        db.commit()
        data = dupla_client.get("/api/alerts").get_json()
        assert data["pagination"]["total"] == 2
        assert data["alerts"][0]["student_name"] == "Martín Rojas"

        open_only = dupla_client.get("/api/alerts?resolved=0").get_json()["alerts"]
        assert [a["id"] for a in open_only] == [alert_id]
        by_type = dupla_client.get("/api/alerts?type=sin_registro").get_json()["alerts"]
        assert [a["student_id"] for a in by_type] == [2]

    def test_other_institution_hidden(self, other_admin_client, alert_id):
        assert other_admin_client.get("/api/alerts").get_json()["alerts"] == []
        assert other_admin_client.get(f"/api/alerts/{alert_id}").status_code == 404

    def test_student_forbidden(self, student_client):
        assert student_client.get("/api/alerts").status_code == 403


class TestManualAlert:
    def test_staff_creates_alert(self, director_client, db):
        resp = director_client.post("/api/alerts", json={
            "type": "sin_registro", "student_id": 2, "description": "No registra hace una semana",
        })
        assert resp.status_code == 201
        alert = resp.get_json()["alert"]
        assert alert["student_name"] == "Martín Rojas"
        assert alert["resolved"] is False
        row = db.execute("SELECT * FROM alerts").fetchone()
        assert row["id"] == alert["id"]
        assert row["triggered_by"] == "2"
        assert row["description"] == "No registra hace una semana"

    def test_invalid_type(self, director_client):
        resp = director_client.post("/api/alerts", json={"type": "otra", "student_id": 2})
        assert resp.status_code == 400

    def test_student_from_other_institution(self, director_client):
        resp = director_client.post("/api/alerts", json={"type": "sin_registro", "student_id": 20})
        assert resp.status_code == 404

    def test_create_then_resolve_leaves_one_row(self, director_client, dupla_client, db):
        created = director_client.post("/api/alerts", json={"type": "sin_registro", "student_id": 2})
        alert_id = created.get_json()["alert"]["id"]
        resolved = dupla_client.post(f"/api/alerts/{alert_id}/resolve").get_json()["alert"]
        assert resolved["resolved"] is True
        rows = db.execute("SELECT id, resolved FROM alerts").fetchall()
        assert [(r["id"], r["resolved"]) for r in rows] == [(alert_id, 1)]

    def test_store_failure_reaches_caller(self, director_client, db, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("alerts table unavailable")

        monkeypatch.setattr(AlertStoreDB, "create", staticmethod(broken))
        resp = director_client.post("/api/alerts", json={"type": "sin_registro", "student_id": 2})
        assert resp.status_code == 500
        assert "alert" not in resp.get_json()
        assert db.execute("SELECT COUNT(*) FROM alerts").fetchone()[0] == 0


@pytest.fixture
def one_of_each(db):
    for alert_type in ("registros_negativos", "discrepancia_docente", "dec_repetido",
                       "sin_registro", "mental_health_concern"):
        db.execute(
            "INSERT INTO alerts (institution_id, student_id, type, description, triggered_by, created_at) "
            "VALUES (1, 1, ?, 'x', 'system', '2026-03-01T09:00:00')", (alert_type,),
        )
    db.commit()


class TestRoleInbox:
    @staticmethod
    def _types(client, query=""):
        return sorted(a["type"] for a in client.get(f"/api/alerts{query}").get_json()["alerts"])

    def test_dupla_default(self, dupla_client, one_of_each):
        assert self._types(dupla_client) == [
            "discrepancia_docente", "mental_health_concern", "registros_negativos", "sin_registro",
        ]

    def test_convivencia_default(self, convivencia_client, one_of_each):
        assert self._types(convivencia_client) == ["dec_repetido", "registros_negativos"]

    def test_director_sees_everything(self, director_client, one_of_each):
        assert len(self._types(director_client)) == 5

    def test_scope_all_and_explicit_type(self, convivencia_client, one_of_each):
        assert len(self._types(convivencia_client, "?scope=all")) == 5
        assert self._types(convivencia_client, "?type=sin_registro") == ["sin_registro"]
