"""Tests for the notification inbox routes."""

from __future__ import annotations

import pytest


@pytest.fixture
def notifications(db):
    ids = []
    for i in range(3):
        cur = db.execute(
            "INSERT INTO notifications (institution_id, recipient_id, type, title, created_at) "
            "VALUES (1, 3, 'derivacion', ?, ?)",
            (f"Aviso {i}", f"2026-04-0{i + 1}T10:00:00"),
        )
        ids.append(cur.lastrowid)
    db.execute(
        "INSERT INTO notifications (institution_id, recipient_id, type, title, created_at) "
        "VALUES (1, 4, 'derivacion', 'Ajeno', '2026-04-01T10:00:00')"
    )
    db.commit()
    return ids


class TestInbox:
    def test_recent_first(self, dupla_client, notifications):
        data = dupla_client.get("/api/notifications").get_json()
        assert [n["title"] for n in data["notifications"]] == ["Aviso 2", "Aviso 1", "Aviso 0"]
        assert data["unread_count"] == 3
        assert data["notifications"][0]["read"] is False

    def test_requires_login(self, client):
        assert client.get("/api/notifications").status_code == 401


class TestMarkRead:
    def test_by_ids(self, dupla_client, notifications):
        resp = dupla_client.post("/api/notifications/read", json={"ids": notifications[:2]})
        assert resp.get_json()["updated"] == 2
        assert resp.get_json()["unread_count"] == 1

    def test_all(self, dupla_client, notifications, db):
        resp = dupla_client.post("/api/notifications/read", json={"ids": "all"})
        assert resp.get_json()["updated"] == 3
        assert db.execute("SELECT read FROM notifications WHERE recipient_id = 4").fetchone()[0] == 0

    def test_all_flag(self, dupla_client, notifications):
        assert dupla_client.post("/api/notifications/read", json={"all": True}).get_json()["unread_count"] == 0

    def test_other_users_rows_untouched(self, dupla_client, notifications, db):
        other = db.execute("SELECT id FROM notifications WHERE recipient_id = 4").fetchone()[0]
        resp = dupla_client.post("/api/notifications/read", json={"ids": [other]})
        assert resp.get_json()["updated"] == 0

    @pytest.mark.parametrize("payload", [{}, {"ids": "x"}, {"ids": ["abc"]}])
    def test_invalid_payload(self, dupla_client, payload):
        assert dupla_client.post("/api/notifications/read", json=payload).status_code == 400
