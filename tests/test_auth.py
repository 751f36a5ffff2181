"""Tests for auth.py — login, logout, lockout and the current user."""

from datetime import datetime, timedelta


def _login(client, email="dupla@test.cl", password="Password123"):
    return client.post("/api/auth/login", json={"email": email, "password": password})


class TestLogin:
    def test_success(self, client):
        resp = _login(client)
        assert resp.status_code == 200
        user = resp.get_json()["user"]
        assert user["role"] == "dupla"
        assert user["institution_id"] == 1

    def test_email_is_case_insensitive(self, client):
        assert _login(client, email="  DUPLA@test.cl ").status_code == 200

    def test_wrong_password(self, client):
        resp = _login(client, password="incorrecta")
        assert resp.status_code == 401
        assert resp.get_json()["error"] == "Credenciales inválidas."

    def test_unknown_email(self, client):
        assert _login(client, email="nadie@test.cl").status_code == 401

    def test_missing_fields(self, client):
        assert client.post("/api/auth/login", json={"email": "dupla@test.cl"}).status_code == 400

    def test_inactive_user(self, client, db):
        db.execute("UPDATE users SET active = 0 WHERE id = 3")
        db.commit()
        assert _login(client).status_code == 401


class TestLockout:
    def test_locks_after_five_failures(self, client, db):
        for _ in range(5):
            assert _login(client, password="mala").status_code == 401
        resp = _login(client)
        assert resp.status_code == 429
        assert "bloqueada" in resp.get_json()["error"]
        row = db.execute("SELECT login_attempts, locked_until FROM users WHERE id = 3").fetchone()
        assert row["login_attempts"] == 5
        assert row["locked_until"]

    def test_expired_lock_allows_login(self, client, db):
        past = (datetime.now() - timedelta(minutes=1)).isoformat()
        db.execute("UPDATE users SET login_attempts = 5, locked_until = ? WHERE id = 3", (past,))
        db.commit()
        assert _login(client).status_code == 200
        row = db.execute("SELECT login_attempts FROM users WHERE id = 3").fetchone()
        assert row["login_attempts"] == 0

    def test_success_resets_attempts(self, client, db):
        _login(client, password="mala")
        _login(client)
        assert db.execute("SELECT login_attempts FROM users WHERE id = 3").fetchone()[0] == 0


class TestSession:
    def test_me(self, dupla_client):
        resp = dupla_client.get("/api/me")
        assert resp.status_code == 200
        assert resp.get_json()["user"]["email"] == "dupla@test.cl"

    def test_me_requires_login(self, client):
        resp = client.get("/api/me")
        assert resp.status_code == 401
        assert resp.get_json() == {"error": "No autorizado"}

    def test_logout(self, dupla_client):
        assert dupla_client.post("/api/auth/logout").get_json() == {"success": True}
        assert dupla_client.get("/api/me").status_code == 401

    def test_role_change_applies_without_relogin(self, dupla_client, db):
        assert dupla_client.get("/api/alerts").status_code == 200
        db.execute("UPDATE users SET role = 'docente' WHERE id = 3")
        db.commit()
        assert dupla_client.get("/api/alerts").status_code == 403
