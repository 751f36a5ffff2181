"""
Authentication with per-account login lockout.

Provides JSON login, logout and current-user routes.
Uses werkzeug.security for password hashing.

Role and institution are looked up from the users row on every request
(via the user loader), never stored in the session cookie.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import Blueprint, jsonify, request
from flask_login import LoginManager, UserMixin, login_required, login_user, logout_user, current_user
from werkzeug.security import check_password_hash

from database import get_db
from extensions import limiter
from audit import log_event

LOCKOUT_THRESHOLD = 5
LOCKOUT_MINUTES = 15

ROLES = ("admin", "director", "inspector", "utp", "convivencia", "dupla", "docente", "estudiante")
STAFF_ROLES = frozenset({"admin", "dupla", "convivencia", "director", "inspector", "utp"})

auth_bp = Blueprint("auth", __name__)
login_manager = LoginManager()


@dataclass(frozen=True)
class RequestContext:
    """Who is acting, resolved once per request and passed to every service call."""

    user_id: int
    role: str
    institution_id: int

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @classmethod
    def for_user(cls, user: "User") -> "RequestContext":
        return cls(user_id=user.id, role=user.role, institution_id=user.institution_id)


class User(UserMixin):
    """Wraps a DB user row for Flask-Login."""

    def __init__(self, id: int, name: str, email: str, role: str,
                 institution_id: int, active: bool = True, last_name: str = ""):
        self.id = id
        self.name = name
        self.last_name = last_name
        self.email = email
        self.role = role
        self.institution_id = institution_id
        self.active = active

    @property
    def is_active(self):
        return self.active

    @property
    def is_staff(self):
        return self.role in STAFF_ROLES

    @property
    def is_admin(self):
        return self.role == "admin"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "last_name": self.last_name,
            "email": self.email,
            "role": self.role,
            "institution_id": self.institution_id,
        }

    @staticmethod
    def _from_row(row) -> "User":
        return User(row["id"], row["name"], row["email"], row["role"],
                    row["institution_id"], bool(row["active"]), row["last_name"])

    @staticmethod
    def get(user_id: int):
        db = get_db()
        row = db.execute(
            "SELECT id, name, last_name, email, role, institution_id, active FROM users WHERE id = ?",
            (user_id,),
        ).fetchone()
        if row:
            return User._from_row(row)
        return None

    @staticmethod
    def get_by_email(email: str):
        db = get_db()
        return db.execute(
            "SELECT id, name, last_name, email, password_hash, role, institution_id, active, "
            "login_attempts, locked_until FROM users WHERE email = ?", (email,),
        ).fetchone()


@login_manager.user_loader
def load_user(user_id):
    return User.get(int(user_id))


@login_manager.unauthorized_handler
def _unauthorized():
    return jsonify({"error": "No autorizado"}), 401


@auth_bp.route("/api/auth/login", methods=["POST"])
@limiter.limit("5 per 15 minutes")
def login():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    if not email or not password:
        return jsonify({"error": "Email y contraseña son obligatorios."}), 400

    row = User.get_by_email(email)
    if not row or not row["active"]:
        return jsonify({"error": "Credenciales inválidas."}), 401

    # Check account lockout
    if row["locked_until"]:
        try:
            lock_time = datetime.fromisoformat(row["locked_until"])
            remaining = (lock_time - datetime.now()).total_seconds()
            if remaining > 0:
                mins = math.ceil(remaining / 60)
                log_event("login_locked", row["id"], f"email={email}")
                return jsonify({
                    "error": f"Cuenta bloqueada temporalmente. Intenta de nuevo en {mins} minuto(s).",
                }), 429
        except ValueError:
            pass

    if not row["password_hash"] or not check_password_hash(row["password_hash"], password):
        db = get_db()
        attempts = row["login_attempts"] + 1
        if attempts >= LOCKOUT_THRESHOLD:
            db.execute(
                "UPDATE users SET login_attempts=?, locked_until=? WHERE id=?",
                (attempts, (datetime.now() + timedelta(minutes=LOCKOUT_MINUTES)).isoformat(), row["id"]),
            )
        else:
            db.execute("UPDATE users SET login_attempts=? WHERE id=?", (attempts, row["id"]))
        db.commit()
        log_event("login_failed", row["id"], f"email={email} attempts={attempts}")
        return jsonify({"error": "Credenciales inválidas."}), 401

    # Reset lockout counters on success
    db = get_db()
    db.execute("UPDATE users SET login_attempts=0, locked_until='' WHERE id=?", (row["id"],))
    db.commit()

    user = User._from_row(row)
    login_user(user, remember=True)
    log_event("login_success", row["id"])
    return jsonify({"user": user.to_dict()})


@auth_bp.route("/api/auth/logout", methods=["POST"])
def logout():
    uid = current_user.id if current_user.is_authenticated else None
    if uid is not None:
        from realtime import release_tracker
        release_tracker(uid)
    log_event("logout", uid)
    logout_user()
    return jsonify({"success": True})


@auth_bp.route("/api/me")
@login_required
def me():
    return jsonify({"user": current_user.to_dict()})
