"""
Audit logging — records security-relevant events and admin mutations.

Admin mutations reach write_admin_action() through the outbox (AuditEvent),
so a failed audit insert is recorded there and retried instead of breaking
the request that produced it. Every audit row is also emitted as a
structured log line.
"""

from __future__ import annotations

import json
import logging

from flask import has_request_context, request

from database import get_db

logger = logging.getLogger(__name__)


def client_ip() -> str:
    if not has_request_context():
        return ""
    return request.remote_addr or ""


def log_event(action: str, user_id: int | None = None, detail: str = "") -> None:
    """Emit a structured log line for an authentication/security event."""
    logger.info("security: %s user_id=%s detail=%s ip=%s", action, user_id, detail, client_ip())


def write_admin_action(payload: dict) -> int:
    """Append one admin_audit_logs row from an AuditEvent payload. Raises on failure."""
    db = get_db()
    cur = db.execute(
        "INSERT INTO admin_audit_logs (institution_id, admin_id, action, entity_type, "
        "entity_id, entity_description, before_data, after_data, ip_address, created_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (payload["institution_id"], payload["admin_id"], payload["action"],
         payload["entity_type"], str(payload["entity_id"]),
         payload.get("description") or None,
         json.dumps(payload["before"], default=str) if payload.get("before") is not None else None,
         json.dumps(payload["after"], default=str) if payload.get("after") is not None else None,
         payload.get("ip_address", ""), payload["created_at"]),
    )
    db.commit()
    logger.info(
        "audit: %s %s/%s admin_id=%s ip=%s",
        payload["action"], payload["entity_type"], payload["entity_id"],
        payload["admin_id"], payload.get("ip_address", ""),
        extra={"user_id": payload["admin_id"], "institution_id": payload["institution_id"]},
    )
    return cur.lastrowid


def list_admin_actions(institution_id: int, *, action: str = "", entity_type: str = "",
                       page: int = 1, limit: int = 20) -> tuple[list[dict], int]:
    """Return (rows, total) for the institution, newest first."""
    db = get_db()
    where = ["institution_id = ?"]
    params: list = [institution_id]
    if action:
        where.append("action = ?")
        params.append(action)
    if entity_type:
        where.append("entity_type = ?")
        params.append(entity_type)
    clause = " AND ".join(where)
    total = db.execute(
        f"SELECT COUNT(*) as cnt FROM admin_audit_logs WHERE {clause}", params,
    ).fetchone()["cnt"]
    rows = db.execute(
        f"SELECT * FROM admin_audit_logs WHERE {clause} ORDER BY created_at DESC, id DESC "
        "LIMIT ? OFFSET ?",
        params + [limit, (page - 1) * limit],
    ).fetchall()
    items = []
    for r in rows:
        d = dict(r)
        d["before_data"] = json.loads(r["before_data"]) if r["before_data"] else None
        d["after_data"] = json.loads(r["after_data"]) if r["after_data"] else None
        items.append(d)
    return items, total
