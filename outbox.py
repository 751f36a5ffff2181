"""
Side-effect outbox.

Durable events (alerts, points, notifications, audit rows) are persisted to
the ``outbox`` table and dispatched through ``tasks.enqueue``. A dispatch
failure is logged and recorded on the row (status/attempts/last_error); it
never propagates to the caller, whose primary write has already committed.
BroadcastEvent is published straight to the realtime broker, best-effort.

Every dispatch first claims its row (status ``running``), so the scheduler,
an RQ worker and an inline call never run the same row twice.
``retry_pending()`` re-dispatches pending/failed rows below MAX_ATTEMPTS, plus
rows whose claim went stale, and is run by the scheduler and the admin retry
endpoint.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta

from flask import current_app, has_app_context

from database import get_db
from events import BroadcastEvent, to_payload
from tasks import enqueue

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5
CLAIM_TIMEOUT_SECONDS = 300


# ── Handlers ──────────────────────────────────────────────


def _handle_alert(payload: dict) -> None:
    from db_stores import AlertStoreDB
    AlertStoreDB.create(
        payload["institution_id"], payload["student_id"], payload["type"],
        payload["description"], payload.get("triggered_by", "system"),
    )


def _handle_points(payload: dict) -> None:
    from db_stores import PointsStoreDB
    PointsStoreDB(payload["student_id"]).add(
        payload["institution_id"], payload["amount"], payload["reason"],
    )


def _handle_notification(payload: dict) -> None:
    from db_stores import NotificationStoreDB
    from realtime import publish_safely
    ids = NotificationStoreDB.create_many(
        payload["institution_id"], payload["recipient_ids"], payload["type"],
        payload["title"], payload.get("message", ""),
        payload.get("related_id"), payload.get("related_url"),
    )
    for recipient_id, notif_id in ids:
        publish_safely(f"notifications:{recipient_id}", "notification",
                       {"notification_id": notif_id, "type": payload["type"]})


def _handle_audit(payload: dict) -> None:
    from audit import write_admin_action
    write_admin_action(payload)


HANDLERS = {
    "alert": _handle_alert,
    "points": _handle_points,
    "notification": _handle_notification,
    "audit": _handle_audit,
}


# ── Dispatch ──────────────────────────────────────────────


def process(events) -> list[int]:
    """Record and dispatch side-effect events. Never raises.

    Returns the outbox row ids that were created.
    """
    from realtime import publish_safely

    row_ids: list[int] = []
    for event in events or []:
        if isinstance(event, BroadcastEvent):
            publish_safely(event.channel, event.event, event.payload)
            continue
        try:
            row_id = _persist(event.kind, to_payload(event))
        except Exception:
            logger.exception("Outbox insert failed for %s event", event.kind)
            continue
        row_ids.append(row_id)
        try:
            enqueue(run_outbox_row, row_id, job_key=f"outbox-{row_id}")
        except Exception:
            logger.exception("Outbox dispatch failed for row %s", row_id)
    return row_ids


def _persist(kind: str, payload: dict) -> int:
    db = get_db()
    cur = db.execute(
        "INSERT INTO outbox (kind, payload, status, attempts, created_at) VALUES (?, ?, 'pending', 0, ?)",
        (kind, json.dumps(payload, default=str), datetime.now().isoformat()),
    )
    db.commit()
    return cur.lastrowid


def _claim(db, row_id: int) -> bool:
    """Move a row to ``running`` unless another dispatcher already holds it.

    A ``running`` row whose claim is older than CLAIM_TIMEOUT_SECONDS is
    treated as abandoned (crashed worker) and can be claimed again.
    """
    now = datetime.now()
    stale = (now - timedelta(seconds=CLAIM_TIMEOUT_SECONDS)).isoformat()
    cur = db.execute(
        "UPDATE outbox SET status = 'running', claimed_at = ? WHERE id = ? "
        "AND (status IN ('pending', 'failed') OR (status = 'running' AND claimed_at < ?))",
        (now.isoformat(), row_id, stale),
    )
    db.commit()
    return cur.rowcount == 1


def dispatch_outbox_row(row_id: int) -> bool:
    """Run the handler for one outbox row. Returns True when the row is done."""
    db = get_db()
    if not _claim(db, row_id):
        row = db.execute("SELECT status FROM outbox WHERE id = ?", (row_id,)).fetchone()
        if row is not None and row["status"] == "running":
            logger.debug("Outbox row %s already claimed", row_id)
        return row is not None and row["status"] == "done"
    row = db.execute("SELECT * FROM outbox WHERE id = ?", (row_id,)).fetchone()

    handler = HANDLERS.get(row["kind"])
    try:
        if handler is None:
            raise ValueError(f"unknown outbox kind: {row['kind']}")
        handler(json.loads(row["payload"]))
    except Exception as e:
        db.rollback()
        logger.exception("Outbox row %s (%s) failed", row_id, row["kind"])
        db.execute(
            "UPDATE outbox SET status='failed', attempts=attempts+1, last_error=? WHERE id=?",
            (str(e)[:500], row_id),
        )
        db.commit()
        return False

    db.execute(
        "UPDATE outbox SET status='done', attempts=attempts+1, last_error='', processed_at=? WHERE id=?",
        (datetime.now().isoformat(), row_id),
    )
    db.commit()
    return True


def run_outbox_row(row_id: int) -> bool:
    """Task entry point; RQ workers run outside any Flask app context."""
    if has_app_context():
        return dispatch_outbox_row(row_id)
    from app import create_app
    with create_app().app_context():
        return dispatch_outbox_row(row_id)


def retry_pending(max_attempts: int | None = None) -> dict:
    """Re-dispatch pending/failed rows with attempts below the limit."""
    if max_attempts is None:
        max_attempts = current_app.config.get("OUTBOX_MAX_ATTEMPTS", MAX_ATTEMPTS)
    db = get_db()
    rows = db.execute(
        "SELECT id FROM outbox WHERE attempts < ? AND (status IN ('pending', 'failed') "
        "OR (status = 'running' AND claimed_at < ?)) ORDER BY id",
        (max_attempts, (datetime.now() - timedelta(seconds=CLAIM_TIMEOUT_SECONDS)).isoformat()),
    ).fetchall()
    done = sum(1 for r in rows if dispatch_outbox_row(r["id"]))
    if rows:
        logger.info("Outbox retry: %d/%d rows dispatched", done, len(rows))
    return {"attempted": len(rows), "done": done, "failed": len(rows) - done}


def pending_count() -> int:
    db = get_db()
    return db.execute(
        "SELECT COUNT(*) as cnt FROM outbox WHERE status != 'done'",
    ).fetchone()["cnt"]
