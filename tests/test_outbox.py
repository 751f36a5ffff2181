"""Tests for outbox.py — durable side effects that never break the primary write."""

from __future__ import annotations

import json

import pytest

import db_stores
import outbox
from events import AlertEvent, BroadcastEvent, NotificationEvent, PointsEvent


def _boom(*args, **kwargs):
    raise RuntimeError("alerts table unavailable")


class TestProcess:
    def test_events_dispatched_synchronously(self, app_ctx, db):
        row_ids = outbox.process([
            PointsEvent(1, 1, 10, "daily_log"),
            AlertEvent(1, 1, "sin_registro", "Sin registro"),
        ])
        assert len(row_ids) == 2
        statuses = [r["status"] for r in db.execute("SELECT status FROM outbox ORDER BY id")]
        assert statuses == ["done", "done"]
        assert db.execute("SELECT COUNT(*) FROM alerts").fetchone()[0] == 1
        assert db.execute("SELECT SUM(amount) FROM points").fetchone()[0] == 10

    def test_broadcast_not_persisted(self, app_ctx, db):
        from realtime import get_broker
        sub = get_broker().subscribe("new-message:6")
        row_ids = outbox.process([BroadcastEvent("new-message:6", "message", {"conversation_id": 1})])
        assert row_ids == []
        assert db.execute("SELECT COUNT(*) FROM outbox").fetchone()[0] == 0
        assert sub.get(timeout=0).payload == {"conversation_id": 1}
        sub.close()

    def test_notification_rows_and_push(self, app_ctx, db):
        from realtime import get_broker
        sub = get_broker().subscribe("notifications:3")
        outbox.process([NotificationEvent(1, [3, 4, 3], "general", "Hola")])
        rows = db.execute("SELECT recipient_id FROM notifications ORDER BY recipient_id").fetchall()
        assert [r["recipient_id"] for r in rows] == [3, 4]
        message = sub.get(timeout=0)
        assert message.event == "notification"
        sub.close()

    def test_empty_and_none(self, app_ctx):
        assert outbox.process([]) == []
        assert outbox.process(None) == []


class TestFailureIsolation:
    def test_handler_failure_recorded_not_raised(self, app_ctx, db, monkeypatch):
        monkeypatch.setattr(db_stores.AlertStoreDB, "create", staticmethod(_boom))
        row_ids = outbox.process([AlertEvent(1, 1, "sin_registro", "x")])
        row = db.execute("SELECT * FROM outbox WHERE id = ?", (row_ids[0],)).fetchone()
        assert row["status"] == "failed"
        assert row["attempts"] == 1
        assert "alerts table unavailable" in row["last_error"]

    def test_failing_alert_keeps_check_in(self, student_client, db, seed_daily_logs, monkeypatch):
        seed_daily_logs(1, [(2, "mal"), (1, "mal")])
        monkeypatch.setattr(db_stores.AlertStoreDB, "create", staticmethod(_boom))

        resp = student_client.post("/api/checkin", json={"emotion": "muy_mal", "intensity": 1})
        assert resp.status_code == 201
        assert db.execute("SELECT COUNT(*) FROM emotional_logs").fetchone()[0] == 3
        assert db.execute("SELECT COUNT(*) FROM alerts").fetchone()[0] == 0
        # Points are a separate event and still land.
        assert db.execute("SELECT COUNT(*) FROM points").fetchone()[0] == 1
        failed = db.execute("SELECT kind, payload FROM outbox WHERE status = 'failed'").fetchall()
        assert [r["kind"] for r in failed] == ["alert"]
        assert json.loads(failed[0]["payload"])["type"] == "registros_negativos"

    def test_failing_evaluation_keeps_check_in(self, student_client, db, seed_daily_logs, monkeypatch):
        import alert_rules
        import sqlite3

        def broken_window(*args, **kwargs):
            raise sqlite3.OperationalError("database is locked")

        seed_daily_logs(1, [(2, "mal"), (1, "mal")])
        monkeypatch.setattr(alert_rules, "recent_daily_emotions", broken_window)

        resp = student_client.post("/api/checkin", json={"emotion": "mal", "intensity": 2})
        assert resp.status_code == 201
        assert db.execute("SELECT COUNT(*) FROM emotional_logs").fetchone()[0] == 3
        assert db.execute("SELECT COUNT(*) FROM alerts").fetchone()[0] == 0
        assert db.execute("SELECT COUNT(*) FROM points").fetchone()[0] == 1

    def test_broker_failure_swallowed(self, app_ctx, monkeypatch):
        import realtime

        class BrokenBroker:
            def publish(self, channel, event, payload):
                raise ConnectionError("down")

        monkeypatch.setattr(realtime, "_broker", BrokenBroker())
        assert outbox.process([BroadcastEvent("new-message:1", "message", {})]) == []


class TestRetry:
    def test_retry_completes_failed_rows(self, app_ctx, db, monkeypatch):
        monkeypatch.setattr(db_stores.AlertStoreDB, "create", staticmethod(_boom))
        outbox.process([AlertEvent(1, 1, "sin_registro", "x")])
        monkeypatch.undo()

        assert outbox.pending_count() == 1
        stats = outbox.retry_pending()
        assert stats == {"attempted": 1, "done": 1, "failed": 0}
        assert outbox.pending_count() == 0
        row = db.execute("SELECT status, attempts FROM outbox").fetchone()
        assert (row["status"], row["attempts"]) == ("done", 2)
        assert db.execute("SELECT COUNT(*) FROM alerts").fetchone()[0] == 1

    def test_rows_over_max_attempts_skipped(self, app_ctx, db, monkeypatch):
        monkeypatch.setattr(db_stores.AlertStoreDB, "create", staticmethod(_boom))
        outbox.process([AlertEvent(1, 1, "sin_registro", "x")])
        stats = outbox.retry_pending(max_attempts=1)
        assert stats["attempted"] == 0

    def test_done_row_not_redispatched(self, app_ctx, db):
        row_id = outbox.process([PointsEvent(1, 1, 5, "bonus")])[0]
        assert outbox.dispatch_outbox_row(row_id) is True
        assert db.execute("SELECT COUNT(*) FROM points").fetchone()[0] == 1

    def test_unknown_kind_fails(self, app_ctx, db):
        cur = db.execute(
            "INSERT INTO outbox (kind, payload, created_at) VALUES ('mystery', '{}', '2026-01-01')"
        )
        db.commit()
        assert outbox.dispatch_outbox_row(cur.lastrowid) is False
        row = db.execute("SELECT status FROM outbox WHERE id = ?", (cur.lastrowid,)).fetchone()
        assert row["status"] == "failed"

    def test_admin_retry_endpoint(self, admin_client, dupla_client):
        resp = admin_client.post("/api/admin/outbox/retry")
        assert resp.status_code == 200
        assert resp.get_json() == {"attempted": 0, "done": 0, "failed": 0, "pending": 0, "queued": 0}
        assert dupla_client.post("/api/admin/outbox/retry").status_code == 403


class TestClaim:
    @staticmethod
    def _points_row(db, status="pending", claimed_at=None):
        cur = db.execute(
            "INSERT INTO outbox (kind, payload, status, claimed_at, created_at) VALUES ('points', ?, ?, ?, ?)",
            (json.dumps({"institution_id": 1, "student_id": 1, "amount": 5, "reason": "bonus"}),
             status, claimed_at, "2026-01-01T00:00:00"),
        )
        db.commit()
        return cur.lastrowid

    def test_claimed_row_not_run_again(self, app_ctx, db):
        from datetime import datetime
        row_id = self._points_row(db, "running", datetime.now().isoformat())
        assert outbox.dispatch_outbox_row(row_id) is False
        assert outbox.retry_pending()["attempted"] == 0
        assert db.execute("SELECT COUNT(*) FROM points").fetchone()[0] == 0

    def test_stale_claim_is_retried(self, app_ctx, db):
        row_id = self._points_row(db, "running", "2026-01-01T00:00:00")
        assert outbox.retry_pending() == {"attempted": 1, "done": 1, "failed": 0}
        assert db.execute("SELECT status FROM outbox WHERE id = ?", (row_id,)).fetchone()["status"] == "done"

    def test_done_row_runs_once(self, app_ctx, db):
        row_id = self._points_row(db)
        assert outbox.dispatch_outbox_row(row_id) is True
        assert outbox.dispatch_outbox_row(row_id) is True
        assert db.execute("SELECT COUNT(*) FROM points").fetchone()[0] == 1
        assert db.execute("SELECT attempts FROM outbox WHERE id = ?", (row_id,)).fetchone()["attempts"] == 1

    def test_queued_row_picked_up_by_retry_then_worker(self, app_ctx, db, monkeypatch):
        from types import SimpleNamespace

        import tasks

        class HoldingQueue:
            def __init__(self):
                self.jobs = []

            def enqueue(self, func, *args, **options):
                self.jobs.append((func, args))
                return SimpleNamespace(id=options["job_id"])

        queue = HoldingQueue()
        monkeypatch.setattr(tasks, "_queue", queue)
        outbox.process([PointsEvent(1, 1, 5, "bonus")])
        outbox.retry_pending()
        func, args = queue.jobs[0]
        assert func(*args) is True
        assert db.execute("SELECT COUNT(*) FROM points").fetchone()[0] == 1
