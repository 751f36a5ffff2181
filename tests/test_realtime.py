"""Tests for realtime.py — in-memory broker, unread tracker and the chat endpoints."""

from __future__ import annotations

import threading

import pytest

from realtime import (
    BrokerMessage,
    InMemoryBroker,
    UnreadTracker,
    get_tracker,
    message_channel,
    release_tracker,
)


def _open_chat(student_client, other_user_id=3):
    resp = student_client.post("/api/chat/conversations", json={"user_id": other_user_id})
    assert resp.status_code == 200
    return resp.get_json()["conversation"]["id"]


class TestInMemoryBroker:
    def test_publish_reaches_subscribers_of_channel(self):
        broker = InMemoryBroker()
        a = broker.subscribe("x")
        b = broker.subscribe("y")
        assert broker.publish("x", "message", {"n": 1}) == 1
        assert a.get(timeout=0) == BrokerMessage("x", "message", {"n": 1})
        assert b.get(timeout=0) is None

    def test_publish_without_subscribers(self):
        assert InMemoryBroker().publish("nobody", "message", {}) == 0

    def test_close_unsubscribes(self):
        broker = InMemoryBroker()
        sub = broker.subscribe("x", "y")
        assert broker.subscriber_count("x") == 1
        sub.close()
        assert broker.subscriber_count("x") == 0
        assert broker.subscriber_count("y") == 0

    def test_no_replay_for_late_subscribers(self):
        broker = InMemoryBroker()
        broker.publish("x", "message", {})
        assert broker.subscribe("x").get(timeout=0) is None

    def test_concurrent_publishers(self):
        broker = InMemoryBroker()
        sub = broker.subscribe("x")
        threads = [threading.Thread(target=lambda: [broker.publish("x", "m", {}) for _ in range(50)])
                   for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        received = 0
        while sub.get(timeout=0) is not None:
            received += 1
        assert received == 200

    def test_sse_format(self):
        message = BrokerMessage("new-message:1", "message", {"conversation_id": 2})
        assert message.to_sse() == 'event: message\ndata: {"conversation_id": 2}\n\n'


class TestUnreadTracker:
    def test_broadcast_increments(self, app_ctx):
        broker = InMemoryBroker()
        tracker = UnreadTracker(3, broker)
        broker.publish(message_channel(3), "message", {"conversation_id": 9, "message_id": 1})
        broker.publish(message_channel(3), "message", {"conversation_id": 9, "message_id": 2})
        assert tracker.drain() == 2
        assert tracker.unread(9) == 2
        assert tracker.total_unread == 2

    def test_on_broadcast_ignores_payload_without_conversation(self, app_ctx):
        tracker = UnreadTracker(3, InMemoryBroker())
        tracker.on_broadcast({})
        assert tracker.total_unread == 0

    def test_resync_counts_persisted_unread(self, student_client, dupla_client, app):
        conv = _open_chat(student_client)
        for text in ("hola", "¿puedo hablar contigo?"):
            student_client.post(f"/api/chat/{conv}/messages", json={"content": text})
        with app.app_context():
            tracker = UnreadTracker(3, InMemoryBroker())
            assert tracker.resync() == {conv: 2}
            assert tracker.snapshot()["total"] == 2

    def test_mark_as_read_then_resync_is_zero(self, student_client, app):
        conv = _open_chat(student_client)
        student_client.post(f"/api/chat/{conv}/messages", json={"content": "hola"})
        with app.app_context():
            tracker = UnreadTracker(3, InMemoryBroker())
            tracker.resync()
            tracker.mark_as_read(conv)
            assert tracker.unread(conv) == 0
            assert tracker.resync() == {conv: 0}

    def test_dropped_broadcast_fixed_by_resync(self, student_client, app):
        conv = _open_chat(student_client)
        with app.app_context():
            tracker = UnreadTracker(3, InMemoryBroker())  # never sees the real broker
            tracker.resync()
        student_client.post(f"/api/chat/{conv}/messages", json={"content": "hola"})
        with app.app_context():
            assert tracker.drain() == 0
            assert tracker.unread(conv) == 0
            tracker.resync()
            assert tracker.unread(conv) == 1

    def test_resync_discards_queued_broadcasts(self, student_client, app):
        conv = _open_chat(student_client)
        with app.app_context():
            tracker = get_tracker(3)
            tracker.resync()
        student_client.post(f"/api/chat/{conv}/messages", json={"content": "hola"})
        with app.app_context():
            tracker.resync()
            assert tracker.drain() == 0
            assert tracker.unread(conv) == 1

    def test_registry_reuses_and_releases(self, app):
        first = get_tracker(5)
        assert get_tracker(5) is first
        release_tracker(5)
        assert get_tracker(5) is not first

    def test_subscription_queue_is_bounded(self, app_ctx):
        from realtime import SUBSCRIPTION_QUEUE_SIZE
        broker = InMemoryBroker()
        tracker = UnreadTracker(6, broker)
        for n in range(SUBSCRIPTION_QUEUE_SIZE + 244):
            broker.publish(message_channel(6), "message", {"conversation_id": 9, "message_id": n})
        assert tracker._subscription._queue.qsize() == SUBSCRIPTION_QUEUE_SIZE
        assert tracker._subscription.dropped == 244

    def test_overflow_triggers_resync(self, app_ctx):
        from realtime import SUBSCRIPTION_QUEUE_SIZE
        broker = InMemoryBroker()
        tracker = UnreadTracker(6, broker)
        for n in range(SUBSCRIPTION_QUEUE_SIZE + 1):
            broker.publish(message_channel(6), "message", {"conversation_id": 9, "message_id": n})
        tracker.drain()
        # User 6 has no persisted conversations, so the recount wins over 256 broadcasts
        assert tracker.total_unread == 0
        assert tracker.last_resync is not None

    def test_idle_trackers_evicted(self, app):
        import realtime
        from realtime import evict_idle_trackers, get_broker, tracker_count
        stale = get_tracker(5)
        get_tracker(6)
        stale.last_access -= 3600
        assert evict_idle_trackers(1800) == 1
        assert 5 not in realtime._trackers and tracker_count() == 1
        assert get_broker().subscriber_count(message_channel(5)) == 0


class TestChatEndpoints:
    def test_unread_flow(self, student_client, dupla_client):
        conv = _open_chat(student_client)
        assert dupla_client.get("/api/chat/unread").get_json()["total"] == 0

        student_client.post(f"/api/chat/{conv}/messages", json={"content": "uno"})
        student_client.post(f"/api/chat/{conv}/messages", json={"content": "dos"})

        live = dupla_client.get("/api/chat/unread?live=1").get_json()
        assert live["conversations"][str(conv)] == 2

        full = dupla_client.get("/api/chat/unread").get_json()
        assert full["conversations"] == {str(conv): 2}
        assert full["total"] == 2

        resp = dupla_client.post(f"/api/chat/{conv}/read")
        assert resp.get_json()["unread"] == 0
        assert dupla_client.get("/api/chat/unread").get_json()["total"] == 0

    def test_own_messages_not_unread(self, student_client):
        conv = _open_chat(student_client)
        student_client.post(f"/api/chat/{conv}/messages", json={"content": "hola"})
        assert student_client.get("/api/chat/unread").get_json()["total"] == 0

    def test_mark_read_requires_participant(self, student_client, teacher_client):
        conv = _open_chat(student_client)
        assert teacher_client.post(f"/api/chat/{conv}/read").status_code == 403

    def test_logout_releases_tracker(self, dupla_client):
        import realtime
        dupla_client.get("/api/chat/unread")
        assert 3 in realtime._trackers
        dupla_client.post("/api/auth/logout")
        assert 3 not in realtime._trackers

    def test_stream_relays_broadcast(self, student_client, dupla_client, app):
        from realtime import get_broker
        app.config["REALTIME_KEEPALIVE"] = 0.01
        resp = dupla_client.get("/api/realtime/stream", buffered=False)
        assert resp.status_code == 200
        assert resp.mimetype == "text/event-stream"
        chunks = iter(resp.response)
        assert next(chunks) in (b": connected\n\n", ": connected\n\n")

        get_broker().publish(message_channel(3), "message", {"conversation_id": 1, "message_id": 1})
        seen = b""
        for _ in range(20):
            chunk = next(chunks)
            seen += chunk if isinstance(chunk, bytes) else chunk.encode()
            if b"event: message" in seen:
                break
        resp.close()
        assert b'"conversation_id": 1' in seen
