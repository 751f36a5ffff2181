"""Realtime relay and unread tracking.

Two-tier consistency for chat unread counts:

- authoritative: ``UnreadTracker.resync()`` recomputes every counter from
  persisted messages and message_reads rows;
- best-effort: senders publish an ephemeral broadcast on the recipient's
  ``new-message:{user_id}`` channel and the recipient's tracker adds 1.

The push channel has no persistence or replay. A dropped broadcast only
undercounts until the next resync.

Usage:
    from realtime import init_realtime, get_broker, get_tracker
    init_realtime(app)                 # called once in create_app()
    get_broker().publish("new-message:7", "message", {...})
    tracker = get_tracker(7)
    tracker.resync()
"""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, Protocol

import redis

logger = logging.getLogger(__name__)


def message_channel(user_id: int) -> str:
    return f"new-message:{user_id}"


def notification_channel(user_id: int) -> str:
    return f"notifications:{user_id}"


def availability_channel(institution_id: int) -> str:
    return f"availability:{institution_id}"


@dataclass
class BrokerMessage:
    channel: str
    event: str
    payload: dict

    def to_sse(self) -> str:
        return f"event: {self.event}\ndata: {json.dumps(self.payload)}\n\n"


# ── Protocol ───────────────────────────────────────────────

class Subscription(Protocol):
    def get(self, timeout: float | None = 1.0) -> BrokerMessage | None: ...
    def take_dropped(self) -> int: ...
    def close(self) -> None: ...
    def __iter__(self) -> Iterator[BrokerMessage]: ...


class Broker(Protocol):
    def publish(self, channel: str, event: str, payload: dict) -> int: ...
    def subscribe(self, *channels: str) -> Subscription: ...


# ── In-Memory Implementation ──────────────────────────────

SUBSCRIPTION_QUEUE_SIZE = 256


class _MemorySubscription:
    def __init__(self, broker: "InMemoryBroker", channels: tuple[str, ...]) -> None:
        self._broker = broker
        self.channels = channels
        self._queue: queue.Queue[BrokerMessage] = queue.Queue(maxsize=SUBSCRIPTION_QUEUE_SIZE)
        self.closed = False
        self.dropped = 0

    def _deliver(self, message: BrokerMessage) -> None:
        try:
            self._queue.put_nowait(message)
        except queue.Full:
            self.dropped += 1

    def take_dropped(self) -> int:
        dropped, self.dropped = self.dropped, 0
        return dropped

    def get(self, timeout: float | None = 1.0) -> BrokerMessage | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._broker._unsubscribe(self)

    def __iter__(self) -> Iterator[BrokerMessage]:
        while not self.closed:
            message = self.get(timeout=1.0)
            if message is not None:
                yield message


class InMemoryBroker:
    """Process-local pub/sub. One queue per subscriber; publish never blocks."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, set[_MemorySubscription]] = defaultdict(set)

    def publish(self, channel: str, event: str, payload: dict) -> int:
        message = BrokerMessage(channel, event, payload)
        with self._lock:
            targets = list(self._subscribers.get(channel, ()))
        for sub in targets:
            sub._deliver(message)
        return len(targets)

    def subscribe(self, *channels: str) -> _MemorySubscription:
        sub = _MemorySubscription(self, channels)
        with self._lock:
            for channel in channels:
                self._subscribers[channel].add(sub)
        return sub

    def _unsubscribe(self, sub: _MemorySubscription) -> None:
        with self._lock:
            for channel in sub.channels:
                subs = self._subscribers.get(channel)
                if subs is not None:
                    subs.discard(sub)
                    if not subs:
                        del self._subscribers[channel]

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subscribers.get(channel, ()))


# ── Redis Implementation ──────────────────────────────────

class _RedisSubscription:
    def __init__(self, pubsub) -> None:
        self._pubsub = pubsub
        self.closed = False

    def get(self, timeout: float | None = 1.0) -> BrokerMessage | None:
        raw = self._pubsub.get_message(timeout=timeout)
        if not raw or raw.get("type") != "message":
            return None
        channel = raw["channel"]
        if isinstance(channel, bytes):
            channel = channel.decode()
        try:
            body = json.loads(raw["data"])
        except (TypeError, ValueError):
            logger.warning("Dropping malformed broadcast on %s", channel)
            return None
        return BrokerMessage(channel, body.get("event", "message"), body.get("payload") or {})

    def take_dropped(self) -> int:
        # Redis enforces its own per-client output buffer limits
        return 0

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._pubsub.close()

    def __iter__(self) -> Iterator[BrokerMessage]:
        while not self.closed:
            message = self.get(timeout=1.0)
            if message is not None:
                yield message


class RedisBroker:
    """Redis pub/sub; shares broadcasts across worker processes."""

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    def publish(self, channel: str, event: str, payload: dict) -> int:
        return self._redis.publish(channel, json.dumps({"event": event, "payload": payload}))

    def subscribe(self, *channels: str) -> _RedisSubscription:
        pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(*channels)
        return _RedisSubscription(pubsub)


# ── Module-level singleton ────────────────────────────────

_broker: Broker | None = None


def init_realtime(app) -> None:
    """Initialize the broker. Call once from create_app()."""
    global _broker
    release_all_trackers()

    redis_url = app.config.get("REDIS_URL", "")
    if redis_url:
        try:
            client = redis.Redis.from_url(redis_url)
            client.ping()
            _broker = RedisBroker(client)
            app.logger.info("Realtime broker: Redis (%s)", redis_url)
            return
        except redis.RedisError as e:
            app.logger.warning("Redis connection failed (%s) — falling back to in-memory broker.", e)

    _broker = InMemoryBroker()
    app.logger.info("Realtime broker: in-memory")


def get_broker() -> Broker:
    """Return the active broker. Lazily initializes if needed."""
    global _broker
    if _broker is None:
        _broker = InMemoryBroker()
    return _broker


def publish_safely(channel: str, event: str, payload: dict) -> None:
    """Publish and swallow delivery errors; the push tier is optional."""
    try:
        get_broker().publish(channel, event, payload)
    except Exception:
        logger.warning("Broadcast on %s dropped", channel, exc_info=True)


# ── Unread tracker ────────────────────────────────────────

class UnreadTracker:
    """Per-user conversation_id -> unread count, kept in memory."""

    def __init__(self, user_id: int, broker: Broker | None = None) -> None:
        self.user_id = user_id
        self.counts: dict[int, int] = {}
        self.last_resync: str | None = None
        self.last_access = time.monotonic()
        self._lock = threading.Lock()
        self._subscription = (broker or get_broker()).subscribe(message_channel(user_id))

    def resync(self) -> dict[int, int]:
        """Recompute every counter from persisted rows."""
        from db_stores import ConversationStoreDB, MessageStoreDB

        fresh = {
            conv_id: MessageStoreDB.unread_count(conv_id, self.user_id)
            for conv_id in ConversationStoreDB.ids_for_user(self.user_id)
        }
        # Broadcasts already queued are covered by the recount.
        self._discard_pending()
        with self._lock:
            self.counts = fresh
            self.last_resync = datetime.now().isoformat()
            return dict(self.counts)

    def on_broadcast(self, payload: dict) -> None:
        conv_id = payload.get("conversation_id")
        if conv_id is None:
            return
        with self._lock:
            self.counts[int(conv_id)] = self.counts.get(int(conv_id), 0) + 1

    def drain(self) -> int:
        """Apply broadcasts received since the last call. Returns how many.

        If the subscription overflowed, the counters are recomputed instead.
        """
        applied = 0
        while True:
            message = self._subscription.get(timeout=0)
            if message is None:
                break
            if message.event == "message":
                self.on_broadcast(message.payload)
                applied += 1
        dropped = self._subscription.take_dropped()
        if dropped:
            logger.info("Unread tracker %s missed %d broadcasts, resyncing", self.user_id, dropped)
            self.resync()
        return applied

    def mark_as_read(self, conversation_id: int) -> None:
        """Zero the local counter, then upsert the persisted read marker."""
        from db_stores import MessageReadStoreDB

        with self._lock:
            self.counts[conversation_id] = 0
        MessageReadStoreDB.upsert(conversation_id, self.user_id)

    def unread(self, conversation_id: int) -> int:
        with self._lock:
            return self.counts.get(conversation_id, 0)

    @property
    def total_unread(self) -> int:
        with self._lock:
            return sum(self.counts.values())

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "conversations": {str(k): v for k, v in self.counts.items()},
                "total": sum(self.counts.values()),
                "last_resync": self.last_resync,
            }

    def close(self) -> None:
        self._subscription.close()

    def _discard_pending(self) -> None:
        while self._subscription.get(timeout=0) is not None:
            pass
        self._subscription.take_dropped()


_trackers: dict[int, UnreadTracker] = {}
_trackers_lock = threading.Lock()


def get_tracker(user_id: int) -> UnreadTracker:
    with _trackers_lock:
        tracker = _trackers.get(user_id)
        if tracker is None:
            tracker = UnreadTracker(user_id)
            _trackers[user_id] = tracker
        tracker.last_access = time.monotonic()
        return tracker


def evict_idle_trackers(max_idle_seconds: float) -> int:
    """Close trackers nobody has read within ``max_idle_seconds``. Returns how many."""
    cutoff = time.monotonic() - max_idle_seconds
    with _trackers_lock:
        idle = [uid for uid, t in _trackers.items() if t.last_access < cutoff]
        evicted = [_trackers.pop(uid) for uid in idle]
    for tracker in evicted:
        tracker.close()
    if evicted:
        logger.info("Evicted %d idle unread trackers", len(evicted))
    return len(evicted)


def tracker_count() -> int:
    with _trackers_lock:
        return len(_trackers)


def release_tracker(user_id: int) -> None:
    with _trackers_lock:
        tracker = _trackers.pop(user_id, None)
    if tracker is not None:
        tracker.close()


def release_all_trackers() -> None:
    with _trackers_lock:
        trackers = list(_trackers.values())
        _trackers.clear()
    for tracker in trackers:
        tracker.close()
