"""Direct chat, unread counters and the realtime event stream."""

from __future__ import annotations

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context
from flask_login import login_required

import messaging
import outbox
from auth import STAFF_ROLES
from db_stores import ConversationStoreDB
from extensions import limiter
from helpers import current_context, json_body, roles_required
from realtime import availability_channel, get_broker, get_tracker, message_channel, notification_channel

bp = Blueprint("chat", __name__)


@bp.route("/api/chat/conversations")
@login_required
def api_conversations():
    ctx = current_context()
    return jsonify({"conversations": ConversationStoreDB.list_for_user(ctx.user_id)})


@bp.route("/api/chat/conversations", methods=["POST"])
@login_required
def api_open_conversation():
    conversation = messaging.get_or_create_conversation(current_context(), json_body().get("user_id"))
    return jsonify({"conversation": conversation})


@bp.route("/api/chat/<int:conversation_id>/messages")
@login_required
def api_messages(conversation_id):
    return jsonify({"messages": messaging.list_messages(current_context(), conversation_id)})


@bp.route("/api/chat/<int:conversation_id>/messages", methods=["POST"])
@login_required
@limiter.limit("60 per minute")
def api_send_message(conversation_id):
    message, events = messaging.send_message(current_context(), conversation_id, json_body().get("content"))
    outbox.process(events)
    return jsonify({"message": message}), 201


@bp.route("/api/chat/notify", methods=["POST"])
@roles_required(*STAFF_ROLES)
def api_notify_in_chat():
    data = json_body()
    message, events = messaging.send_notification_to_chat(
        current_context(), data.get("recipient_id"), (data.get("title") or "").strip(),
        data.get("message", ""), data.get("type", "general"), data.get("related_url"),
    )
    outbox.process(events)
    return jsonify({"message": message}), 201


@bp.route("/api/chat/<int:conversation_id>/read", methods=["POST"])
@login_required
def api_mark_read(conversation_id):
    ctx = current_context()
    messaging.require_participant(ctx, conversation_id)
    tracker = get_tracker(ctx.user_id)
    tracker.mark_as_read(conversation_id)
    return jsonify({"conversation_id": conversation_id, "unread": 0, "total": tracker.total_unread})


@bp.route("/api/chat/unread")
@login_required
def api_unread():
    """Authoritative recount; ``?live=1`` only applies queued broadcasts."""
    ctx = current_context()
    tracker = get_tracker(ctx.user_id)
    if request.args.get("live") in ("1", "true"):
        tracker.drain()
    else:
        tracker.resync()
    return jsonify(tracker.snapshot())


@bp.route("/api/realtime/stream")
@login_required
def api_stream():
    """Server-sent events: the caller's messages and notifications, plus staff availability."""
    ctx = current_context()
    keepalive = current_app.config.get("REALTIME_KEEPALIVE", 15)
    subscription = get_broker().subscribe(
        message_channel(ctx.user_id), notification_channel(ctx.user_id), availability_channel(ctx.institution_id),
    )

    def generate():
        try:
            yield ": connected\n\n"
            while True:
                message = subscription.get(timeout=keepalive)
                if message is None:
                    yield ": keepalive\n\n"
                else:
                    yield message.to_sse()
        finally:
            subscription.close()

    return Response(
        stream_with_context(generate()),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
