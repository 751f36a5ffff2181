"""Confidential mailbox (buzón) routes."""

from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import login_required

import messaging
import outbox
from helpers import current_context, json_body

bp = Blueprint("mailbox", __name__)


@bp.route("/api/mailbox")
@login_required
def api_threads():
    threads = messaging.list_threads(current_context(), request.args.get("status", ""))
    return jsonify({"threads": threads})


@bp.route("/api/mailbox", methods=["POST"])
@login_required
def api_open_thread():
    data = json_body()
    thread, events = messaging.open_thread(current_context(), data.get("subject"), data.get("content"))
    outbox.process(events)
    return jsonify({"thread": thread}), 201


@bp.route("/api/mailbox/<int:thread_id>")
@login_required
def api_thread(thread_id):
    return jsonify({"thread": messaging.get_thread(current_context(), thread_id)})


@bp.route("/api/mailbox/<int:thread_id>/messages", methods=["POST"])
@login_required
def api_post_to_thread(thread_id):
    message, events = messaging.post_to_thread(current_context(), thread_id, json_body().get("content"))
    outbox.process(events)
    return jsonify({"message": message}), 201


@bp.route("/api/mailbox/<int:thread_id>/status", methods=["POST"])
@login_required
def api_thread_status(thread_id):
    thread, events = messaging.transition(current_context(), thread_id, json_body().get("status"))
    outbox.process(events)
    return jsonify({"thread": thread})
