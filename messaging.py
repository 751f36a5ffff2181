"""
Direct chat and staff mailbox.

Direct chat: one conversation per unordered user pair. Sending a message
yields a BroadcastEvent on the recipient's ``new-message:{id}`` channel so
their unread tracker can bump its counter without a recount.

Mailbox: threads move abierto -> en_proceso -> cerrado. Only staff may
transition; cerrado is terminal and rejects further posts. Transitions are a
plain update, so concurrent staff actions resolve as last writer wins.
"""

from __future__ import annotations

from dataclasses import asdict

from auth import STAFF_ROLES
from db_stores import ConversationStoreDB, MailboxStoreDB, MessageStoreDB, UserStoreDB
from errors import (
    InvalidTransitionError,
    NotAuthorizedError,
    NotFoundError,
    ThreadClosedError,
    ValidationError,
)
from events import BroadcastEvent, NotificationEvent
from realtime import message_channel

MAX_MESSAGE_LENGTH = 4000

THREAD_STATUSES = ("abierto", "en_proceso", "cerrado")
ALLOWED_TRANSITIONS = {
    "abierto": frozenset({"en_proceso", "cerrado"}),
    "en_proceso": frozenset({"cerrado"}),
    "cerrado": frozenset(),
}


def _clean_content(content) -> str:
    if content is not None and not isinstance(content, str):
        raise ValidationError("Mensaje no válido.")
    text = (content or "").strip()
    if not text:
        raise ValidationError("El mensaje no puede estar vacío.")
    if len(text) > MAX_MESSAGE_LENGTH:
        raise ValidationError("El mensaje es demasiado largo.")
    return text


# ── Direct chat ──────────────────────────────────────────────────────


def get_or_create_conversation(ctx, other_user_id) -> dict:
    try:
        other_user_id = int(other_user_id)
    except (TypeError, ValueError):
        raise ValidationError("Usuario no válido.")
    if other_user_id == ctx.user_id:
        raise ValidationError("No puedes iniciar una conversación contigo mismo.")
    other = UserStoreDB.get(other_user_id)
    if other is None or other["institution_id"] != ctx.institution_id or not other["active"]:
        raise NotFoundError("Usuario no encontrado.")
    return ConversationStoreDB.get_or_create(ctx.institution_id, ctx.user_id, other_user_id)


def require_participant(ctx, conversation_id: int) -> dict:
    conversation = ConversationStoreDB.get(conversation_id)
    if conversation is None or conversation["institution_id"] != ctx.institution_id:
        raise NotFoundError("Conversación no encontrada.")
    if ctx.user_id not in (conversation["user_a"], conversation["user_b"]):
        raise NotAuthorizedError()
    return conversation


def _other_participant(conversation: dict, user_id: int) -> int:
    return conversation["user_b"] if conversation["user_a"] == user_id else conversation["user_a"]


def send_message(ctx, conversation_id: int, content, meta: dict | None = None):
    conversation = require_participant(ctx, conversation_id)
    message = MessageStoreDB.insert(conversation_id, ctx.user_id, _clean_content(content), meta)
    recipient_id = _other_participant(conversation, ctx.user_id)
    broadcast = BroadcastEvent(
        channel=message_channel(recipient_id),
        event="message",
        payload={"conversation_id": conversation_id, "message_id": message.id},
    )
    return asdict(message), [broadcast]


def list_messages(ctx, conversation_id: int) -> list[dict]:
    require_participant(ctx, conversation_id)
    return [asdict(m) for m in MessageStoreDB.list(conversation_id)]


def send_notification_to_chat(ctx, recipient_id, title: str, message: str = "",
                              notification_type: str = "general", related_url: str | None = None):
    """Post a notification into the direct chat with ``recipient_id``."""
    conversation = get_or_create_conversation(ctx, recipient_id)
    meta = {
        "kind": "notification",
        "type": notification_type,
        "title": title,
        "message": message,
        "related_url": related_url,
    }
    return send_message(ctx, conversation["id"], "📢 " + title, meta)


# ── Mailbox ──────────────────────────────────────────────────────────


def _thread_for(ctx, thread_id: int):
    thread = MailboxStoreDB.get_thread(thread_id, ctx.institution_id)
    if thread is None:
        raise NotFoundError("Conversación no encontrada.")
    if not ctx.is_staff and thread.created_by != ctx.user_id:
        raise NotAuthorizedError()
    return thread


def open_thread(ctx, subject, first_message):
    subject = (subject or "").strip()
    if not subject:
        raise ValidationError("El asunto es obligatorio.")
    content = _clean_content(first_message)
    thread_id = MailboxStoreDB.create_thread(ctx.institution_id, ctx.user_id, subject[:200])
    MailboxStoreDB.add_message(thread_id, ctx.user_id, content)
    thread = MailboxStoreDB.get_thread(thread_id, ctx.institution_id)

    staff = [uid for uid in UserStoreDB.ids_with_roles(ctx.institution_id, STAFF_ROLES)
             if uid != ctx.user_id]
    events = []
    if staff:
        events.append(NotificationEvent(
            ctx.institution_id, staff, "buzon_nuevo", "Nuevo mensaje en el buzón",
            thread.subject, str(thread_id), f"/buzon/{thread_id}",
        ))
    return asdict(thread), events


def list_threads(ctx, status: str = "") -> list[dict]:
    if status and status not in THREAD_STATUSES:
        raise ValidationError("Estado no válido.")
    created_by = None if ctx.is_staff else ctx.user_id
    return [asdict(t) for t in MailboxStoreDB.list_threads(ctx.institution_id, created_by=created_by,
                                                            status=status)]


def get_thread(ctx, thread_id: int) -> dict:
    thread = _thread_for(ctx, thread_id)
    return dict(asdict(thread), messages=MailboxStoreDB.messages(thread_id))


def post_to_thread(ctx, thread_id: int, content):
    _thread_for(ctx, thread_id)
    message = MailboxStoreDB.add_message(thread_id, ctx.user_id, _clean_content(content))
    if message is None:
        raise ThreadClosedError()
    return message, []


def transition(ctx, thread_id: int, new_status: str):
    if not ctx.is_staff:
        raise NotAuthorizedError()
    if new_status not in THREAD_STATUSES:
        raise ValidationError("Estado no válido.")
    thread = _thread_for(ctx, thread_id)
    if new_status not in ALLOWED_TRANSITIONS[thread.status]:
        raise InvalidTransitionError(
            f"No se puede pasar de {thread.status} a {new_status}.",
        )
    if not MailboxStoreDB.set_status(thread_id, new_status, expected=thread.status):
        raise InvalidTransitionError("El estado de la conversación cambió. Recarga e intenta nuevamente.")
    updated = MailboxStoreDB.get_thread(thread_id, ctx.institution_id)
    return asdict(updated), []
