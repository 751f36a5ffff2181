"""Side-effect events returned by primary writes.

Services never perform alert/points/notification/audit inserts inline; they
return ``(result, events)`` and the blueprint hands the events to
``outbox.process``. BroadcastEvent is the only non-durable kind.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Optional

ALERT_TYPES = (
    "registros_negativos",
    "discrepancia_docente",
    "dec_repetido",
    "sin_registro",
    "mental_health_concern",
)


@dataclass
class AlertEvent:
    kind: ClassVar[str] = "alert"

    institution_id: int
    student_id: int
    type: str
    description: str
    triggered_by: str = "system"


@dataclass
class PointsEvent:
    kind: ClassVar[str] = "points"

    institution_id: int
    student_id: int
    amount: int
    reason: str


@dataclass
class NotificationEvent:
    kind: ClassVar[str] = "notification"

    institution_id: int
    recipient_ids: list[int]
    type: str
    title: str
    message: str = ""
    related_id: Optional[str] = None
    related_url: Optional[str] = None


@dataclass
class AuditEvent:
    kind: ClassVar[str] = "audit"

    institution_id: int
    admin_id: int
    action: str
    entity_type: str
    entity_id: Any
    description: str = ""
    before: Optional[dict] = None
    after: Optional[dict] = None
    ip_address: str = ""
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    @classmethod
    def of(cls, ctx, action: str, entity_type: str, entity_id, *, description: str = "",
           before: dict | None = None, after: dict | None = None) -> "AuditEvent":
        from audit import client_ip
        return cls(ctx.institution_id, ctx.user_id, action, entity_type, entity_id,
                   description, before, after, client_ip())


@dataclass
class BroadcastEvent:
    kind: ClassVar[str] = "broadcast"

    channel: str
    event: str
    payload: dict


def to_payload(event) -> dict:
    return asdict(event)
