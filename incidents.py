"""
DEC incidents and case derivations.

Folios are ``DEC-{year}-{seq:04d}`` per institution and unique in the schema;
a concurrent create that collides on the folio retries with the next number.
"""

from __future__ import annotations

import logging
from datetime import datetime

import alert_rules
from db_stores import DerivationStoreDB, IncidentStoreDB, StudentStoreDB, UserStoreDB
from errors import (
    AlreadyExistsError,
    InvalidTransitionError,
    NotAuthorizedError,
    NotFoundError,
    ValidationError,
)
from events import AuditEvent, NotificationEvent

logger = logging.getLogger(__name__)

SEVERITIES = ("moderada", "severa")
DERIVATION_ROLES = ("dupla", "convivencia", "inspector", "utp", "director")
MAX_REASON_LENGTH = 500
FOLIO_ATTEMPTS = 3

EDITABLE_FIELDS = (
    "severity", "location", "context", "conduct_types", "triggers", "actions_taken",
    "description", "guardian_contacted", "incident_date", "end_date",
)


def _can_report(ctx) -> bool:
    return ctx.is_staff or ctx.role == "docente"


def _student(ctx, student_id) -> dict:
    try:
        student_id = int(student_id)
    except (TypeError, ValueError):
        raise ValidationError("Estudiante no válido.")
    student = StudentStoreDB.get(student_id, ctx.institution_id)
    if student is None:
        raise NotFoundError("Estudiante no encontrado.")
    return student


def _recipients(ctx, recipient_ids) -> list[tuple[int, str]]:
    recipients = []
    for rid in dict.fromkeys(recipient_ids or []):
        try:
            user = UserStoreDB.get(int(rid))
        except (TypeError, ValueError):
            raise ValidationError("Destinatario no válido.")
        if user is None or user["institution_id"] != ctx.institution_id:
            raise ValidationError("Destinatario no válido.")
        recipients.append((user["id"], user["role"]))
    return recipients


def create_incident(ctx, data: dict):
    if not _can_report(ctx):
        raise NotAuthorizedError()
    student = _student(ctx, data.get("student_id"))
    severity = data.get("severity")
    if severity not in SEVERITIES:
        raise ValidationError("La severidad debe ser moderada o severa.")
    location = (data.get("location") or "").strip()
    if not location:
        raise ValidationError("El lugar del incidente es obligatorio.")
    recipients = _recipients(ctx, data.get("recipient_ids"))

    now = datetime.now()
    incident_date = data.get("incident_date") or now.isoformat()
    entry = {
        "institution_id": ctx.institution_id,
        "student_id": student["id"],
        "reporter_id": ctx.user_id,
        "type": data.get("type") or "DEC",
        "severity": severity,
        "location": location,
        "context": data.get("context") or "",
        "conduct_types": data.get("conduct_types") or [],
        "triggers": data.get("triggers") or [],
        "actions_taken": data.get("actions_taken") or [],
        "description": data.get("description"),
        "guardian_contacted": bool(data.get("guardian_contacted")),
        "incident_date": incident_date,
        "end_date": data.get("end_date"),
    }

    year = int(str(incident_date)[:4]) if str(incident_date)[:4].isdigit() else now.year
    for attempt in range(FOLIO_ATTEMPTS):
        entry["folio"] = IncidentStoreDB.next_folio(ctx.institution_id, year)
        try:
            incident_id = IncidentStoreDB.create(entry)
            break
        except AlreadyExistsError:
            logger.warning("Folio %s taken, retrying (%d)", entry["folio"], attempt + 1)
    else:
        raise AlreadyExistsError("No se pudo asignar un folio. Intenta nuevamente.")

    if recipients:
        IncidentStoreDB.add_recipients(incident_id, recipients)
    incident = IncidentStoreDB.get(incident_id, ctx.institution_id)

    events: list = []
    if recipients:
        events.append(NotificationEvent(
            ctx.institution_id, [rid for rid, _ in recipients], "dec_nuevo",
            f"Nuevo DEC {incident['folio']}",
            f"Se registró un DEC {severity} de {student['name']} {student['last_name']}".strip() + ".",
            str(incident_id), f"/dec/{incident_id}",
        ))
    events.extend(alert_rules.evaluate_safely(alert_rules.evaluate_incident, incident))
    return incident, events


def get_incident(ctx, incident_id: int) -> dict:
    incident = IncidentStoreDB.get(incident_id, ctx.institution_id)
    if incident is None:
        raise NotFoundError("DEC no encontrado.")
    recipients = IncidentStoreDB.recipients(incident_id)
    is_recipient = any(r["recipient_id"] == ctx.user_id for r in recipients)
    if not (ctx.is_staff or incident["reporter_id"] == ctx.user_id or is_recipient):
        raise NotAuthorizedError()
    return dict(incident, recipients=recipients)


def resolve_incident(ctx, incident_id: int, notes):
    if not ctx.is_staff:
        raise NotAuthorizedError()
    notes = (notes or "").strip()
    if not notes:
        raise ValidationError("Las notas de resolución son obligatorias.")
    before = IncidentStoreDB.get(incident_id, ctx.institution_id)
    if before is None:
        raise NotFoundError("DEC no encontrado.")
    if before["resolved"]:
        raise InvalidTransitionError("El DEC ya está resuelto.")

    IncidentStoreDB.resolve(incident_id, notes)
    after = IncidentStoreDB.get(incident_id, ctx.institution_id)

    events: list = [AuditEvent.of(ctx, "resolve", "incident", incident_id,
                                  description=after["folio"], before=before, after=after)]
    if after["reporter_id"] and after["reporter_id"] != ctx.user_id:
        events.append(NotificationEvent(
            ctx.institution_id, [after["reporter_id"]], "dec_resuelto",
            f"DEC {after['folio']} resuelto", notes[:200], str(incident_id), f"/dec/{incident_id}",
        ))
    return after, events


def update_incident(ctx, incident_id: int, fields: dict):
    if not ctx.is_admin:
        raise NotAuthorizedError()
    before = IncidentStoreDB.get(incident_id, ctx.institution_id)
    if before is None:
        raise NotFoundError("DEC no encontrado.")
    changes = {k: v for k, v in fields.items() if k in EDITABLE_FIELDS}
    if "severity" in changes and changes["severity"] not in SEVERITIES:
        raise ValidationError("La severidad debe ser moderada o severa.")
    if "location" in changes and not (changes["location"] or "").strip():
        raise ValidationError("El lugar del incidente es obligatorio.")
    if "guardian_contacted" in changes:
        changes["guardian_contacted"] = 1 if changes["guardian_contacted"] else 0
    if not changes:
        raise ValidationError("No hay cambios que guardar.")
    IncidentStoreDB.update(incident_id, changes)
    after = IncidentStoreDB.get(incident_id, ctx.institution_id)
    return after, [AuditEvent.of(ctx, "update", "incident", incident_id,
                                 description=after["folio"], before=before, after=after)]


def delete_incident(ctx, incident_id: int):
    if not ctx.is_admin:
        raise NotAuthorizedError()
    before = IncidentStoreDB.get(incident_id, ctx.institution_id)
    if before is None:
        raise NotFoundError("DEC no encontrado.")
    IncidentStoreDB.delete(incident_id)
    return None, [AuditEvent.of(ctx, "delete", "incident", incident_id,
                                description=before["folio"], before=before)]


def mark_seen(ctx, incident_id: int) -> bool:
    if IncidentStoreDB.get(incident_id, ctx.institution_id) is None:
        raise NotFoundError("DEC no encontrado.")
    return IncidentStoreDB.mark_seen(incident_id, ctx.user_id)


def derive_case(ctx, student_id, to_role, reason):
    """Hand a student's case to another team; everyone holding ``to_role`` is notified."""
    if not _can_report(ctx):
        raise NotAuthorizedError()
    student = _student(ctx, student_id)
    if to_role not in DERIVATION_ROLES:
        raise ValidationError("Rol de destino no válido.")
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("El motivo de la derivación es obligatorio.")
    if len(reason) > MAX_REASON_LENGTH:
        raise ValidationError(f"El motivo no puede superar los {MAX_REASON_LENGTH} caracteres.")

    derivation_id = DerivationStoreDB.create(ctx.institution_id, student["id"], ctx.user_id, to_role, reason)
    derivation = {
        "id": derivation_id,
        "student_id": student["id"],
        "from_user_id": ctx.user_id,
        "to_role": to_role,
        "reason": reason,
    }
    recipients = [uid for uid in UserStoreDB.ids_with_roles(ctx.institution_id, [to_role])
                  if uid != ctx.user_id]
    events = []
    if recipients:
        events.append(NotificationEvent(
            ctx.institution_id, recipients, "derivacion",
            f"Caso derivado: {student['name']} {student['last_name']}".strip(),
            reason[:200], str(student["id"]), f"/estudiantes/{student['id']}",
        ))
    return derivation, events
