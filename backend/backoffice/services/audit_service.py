# Overview: Service-layer operations for the audit trail; append-only events.

from __future__ import annotations

from typing import Optional

from ..extensions import db
from ..models import AuditEvent


def append_event(
    *,
    event_type: str,
    entity_type: str,
    entity_id: int,
    actor_id: int | None = None,
    note: Optional[str] = None,
    payload: Optional[dict] = None,
    commit: bool = True,
) -> AuditEvent:
    """
    Append-only audit event.

    - No domain logic here.
    - No deletes/updates of existing events.
    - Called after the operation it describes has fully succeeded.
    """
    ev = AuditEvent(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_id=actor_id,
        note=note[:255] if note else None,
        payload=payload,
    )
    db.session.add(ev)
    if commit:
        db.session.commit()
    return ev


def list_events(*, entity_type: str, entity_id: int) -> list[AuditEvent]:
    return (
        db.session.query(AuditEvent)
        .filter_by(entity_type=entity_type, entity_id=entity_id)
        .order_by(AuditEvent.id.asc())
        .all()
    )
