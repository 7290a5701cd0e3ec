# Overview: Service-layer operations for the audit log; append-only event rows.

from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

from ..extensions import db
from ..models import AuditEvent
from ..time_utils import utcnow
"""
Audit Log Invariants (authoritative)

- Append-only: no updates/deletes of existing events.
- No domain/business logic here.
- Events are written inside the same DB transaction as the domain change they
  record, so a rolled-back settlement leaves no SALE_COMPLETED behind.
- occurred_at is business time; created_at is system time (DB default).
"""

SALE_COMPLETED = "SALE_COMPLETED"
SALE_RETURNED = "SALE_RETURNED"
INVENTORY_UPDATED = "INVENTORY_UPDATED"
PRODUCT_CREATED = "PRODUCT_CREATED"


def append_audit_event(
    *,
    event_type: str,
    entity_type: str,
    entity_id: int,
    actor_id: str | None = None,
    actor_email: str | None = None,
    sale_id: int | None = None,
    occurred_at: Optional[datetime] = None,
    note: Optional[str] = None,
    payload: Optional[dict] = None,
) -> AuditEvent:
    ev = AuditEvent(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_id=actor_id,
        actor_email=actor_email,
        sale_id=sale_id,
        occurred_at=occurred_at or utcnow(),
        note=note[:255] if note else None,
        payload=json.dumps(payload, sort_keys=True, default=str) if payload is not None else None,
    )
    db.session.add(ev)
    db.session.flush()  # ensures ev.id is assigned without committing
    return ev


def list_audit_events(
    *,
    event_type: str | None = None,
    sale_id: int | None = None,
    limit: int = 200,
) -> list[AuditEvent]:
    q = db.session.query(AuditEvent)
    if event_type:
        q = q.filter(AuditEvent.event_type == event_type)
    if sale_id is not None:
        q = q.filter(AuditEvent.sale_id == sale_id)
    return q.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc()).limit(limit).all()
