# Overview: Append-only audit trail writes and reads.

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

from ..extensions import db
from ..models import AuditEvent
"""
Audit trail invariants

- Append-only; rows are never updated or deleted (ORM listeners enforce it).
- Events are written inside the same DB transaction as the change they record,
  so a rolled-back operation leaves no event behind.
- occurred_at is business time; created_at is system time (DB default).
"""


def record_event(
    *,
    event_type: str,
    entity_type: str,
    entity_id: int,
    invoice_id: int | None = None,
    actor_user_id: int | None = None,
    occurred_at: Optional[datetime] = None,
    note: Optional[str] = None,
    payload: Optional[dict[str, Any]] = None,
) -> AuditEvent:
    ev = AuditEvent(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        invoice_id=invoice_id,
        actor_user_id=actor_user_id,
        occurred_at=occurred_at,  # if None, db default applies
        note=note[:255] if note else None,
        payload=json.dumps(payload, sort_keys=True, default=str) if payload else None,
    )
    db.session.add(ev)
    return ev


def events_for_invoice(invoice_id: int) -> list[AuditEvent]:
    return (
        db.session.query(AuditEvent)
        .filter(AuditEvent.invoice_id == invoice_id)
        .order_by(AuditEvent.id.asc())
        .all()
    )
