from __future__ import annotations

import json

from ..extensions import db
from ..time_utils import to_utc_z


class AuditEvent(db.Model):
    """
    Who did what to which invoice, item, or return, and when.

    One row per invoice transition, return, payment, or stock adjustment,
    flushed with the change itself. Rows are append-only (see immutability).
    """
    __tablename__ = "audit_events"
    __table_args__ = (
        db.Index("ix_audit_events_entity", "entity_type", "entity_id"),
        db.Index("ix_audit_events_occurred", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    event_type = db.Column(db.String(64), nullable=False, index=True)  # invoice.confirmed, return.created, ...
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)

    # Plain pointer, not a foreign key: events outlive deleted drafts
    invoice_id = db.Column(db.Integer, nullable=True, index=True)
    actor_user_id = db.Column(db.Integer, nullable=True, index=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    note = db.Column(db.String(255), nullable=True)
    payload = db.Column(db.Text, nullable=True)  # sorted-key JSON

    @property
    def payload_data(self) -> dict:
        return json.loads(self.payload) if self.payload else {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "entity": {"type": self.entity_type, "id": self.entity_id},
            "invoice_id": self.invoice_id,
            "actor_user_id": self.actor_user_id,
            "occurred_at": to_utc_z(self.occurred_at),
            "recorded_at": to_utc_z(self.created_at),
            "note": self.note,
            "payload": self.payload_data,
        }


class DocumentSequence(db.Model):
    """
    Next invoice number per (invoice type, calendar year).

    Incremented with a single UPDATE inside the caller's transaction, so a
    number is only consumed when the invoice that took it commits.
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("document_type", "period", name="uq_document_sequences_type_period"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(32), nullable=False, index=True)
    period = db.Column(db.Integer, nullable=False)  # year
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now()
    )
