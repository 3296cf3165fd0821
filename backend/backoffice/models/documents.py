from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class DocumentSequence(db.Model):
    """
    Atomic document sequences per (document_type, period).

    WHY: Consignment codes are numbered per calendar day
    (KON-YYYYMMDD-NNNN); two requests on the same day must never
    allocate the same number.
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("document_type", "period", name="uq_doc_sequences_type_period"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(32), nullable=False, index=True)
    period = db.Column(db.String(16), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_type": self.document_type,
            "period": self.period,
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }


class AuditEvent(db.Model):
    """
    Append-only audit spine for completed domain operations.

    No updates or deletes. Written after the operation it records has
    fully succeeded.
    """
    __tablename__ = "audit_events"
    __table_args__ = (
        db.Index("ix_audit_events_entity", "entity_type", "entity_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    event_type = db.Column(db.String(64), nullable=False, index=True)
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)
    actor_id = db.Column(db.Integer, nullable=True)
    note = db.Column(db.String(255), nullable=True)
    payload = db.Column(db.JSON, nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "note": self.note,
            "payload": self.payload,
            "occurred_at": to_utc_z(self.occurred_at),
        }


class ReconciliationIssue(db.Model):
    """
    Inconsistent state left behind by a failed compensation or a partial
    delete. Each row holds enough context (step, error, snapshot) for an
    operator to repair ledgers by hand.
    """
    __tablename__ = "reconciliation_issues"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    operation = db.Column(db.String(64), nullable=False)
    failed_step = db.Column(db.String(64), nullable=False)
    entity_type = db.Column(db.String(32), nullable=True)
    entity_id = db.Column(db.Integer, nullable=True)
    error = db.Column(db.Text, nullable=False)
    snapshot = db.Column(db.JSON, nullable=True)
    actor_id = db.Column(db.Integer, nullable=True)

    resolved = db.Column(db.Boolean, nullable=False, default=False, index=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operation": self.operation,
            "failed_step": self.failed_step,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "error": self.error,
            "snapshot": self.snapshot,
            "actor_id": self.actor_id,
            "resolved": self.resolved,
            "resolved_at": to_utc_z(self.resolved_at),
            "created_at": to_utc_z(self.created_at),
        }
