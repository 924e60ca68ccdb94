from __future__ import annotations

import json

from ..extensions import db
from ..time_utils import to_utc_z


class DocumentSequence(db.Model):
    """
    Atomic document counters keyed by (document_type, sequence_key).

    Invoice numbers use one row per calendar day (sequence_key=YYYYMMDD), so
    the per-day suffix restarts at 1 and never repeats within a day.
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("document_type", "sequence_key", name="uq_doc_sequences_type_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(32), nullable=False, index=True)
    sequence_key = db.Column(db.String(32), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_type": self.document_type,
            "sequence_key": self.sequence_key,
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }


class OutboxEvent(db.Model):
    """
    Events written in the same transaction as the state they describe.

    Rows are emitted to the notification relay only after that transaction
    commits. A failed emit bumps attempts and stores last_error; the row
    stays pending until a later dispatch succeeds.
    """
    __tablename__ = "outbox_events"
    __table_args__ = (
        db.Index("ix_outbox_pending", "dispatched_at", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    event_name = db.Column(db.String(64), nullable=False, index=True)
    payload = db.Column(db.Text, nullable=False)

    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.String(500), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    dispatched_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def payload_data(self) -> dict:
        return json.loads(self.payload) if self.payload else {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_name": self.event_name,
            "payload": self.payload_data,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": to_utc_z(self.created_at),
            "dispatched_at": to_utc_z(self.dispatched_at) if self.dispatched_at else None,
        }
