from __future__ import annotations

from datetime import datetime
from enum import Enum

from tradesafe.extensions import db
from tradesafe.models.columns import enum_column, iso
from tradesafe.utils.money import money_minor_to_major


class TransferKind(str, Enum):
    PAYOUT = "payout"
    REFUND = "refund"


class TransferStatus(str, Enum):
    PENDING = "pending"
    # claimed by one worker, processor call in flight
    SUBMITTING = "submitting"
    # processor was called but the answer never arrived
    UNCONFIRMED = "unconfirmed"
    SUBMITTED = "submitted"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ExternalTransfer(db.Model):
    """Durable intent for money leaving the platform through the processor."""

    __tablename__ = "external_transfers"

    id = db.Column(db.Integer, primary_key=True)
    kind = enum_column(TransferKind, nullable=False, index=True)
    status = enum_column(TransferStatus, nullable=False, default=TransferStatus.PENDING, index=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    amount_minor = db.Column(db.Integer, nullable=False)

    # payout account for payouts, original charge reference for refunds
    destination = db.Column(db.String(128), nullable=False)
    provider_reference = db.Column(db.String(128), nullable=True, index=True)

    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.String(400), nullable=True)
    idempotency_key = db.Column(db.String(160), nullable=False, unique=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def reference(self) -> str:
        return f"transfer-{int(self.id)}"

    def to_dict(self):
        return {
            "id": int(self.id),
            "reference": self.reference,
            "kind": self.kind.value,
            "status": self.status.value,
            "user_id": self.user_id,
            "order_id": int(self.order_id) if self.order_id is not None else None,
            "amount_minor": int(self.amount_minor),
            "amount": money_minor_to_major(self.amount_minor),
            "provider_reference": self.provider_reference or "",
            "attempts": int(self.attempts or 0),
            "last_error": self.last_error or "",
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
