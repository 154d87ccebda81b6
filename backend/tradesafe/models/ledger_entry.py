from __future__ import annotations

from datetime import datetime
from enum import Enum

from tradesafe.extensions import db
from tradesafe.models.columns import enum_column, iso
from tradesafe.utils.money import money_minor_to_major


class EntryType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"
    ESCROW_HOLD = "escrow_hold"
    ESCROW_RELEASE = "escrow_release"
    PAYOUT = "payout"
    REFUND = "refund"


class LedgerEntry(db.Model):
    """Append-only balance event. Rows are never updated or deleted."""

    __tablename__ = "ledger_entries"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    amount_minor = db.Column(db.Integer, nullable=False)
    entry_type = enum_column(EntryType, nullable=False, index=True)
    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.String(64), nullable=True, index=True)
    description = db.Column(db.String(240), nullable=True)
    idempotency_key = db.Column(db.String(160), nullable=True, unique=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            "id": int(self.id),
            "user_id": self.user_id,
            "amount_minor": int(self.amount_minor),
            "amount": money_minor_to_major(self.amount_minor),
            "entry_type": self.entry_type.value,
            "reference_type": self.reference_type or "",
            "reference_id": self.reference_id or "",
            "description": self.description or "",
            "created_at": iso(self.created_at),
        }
