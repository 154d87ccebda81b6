from datetime import datetime

from tradesafe.extensions import db
from tradesafe.models.columns import iso
from tradesafe.utils.money import money_minor_to_major


class Wallet(db.Model):
    __tablename__ = "wallets"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, unique=True, index=True)

    available_minor = db.Column(db.Integer, nullable=False, default=0)
    pending_minor = db.Column(db.Integer, nullable=False, default=0)
    lifetime_earned_minor = db.Column(db.Integer, nullable=False, default=0)
    lifetime_spent_minor = db.Column(db.Integer, nullable=False, default=0)

    payout_destination = db.Column(db.String(128), nullable=True)

    frozen_at = db.Column(db.DateTime, nullable=True)
    frozen_reason = db.Column(db.String(240), nullable=True)
    last_reconciled_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "available_minor": int(self.available_minor or 0),
            "pending_minor": int(self.pending_minor or 0),
            "lifetime_earned_minor": int(self.lifetime_earned_minor or 0),
            "lifetime_spent_minor": int(self.lifetime_spent_minor or 0),
            "available": money_minor_to_major(self.available_minor),
            "pending": money_minor_to_major(self.pending_minor),
            "has_payout_destination": bool((self.payout_destination or "").strip()),
            "frozen": self.frozen_at is not None,
            "updated_at": iso(self.updated_at),
        }
