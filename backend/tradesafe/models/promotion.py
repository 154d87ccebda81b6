from __future__ import annotations

from datetime import datetime
from enum import Enum

from tradesafe.extensions import db
from tradesafe.models.columns import enum_column, iso
from tradesafe.models.order import PaymentMethod
from tradesafe.utils.money import money_minor_to_major


class PromotionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class Promotion(db.Model):
    __tablename__ = "promotions"

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.String(64), nullable=False, index=True)
    item_id = db.Column(db.String(64), nullable=False, index=True)
    plan_code = db.Column(db.String(64), nullable=False)
    price_minor = db.Column(db.Integer, nullable=False)
    duration_hours = db.Column(db.Integer, nullable=False)

    status = enum_column(PromotionStatus, nullable=False, default=PromotionStatus.PENDING, index=True)
    payment_method = enum_column(PaymentMethod, nullable=False, default=PaymentMethod.CARD)
    payment_reference = db.Column(db.String(128), nullable=True, unique=True)
    paid_at = db.Column(db.DateTime, nullable=True)

    starts_at = db.Column(db.DateTime, nullable=True)
    ends_at = db.Column(db.DateTime, nullable=True, index=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "seller_id": self.seller_id,
            "item_id": self.item_id,
            "plan_code": self.plan_code,
            "price_minor": int(self.price_minor),
            "price": money_minor_to_major(self.price_minor),
            "duration_hours": int(self.duration_hours),
            "status": self.status.value,
            "payment_method": self.payment_method.value,
            "payment_reference": self.payment_reference or "",
            "paid_at": iso(self.paid_at),
            "starts_at": iso(self.starts_at),
            "ends_at": iso(self.ends_at),
            "cancelled_at": iso(self.cancelled_at),
            "created_at": iso(self.created_at),
        }
