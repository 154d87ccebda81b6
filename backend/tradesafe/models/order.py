from __future__ import annotations

from datetime import datetime
from enum import Enum

from tradesafe.extensions import db
from tradesafe.models.columns import enum_column, iso
from tradesafe.utils.money import money_minor_to_major


class OrderStatus(str, Enum):
    CREATED = "created"
    PAID = "paid"
    PICKUP_SCHEDULED = "pickup_scheduled"
    PICKED_UP = "picked_up"
    DELIVERY_SCHEDULED = "delivery_scheduled"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


class EscrowStatus(str, Enum):
    NONE = "none"
    HELD = "held"
    RELEASED = "released"
    REVERSED = "reversed"
    SPLIT = "split"


class PaymentMethod(str, Enum):
    CARD = "card"
    WALLET = "wallet"


class Order(db.Model):
    __tablename__ = "orders"
    __table_args__ = (
        db.CheckConstraint(
            "seller_net_minor + platform_fee_minor = total_minor",
            name="ck_orders_fee_split",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(db.String(64), nullable=False, index=True)
    buyer_id = db.Column(db.String(64), nullable=False, index=True)
    seller_id = db.Column(db.String(64), nullable=False, index=True)
    rider_id = db.Column(db.String(64), nullable=True, index=True)

    total_minor = db.Column(db.Integer, nullable=False)
    platform_fee_minor = db.Column(db.Integer, nullable=False)
    seller_net_minor = db.Column(db.Integer, nullable=False)
    fee_bps = db.Column(db.Integer, nullable=False, default=0)

    status = enum_column(OrderStatus, nullable=False, default=OrderStatus.CREATED, index=True)
    escrow_status = enum_column(EscrowStatus, nullable=False, default=EscrowStatus.NONE, index=True)
    version = db.Column(db.Integer, nullable=False, default=0)

    payment_method = enum_column(PaymentMethod, nullable=False, default=PaymentMethod.CARD)
    payment_reference = db.Column(db.String(128), nullable=True, unique=True)

    pickup_code_hash = db.Column(db.String(64), nullable=True)
    pickup_code_attempts = db.Column(db.Integer, nullable=False, default=0)
    dropoff_code_hash = db.Column(db.String(64), nullable=True)
    dropoff_code_attempts = db.Column(db.Integer, nullable=False, default=0)

    paid_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True, index=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    cancel_reason = db.Column(db.String(240), nullable=True)

    halted_at = db.Column(db.DateTime, nullable=True)
    halt_reason = db.Column(db.String(240), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "item_id": self.item_id,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "rider_id": self.rider_id,
            "status": self.status.value,
            "escrow_status": self.escrow_status.value,
            "version": int(self.version or 0),
            "total_minor": int(self.total_minor),
            "platform_fee_minor": int(self.platform_fee_minor),
            "seller_net_minor": int(self.seller_net_minor),
            "total": money_minor_to_major(self.total_minor),
            "platform_fee": money_minor_to_major(self.platform_fee_minor),
            "seller_net": money_minor_to_major(self.seller_net_minor),
            "payment_method": self.payment_method.value,
            "payment_reference": self.payment_reference or "",
            "paid_at": iso(self.paid_at),
            "delivered_at": iso(self.delivered_at),
            "completed_at": iso(self.completed_at),
            "cancelled_at": iso(self.cancelled_at),
            "cancel_reason": self.cancel_reason or "",
            "halted": self.halted_at is not None,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
