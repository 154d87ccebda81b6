from __future__ import annotations

from datetime import datetime
from enum import Enum

from tradesafe.extensions import db
from tradesafe.models.columns import enum_column, iso


class DisputeType(str, Enum):
    ITEM_NOT_RECEIVED = "item_not_received"
    ITEM_NOT_AS_DESCRIBED = "item_not_as_described"
    PAYMENT_ISSUE = "payment_issue"
    OTHER = "other"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ")


class DisputeStatus(str, Enum):
    OPEN = "open"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    CLOSED = "closed"

    @property
    def is_active(self) -> bool:
        return self in (DisputeStatus.OPEN, DisputeStatus.INVESTIGATING)


class DisputePriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class DisputeDecision(str, Enum):
    FAVOR_SELLER = "favor_seller"
    FAVOR_BUYER = "favor_buyer"
    SPLIT = "split"


class EvidenceType(str, Enum):
    IMAGE = "image"
    DOCUMENT = "document"
    TEXT = "text"


class Dispute(db.Model):
    __tablename__ = "disputes"

    id = db.Column(db.Integer, primary_key=True)
    # one dispute per order, ever
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True)
    reporter_id = db.Column(db.String(64), nullable=False, index=True)
    reported_id = db.Column(db.String(64), nullable=False, index=True)
    dispute_type = enum_column(DisputeType, nullable=False)
    description = db.Column(db.Text, nullable=False)
    status = enum_column(DisputeStatus, nullable=False, default=DisputeStatus.OPEN, index=True)
    priority = enum_column(DisputePriority, nullable=False, default=DisputePriority.MEDIUM)

    decision = enum_column(DisputeDecision, nullable=True)
    seller_award_minor = db.Column(db.Integer, nullable=True)
    resolution = db.Column(db.Text, nullable=True)
    resolved_by = db.Column(db.String(64), nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)
    closed_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def involves(self, user_id: str) -> bool:
        return user_id in (self.reporter_id, self.reported_id)

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "reporter_id": self.reporter_id,
            "reported_id": self.reported_id,
            "dispute_type": self.dispute_type.value,
            "description": self.description or "",
            "status": self.status.value,
            "priority": self.priority.value,
            "decision": self.decision.value if self.decision else None,
            "seller_award_minor": int(self.seller_award_minor) if self.seller_award_minor is not None else None,
            "resolution": self.resolution or "",
            "resolved_by": self.resolved_by,
            "resolved_at": iso(self.resolved_at),
            "closed_at": iso(self.closed_at),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


class DisputeMessage(db.Model):
    __tablename__ = "dispute_messages"

    id = db.Column(db.Integer, primary_key=True)
    dispute_id = db.Column(db.Integer, db.ForeignKey("disputes.id"), nullable=False, index=True)
    sender_id = db.Column(db.String(64), nullable=True)
    content = db.Column(db.Text, nullable=False)
    is_system = db.Column(db.Boolean, nullable=False, default=False)
    is_admin = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "dispute_id": int(self.dispute_id),
            "sender_id": self.sender_id,
            "content": self.content or "",
            "is_system": bool(self.is_system),
            "is_admin": bool(self.is_admin),
            "created_at": iso(self.created_at),
        }


class DisputeEvidence(db.Model):
    __tablename__ = "dispute_evidence"

    id = db.Column(db.Integer, primary_key=True)
    dispute_id = db.Column(db.Integer, db.ForeignKey("disputes.id"), nullable=False, index=True)
    user_id = db.Column(db.String(64), nullable=False)
    evidence_type = enum_column(EvidenceType, nullable=False)
    # URL for uploaded files, the statement itself for text evidence
    content = db.Column(db.Text, nullable=False)
    description = db.Column(db.String(400), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "dispute_id": int(self.dispute_id),
            "user_id": self.user_id,
            "evidence_type": self.evidence_type.value,
            "content": self.content or "",
            "description": self.description or "",
            "created_at": iso(self.created_at),
        }
