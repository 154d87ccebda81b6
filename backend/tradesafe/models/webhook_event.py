from datetime import datetime

from tradesafe.extensions import db


class WebhookEvent(db.Model):
    __tablename__ = "webhook_events"
    __table_args__ = (
        db.UniqueConstraint("provider", "event_id", name="uq_webhook_provider_event"),
    )

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(32), nullable=False, default="paystack")
    event_id = db.Column(db.String(128), nullable=False)
    event_type = db.Column(db.String(64), nullable=False, default="")
    reference = db.Column(db.String(128), nullable=True, index=True)
    # processed | rejected
    status = db.Column(db.String(32), nullable=False, default="processed")
    request_id = db.Column(db.String(80), nullable=True)
    payload_hash = db.Column(db.String(64), nullable=True)
    error = db.Column(db.Text, nullable=True)
    processed_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "provider": self.provider,
            "event_id": self.event_id,
            "event_type": self.event_type or "",
            "reference": self.reference or "",
            "status": self.status or "",
            "request_id": self.request_id or "",
            "error": self.error or "",
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }
