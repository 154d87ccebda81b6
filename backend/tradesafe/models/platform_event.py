from datetime import datetime
import json

from tradesafe.extensions import db


class PlatformEvent(db.Model):
    """Outbox row for a domain event awaiting delivery to the notification service."""

    __tablename__ = "platform_events"

    id = db.Column(db.Integer, primary_key=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    event_type = db.Column(db.String(80), nullable=False, index=True)
    actor_id = db.Column(db.String(64), nullable=True)
    subject_type = db.Column(db.String(40), nullable=True, index=True)
    subject_id = db.Column(db.String(64), nullable=True, index=True)
    recipients_json = db.Column(db.Text, nullable=True)

    request_id = db.Column(db.String(80), nullable=True)
    idempotency_key = db.Column(db.String(180), nullable=True, unique=True)
    metadata_json = db.Column(db.Text, nullable=True)

    dispatched_at = db.Column(db.DateTime, nullable=True, index=True)
    dispatch_attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.String(400), nullable=True)

    def _loads(self, raw, fallback):
        if not raw:
            return fallback
        try:
            return json.loads(raw)
        except ValueError:
            return fallback

    def metadata_dict(self) -> dict:
        parsed = self._loads(self.metadata_json, {})
        return parsed if isinstance(parsed, dict) else {}

    def recipients(self) -> list:
        parsed = self._loads(self.recipients_json, [])
        return parsed if isinstance(parsed, list) else []

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "event_type": self.event_type or "",
            "actor_id": self.actor_id,
            "subject_type": self.subject_type or "",
            "subject_id": self.subject_id or "",
            "recipients": self.recipients(),
            "request_id": self.request_id or "",
            "metadata": self.metadata_dict(),
            "dispatched_at": self.dispatched_at.isoformat() if self.dispatched_at else None,
        }
