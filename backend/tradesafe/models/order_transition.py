from datetime import datetime
import json

from tradesafe.extensions import db


class OrderTransition(db.Model):
    __tablename__ = "order_transitions"
    __table_args__ = (
        db.UniqueConstraint("order_id", "to_status", name="uq_order_transition_order_status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    from_status = db.Column(db.String(32), nullable=False, default="")
    to_status = db.Column(db.String(32), nullable=False)
    event = db.Column(db.String(32), nullable=False)
    actor_type = db.Column(db.String(32), nullable=False, default="system")
    actor_id = db.Column(db.String(64), nullable=True)
    reason = db.Column(db.String(240), nullable=True)
    metadata_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def metadata_dict(self) -> dict:
        try:
            parsed = json.loads(self.metadata_json or "{}")
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "from_status": self.from_status or "",
            "to_status": self.to_status or "",
            "event": self.event or "",
            "actor_type": self.actor_type or "",
            "actor_id": self.actor_id,
            "reason": self.reason or "",
            "metadata": self.metadata_dict(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
