from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from tradesafe.extensions import db
from tradesafe.segments.common import current_core
from tradesafe.services.webhook_service import process_payment_webhook
from tradesafe.utils.observability import get_request_id

webhooks_bp = Blueprint("webhooks_bp", __name__, url_prefix="/api/webhooks")


def _enqueue(payload, raw: bytes, sig: str | None) -> bool:
    from tradesafe.tasks.settlement_tasks import process_payment_webhook_task

    try:
        process_payment_webhook_task.delay(
            payload=payload if isinstance(payload, dict) else {},
            raw_text=(raw or b"").decode("utf-8", errors="ignore"),
            signature=sig,
            source="api/webhooks/paystack:queued",
            trace_id=get_request_id(),
        )
        return True
    except Exception:
        # broker unreachable: handle inline rather than lose the delivery
        current_app.logger.exception("paystack_webhook_enqueue_failed")
        return False


@webhooks_bp.post("/paystack")
def paystack_webhook():
    raw = request.get_data() or b"{}"
    sig = request.headers.get("X-Paystack-Signature")
    payload = request.get_json(silent=True)
    if payload is None:
        payload = {}

    settings = current_app.extensions["tradesafe"]["settings"]
    if settings.webhook_queue and _enqueue(payload, raw, sig):
        return jsonify({"ok": True, "queued": True, "trace_id": get_request_id()}), 200

    body, status = process_payment_webhook(
        current_core(), payload=payload, raw=raw, signature=sig, source="api/webhooks/paystack"
    )
    if int(status) >= 500:
        db.session.rollback()
    return jsonify(body), int(status)
