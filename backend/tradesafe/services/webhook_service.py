from __future__ import annotations

import hashlib
import json
import logging

from sqlalchemy.exc import IntegrityError

from tradesafe.models import WebhookEvent
from tradesafe.services.errors import CoreError, ExternalDependencyError, InvariantViolation
from tradesafe.services.reconciliation_service import contain_violation
from tradesafe.utils.db import atomic
from tradesafe.utils.observability import get_request_id

logger = logging.getLogger(__name__)

PROVIDER = "paystack"
TRANSFER_EVENTS = {
    "transfer.success": True,
    "transfer.failed": False,
    "transfer.reversed": False,
}


def _metadata(data: dict) -> dict:
    raw = data.get("metadata")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            raw = {}
    return raw if isinstance(raw, dict) else {}


def _int_or_none(value):
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def derive_event_id(payload: dict, event: str, reference: str, data: dict) -> str:
    explicit = str(payload.get("id") or payload.get("event_id") or "").strip()
    if explicit:
        return explicit[:128]
    base = f"{event}:{reference}:{data.get('amount', '')}"
    return hashlib.sha256(base.encode("utf-8")).hexdigest()[:32]


def _record(session, *, event_id: str, event: str, reference: str, raw: bytes, status: str, error: str = "") -> None:
    try:
        with atomic(session):
            session.add(
                WebhookEvent(
                    provider=PROVIDER,
                    event_id=event_id,
                    event_type=event[:64],
                    reference=reference[:128] or None,
                    status=status,
                    request_id=get_request_id()[:80] or None,
                    payload_hash=hashlib.sha256(raw or b"").hexdigest(),
                    error=error or None,
                )
            )
    except IntegrityError:
        # a concurrent delivery of the same event recorded it first
        logger.info("webhook_event_already_recorded event_id=%s", event_id)


def _dispatch(core, event: str, reference: str, data: dict) -> dict:
    if event == "charge.success":
        meta = _metadata(data)
        purpose = str(meta.get("purpose") or "").strip().lower()
        amount = _int_or_none(data.get("amount"))
        if purpose == "order":
            order_id = _int_or_none(meta.get("order_id"))
            if order_id is None:
                return {"ok": False, "error": "ORDER_ID_MISSING"}
            _, applied = core.orders.confirm_payment(order_id, reference=reference, amount_minor=amount)
            return {"ok": True, "purpose": "order", "order_id": order_id, "applied": applied}
        if purpose == "promotion":
            promotion_id = _int_or_none(meta.get("promotion_id"))
            if promotion_id is None:
                return {"ok": False, "error": "PROMOTION_ID_MISSING"}
            _, applied = core.promotions.confirm_payment(promotion_id, reference, amount)
            return {"ok": True, "purpose": "promotion", "promotion_id": promotion_id, "applied": applied}
        if purpose == "topup":
            user_id = str(meta.get("user_id") or "").strip()
            if not user_id or amount is None:
                return {"ok": False, "error": "TOPUP_METADATA_MISSING"}
            _, applied = core.wallets.credit_topup(user_id, amount, reference)
            return {"ok": True, "purpose": "topup", "applied": applied}
        return {"ok": True, "ignored": True}

    if event in TRANSFER_EVENTS:
        transfer = core.wallets.record_transfer_outcome(
            reference,
            succeeded=TRANSFER_EVENTS[event],
            reason=str(data.get("reason") or data.get("status") or event),
        )
        return {"ok": True, "transfer_id": int(transfer.id), "transfer_status": transfer.status.value}

    return {"ok": True, "ignored": True}


def process_payment_webhook(core, *, payload, raw: bytes, signature: str | None, source: str = "api") -> tuple[dict, int]:
    """Apply one processor delivery. Returns ``(body, http_status)``.

    Deliveries are recorded once per event id; a replay returns
    ``replayed: true`` without touching state. Business rejections are
    acknowledged with 200 so the processor stops retrying; an unreachable
    processor during verification answers 503 so it retries.
    """
    if not isinstance(payload, dict):
        return {"ok": False, "error": "INVALID_PAYLOAD", "message": "payload must be an object"}, 400
    event = payload.get("event")
    data = payload.get("data")
    if not isinstance(event, str) or not event.strip():
        return {"ok": False, "error": "INVALID_PAYLOAD", "message": "event is required"}, 400
    if data is None:
        data = {}
    if not isinstance(data, dict):
        return {"ok": False, "error": "INVALID_PAYLOAD", "message": "data must be an object"}, 400
    event = event.strip()
    reference = str(data.get("reference") or "").strip()

    settings = core.settings
    verified = False
    if settings.integrations_mode == "live":
        if not signature:
            return {"ok": False, "error": "SIGNATURE_REQUIRED", "message": "missing X-Paystack-Signature"}, 400
        verified = bool(core.payments.verify_webhook_signature(raw or b"", signature))
        if not verified:
            return {"ok": False, "error": "INVALID_SIGNATURE"}, 400

    event_id = derive_event_id(payload, event, reference, data)
    session = core.session
    if session.query(WebhookEvent.id).filter_by(provider=PROVIDER, event_id=event_id).first() is not None:
        logger.info("webhook_replayed event_id=%s event=%s", event_id, event)
        return {"ok": True, "replayed": True, "verified": verified}, 200

    if event in ("charge.success", *TRANSFER_EVENTS) and not reference:
        return {"ok": False, "error": "INVALID_PAYLOAD", "message": "data.reference is required"}, 400

    try:
        body = _dispatch(core, event, reference, data)
    except ExternalDependencyError as exc:
        session.rollback()
        logger.warning("webhook_deferred event_id=%s event=%s err=%s", event_id, event, exc.message)
        return exc.to_dict(), 503
    except InvariantViolation as exc:
        contain_violation(session, exc)
        raise
    except CoreError as exc:
        session.rollback()
        _record(session, event_id=event_id, event=event, reference=reference, raw=raw, status="rejected", error=exc.code)
        logger.warning("webhook_rejected event_id=%s event=%s code=%s source=%s", event_id, event, exc.code, source)
        return {"ok": False, "error": exc.code, "message": exc.message, "reference": reference}, 200

    status = "processed" if body.get("ok") else "rejected"
    _record(session, event_id=event_id, event=event, reference=reference, raw=raw, status=status, error=body.get("error", ""))
    logger.info("webhook_processed event_id=%s event=%s status=%s source=%s", event_id, event, status, source)
    body["verified"] = verified
    return body, 200
