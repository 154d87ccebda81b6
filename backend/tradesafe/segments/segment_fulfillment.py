from __future__ import annotations

import hmac

from flask import Blueprint, current_app, jsonify, request

from tradesafe.segments.common import current_core, json_body
from tradesafe.services.errors import ValidationError
from tradesafe.services.order_service import Actor

fulfillment_bp = Blueprint("fulfillment_bp", __name__, url_prefix="/api/fulfillment")

EVENTS = ("assigned", "pickup_scheduled", "picked_up", "delivery_scheduled", "delivered")


def _authorized() -> bool:
    expected = (current_app.config.get("FULFILLMENT_API_KEY") or "").strip()
    provided = (request.headers.get("X-Fulfillment-Key") or "").strip()
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected, provided)


@fulfillment_bp.post("/orders/<int:order_id>/events")
def fulfillment_event(order_id: int):
    if not _authorized():
        return jsonify({"ok": False, "error": "UNAUTHORIZED", "message": "invalid fulfillment key", "status": 401}), 401
    data = json_body()
    event = str(data.get("event") or "").strip().lower()
    if event not in EVENTS:
        raise ValidationError(f"event must be one of: {', '.join(EVENTS)}", code="INVALID_EVENT")
    code = str(data.get("verification_code") or "").strip() or None
    actor = Actor.fulfillment()
    orders = current_core().orders

    if event == "assigned":
        order = orders.assign_rider(order_id, str(data.get("rider_id") or ""), actor)
    elif event == "pickup_scheduled":
        order, _code = orders.schedule_pickup(order_id, actor)
    elif event == "picked_up":
        order = orders.confirm_pickup(order_id, code, actor)
    elif event == "delivery_scheduled":
        order, _code = orders.schedule_delivery(order_id, actor)
    else:
        order = orders.confirm_delivery(order_id, code, actor)
    current_app.logger.info("fulfillment_event order_id=%s event=%s", order_id, event)
    return jsonify({"ok": True, "event": event, "order": order.to_dict()}), 200
