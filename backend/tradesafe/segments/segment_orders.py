from __future__ import annotations

from flask import Blueprint, jsonify, request

from tradesafe.segments.common import (
    amount_from,
    current_actor,
    current_core,
    idempotent,
    json_body,
    query_limit,
    require_admin,
)
from tradesafe.services.errors import PermissionDenied

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api")


def _order_body(order, **extra) -> dict:
    body = {"ok": True, "order": order.to_dict()}
    body.update(extra)
    return body


@orders_bp.post("/orders")
def create_order():
    actor = current_actor()
    data = json_body()
    total_minor = amount_from(data, "total")

    def _create():
        order = current_core().orders.create_order(
            str(data.get("item_id") or ""),
            actor.user_id,
            str(data.get("seller_id") or ""),
            total_minor,
            payment_method=(data.get("payment_method") or "card"),
            payment_reference=data.get("payment_reference"),
            actor=actor,
        )
        return _order_body(order), 201

    return idempotent("orders:create", actor, data, _create)


@orders_bp.get("/orders")
def list_orders():
    actor = current_actor()
    role = (request.args.get("role") or "buyer").strip().lower()
    rows = current_core().orders.list_for_user(actor.user_id, as_role=role, limit=query_limit())
    return jsonify({"ok": True, "items": [o.to_dict() for o in rows]}), 200


@orders_bp.get("/orders/<int:order_id>")
def get_order(order_id: int):
    order = current_core().orders.get_for_actor(order_id, current_actor())
    return jsonify(_order_body(order)), 200


@orders_bp.get("/orders/<int:order_id>/timeline")
def order_timeline(order_id: int):
    core = current_core()
    core.orders.get_for_actor(order_id, current_actor())
    items = [t.to_dict() for t in core.orders.timeline(order_id)]
    return jsonify({"ok": True, "order_id": order_id, "items": items}), 200


@orders_bp.post("/orders/<int:order_id>/payments/confirm")
def confirm_card_payment(order_id: int):
    actor = current_actor()
    data = json_body()
    core = current_core()
    order = core.orders.get(order_id)
    if not (actor.is_admin or actor.user_id == order.buyer_id):
        raise PermissionDenied("only the buyer can confirm payment")
    order, applied = core.orders.confirm_payment(
        order_id,
        reference=str(data.get("reference") or ""),
        amount_minor=amount_from(data, "amount", required=False),
        actor=actor,
    )
    return jsonify(_order_body(order, applied=applied)), 200


@orders_bp.post("/orders/<int:order_id>/payments/wallet")
def pay_with_wallet(order_id: int):
    actor = current_actor()

    def _pay():
        order, applied = current_core().orders.pay_with_wallet(order_id, actor)
        return _order_body(order, applied=applied), 200

    return idempotent(f"orders:{order_id}:wallet_pay", actor, {"order_id": order_id}, _pay)


@orders_bp.post("/orders/<int:order_id>/rider")
def assign_rider(order_id: int):
    data = json_body()
    order = current_core().orders.assign_rider(order_id, str(data.get("rider_id") or ""), current_actor())
    return jsonify(_order_body(order)), 200


@orders_bp.post("/orders/<int:order_id>/pickup/schedule")
def schedule_pickup(order_id: int):
    actor = current_actor()
    order, code = current_core().orders.schedule_pickup(order_id, actor)
    extra = {"pickup_code": code} if actor.user_id == order.seller_id else {}
    return jsonify(_order_body(order, **extra)), 200


@orders_bp.post("/orders/<int:order_id>/pickup/confirm")
def confirm_pickup(order_id: int):
    data = json_body()
    order = current_core().orders.confirm_pickup(order_id, str(data.get("code") or ""), current_actor())
    return jsonify(_order_body(order)), 200


@orders_bp.post("/orders/<int:order_id>/delivery/schedule")
def schedule_delivery(order_id: int):
    # the dropoff code goes to the buyer through the event outbox only
    order, _code = current_core().orders.schedule_delivery(order_id, current_actor())
    return jsonify(_order_body(order)), 200


@orders_bp.post("/orders/<int:order_id>/delivery/confirm")
def confirm_delivery(order_id: int):
    data = json_body()
    order = current_core().orders.confirm_delivery(order_id, str(data.get("code") or ""), current_actor())
    return jsonify(_order_body(order)), 200


@orders_bp.post("/orders/<int:order_id>/complete")
def complete_order(order_id: int):
    order = current_core().orders.complete(order_id, current_actor())
    return jsonify(_order_body(order)), 200


@orders_bp.post("/orders/<int:order_id>/cancel")
def cancel_order(order_id: int):
    data = json_body()
    order = current_core().orders.cancel(order_id, current_actor(), str(data.get("reason") or ""))
    return jsonify(_order_body(order)), 200


@orders_bp.post("/admin/orders/<int:order_id>/halt")
def halt_order(order_id: int):
    require_admin()
    data = json_body()
    order = current_core().orders.halt(order_id, str(data.get("reason") or "halted by admin"))
    return jsonify(_order_body(order)), 200
