from __future__ import annotations

from flask import Blueprint, jsonify

from tradesafe.segments.common import amount_from, current_actor, current_core, idempotent, json_body, query_limit

promotions_bp = Blueprint("promotions_bp", __name__, url_prefix="/api/promotions")


@promotions_bp.post("")
def create_promotion():
    actor = current_actor()
    data = json_body()
    price_minor = amount_from(data, "price")

    def _create():
        promo = current_core().promotions.create(
            actor.user_id,
            str(data.get("item_id") or ""),
            str(data.get("plan_code") or ""),
            price_minor,
            data.get("duration_hours"),
            payment_method=str(data.get("payment_method") or "wallet"),
            payment_reference=data.get("payment_reference"),
        )
        return {"ok": True, "promotion": promo.to_dict()}, 201

    return idempotent("promotions:create", actor, data, _create)


@promotions_bp.get("")
def my_promotions():
    actor = current_actor()
    rows = current_core().promotions.list_for_seller(actor.user_id, limit=query_limit())
    return jsonify({"ok": True, "items": [p.to_dict() for p in rows]}), 200


@promotions_bp.post("/<int:promotion_id>/cancel")
def cancel_promotion(promotion_id: int):
    promo = current_core().promotions.cancel(promotion_id, current_actor())
    return jsonify({"ok": True, "promotion": promo.to_dict()}), 200
