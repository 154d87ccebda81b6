from __future__ import annotations

from flask import Blueprint, jsonify, request

from tradesafe.segments.common import amount_from, current_actor, current_core, json_body, query_limit, require_admin

disputes_bp = Blueprint("disputes_bp", __name__, url_prefix="/api")
admin_disputes_bp = Blueprint("admin_disputes_bp", __name__, url_prefix="/api/admin/disputes")


def _dispute_payload(protocol, dispute, *, full: bool = False) -> dict:
    payload = dispute.to_dict()
    if full:
        payload["messages"] = [m.to_dict() for m in protocol.messages(dispute.id)]
        payload["evidence"] = [e.to_dict() for e in protocol.evidence(dispute.id)]
    return payload


@disputes_bp.post("/orders/<int:order_id>/dispute")
def open_dispute(order_id: int):
    actor = current_actor()
    data = json_body()
    evidence = data.get("evidence")
    protocol = current_core().disputes
    dispute, created = protocol.open(
        order_id,
        actor.user_id,
        str(data.get("dispute_type") or ""),
        str(data.get("description") or ""),
        priority=str(data.get("priority") or "medium"),
        evidence=evidence if isinstance(evidence, list) else None,
    )
    return jsonify({"ok": True, "created": created, "dispute": _dispute_payload(protocol, dispute)}), (201 if created else 200)


@disputes_bp.get("/disputes")
def my_disputes():
    actor = current_actor()
    rows = current_core().disputes.list_for_user(actor.user_id, status=request.args.get("status"), limit=query_limit())
    return jsonify({"ok": True, "items": [d.to_dict() for d in rows]}), 200


@disputes_bp.get("/disputes/<int:dispute_id>")
def get_dispute(dispute_id: int):
    protocol = current_core().disputes
    dispute = protocol.get_for_actor(dispute_id, current_actor())
    return jsonify({"ok": True, "dispute": _dispute_payload(protocol, dispute, full=True)}), 200


@disputes_bp.post("/disputes/<int:dispute_id>/messages")
def post_message(dispute_id: int):
    data = json_body()
    row = current_core().disputes.add_message(dispute_id, current_actor(), str(data.get("content") or ""))
    return jsonify({"ok": True, "message": row.to_dict()}), 201


@disputes_bp.post("/disputes/<int:dispute_id>/evidence")
def post_evidence(dispute_id: int):
    row = current_core().disputes.add_evidence(dispute_id, current_actor(), json_body())
    return jsonify({"ok": True, "evidence": row.to_dict()}), 201


@admin_disputes_bp.get("")
def admin_list():
    require_admin()
    rows = current_core().disputes.list_all(status=request.args.get("status"), limit=query_limit(100))
    return jsonify({"ok": True, "items": [d.to_dict() for d in rows]}), 200


@admin_disputes_bp.post("/<int:dispute_id>/investigate")
def admin_investigate(dispute_id: int):
    dispute = current_core().disputes.mark_investigating(dispute_id, require_admin())
    return jsonify({"ok": True, "dispute": dispute.to_dict()}), 200


@admin_disputes_bp.post("/<int:dispute_id>/resolve")
def admin_resolve(dispute_id: int):
    admin = require_admin()
    data = json_body()
    protocol = current_core().disputes
    dispute = protocol.resolve(
        dispute_id,
        str(data.get("decision") or ""),
        str(data.get("resolution") or ""),
        admin,
        seller_award_minor=amount_from(data, "seller_award", required=False),
    )
    return jsonify({"ok": True, "dispute": _dispute_payload(protocol, dispute, full=True)}), 200


@admin_disputes_bp.post("/<int:dispute_id>/close")
def admin_close(dispute_id: int):
    dispute = current_core().disputes.close(dispute_id, require_admin())
    return jsonify({"ok": True, "dispute": dispute.to_dict()}), 200
