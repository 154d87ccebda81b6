from __future__ import annotations

from flask import Blueprint, jsonify, request

from tradesafe.extensions import db
from tradesafe.jobs.maintenance import run_reconciliation
from tradesafe.models import ReconciliationReport
from tradesafe.segments.common import amount_from, current_actor, current_core, idempotent, json_body, query_limit, require_admin
from tradesafe.services.reconciliation_service import recompute_wallet_balances, unfreeze_wallet

wallets_bp = Blueprint("wallets_bp", __name__, url_prefix="/api/wallet")
recon_bp = Blueprint("recon_bp", __name__, url_prefix="/api/admin")


@wallets_bp.get("")
def my_wallet():
    actor = current_actor()
    core = current_core()
    return jsonify({"ok": True, "wallet": core.wallets.summary(actor.user_id)}), 200


@wallets_bp.get("/ledger")
def my_ledger():
    actor = current_actor()
    entries = current_core().ledger.entries_for(
        actor.user_id,
        limit=query_limit(),
        reference_id=request.args.get("reference_id"),
    )
    return jsonify({"ok": True, "items": [e.to_dict() for e in entries]}), 200


@wallets_bp.post("/topup")
def topup():
    actor = current_actor()
    data = json_body()
    entry, applied = current_core().wallets.credit_topup(
        actor.user_id,
        amount_from(data, "amount"),
        str(data.get("reference") or ""),
    )
    return jsonify({"ok": True, "applied": applied, "entry": entry.to_dict()}), 200


@wallets_bp.put("/payout-destination")
def set_payout_destination():
    actor = current_actor()
    data = json_body()
    wallet = current_core().wallets.set_payout_destination(actor.user_id, str(data.get("destination") or ""))
    return jsonify({"ok": True, "wallet": wallet.to_dict()}), 200


@wallets_bp.post("/payouts")
def request_payout():
    actor = current_actor()
    data = json_body()
    amount_minor = amount_from(data, "amount")

    def _payout():
        transfer = current_core().wallets.request_payout(actor.user_id, amount_minor)
        return {"ok": True, "transfer": transfer.to_dict()}, 201

    return idempotent("wallet:payout", actor, data, _payout)


@wallets_bp.get("/payouts")
def my_payouts():
    actor = current_actor()
    rows = current_core().wallets.transfers_for(actor.user_id, limit=query_limit())
    return jsonify({"ok": True, "items": [t.to_dict() for t in rows]}), 200


@recon_bp.post("/reconcile")
def run_recon():
    admin = require_admin()
    data = json_body()
    if data.get("persist", True):
        summary = run_reconciliation(db.session, persist=True, created_by=admin.user_id)
    else:
        summary = recompute_wallet_balances(db.session, freeze=bool(data.get("freeze", True)))
    return jsonify({"ok": True, "report_id": summary.get("report_id"), "summary": summary}), 200


@recon_bp.get("/reconcile/latest")
def latest_report():
    require_admin()
    row = ReconciliationReport.query.order_by(ReconciliationReport.created_at.desc()).first()
    if not row:
        return jsonify({"ok": True, "report": None}), 200
    return jsonify({"ok": True, "report": row.to_dict()}), 200


@recon_bp.post("/wallets/<user_id>/unfreeze")
def admin_unfreeze(user_id: str):
    require_admin()
    wallet = unfreeze_wallet(db.session, user_id)
    return jsonify({"ok": True, "wallet": wallet.to_dict()}), 200


@recon_bp.post("/transfers/retry")
def admin_retry_transfers():
    require_admin()
    data = json_body()
    counts = current_core().wallets.retry_pending_transfers(limit=int(data.get("limit") or 50))
    return jsonify({"ok": True, **counts}), 200
