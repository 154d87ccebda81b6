from __future__ import annotations

import json
import logging
from collections import defaultdict
from datetime import datetime

from sqlalchemy import func, update

from tradesafe.models import EntryType, LedgerEntry, Order, OrderStatus, ReconciliationReport, Wallet
from tradesafe.services.errors import ConflictError, InvariantViolation, NotFoundError
from tradesafe.services.ledger_service import Balance, wallet_balance, entry_delta
from tradesafe.utils.db import atomic

logger = logging.getLogger(__name__)

DRIFT_REASON = "ledger_drift"
VIOLATION_REASON = "invariant_violation"


def folded_balances(session) -> dict[str, Balance]:
    """Fold every user's ledger in SQL; per-type sums are enough because deltas are linear."""
    rows = (
        session.query(LedgerEntry.user_id, LedgerEntry.entry_type, func.sum(LedgerEntry.amount_minor))
        .group_by(LedgerEntry.user_id, LedgerEntry.entry_type)
        .all()
    )
    folded: dict[str, Balance] = defaultdict(Balance)
    for user_id, entry_type, total in rows:
        folded[user_id] = folded[user_id] + entry_delta(EntryType(entry_type), int(total or 0))
    return dict(folded)


def _freeze(session, user_id: str, now: datetime, reason: str = DRIFT_REASON) -> int:
    session.execute(
        update(Wallet)
        .where(Wallet.user_id == user_id, Wallet.frozen_at.is_(None))
        .values(frozen_at=now, frozen_reason=reason)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(
        update(Order)
        .where(
            Order.seller_id == user_id,
            Order.status.notin_((OrderStatus.COMPLETED, OrderStatus.CANCELLED)),
            Order.halted_at.is_(None),
        )
        .values(halted_at=now, halt_reason=f"{reason}:{user_id}"[:240])
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


def contain_violation(session, error: InvariantViolation) -> dict:
    """Freeze the wallet and halt the order an invariant violation points at.

    The failed transaction is rolled back first; containment commits on its own.
    """
    session.rollback()
    now = datetime.utcnow()
    user_id = str(error.detail.get("user_id") or "").strip()
    order_id = error.detail.get("order_id")
    contained = {"user_id": user_id or None, "order_id": int(order_id) if order_id is not None else None, "halted_orders": 0}
    with atomic(session):
        if user_id:
            contained["halted_orders"] += _freeze(session, user_id, now, VIOLATION_REASON)
        if order_id is not None:
            result = session.execute(
                update(Order)
                .where(Order.id == int(order_id), Order.halted_at.is_(None))
                .values(halted_at=now, halt_reason=f"{VIOLATION_REASON}:{error.message}"[:240])
                .execution_options(synchronize_session=False)
            )
            contained["halted_orders"] += int(result.rowcount or 0)
    error.contained = contained
    logger.critical("invariant_violation_contained message=%s detail=%s", error.message, json.dumps(contained))
    return contained


def recompute_wallet_balances(session, *, freeze: bool = True, since: str | None = None) -> dict:
    """Compare every materialized wallet with the fold of its ledger.

    Drifting wallets are frozen and the owner's open orders halted so no more
    money moves until an operator looks.
    """
    now = datetime.utcnow()
    folded = folded_balances(session)
    wallets = {w.user_id: w for w in session.query(Wallet).order_by(Wallet.user_id.asc()).all()}
    drift_items = []
    for user_id in sorted(set(wallets) | set(folded)):
        stored = wallet_balance(wallets.get(user_id))
        computed = folded.get(user_id, Balance())
        if stored == computed:
            continue
        drift_items.append(
            {
                "user_id": user_id,
                "stored": stored.to_dict(),
                "computed": computed.to_dict(),
                "drift_available_minor": stored.available - computed.available,
                "drift_pending_minor": stored.pending - computed.pending,
            }
        )

    halted = 0
    if drift_items and freeze:
        with atomic(session):
            for item in drift_items:
                halted += _freeze(session, item["user_id"], now)
        for item in drift_items:
            logger.critical("wallet_drift_detected user_id=%s detail=%s", item["user_id"], json.dumps(item))
    else:
        for wallet in wallets.values():
            wallet.last_reconciled_at = now
        session.commit()

    return {
        "ok": not drift_items,
        "scope": "wallet_ledger",
        "since": since or "",
        "wallet_count": len(wallets),
        "drift_count": len(drift_items),
        "drift_items": drift_items,
        "halted_orders": halted,
        "generated_at": now.isoformat(),
    }


def persist_report(session, summary: dict, *, created_by: str | None = None) -> ReconciliationReport:
    report = ReconciliationReport(
        scope=(summary.get("scope") or "wallet_ledger")[:64],
        summary_json=json.dumps(summary)[:200000],
        wallet_count=int(summary.get("wallet_count") or 0),
        drift_count=int(summary.get("drift_count") or 0),
        created_by=created_by,
        created_at=datetime.utcnow(),
    )
    session.add(report)
    session.commit()
    return report


def unfreeze_wallet(session, user_id: str) -> Wallet:
    """Lift a drift freeze once the wallet matches its ledger again. Halted orders stay halted."""
    wallet = session.query(Wallet).filter_by(user_id=user_id).first()
    if wallet is None:
        raise NotFoundError(f"no wallet for {user_id}", code="WALLET_NOT_FOUND")
    computed = folded_balances(session).get(user_id, Balance())
    if wallet_balance(wallet) != computed:
        raise ConflictError("wallet still drifts from its ledger", code="WALLET_DRIFT")
    with atomic(session):
        wallet.frozen_at = None
        wallet.frozen_reason = None
        wallet.last_reconciled_at = datetime.utcnow()
    return wallet
