from __future__ import annotations

from datetime import datetime

from tradesafe.services.reconciliation_service import persist_report, recompute_wallet_balances
from tradesafe.utils.events import dispatch_pending_events
from tradesafe.utils.job_runs import record_job_run


def run_promotion_expiry(core, *, now: datetime | None = None, limit: int = 500) -> dict:
    started_at = datetime.utcnow()
    counts = core.promotions.expire_due(now=now, limit=limit)
    record_job_run(job_name="promotion_expiry", ok=True, started_at=started_at, counts=counts)
    return {"ok": True, **counts}


def run_event_dispatch(session, notifier, *, limit: int = 100) -> dict:
    started_at = datetime.utcnow()
    counts = dispatch_pending_events(session, notifier, limit=limit)
    ok = counts["failed"] == 0
    record_job_run(
        job_name="event_dispatch",
        ok=ok,
        started_at=started_at,
        counts=counts,
        error=None if ok else f"failed={counts['failed']}",
    )
    return {"ok": ok, **counts}


def run_reconciliation(session, *, persist: bool = True, created_by: str | None = None) -> dict:
    started_at = datetime.utcnow()
    summary = recompute_wallet_balances(session, freeze=True)
    if persist:
        summary["report_id"] = int(persist_report(session, summary, created_by=created_by).id)
    record_job_run(
        job_name="reconciliation",
        ok=bool(summary["ok"]),
        started_at=started_at,
        counts={"wallet_count": summary["wallet_count"], "drift_count": summary["drift_count"]},
        error=None if summary["ok"] else f"drift_count={summary['drift_count']}",
    )
    return summary
