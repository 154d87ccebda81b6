from __future__ import annotations

import logging
from datetime import datetime

from tradesafe.services.errors import ConflictError, CoreError, InvariantViolation
from tradesafe.services.reconciliation_service import contain_violation
from tradesafe.utils.job_runs import record_job_run

logger = logging.getLogger(__name__)


def _now():
    return datetime.utcnow()


def run_auto_completion(core, *, limit: int = 200, now: datetime | None = None) -> dict:
    """Complete delivered orders the buyer never confirmed.

    Each order goes through the same CAS as a buyer confirmation, so an order
    disputed meanwhile is skipped rather than released.
    """
    started_at = _now()
    now = now or started_at
    processed = 0
    completed = 0
    skipped = 0
    errors = 0

    for order_id in core.orders.due_for_auto_completion(now=now, limit=limit):
        processed += 1
        try:
            core.orders.auto_complete(order_id, now=now)
            completed += 1
        except ConflictError as exc:
            skipped += 1
            logger.info("auto_complete_skipped order_id=%s code=%s", order_id, exc.code)
        except InvariantViolation as exc:
            errors += 1
            contain_violation(core.session, exc)
        except CoreError as exc:
            errors += 1
            logger.error("auto_complete_failed order_id=%s code=%s", order_id, exc.code)

    result = {
        "ok": errors == 0,
        "processed": processed,
        "completed": completed,
        "skipped": skipped,
        "errors": errors,
        "ts": _now().isoformat(),
    }
    record_job_run(
        job_name="auto_completion",
        ok=errors == 0,
        started_at=started_at,
        counts=result,
        error=None if errors == 0 else f"errors={errors}",
    )
    return result


def run_transfer_retries(core, *, limit: int = 50) -> dict:
    started_at = _now()
    counts = core.wallets.retry_pending_transfers(limit=limit)
    result = {"ok": True, **counts, "ts": _now().isoformat()}
    record_job_run(job_name="transfer_retries", ok=True, started_at=started_at, counts=counts)
    return result
