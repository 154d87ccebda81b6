from __future__ import annotations

import json
import os
import time
from datetime import datetime

from celery import shared_task
from flask import current_app

from tradesafe.extensions import db
from tradesafe.integrations.notifications.factory import build_notifications_provider
from tradesafe.jobs.escrow_runner import run_auto_completion, run_transfer_retries
from tradesafe.jobs.maintenance import run_event_dispatch, run_promotion_expiry, run_reconciliation
from tradesafe.services.core import core_for_app
from tradesafe.services.webhook_service import process_payment_webhook


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    duration_ms = int(max(0.0, (time.perf_counter() - float(started_at))) * 1000.0)
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": duration_ms,
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    current_app.logger.info(json.dumps(payload, default=str))


def _retry_countdown(retries: int) -> int:
    # exponential backoff, capped at 15 minutes
    return int(min(900, max(5, 5 * (2 ** int(max(0, retries))))))


def _limit(name: str, default: int) -> int:
    try:
        value = int((os.getenv(name) or str(default)).strip())
    except ValueError:
        value = default
    return max(1, min(value, 1000))


def _run_job(task, task_name: str, job, *, trace_id: str = "", **extra):
    """Run a job function, retrying with backoff when it raises."""
    started = time.perf_counter()
    try:
        result = job()
    except Exception as exc:
        db.session.rollback()
        if int(task.request.retries or 0) < int(task.max_retries or 0):
            countdown = _retry_countdown(int(task.request.retries or 0))
            _task_log(task_name, status="retrying", started_at=started, trace_id=trace_id, detail=str(exc), countdown=countdown, **extra)
            raise task.retry(exc=exc, countdown=countdown)
        _task_log(task_name, status="failed", started_at=started, trace_id=trace_id, detail=str(exc), **extra)
        raise
    _task_log(
        task_name,
        status="ok" if bool(result.get("ok", True)) else "degraded",
        started_at=started,
        trace_id=trace_id,
        **extra,
    )
    return result


@shared_task(
    bind=True,
    name="tradesafe.tasks.settlement_tasks.process_payment_webhook",
    max_retries=5,
)
def process_payment_webhook_task(
    self,
    *,
    payload: dict,
    raw_text: str = "",
    signature: str | None = None,
    source: str = "api/webhooks/paystack:queued",
    trace_id: str = "",
):
    started = time.perf_counter()
    try:
        body, code = process_payment_webhook(
            core_for_app(),
            payload=payload if isinstance(payload, dict) else {},
            raw=(raw_text or "").encode("utf-8"),
            signature=signature,
            source=source,
        )
    except Exception as exc:
        db.session.rollback()
        if int(self.request.retries or 0) < int(self.max_retries or 0):
            countdown = _retry_countdown(int(self.request.retries or 0))
            _task_log("process_payment_webhook", status="retrying", started_at=started, trace_id=trace_id, detail=str(exc), countdown=countdown)
            raise self.retry(exc=exc, countdown=countdown)
        _task_log("process_payment_webhook", status="failed", started_at=started, trace_id=trace_id, detail=str(exc))
        raise
    if int(code) >= 500 and int(self.request.retries or 0) < int(self.max_retries or 0):
        countdown = _retry_countdown(int(self.request.retries or 0))
        _task_log("process_payment_webhook", status="retrying", started_at=started, trace_id=trace_id, status_code=int(code), countdown=countdown)
        raise self.retry(exc=RuntimeError(f"webhook_status_{int(code)}"), countdown=countdown)
    _task_log("process_payment_webhook", status="ok", started_at=started, trace_id=trace_id, status_code=int(code))
    return {"ok": bool(body.get("ok")), "status_code": int(code), "body": body}


@shared_task(bind=True, name="tradesafe.tasks.settlement_tasks.run_auto_completion", max_retries=3)
def run_auto_completion_task(self, *, trace_id: str = ""):
    limit = _limit("AUTO_COMPLETE_LIMIT", 200)
    return _run_job(
        self,
        "run_auto_completion",
        lambda: run_auto_completion(core_for_app(), limit=limit),
        trace_id=trace_id,
        limit=limit,
    )


@shared_task(bind=True, name="tradesafe.tasks.settlement_tasks.run_promotion_expiry", max_retries=3)
def run_promotion_expiry_task(self, *, trace_id: str = ""):
    return _run_job(self, "run_promotion_expiry", lambda: run_promotion_expiry(core_for_app()), trace_id=trace_id)


@shared_task(bind=True, name="tradesafe.tasks.settlement_tasks.run_transfer_retries", max_retries=3)
def run_transfer_retries_task(self, *, trace_id: str = ""):
    limit = _limit("TRANSFER_RETRY_LIMIT", 50)
    return _run_job(
        self,
        "run_transfer_retries",
        lambda: run_transfer_retries(core_for_app(), limit=limit),
        trace_id=trace_id,
        limit=limit,
    )


@shared_task(bind=True, name="tradesafe.tasks.settlement_tasks.run_event_dispatch", max_retries=3)
def run_event_dispatch_task(self, *, trace_id: str = ""):
    settings = current_app.extensions["tradesafe"]["settings"]
    return _run_job(
        self,
        "run_event_dispatch",
        lambda: run_event_dispatch(db.session, build_notifications_provider(settings)),
        trace_id=trace_id,
    )


@shared_task(bind=True, name="tradesafe.tasks.settlement_tasks.run_reconciliation", max_retries=1)
def run_reconciliation_task(self, *, trace_id: str = ""):
    return _run_job(
        self,
        "run_reconciliation",
        lambda: run_reconciliation(db.session, persist=True, created_by="system"),
        trace_id=trace_id,
    )
