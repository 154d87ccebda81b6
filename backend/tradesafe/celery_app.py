from __future__ import annotations

import json
import os
from datetime import datetime

from celery import Celery
from celery.signals import task_failure, task_retry


_SIGNALS_BOUND = False

TASK_PREFIX = "tradesafe.tasks.settlement_tasks"

# beat entry -> (task, interval env var, default seconds)
PERIODIC_JOBS = {
    "order-auto-completion": ("run_auto_completion", "AUTO_COMPLETE_INTERVAL_SECONDS", 300),
    "promotion-expiry": ("run_promotion_expiry", "PROMOTION_EXPIRY_INTERVAL_SECONDS", 300),
    "transfer-retries": ("run_transfer_retries", "TRANSFER_RETRY_INTERVAL_SECONDS", 120),
    "event-dispatch": ("run_event_dispatch", "EVENT_DISPATCH_INTERVAL_SECONDS", 60),
    "wallet-reconciliation": ("run_reconciliation", "RECONCILIATION_INTERVAL_SECONDS", 3600),
}


def _redis_urls() -> tuple[str, str]:
    redis_url = (os.getenv("REDIS_URL") or "").strip()
    broker = (os.getenv("CELERY_BROKER_URL") or "").strip() or redis_url or "redis://localhost:6379/0"
    backend = (os.getenv("CELERY_RESULT_BACKEND") or "").strip() or redis_url or broker
    return broker, backend


def _interval_seconds(name: str, default: int) -> float:
    try:
        value = int((os.getenv(name) or str(default)).strip())
    except ValueError:
        value = default
    return float(max(30, value))


def beat_schedule() -> dict:
    return {
        entry: {"task": f"{TASK_PREFIX}.{task}", "schedule": _interval_seconds(env_name, default)}
        for entry, (task, env_name, default) in PERIODIC_JOBS.items()
    }


def _trace_id(kwargs) -> str:
    if not isinstance(kwargs, dict):
        return ""
    return str(kwargs.get("trace_id") or "").strip()


def _bind_task_observers(flask_app) -> None:
    global _SIGNALS_BOUND
    if _SIGNALS_BOUND:
        return

    def _emit(level, event: str, **fields) -> None:
        payload = {"event": event, **fields, "timestamp": datetime.utcnow().isoformat()}
        level(json.dumps(payload, default=str))

    @task_failure.connect(weak=False)
    def _on_task_failure(sender=None, task_id=None, exception=None, args=None, kwargs=None, einfo=None, **extra):
        _emit(
            flask_app.logger.error,
            "celery_task_failure",
            task_name=getattr(sender, "name", "") if sender is not None else "",
            task_id=str(task_id or ""),
            trace_id=_trace_id(kwargs),
            exception=str(exception or ""),
            einfo=str(einfo) if einfo is not None else "",
        )

    @task_retry.connect(weak=False)
    def _on_task_retry(request=None, reason=None, einfo=None, **extra):
        _emit(
            flask_app.logger.warning,
            "celery_task_retry",
            task_name=str(getattr(request, "task", "") or ""),
            task_id=str(getattr(request, "id", "") or ""),
            trace_id=_trace_id(getattr(request, "kwargs", None)),
            reason=str(reason or ""),
            retry_count=int(getattr(request, "retries", 0) or 0),
        )

    _SIGNALS_BOUND = True


def create_celery_app(flask_app) -> Celery:
    """Celery bound to ``flask_app``: every task body runs inside its app context."""
    broker, backend = _redis_urls()
    celery = Celery(flask_app.import_name, broker=broker, backend=backend)
    celery.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        task_track_started=True,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        broker_connection_retry_on_startup=True,
        timezone="UTC",
        enable_utc=True,
        beat_schedule=beat_schedule(),
    )

    class FlaskContextTask(celery.Task):
        def __call__(self, *args, **kwargs):
            with flask_app.app_context():
                return self.run(*args, **kwargs)

    celery.Task = FlaskContextTask
    celery.autodiscover_tasks(["tradesafe.tasks"], related_name="settlement_tasks")
    _bind_task_observers(flask_app)
    return celery
