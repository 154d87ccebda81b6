from __future__ import annotations

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable

from sqlalchemy.exc import SQLAlchemyError

from tradesafe.models import PlatformEvent
from tradesafe.utils.observability import get_request_id

logger = logging.getLogger(__name__)


def _safe_value(value: Any):
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _safe_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_safe_value(v) for v in value]
    return str(value)


def _safe_json(data: Any) -> str:
    return json.dumps(_safe_value(data), separators=(",", ":"), ensure_ascii=False)


def emit_event(
    session,
    event_type: str,
    *,
    subject_type: str,
    subject_id: int | str,
    actor_id: str | None = None,
    recipients: Iterable[str] = (),
    idempotency_key: str | None = None,
    metadata: dict | None = None,
) -> PlatformEvent | None:
    """Queue a domain event in the outbox of the current transaction.

    Runs in a savepoint: a failure here drops the event and never fails the
    transition that emitted it.
    """
    key = (idempotency_key or "").strip()[:180] or None
    try:
        with session.begin_nested():
            if key:
                existing = session.query(PlatformEvent).filter_by(idempotency_key=key).first()
                if existing is not None:
                    return existing
            event = PlatformEvent(
                event_type=event_type[:80],
                actor_id=actor_id,
                subject_type=subject_type[:40],
                subject_id=str(subject_id)[:64],
                recipients_json=_safe_json(sorted({r for r in recipients if r})),
                request_id=get_request_id()[:80] or None,
                idempotency_key=key,
                metadata_json=_safe_json(metadata or {}),
            )
            session.add(event)
        return event
    except SQLAlchemyError:
        logger.warning("domain_event_dropped event_type=%s subject=%s:%s", event_type, subject_type, subject_id, exc_info=True)
        return None


def dispatch_pending_events(session, notifier, *, limit: int = 100, max_attempts: int = 10) -> dict:
    """Hand undelivered outbox rows to the notification service."""
    rows = (
        session.query(PlatformEvent)
        .filter(PlatformEvent.dispatched_at.is_(None), PlatformEvent.dispatch_attempts < max_attempts)
        .order_by(PlatformEvent.id.asc())
        .limit(int(limit))
        .all()
    )
    sent = 0
    failed = 0
    for row in rows:
        result = notifier.publish(row.to_dict())
        row.dispatch_attempts = int(row.dispatch_attempts or 0) + 1
        if result.ok:
            row.dispatched_at = datetime.utcnow()
            row.last_error = None
            sent += 1
        else:
            row.last_error = (result.message or result.code or "publish_failed")[:400]
            failed += 1
        session.commit()
    return {"scanned": len(rows), "sent": sent, "failed": failed}
