from __future__ import annotations

import json
import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from tradesafe.extensions import db
from tradesafe.models import JobRun

logger = logging.getLogger(__name__)


def record_job_run(
    *,
    job_name: str,
    ok: bool,
    started_at: datetime,
    counts: dict | None = None,
    error: str | None = None,
) -> JobRun | None:
    duration_ms = max(0, int((datetime.utcnow() - started_at).total_seconds() * 1000))
    try:
        row = JobRun(
            job_name=(job_name or "unknown").strip()[:64],
            ran_at=datetime.utcnow(),
            ok=bool(ok),
            duration_ms=duration_ms,
            counts_json=json.dumps(counts or {}),
            error=(error or "")[:1000] or None,
        )
        db.session.add(row)
        db.session.commit()
        return row
    except SQLAlchemyError:
        db.session.rollback()
        logger.warning("job_run_not_recorded job=%s", job_name, exc_info=True)
        return None
