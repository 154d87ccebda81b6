from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any

from flask import has_request_context, request
from sqlalchemy.exc import IntegrityError

from tradesafe.extensions import db
from tradesafe.models import IdempotencyKey


def _canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def _hash_request(*, scope: str, payload: Any) -> str:
    return hashlib.sha256(f"{scope}|{_canonical_json(payload)}".encode("utf-8")).hexdigest()


def get_idempotency_key() -> str | None:
    if not has_request_context():
        return None
    k = request.headers.get("Idempotency-Key") or request.headers.get("X-Idempotency-Key")
    if not k:
        return None
    return k.strip()[:128] or None


def _reuse_conflict_response() -> tuple[str, dict, int]:
    return (
        "conflict",
        {
            "ok": False,
            "error": "IDEMPOTENCY_KEY_REUSE",
            "message": "This Idempotency-Key was already used with a different request payload.",
            "status": 409,
        },
        409,
    )


def lookup_response(user_id: str | None, scope: str, payload: Any, *, idempotency_key: str | None = None):
    """Return ``None`` (no key), ``("hit", body, code)``, ``("conflict", body, 409)`` or ``("miss", row, 0)``.

    A miss reserves the key; the caller must pass the row to ``store_response``
    once the operation finished.
    """
    k = (idempotency_key or get_idempotency_key() or "").strip()[:128]
    if not k:
        return None
    req_hash = _hash_request(scope=scope, payload=payload)
    row = IdempotencyKey.query.filter_by(scope=scope, key=k).first()
    if row is None:
        row = IdempotencyKey(
            key=k,
            scope=scope,
            user_id=user_id,
            request_hash=req_hash,
            created_at=datetime.utcnow(),
            updated_at=datetime.utcnow(),
        )
        try:
            db.session.add(row)
            db.session.commit()
            return ("miss", row, 0)
        except IntegrityError:
            db.session.rollback()
            row = IdempotencyKey.query.filter_by(scope=scope, key=k).first()
            if row is None:
                raise

    if row.request_hash != req_hash:
        return _reuse_conflict_response()
    if row.response_json:
        return ("hit", json.loads(row.response_json), int(row.response_code or 200))
    # reserved by a request that has not finished
    return (
        "conflict",
        {
            "ok": False,
            "error": "IDEMPOTENCY_KEY_IN_FLIGHT",
            "message": "A request with this Idempotency-Key is still being processed.",
            "status": 409,
        },
        409,
    )


def store_response(row: IdempotencyKey, response_json: Any, status_code: int) -> None:
    row.response_json = json.dumps(response_json, separators=(",", ":"), default=str)
    row.response_code = int(status_code or 200)
    row.updated_at = datetime.utcnow()
    db.session.add(row)
    db.session.commit()


def release_key(row: IdempotencyKey) -> None:
    """Forget a reservation whose request failed, so a retry can run again."""
    db.session.delete(row)
    db.session.commit()
