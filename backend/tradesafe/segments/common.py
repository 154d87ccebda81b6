from __future__ import annotations

from flask import abort, g, jsonify, request

from tradesafe.extensions import db
from tradesafe.services.core import Core, core_for_app
from tradesafe.services.errors import PermissionDenied, ValidationError
from tradesafe.services.order_service import Actor
from tradesafe.utils.idempotency import lookup_response, release_key, store_response
from tradesafe.utils.money import parse_amount_minor


def current_core() -> Core:
    return core_for_app()


def current_actor() -> Actor:
    uid = getattr(g, "auth_user_id", None)
    if not uid:
        abort(401, description="Authentication required")
    return Actor(user_id=uid, role=getattr(g, "auth_role", None) or "user")


def require_admin() -> Actor:
    actor = current_actor()
    if not actor.is_admin:
        raise PermissionDenied("Admin required")
    return actor


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("request body must be a JSON object", code="INVALID_PAYLOAD")
    return data


def amount_from(payload: dict, key: str, *, required: bool = True) -> int | None:
    try:
        value = parse_amount_minor(payload, key)
    except ValueError:
        raise ValidationError(f"{key} is not a valid amount", code="INVALID_AMOUNT")
    if value is None and required:
        raise ValidationError(f"{key} is required", code="INVALID_AMOUNT")
    return value


def query_limit(default: int = 50) -> int:
    try:
        return max(1, min(int(request.args.get("limit") or default), 200))
    except ValueError:
        return default


def idempotent(scope: str, actor: Actor, payload: dict, handler):
    """Run ``handler`` once per Idempotency-Key; replays get the stored response."""
    idem = lookup_response(actor.user_id, scope, payload)
    if idem is not None and idem[0] in ("hit", "conflict"):
        return jsonify(idem[1]), idem[2]
    row = idem[1] if idem is not None else None
    try:
        body, status = handler()
    except Exception:
        if row is not None:
            db.session.rollback()
            release_key(row)
        raise
    if row is not None:
        store_response(row, body, status)
    return jsonify(body), status
