from __future__ import annotations

import hashlib
import hmac
import os
import secrets

from flask import current_app, has_app_context

PICKUP = "pickup"
DROPOFF = "dropoff"


def _secret_bytes() -> bytes:
    secret = ""
    if has_app_context():
        secret = current_app.config.get("SECRET_KEY") or ""
    if not secret:
        secret = os.getenv("SECRET_KEY") or "dev-secret"
    return str(secret).encode()


def generate_code() -> str:
    return f"{secrets.randbelow(10000):04d}"


def hash_code(order_id: int, step: str, code: str) -> str:
    raw = f"{int(order_id)}:{step}:{str(code).strip()}"
    return hmac.new(_secret_bytes(), raw.encode(), hashlib.sha256).hexdigest()


def verify_code(code_hash: str | None, order_id: int, step: str, code: str | None) -> bool:
    if not (code_hash or "").strip() or not (code or "").strip():
        return False
    return hmac.compare_digest(str(code_hash), hash_code(order_id, step, str(code)))
