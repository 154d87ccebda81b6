from __future__ import annotations

import hashlib
import hmac
import json

import requests

from tradesafe.integrations.common import IntegrationResult
from tradesafe.integrations.notifications.base import NotificationsProvider


class WebhookNotificationsProvider(NotificationsProvider):
    name = "webhook"

    def __init__(self, url: str, *, signing_secret: str = "", timeout: int = 10):
        self.url = url
        self.signing_secret = signing_secret
        self.timeout = timeout

    def publish(self, event: dict) -> IntegrationResult:
        body = json.dumps(event, separators=(",", ":"), default=str).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.signing_secret:
            headers["X-Tradesafe-Signature"] = hmac.new(
                self.signing_secret.encode("utf-8"), body, hashlib.sha256
            ).hexdigest()
        try:
            r = requests.post(self.url, data=body, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            return IntegrationResult(ok=False, code="NOTIFY_UNREACHABLE", message=type(exc).__name__)
        if 200 <= r.status_code < 300:
            return IntegrationResult(ok=True, code="OK")
        return IntegrationResult(ok=False, code=f"NOTIFY_HTTP_{r.status_code}", message=r.text[:200])
