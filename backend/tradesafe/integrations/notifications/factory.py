from __future__ import annotations

import os

from tradesafe.integrations.common import IntegrationMisconfiguredError
from tradesafe.integrations.notifications.base import NotificationsProvider
from tradesafe.integrations.notifications.log_provider import LogNotificationsProvider
from tradesafe.integrations.notifications.webhook_provider import WebhookNotificationsProvider


def build_notifications_provider(settings) -> NotificationsProvider:
    provider = (getattr(settings, "notifications_provider", "log") or "log").strip().lower()
    if provider == "log":
        return LogNotificationsProvider()
    if provider != "webhook":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:notifications_provider={provider}")
    url = (getattr(settings, "notifications_webhook_url", "") or "").strip()
    if not url:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing NOTIFICATIONS_WEBHOOK_URL")
    return WebhookNotificationsProvider(url, signing_secret=(os.getenv("NOTIFICATIONS_SIGNING_SECRET") or "").strip())
