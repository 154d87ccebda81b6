from __future__ import annotations

import json
import logging

from tradesafe.integrations.common import IntegrationResult
from tradesafe.integrations.notifications.base import NotificationsProvider

logger = logging.getLogger(__name__)


class LogNotificationsProvider(NotificationsProvider):
    name = "log"

    def __init__(self):
        self.published: list[dict] = []

    def publish(self, event: dict) -> IntegrationResult:
        self.published.append(event)
        logger.info(json.dumps({"event": "domain_event_published", **event}, default=str))
        return IntegrationResult(ok=True, code="OK", message="logged")
