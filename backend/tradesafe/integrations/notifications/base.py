from __future__ import annotations

from tradesafe.integrations.common import IntegrationResult


class NotificationsProvider:
    """Downstream fan-out of domain events (push, email, in-app)."""

    name = "unknown"

    def publish(self, event: dict) -> IntegrationResult:
        raise NotImplementedError
