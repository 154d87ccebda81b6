from __future__ import annotations

import unittest
from unittest.mock import MagicMock, patch

import requests

from support import AppTestCase

from tradesafe.extensions import db
from tradesafe.integrations.common import IntegrationResult
from tradesafe.integrations.notifications.log_provider import LogNotificationsProvider
from tradesafe.integrations.notifications.webhook_provider import WebhookNotificationsProvider
from tradesafe.jobs.maintenance import run_event_dispatch
from tradesafe.models import JobRun, PlatformEvent
from tradesafe.utils.events import emit_event


class _RefusingNotifier:
    def publish(self, event: dict) -> IntegrationResult:
        return IntegrationResult(ok=False, code="NOTIFY_HTTP_500", message="down")


class EventOutboxTestCase(AppTestCase):
    def test_emit_is_deduplicated_by_idempotency_key(self):
        with self.app.app_context():
            key = self.uid("event")
            first = emit_event(db.session, "order.created", subject_type="order", subject_id=1, idempotency_key=key)
            second = emit_event(db.session, "order.created", subject_type="order", subject_id=1, idempotency_key=key)
            db.session.commit()
            self.assertEqual(first.id, second.id)
            self.assertEqual(PlatformEvent.query.filter_by(idempotency_key=key).count(), 1)

    def test_dispatch_marks_events_sent(self):
        with self.app.app_context():
            order = self.card_order(self.core())
            notifier = LogNotificationsProvider()
            result = run_event_dispatch(db.session, notifier)
            self.assertTrue(result["ok"])
            self.assertGreaterEqual(result["sent"], 2)
            types = {e["event_type"] for e in notifier.published}
            self.assertIn("order.created", types)
            self.assertIn("order.transitioned", types)
            self.assertEqual(
                PlatformEvent.query.filter(PlatformEvent.dispatched_at.is_(None)).count(),
                0,
            )
            self.assertEqual(run_event_dispatch(db.session, notifier)["scanned"], 0)
            self.assertTrue(JobRun.query.filter_by(job_name="event_dispatch").count() >= 2)
            self.assertTrue(any(e["subject_id"] == str(order.id) for e in notifier.published))

    def test_failed_dispatch_keeps_event_pending(self):
        with self.app.app_context():
            key = self.uid("event")
            emit_event(db.session, "wallet.topped_up", subject_type="wallet", subject_id="u1", idempotency_key=key)
            db.session.commit()
            result = run_event_dispatch(db.session, _RefusingNotifier())
            self.assertFalse(result["ok"])
            self.assertGreaterEqual(result["failed"], 1)
            row = PlatformEvent.query.filter_by(idempotency_key=key).first()
            self.assertIsNone(row.dispatched_at)
            self.assertEqual(row.dispatch_attempts, 1)
            self.assertEqual(row.last_error, "down")


class WebhookNotificationsProviderTestCase(unittest.TestCase):
    @patch("tradesafe.integrations.notifications.webhook_provider.requests.post")
    def test_signs_and_posts_event(self, post):
        post.return_value = MagicMock(status_code=202, text="")
        provider = WebhookNotificationsProvider("https://notify.example/hook", signing_secret="s3cret")
        result = provider.publish({"event_type": "order.paid"})
        self.assertTrue(result.ok)
        headers = post.call_args.kwargs["headers"]
        self.assertEqual(len(headers["X-Tradesafe-Signature"]), 64)

    @patch("tradesafe.integrations.notifications.webhook_provider.requests.post")
    def test_unreachable_service_is_reported(self, post):
        post.side_effect = requests.ConnectionError("refused")
        result = WebhookNotificationsProvider("https://notify.example/hook").publish({})
        self.assertFalse(result.ok)
        self.assertEqual(result.code, "NOTIFY_UNREACHABLE")


if __name__ == "__main__":
    unittest.main()
