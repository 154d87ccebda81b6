from __future__ import annotations

import unittest
import uuid

from support import AppTestCase


class RequestIdHeadersTestCase(AppTestCase):
    def test_generates_request_id_when_missing(self):
        res = self.client.get("/api/health")
        self.assertEqual(res.status_code, 200)
        rid = (res.headers.get("X-Request-ID") or "").strip()
        self.assertTrue(rid)
        uuid.UUID(rid)

    def test_echoes_request_id_when_provided(self):
        incoming = "rid-test-123"
        res = self.client.get("/api/health", headers={"X-Request-ID": incoming})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.headers.get("X-Request-ID"), incoming)

    def test_error_payload_includes_trace_id(self):
        res = self.client.post("/api/orders", json={"item_id": "missing-auth"})
        self.assertEqual(res.status_code, 401)
        body = res.get_json(force=True)
        self.assertIsInstance(body, dict)
        self.assertIn("trace_id", body)
        self.assertEqual((body.get("trace_id") or "").strip(), (res.headers.get("X-Request-ID") or "").strip())

    def test_outbox_events_carry_request_id(self):
        user = self.uid("user")
        res = self.client.post(
            "/api/wallet/topup",
            json={"amount_minor": 700, "reference": self.uid("topup")},
            headers={**self.auth(user), "X-Request-ID": "rid-topup-1"},
        )
        self.assertEqual(res.status_code, 200)
        from tradesafe.models import PlatformEvent

        with self.app.app_context():
            event = PlatformEvent.query.filter_by(event_type="wallet.topped_up", subject_id=user).first()
            self.assertIsNotNone(event)
            self.assertEqual(event.request_id, "rid-topup-1")


if __name__ == "__main__":
    unittest.main()
