from __future__ import annotations

import unittest

from support import FULFILLMENT_KEY, AppTestCase

from tradesafe.models import PlatformEvent


class FulfillmentEventsTestCase(AppTestCase):
    def _post(self, order_id: int, payload: dict, key: str | None = FULFILLMENT_KEY):
        headers = {"X-Fulfillment-Key": key} if key else {}
        return self.client.post(f"/api/fulfillment/orders/{order_id}/events", json=payload, headers=headers)

    def _paid_order_id(self) -> int:
        with self.app.app_context():
            return int(self.card_order(self.core()).id)

    def test_requires_fulfillment_key(self):
        order_id = self._paid_order_id()
        res = self._post(order_id, {"event": "pickup_scheduled"}, key=None)
        self.assertEqual(res.status_code, 401)
        res = self._post(order_id, {"event": "pickup_scheduled"}, key="wrong-key")
        self.assertEqual(res.status_code, 401)

    def test_partner_drives_pickup_with_issued_code(self):
        order_id = self._paid_order_id()
        rider = self.uid("rider")
        res = self._post(order_id, {"event": "assigned", "rider_id": rider})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["order"]["rider_id"], rider)

        res = self._post(order_id, {"event": "pickup_scheduled"})
        self.assertEqual(res.get_json()["order"]["status"], "pickup_scheduled")
        self.assertNotIn("pickup_code", res.get_json())

        res = self._post(order_id, {"event": "picked_up", "verification_code": "000000x"})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "INVALID_VERIFICATION_CODE")

        with self.app.app_context():
            event = PlatformEvent.query.filter_by(
                event_type="order.pickup_code_issued", subject_id=str(order_id)
            ).first()
            code = event.metadata_dict()["code"]
        res = self._post(order_id, {"event": "picked_up", "verification_code": code})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["order"]["status"], "picked_up")

        with self.app.app_context():
            timeline = self.core().orders.timeline(order_id)
            self.assertEqual(timeline[-1].actor_type, "fulfillment")

    def test_unknown_event_rejected(self):
        order_id = self._paid_order_id()
        res = self._post(order_id, {"event": "teleported"})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "INVALID_EVENT")


if __name__ == "__main__":
    unittest.main()
