from __future__ import annotations

import unittest

from support import AppTestCase

from tradesafe.models import PlatformEvent


class OrderApiFlowTestCase(AppTestCase):
    def _issued_code(self, event_type: str, order_id: int) -> str:
        with self.app.app_context():
            event = PlatformEvent.query.filter_by(event_type=event_type, subject_id=str(order_id)).first()
            self.assertIsNotNone(event)
            return event.metadata_dict()["code"]

    def test_wallet_paid_order_end_to_end(self):
        buyer, seller, rider = self.uid("buyer"), self.uid("seller"), self.uid("rider")
        res = self.client.post(
            "/api/wallet/topup", json={"amount": "100.00", "reference": self.uid("topup")}, headers=self.auth(buyer)
        )
        self.assertEqual(res.status_code, 200)

        res = self.client.post(
            "/api/orders",
            json={"item_id": "item-42", "seller_id": seller, "total_minor": 10000, "payment_method": "wallet"},
            headers=self.auth(buyer),
        )
        self.assertEqual(res.status_code, 201)
        order = res.get_json()["order"]
        order_id = order["id"]
        self.assertEqual(order["status"], "created")
        self.assertEqual(order["platform_fee_minor"], 500)
        self.assertEqual(order["seller_net_minor"], 9500)

        res = self.client.post(f"/api/orders/{order_id}/payments/wallet", headers=self.auth(buyer))
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.get_json()["applied"])
        self.assertEqual(res.get_json()["order"]["status"], "paid")

        res = self.client.post(f"/api/orders/{order_id}/rider", json={"rider_id": rider}, headers=self.auth(seller))
        self.assertEqual(res.status_code, 200)

        res = self.client.post(f"/api/orders/{order_id}/pickup/schedule", headers=self.auth(seller))
        self.assertEqual(res.status_code, 200)
        pickup_code = res.get_json()["pickup_code"]
        self.assertEqual(pickup_code, self._issued_code("order.pickup_code_issued", order_id))

        res = self.client.post(
            f"/api/orders/{order_id}/pickup/confirm", json={"code": pickup_code}, headers=self.auth(rider)
        )
        self.assertEqual(res.get_json()["order"]["status"], "picked_up")

        res = self.client.post(f"/api/orders/{order_id}/delivery/schedule", headers=self.auth(rider))
        self.assertEqual(res.status_code, 200)
        self.assertNotIn("dropoff_code", res.get_json())
        dropoff_code = self._issued_code("order.delivery_code_issued", order_id)

        res = self.client.post(
            f"/api/orders/{order_id}/delivery/confirm", json={"code": dropoff_code}, headers=self.auth(rider)
        )
        self.assertEqual(res.get_json()["order"]["status"], "delivered")

        res = self.client.post(f"/api/orders/{order_id}/complete", headers=self.auth(buyer))
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["order"]["status"], "completed")

        res = self.client.get("/api/wallet", headers=self.auth(seller))
        self.assertEqual(res.get_json()["wallet"]["available_minor"], 9500)
        res = self.client.get("/api/wallet", headers=self.auth(buyer))
        self.assertEqual(res.get_json()["wallet"]["available_minor"], 0)

        res = self.client.get(f"/api/orders/{order_id}/timeline", headers=self.auth(buyer))
        statuses = [t["to_status"] for t in res.get_json()["items"]]
        self.assertEqual(statuses[0], "created")
        self.assertEqual(statuses[-1], "completed")

        res = self.client.get("/api/orders?role=seller", headers=self.auth(seller))
        self.assertEqual([o["id"] for o in res.get_json()["items"]], [order_id])

    def test_idempotency_key_replays_order_creation(self):
        buyer, seller = self.uid("buyer"), self.uid("seller")
        payload = {"item_id": "item-7", "seller_id": seller, "total_minor": 2500}
        headers = {**self.auth(buyer), "Idempotency-Key": self.uid("idem")}
        first = self.client.post("/api/orders", json=payload, headers=headers)
        second = self.client.post("/api/orders", json=payload, headers=headers)
        self.assertEqual(first.status_code, 201)
        self.assertEqual(second.status_code, 201)
        self.assertEqual(first.get_json()["order"]["id"], second.get_json()["order"]["id"])

        res = self.client.post("/api/orders", json={**payload, "total_minor": 2600}, headers=headers)
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "IDEMPOTENCY_KEY_REUSE")

    def test_card_payment_confirmation_endpoint(self):
        buyer, seller = self.uid("buyer"), self.uid("seller")
        reference = self.uid("ref")
        self.payments.charges[reference] = 4000
        res = self.client.post(
            "/api/orders",
            json={"item_id": "item-8", "seller_id": seller, "total": "40.00", "payment_reference": reference},
            headers=self.auth(buyer),
        )
        order_id = res.get_json()["order"]["id"]

        res = self.client.post(
            f"/api/orders/{order_id}/payments/confirm", json={"reference": reference}, headers=self.auth(seller)
        )
        self.assertEqual(res.status_code, 403)

        res = self.client.post(
            f"/api/orders/{order_id}/payments/confirm", json={"reference": reference}, headers=self.auth(buyer)
        )
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.get_json()["applied"])
        self.assertEqual(res.get_json()["order"]["escrow_status"], "held")

        res = self.client.post(
            f"/api/orders/{order_id}/payments/confirm", json={"reference": reference}, headers=self.auth(buyer)
        )
        self.assertFalse(res.get_json()["applied"])


if __name__ == "__main__":
    unittest.main()
