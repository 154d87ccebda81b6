from __future__ import annotations

import unittest

from support import AppTestCase


class ApiErrorContractTestCase(AppTestCase):
    def _assert_error_shape(self, res, status: int, code: str | None = None) -> dict:
        self.assertEqual(res.status_code, status)
        self.assertTrue(res.is_json)
        body = res.get_json(force=True) or {}
        self.assertFalse(bool(body.get("ok", True)))
        self.assertTrue(str(body.get("error") or "").strip())
        self.assertTrue(str(body.get("message") or "").strip())
        self.assertEqual(int(body.get("status") or 0), status)
        self.assertTrue(str(body.get("trace_id") or "").strip())
        if code is not None:
            self.assertEqual(body["error"], code)
        return body

    def test_unknown_api_route_returns_json_error_shape(self):
        self._assert_error_shape(self.client.get("/api/does-not-exist"), 404)

    def test_missing_auth_is_401(self):
        self._assert_error_shape(self.client.get("/api/wallet"), 401)

    def test_domain_errors_map_to_status_and_code(self):
        buyer = self.uid("buyer")
        res = self.client.post(
            "/api/orders",
            json={"item_id": "item-1", "seller_id": buyer, "total_minor": 1000},
            headers=self.auth(buyer),
        )
        self._assert_error_shape(res, 400, "SELF_PURCHASE")

        res = self.client.post(
            "/api/orders",
            json={"item_id": "item-1", "seller_id": self.uid("seller"), "total": "abc"},
            headers=self.auth(buyer),
        )
        self._assert_error_shape(res, 400, "INVALID_AMOUNT")

        res = self.client.post("/api/orders", json=[1, 2], headers=self.auth(buyer))
        self._assert_error_shape(res, 400, "INVALID_PAYLOAD")

        self._assert_error_shape(self.client.get("/api/orders/999999", headers=self.auth(buyer)), 404, "ORDER_NOT_FOUND")

    def test_non_participant_is_forbidden(self):
        with self.app.app_context():
            order = self.card_order(self.core())
            order_id = order.id
        res = self.client.get(f"/api/orders/{order_id}", headers=self.auth(self.uid("stranger")))
        self._assert_error_shape(res, 403, "FORBIDDEN")

    def test_conflicts_are_409(self):
        with self.app.app_context():
            order = self.card_order(self.core())
            order_id, buyer = order.id, order.buyer_id
        res = self.client.post(f"/api/orders/{order_id}/complete", headers=self.auth(buyer))
        body = self._assert_error_shape(res, 409, "INVALID_TRANSITION")
        self.assertEqual(body["detail"]["status"], "paid")

    def test_disabled_payments_is_503(self):
        ext = self.app.extensions["tradesafe"]
        ext["payments"] = None
        ext["payments_error"] = None
        res = self.client.get("/api/wallet", headers=self.auth(self.uid("user")))
        self._assert_error_shape(res, 503, "INTEGRATION_DISABLED")

    def test_health_reports_components(self):
        res = self.client.get("/api/health")
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["db"], "ok")
        self.assertEqual(body["payments"]["provider"], "mock")
        self.assertTrue(body["git_sha"])


if __name__ == "__main__":
    unittest.main()
