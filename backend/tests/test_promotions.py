from __future__ import annotations

import unittest
from datetime import datetime, timedelta

from support import AppTestCase

from tradesafe.jobs.maintenance import run_promotion_expiry
from tradesafe.models import ExternalTransfer, Promotion, PromotionStatus, TransferStatus
from tradesafe.services.errors import ConflictError, PermissionDenied, ValidationError
from tradesafe.services.order_service import Actor


class PromotionsTestCase(AppTestCase):
    def test_wallet_promotion_activates_immediately(self):
        with self.app.app_context():
            core = self.core()
            seller = self.uid("seller")
            core.wallets.credit_topup(seller, 5000, self.uid("topup"))
            promo = core.promotions.create(seller, "item-1", "boost_24h", 1500, 24)
            self.assertEqual(promo.status, PromotionStatus.ACTIVE)
            self.assertEqual(promo.ends_at - promo.starts_at, timedelta(hours=24))
            self.assertEqual(core.ledger.verify_wallet(seller).available, 3500)

    def test_wallet_promotion_without_funds_is_not_created(self):
        with self.app.app_context():
            core = self.core()
            seller = self.uid("seller")
            with self.assertRaises(ConflictError) as ctx:
                core.promotions.create(seller, "item-2", "boost_24h", 1500, 24)
            self.assertEqual(ctx.exception.code, "INSUFFICIENT_FUNDS")
            self.assertEqual(Promotion.query.filter_by(seller_id=seller).count(), 0)

    def test_card_promotion_waits_for_payment(self):
        with self.app.app_context():
            core = self.core()
            seller = self.uid("seller")
            reference = self.uid("ref")
            promo = core.promotions.create(
                seller, "item-3", "boost_week", 4000, 24 * 7, payment_method="card", payment_reference=reference
            )
            self.assertEqual(promo.status, PromotionStatus.PENDING)

            promo, applied = core.promotions.confirm_payment(promo.id, reference, 4000)
            self.assertTrue(applied)
            self.assertEqual(promo.status, PromotionStatus.ACTIVE)
            _, applied = core.promotions.confirm_payment(promo.id, reference, 4000)
            self.assertFalse(applied)

            with self.assertRaises(ConflictError) as ctx:
                core.promotions.confirm_payment(promo.id, self.uid("other"))
            self.assertEqual(ctx.exception.code, "PAYMENT_REFERENCE_MISMATCH")

    def test_expiry_job(self):
        with self.app.app_context():
            core = self.core()
            seller = self.uid("seller")
            core.wallets.credit_topup(seller, 1000, self.uid("topup"))
            promo = core.promotions.create(seller, "item-4", "boost_1h", 500, 1)
            counts = run_promotion_expiry(core, now=datetime.utcnow() + timedelta(hours=2))
            self.assertGreaterEqual(counts["expired"], 1)
            self.assertEqual(core.promotions.get(promo.id).status, PromotionStatus.EXPIRED)

            with self.assertRaises(ConflictError):
                core.promotions.cancel(promo.id, Actor(seller))

    def test_cancel_and_validation(self):
        with self.app.app_context():
            core = self.core()
            seller = self.uid("seller")
            promo = core.promotions.create(
                seller, "item-5", "boost_24h", 900, 24, payment_method="card", payment_reference=self.uid("ref")
            )
            with self.assertRaises(PermissionDenied):
                core.promotions.cancel(promo.id, Actor(self.uid("stranger")))
            cancelled = core.promotions.cancel(promo.id, Actor(seller))
            self.assertEqual(cancelled.status, PromotionStatus.CANCELLED)

            with self.assertRaises(ValidationError) as ctx:
                core.promotions.create(seller, "item-6", "boost", 900, 0)
            self.assertEqual(ctx.exception.code, "INVALID_DURATION")

    def test_charge_for_cancelled_promotion_is_refunded(self):
        with self.app.app_context():
            core = self.core()
            seller = self.uid("seller")
            reference = self.uid("ref")
            promo = core.promotions.create(
                seller, "item-8", "boost_24h", 900, 24, payment_method="card", payment_reference=reference
            )
            core.promotions.cancel(promo.id, Actor(seller))

            for _ in range(2):
                with self.assertRaises(ConflictError) as ctx:
                    core.promotions.confirm_payment(promo.id, reference, 900)
                self.assertEqual(ctx.exception.code, "PROMOTION_CANCELLED")
            self.assertEqual(core.promotions.get(promo.id).status, PromotionStatus.CANCELLED)
            self.assertEqual(len(self.payments.refunds), 1)
            self.assertEqual(self.payments.refunds[0]["payment_reference"], reference)
            self.assertEqual(self.payments.refunds[0]["amount_minor"], 900)
            refund = ExternalTransfer.query.filter_by(user_id=seller).one()
            self.assertEqual(self.payments.refunds[0]["reference"], refund.reference)
            self.assertEqual(refund.status, TransferStatus.SUCCEEDED)
            self.assertEqual(core.ledger.verify_wallet(seller).available, 0)

    def test_paid_then_cancelled_promotion_replay_is_noop(self):
        with self.app.app_context():
            core = self.core()
            seller = self.uid("seller")
            reference = self.uid("ref")
            promo = core.promotions.create(
                seller, "item-9", "boost_24h", 700, 24, payment_method="card", payment_reference=reference
            )
            core.promotions.confirm_payment(promo.id, reference, 700)
            core.promotions.cancel(promo.id, Actor(seller))
            again, applied = core.promotions.confirm_payment(promo.id, reference, 700)
            self.assertFalse(applied)
            self.assertEqual(again.status, PromotionStatus.CANCELLED)
            self.assertEqual(self.payments.refunds, [])

    def test_promotion_api(self):
        seller = self.uid("seller")
        headers = self.auth(seller)
        self.client.post("/api/wallet/topup", json={"amount_minor": 3000, "reference": self.uid("topup")}, headers=headers)
        res = self.client.post(
            "/api/promotions",
            json={"item_id": "item-7", "plan_code": "boost_24h", "price_minor": 1000, "duration_hours": 24},
            headers=headers,
        )
        self.assertEqual(res.status_code, 201)
        self.assertEqual(res.get_json()["promotion"]["status"], "active")
        res = self.client.get("/api/promotions", headers=headers)
        self.assertEqual(len(res.get_json()["items"]), 1)


if __name__ == "__main__":
    unittest.main()
