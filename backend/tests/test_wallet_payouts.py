from __future__ import annotations

import unittest
from datetime import datetime, timedelta

from sqlalchemy import update
from support import AppTestCase

from tradesafe.extensions import db
from tradesafe.models import ExternalTransfer, TransferStatus
from tradesafe.services.errors import ConflictError, ValidationError
from tradesafe.services.order_service import Actor


class WalletPayoutsTestCase(AppTestCase):
    def _funded_user(self, core, amount_minor: int = 5000) -> str:
        user = self.uid("user")
        core.wallets.credit_topup(user, amount_minor, self.uid("topup"))
        core.wallets.set_payout_destination(user, "bank:044:0001112223")
        return user

    def test_payout_is_debited_and_submitted(self):
        with self.app.app_context():
            core = self.core()
            user = self._funded_user(core)
            transfer = core.wallets.request_payout(user, 2000)
            self.assertEqual(transfer.status, TransferStatus.SUBMITTED)
            self.assertTrue(transfer.provider_reference)
            self.assertEqual(self.payments.transfers[-1]["amount_minor"], 2000)
            self.assertEqual(self.payments.transfers[-1]["reference"], transfer.reference)
            self.assertEqual(core.ledger.verify_wallet(user).available, 3000)

            done = core.wallets.record_transfer_outcome(transfer.reference, succeeded=True)
            self.assertEqual(done.status, TransferStatus.SUCCEEDED)
            again = core.wallets.record_transfer_outcome(transfer.reference, succeeded=True)
            self.assertEqual(again.status, TransferStatus.SUCCEEDED)
            self.assertEqual(core.ledger.verify_wallet(user).available, 3000)

    def test_payout_validation(self):
        with self.app.app_context():
            core = self.core()
            user = self._funded_user(core)
            with self.assertRaises(ValidationError) as ctx:
                core.wallets.request_payout(user, 50)
            self.assertEqual(ctx.exception.code, "PAYOUT_BELOW_MINIMUM")

            with self.assertRaises(ValidationError) as ctx:
                core.wallets.request_payout(self.uid("nobody"), 500)
            self.assertEqual(ctx.exception.code, "PAYOUT_DESTINATION_MISSING")

            with self.assertRaises(ConflictError) as ctx:
                core.wallets.request_payout(user, 999999)
            self.assertEqual(ctx.exception.code, "INSUFFICIENT_FUNDS")
            self.assertEqual(ExternalTransfer.query.filter_by(user_id=user).count(), 0)

    def test_declined_payout_returns_money(self):
        with self.app.app_context():
            core = self.core()
            user = self._funded_user(core)
            self.payments.decline_transfers = True
            transfer = core.wallets.request_payout(user, 1500)
            self.assertEqual(transfer.status, TransferStatus.FAILED)
            self.assertEqual(core.ledger.verify_wallet(user).available, 5000)

    def test_unreachable_processor_leaves_payout_unconfirmed_for_retry(self):
        with self.app.app_context():
            core = self.core()
            user = self._funded_user(core)
            self.payments.unavailable = True
            transfer = core.wallets.request_payout(user, 1000)
            self.assertEqual(transfer.status, TransferStatus.UNCONFIRMED)
            self.assertEqual(transfer.attempts, 1)
            self.assertIn("MOCK_PROVIDER_DOWN", transfer.last_error)
            self.assertEqual(core.ledger.balance_of(user).available, 4000)

            self.payments.unavailable = False
            counts = core.wallets.retry_pending_transfers()
            self.assertGreaterEqual(counts["submitted"], 1)
            self.assertEqual(core.wallets.get_transfer(transfer.id).status, TransferStatus.SUBMITTED)

    def test_lost_payout_answer_is_not_sent_twice(self):
        with self.app.app_context():
            core = self.core()
            user = self._funded_user(core)
            self.payments.lost_responses = 1
            transfer = core.wallets.request_payout(user, 1200)
            self.assertEqual(transfer.status, TransferStatus.UNCONFIRMED)
            self.assertIn("MOCK_READ_TIMEOUT", transfer.last_error)

            core.wallets.retry_pending_transfers()
            done = core.wallets.get_transfer(transfer.id)
            self.assertEqual(done.status, TransferStatus.SUBMITTED)
            self.assertEqual(done.attempts, 2)
            sent = [t for t in self.payments.transfers if t["reference"] == transfer.reference]
            self.assertEqual(len(sent), 1)
            self.assertEqual(core.ledger.verify_wallet(user).available, 3800)

    def test_lost_refund_answer_is_not_sent_twice(self):
        with self.app.app_context():
            core = self.core()
            order = self.card_order(core, 4000, paid=False)
            core.orders.cancel(order.id, Actor(order.buyer_id), "changed my mind")
            self.payments.lost_responses = 1
            with self.assertRaises(ConflictError) as ctx:
                core.orders.confirm_payment(order.id, reference=order.payment_reference, amount_minor=4000)
            self.assertEqual(ctx.exception.code, "ORDER_CANCELLED")
            refund = ExternalTransfer.query.filter_by(order_id=order.id).one()
            self.assertEqual(refund.status, TransferStatus.UNCONFIRMED)

            core.wallets.retry_pending_transfers()
            self.assertEqual(core.wallets.get_transfer(refund.id).status, TransferStatus.SUCCEEDED)
            sent = [r for r in self.payments.refunds if r["reference"] == refund.reference]
            self.assertEqual(len(sent), 1)
            self.assertEqual(core.ledger.verify_wallet(order.buyer_id).available, 0)

    def test_claimed_transfer_is_left_to_its_worker_until_stale(self):
        with self.app.app_context():
            core = self.core()
            user = self._funded_user(core)
            self.payments.unavailable = True
            transfer = core.wallets.request_payout(user, 1000)
            self.payments.unavailable = False

            # another worker holds the claim
            self._set_transfer(transfer.id, status=TransferStatus.SUBMITTING, updated_at=datetime.utcnow())
            self.assertEqual(core.wallets.submit_transfer(transfer.id).status, TransferStatus.SUBMITTING)
            core.wallets.retry_pending_transfers()
            self.assertEqual(core.wallets.get_transfer(transfer.id).status, TransferStatus.SUBMITTING)
            self.assertEqual(self.payments.transfers, [])

            # the worker died; its claim expires
            self._set_transfer(transfer.id, updated_at=datetime.utcnow() - timedelta(hours=1))
            core.wallets.retry_pending_transfers()
            self.assertEqual(core.wallets.get_transfer(transfer.id).status, TransferStatus.SUBMITTED)
            sent = [t for t in self.payments.transfers if t["reference"] == transfer.reference]
            self.assertEqual(len(sent), 1)

    def _set_transfer(self, transfer_id: int, **values):
        db.session.execute(update(ExternalTransfer).where(ExternalTransfer.id == transfer_id).values(**values))
        db.session.commit()

    def test_payout_destination_creates_wallet(self):
        with self.app.app_context():
            core = self.core()
            user = self.uid("user")
            self.assertIsNone(core.ledger.wallet(user))
            wallet = core.wallets.set_payout_destination(user, "bank:044:0001112223")
            self.assertEqual(core.ledger.wallet(user).payout_destination, "bank:044:0001112223")
            self.assertEqual(wallet.user_id, user)

    def test_payout_destination_validation(self):
        with self.app.app_context():
            with self.assertRaises(ValidationError) as ctx:
                self.core().wallets.set_payout_destination(self.uid("user"), "  ")
            self.assertEqual(ctx.exception.code, "INVALID_PAYOUT_DESTINATION")

    def test_wallet_api_endpoints(self):
        user = self.uid("user")
        headers = self.auth(user)
        res = self.client.post("/api/wallet/topup", json={"amount": "40.00", "reference": self.uid("topup")}, headers=headers)
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.get_json()["applied"])

        res = self.client.put("/api/wallet/payout-destination", json={"destination": "bank:011:9998887776"}, headers=headers)
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.get_json()["wallet"]["has_payout_destination"])

        res = self.client.post("/api/wallet/payouts", json={"amount_minor": 1000}, headers=headers)
        self.assertEqual(res.status_code, 201)
        self.assertEqual(res.get_json()["transfer"]["status"], "submitted")

        res = self.client.get("/api/wallet", headers=headers)
        self.assertEqual(res.get_json()["wallet"]["available_minor"], 3000)
        res = self.client.get("/api/wallet/ledger", headers=headers)
        types = [e["entry_type"] for e in res.get_json()["items"]]
        self.assertEqual(types, ["payout", "credit"])
        res = self.client.get("/api/wallet/payouts", headers=headers)
        self.assertEqual(len(res.get_json()["items"]), 1)


if __name__ == "__main__":
    unittest.main()
