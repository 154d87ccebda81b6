from __future__ import annotations

import unittest

from support import AppTestCase

from tradesafe.extensions import db
from tradesafe.models import EntryType
from tradesafe.services.errors import ConflictError, InvariantViolation, ValidationError
from tradesafe.services.ledger_service import Balance, Ledger


class LedgerWalletsTestCase(AppTestCase):
    def test_credit_and_debit_fold_into_wallet(self):
        with self.app.app_context():
            ledger = Ledger(db.session)
            user = self.uid("user")
            ledger.append(user, 1000, EntryType.CREDIT, "topup-1", reference_type="payment")
            ledger.append(user, -400, EntryType.DEBIT, "order-1", reference_type="order")
            db.session.commit()

            balance = ledger.verify_wallet(user)
            self.assertEqual(balance.available, 600)
            self.assertEqual(balance.lifetime_earned, 1000)
            self.assertEqual(balance.lifetime_spent, 400)
            self.assertEqual(ledger.fold_balance(user), balance)

    def test_sign_rules_per_entry_type(self):
        with self.app.app_context():
            ledger = Ledger(db.session)
            user = self.uid("user")
            for entry_type, amount in (
                (EntryType.CREDIT, -1),
                (EntryType.REFUND, -1),
                (EntryType.ESCROW_RELEASE, -1),
                (EntryType.DEBIT, 1),
                (EntryType.PAYOUT, 1),
            ):
                with self.assertRaises(ValidationError):
                    ledger.append(user, amount, entry_type)
            with self.assertRaises(ValidationError):
                ledger.append(user, 0, EntryType.CREDIT)
            with self.assertRaises(ValidationError):
                ledger.append(user, 1.5, EntryType.CREDIT)
            db.session.rollback()

    def test_debit_beyond_available_is_rejected(self):
        with self.app.app_context():
            ledger = Ledger(db.session)
            user = self.uid("user")
            ledger.append(user, 300, EntryType.CREDIT)
            db.session.commit()
            with self.assertRaises(ConflictError) as ctx:
                ledger.append(user, -301, EntryType.DEBIT)
            self.assertEqual(ctx.exception.code, "INSUFFICIENT_FUNDS")
            db.session.rollback()
            self.assertEqual(ledger.balance_of(user).available, 300)

    def test_idempotency_key_returns_existing_entry(self):
        with self.app.app_context():
            ledger = Ledger(db.session)
            user = self.uid("user")
            first = ledger.append(user, 250, EntryType.CREDIT, idempotency_key=f"k:{user}")
            second = ledger.append(user, 250, EntryType.CREDIT, idempotency_key=f"k:{user}")
            db.session.commit()
            self.assertEqual(first.id, second.id)
            self.assertEqual(ledger.balance_of(user).available, 250)

            with self.assertRaises(InvariantViolation):
                ledger.append(user, 999, EntryType.CREDIT, idempotency_key=f"k:{user}")
            db.session.rollback()

    def test_escrow_hold_then_release_moves_pending_to_available(self):
        with self.app.app_context():
            ledger = Ledger(db.session)
            seller = self.uid("seller")
            ledger.append(seller, 9500, EntryType.ESCROW_HOLD, 1, reference_type="order")
            db.session.commit()
            self.assertEqual(ledger.balance_of(seller), Balance(available=0, pending=9500, lifetime_earned=9500))

            ledger.append(seller, 9500, EntryType.ESCROW_RELEASE, 1, reference_type="order")
            db.session.commit()
            self.assertEqual(ledger.verify_wallet(seller), Balance(available=9500, pending=0, lifetime_earned=9500))

    def test_pending_cannot_go_negative(self):
        with self.app.app_context():
            ledger = Ledger(db.session)
            seller = self.uid("seller")
            ledger.append(seller, 100, EntryType.CREDIT)
            db.session.commit()
            with self.assertRaises(InvariantViolation):
                ledger.append(seller, 50, EntryType.ESCROW_RELEASE)
            db.session.rollback()


if __name__ == "__main__":
    unittest.main()
