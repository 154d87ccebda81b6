from __future__ import annotations

import os
import unittest
import uuid

from tradesafe import create_app
from tradesafe.extensions import db
from tradesafe.integrations.payments.mock_provider import MockPaymentsProvider
from tradesafe.services.core import core_for_app
from tradesafe.services.order_service import Actor
from tradesafe.utils.jwt_utils import create_access_token

FULFILLMENT_KEY = "test-fulfillment-key"

_ENV = {
    "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
    "DATABASE_URL": "sqlite:///:memory:",
    "TRADESAFE_ENV": "test",
    "INTEGRATIONS_MODE": "sandbox",
    "PAYMENTS_PROVIDER": "mock",
    "PAYMENTS_WEBHOOK_QUEUE": "0",
    "FULFILLMENT_API_KEY": FULFILLMENT_KEY,
}


class AppTestCase(unittest.TestCase):
    """One in-memory database per test class; a fresh mock processor per test."""

    # subclasses that need several connections point this at a file
    database_uri = "sqlite:///:memory:"

    @classmethod
    def setUpClass(cls):
        env = dict(_ENV, SQLALCHEMY_DATABASE_URI=cls.database_uri, DATABASE_URL=cls.database_uri)
        cls._prev_env = {key: os.getenv(key) for key in env}
        os.environ.update(env)
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        with cls.app.app_context():
            db.create_all()
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        for key, value in cls._prev_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def setUp(self):
        self.payments = MockPaymentsProvider()
        self.app.extensions["tradesafe"]["payments"] = self.payments

    def core(self):
        return core_for_app(self.app)

    @staticmethod
    def uid(prefix: str) -> str:
        return f"{prefix}-{uuid.uuid4().hex[:10]}"

    @staticmethod
    def auth(user_id: str, role: str = "user") -> dict:
        return {"Authorization": f"Bearer {create_access_token(user_id, role=role)}"}

    def card_order(self, core, total_minor: int = 10000, *, paid: bool = True):
        buyer, seller = self.uid("buyer"), self.uid("seller")
        reference = self.uid("ref")
        self.payments.charges[reference] = total_minor
        order = core.orders.create_order(
            self.uid("item"), buyer, seller, total_minor, payment_reference=reference
        )
        if paid:
            core.orders.confirm_payment(order.id, reference=reference, amount_minor=total_minor)
        return order

    def wallet_order(self, core, total_minor: int = 10000):
        buyer, seller = self.uid("buyer"), self.uid("seller")
        topup_ref = self.uid("topup")
        core.wallets.credit_topup(buyer, total_minor, topup_ref)
        order = core.orders.create_order(self.uid("item"), buyer, seller, total_minor, payment_method="wallet")
        core.orders.pay_with_wallet(order.id, Actor(buyer))
        return order

    def deliver(self, core, order) -> str:
        rider = self.uid("rider")
        seller = Actor(order.seller_id)
        core.orders.assign_rider(order.id, rider, seller)
        _, pickup_code = core.orders.schedule_pickup(order.id, seller)
        core.orders.confirm_pickup(order.id, pickup_code, Actor(rider))
        _, dropoff_code = core.orders.schedule_delivery(order.id, Actor(rider))
        core.orders.confirm_delivery(order.id, dropoff_code, Actor(rider))
        return rider
