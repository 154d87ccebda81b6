from __future__ import annotations

import hashlib
import hmac
import os
import unittest
from unittest.mock import MagicMock, patch

import requests

from tradesafe.integrations.common import (
    IntegrationDisabledError,
    IntegrationMisconfiguredError,
    ProviderUnavailableError,
)
from tradesafe.integrations.payments.factory import build_payments_provider, payment_health
from tradesafe.integrations.payments.mock_provider import MockPaymentsProvider
from tradesafe.integrations.payments.paystack_provider import PaystackPaymentsProvider, verify_signature
from tradesafe.utils.settings import PlatformSettings, load_settings


def _response(status_code: int, body: dict) -> MagicMock:
    res = MagicMock(status_code=status_code, content=b"{}")
    res.json.return_value = body
    return res


class PaystackProviderTestCase(unittest.TestCase):
    def setUp(self):
        self.http = MagicMock()
        self.provider = PaystackPaymentsProvider("sk_test_123", session=self.http)

    def test_verify_reads_amount_in_minor_units(self):
        self.http.request.return_value = _response(
            200, {"status": True, "data": {"status": "success", "amount": 250000, "currency": "ngn"}}
        )
        result = self.provider.verify("ref-1")
        self.assertTrue(result.succeeded)
        self.assertEqual(result.amount_minor, 250000)
        self.assertEqual(result.currency, "NGN")
        args, kwargs = self.http.request.call_args
        self.assertEqual(args, ("GET", "https://api.paystack.co/transaction/verify/ref-1"))
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer sk_test_123")

    def test_rejected_verify_is_not_success(self):
        self.http.request.return_value = _response(400, {"status": False, "message": "Transaction reference not found"})
        self.assertFalse(self.provider.verify("missing").succeeded)

    def test_server_errors_and_timeouts_mean_unavailable(self):
        self.http.request.return_value = _response(502, {})
        with self.assertRaises(ProviderUnavailableError):
            self.provider.verify("ref-2")
        self.http.request.side_effect = requests.Timeout("slow")
        with self.assertRaises(ProviderUnavailableError):
            self.provider.transfer(destination="RCP_1", amount_minor=5000, reference="transfer-1")

    def test_transfer_outcomes(self):
        self.http.request.return_value = _response(
            200, {"status": True, "data": {"transfer_code": "TRF_abc", "status": "pending"}}
        )
        result = self.provider.transfer(destination="RCP_1", amount_minor=5000, reference="transfer-9")
        self.assertTrue(result.ok)
        self.assertEqual(result.provider_reference, "TRF_abc")
        self.assertEqual(self.http.request.call_args.kwargs["json"]["reference"], "transfer-9")

        self.http.request.return_value = _response(400, {"status": False, "message": "Insufficient balance"})
        result = self.provider.transfer(destination="RCP_1", amount_minor=5000, reference="transfer-10")
        self.assertFalse(result.ok)
        self.assertEqual(result.message, "Insufficient balance")

    def test_refund_lookup_matches_our_reference(self):
        self.http.request.return_value = _response(
            200,
            {
                "status": True,
                "data": [
                    {"id": 11, "merchant_note": "refund-1", "status": "processed"},
                    {"id": 12, "merchant_note": "refund-2", "status": "pending"},
                ],
            },
        )
        found = self.provider.lookup_refund(payment_reference="ref-7", reference="refund-2")
        self.assertTrue(found.ok)
        self.assertEqual(found.provider_reference, "12")
        self.assertEqual(self.http.request.call_args.args, ("GET", "https://api.paystack.co/refund?reference=ref-7"))
        self.assertIsNone(self.provider.lookup_refund(payment_reference="ref-7", reference="refund-3"))

    def test_transfer_lookup(self):
        self.http.request.return_value = _response(404, {"status": False, "message": "Transfer not found"})
        self.assertIsNone(self.provider.lookup_transfer("transfer-4"))

        self.http.request.return_value = _response(
            200, {"status": True, "data": {"transfer_code": "TRF_x", "status": "reversed"}}
        )
        found = self.provider.lookup_transfer("transfer-4")
        self.assertFalse(found.ok)
        self.assertEqual(found.provider_reference, "TRF_x")

    def test_webhook_signature_is_hmac_sha512(self):
        raw = b'{"event":"charge.success"}'
        good = hmac.new(b"sk_test_123", raw, hashlib.sha512).hexdigest()
        self.assertTrue(self.provider.verify_webhook_signature(raw, good))
        self.assertFalse(self.provider.verify_webhook_signature(raw, "0" * 128))
        self.assertFalse(verify_signature(raw, None, "sk_test_123"))


class PaymentsFactoryTestCase(unittest.TestCase):
    def test_sandbox_mock(self):
        provider = build_payments_provider(PlatformSettings(integrations_mode="sandbox", payments_provider="mock"))
        self.assertIsInstance(provider, MockPaymentsProvider)

    def test_disabled_and_misconfigured(self):
        with self.assertRaises(IntegrationDisabledError):
            build_payments_provider(PlatformSettings(integrations_mode="disabled"))
        with self.assertRaises(IntegrationMisconfiguredError):
            build_payments_provider(PlatformSettings(integrations_mode="live", payments_provider="mock"))
        with patch.dict(os.environ, {"PAYSTACK_SECRET_KEY": ""}, clear=False):
            settings = PlatformSettings(integrations_mode="live", payments_provider="paystack")
            with self.assertRaises(IntegrationMisconfiguredError):
                build_payments_provider(settings)
            self.assertEqual(payment_health(settings)["status"], "misconfigured")

    def test_production_defaults_to_disabled_integrations(self):
        with patch.dict(os.environ, {"TRADESAFE_ENV": "production", "INTEGRATIONS_MODE": ""}, clear=False):
            settings = load_settings()
        self.assertTrue(settings.is_production)
        self.assertEqual(settings.integrations_mode, "disabled")


if __name__ == "__main__":
    unittest.main()
