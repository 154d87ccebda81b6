from __future__ import annotations

import os

from tradesafe.integrations.common import ProviderUnavailableError
from tradesafe.integrations.payments.base import PaymentsProvider, PaymentVerifyResult, TransferResult


class MockPaymentsProvider(PaymentsProvider):
    """Deterministic in-process processor for sandbox runs and tests.

    Every refund and transfer request is recorded. ``unavailable`` simulates an
    unreachable processor, ``decline_transfers`` a definitive rejection and
    ``lost_responses`` a request the processor applied whose answer timed out.
    """

    name = "mock"

    def __init__(self, *, charges: dict[str, int] | None = None):
        self.charges = dict(charges or {})
        self.failed_references: set[str] = set()
        self.refunds: list[dict] = []
        self.transfers: list[dict] = []
        self.unavailable = (os.getenv("MOCK_PAYMENTS_UNAVAILABLE") or "").strip() == "1"
        self.decline_transfers = False
        self.lost_responses = 0

    def _check_available(self) -> None:
        if self.unavailable:
            raise ProviderUnavailableError("MOCK_PROVIDER_DOWN")

    def _answer(self, result: TransferResult) -> TransferResult:
        if self.lost_responses > 0:
            self.lost_responses -= 1
            raise ProviderUnavailableError("MOCK_READ_TIMEOUT")
        return result

    def verify(self, reference: str) -> PaymentVerifyResult:
        self._check_available()
        status = "failed" if reference in self.failed_references else "success"
        return PaymentVerifyResult(
            status=status,
            reference=reference,
            amount_minor=self.charges.get(reference),
            currency="USD",
            raw={"provider": self.name},
        )

    def refund(self, *, payment_reference: str, amount_minor: int, reference: str) -> TransferResult:
        self._check_available()
        self.refunds.append(
            {"payment_reference": payment_reference, "amount_minor": int(amount_minor), "reference": reference}
        )
        return self._answer(TransferResult(ok=True, provider_reference=f"mock-refund-{reference}", status="processed"))

    def transfer(self, *, destination: str, amount_minor: int, reference: str, reason: str = "") -> TransferResult:
        self._check_available()
        if self.decline_transfers:
            return TransferResult(ok=False, status="failed", message="mock declined")
        self.transfers.append(
            {"destination": destination, "amount_minor": int(amount_minor), "reference": reference, "reason": reason}
        )
        return self._answer(TransferResult(ok=True, provider_reference=f"mock-transfer-{reference}", status="pending"))

    def lookup_refund(self, *, payment_reference: str, reference: str) -> TransferResult | None:
        self._check_available()
        for item in self.refunds:
            if item["reference"] == reference and item["payment_reference"] == payment_reference:
                return TransferResult(ok=True, provider_reference=f"mock-refund-{reference}", status="processed")
        return None

    def lookup_transfer(self, reference: str) -> TransferResult | None:
        self._check_available()
        for item in self.transfers:
            if item["reference"] == reference:
                return TransferResult(ok=True, provider_reference=f"mock-transfer-{reference}", status="pending")
        return None

    def verify_webhook_signature(self, raw: bytes, signature: str | None) -> bool:
        return True
