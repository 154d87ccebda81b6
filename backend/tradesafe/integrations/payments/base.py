from __future__ import annotations

from dataclasses import dataclass


@dataclass
class PaymentVerifyResult:
    status: str
    reference: str
    amount_minor: int | None = None
    currency: str = ""
    raw: dict | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


@dataclass
class TransferResult:
    """Outcome of a payout or refund request.

    ``ok`` means the processor accepted the request; the final outcome of a
    payout may still arrive later as a transfer webhook.
    """

    ok: bool
    provider_reference: str = ""
    status: str = ""
    message: str = ""
    raw: dict | None = None


class PaymentsProvider:
    name = "unknown"

    def verify(self, reference: str) -> PaymentVerifyResult:
        raise NotImplementedError

    def refund(self, *, payment_reference: str, amount_minor: int, reference: str) -> TransferResult:
        raise NotImplementedError

    def transfer(self, *, destination: str, amount_minor: int, reference: str, reason: str = "") -> TransferResult:
        raise NotImplementedError

    def lookup_refund(self, *, payment_reference: str, reference: str) -> TransferResult | None:
        """Find a refund we may already have requested; ``None`` when the processor has none."""
        raise NotImplementedError

    def lookup_transfer(self, reference: str) -> TransferResult | None:
        raise NotImplementedError

    def verify_webhook_signature(self, raw: bytes, signature: str | None) -> bool:
        raise NotImplementedError
