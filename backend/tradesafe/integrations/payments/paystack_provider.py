from __future__ import annotations

import hashlib
import hmac

import requests

from tradesafe.integrations.common import ProviderUnavailableError
from tradesafe.integrations.payments.base import PaymentsProvider, PaymentVerifyResult, TransferResult

PAYSTACK_BASE = "https://api.paystack.co"


def verify_signature(raw: bytes, signature: str | None, secret: str) -> bool:
    if not signature or not secret:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw or b"", hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature.strip())


class PaystackPaymentsProvider(PaymentsProvider):
    name = "paystack"

    def __init__(self, secret_key: str, *, timeout: int = 25, session: requests.Session | None = None):
        self.secret_key = secret_key
        self.timeout = timeout
        self.http = session or requests.Session()

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _call(self, method: str, path: str, payload: dict | None = None) -> tuple[int, dict]:
        try:
            r = self.http.request(
                method,
                f"{PAYSTACK_BASE}{path}",
                headers=self._headers(),
                json=payload,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ProviderUnavailableError(f"PAYSTACK_UNREACHABLE:{type(exc).__name__}") from exc
        if r.status_code >= 500:
            raise ProviderUnavailableError(f"PAYSTACK_HTTP_{r.status_code}")
        try:
            body = r.json() if r.content else {}
        except ValueError:
            body = {}
        return r.status_code, body if isinstance(body, dict) else {"payload": body}

    @staticmethod
    def _accepted(code: int, body: dict) -> bool:
        return 200 <= code < 300 and body.get("status") is True

    def verify(self, reference: str) -> PaymentVerifyResult:
        ref = (reference or "").strip()
        code, body = self._call("GET", f"/transaction/verify/{ref}")
        if not self._accepted(code, body):
            return PaymentVerifyResult(status="unknown", reference=ref, raw=body)
        data = body.get("data") or {}
        try:
            amount_minor = int(data.get("amount"))
        except (TypeError, ValueError):
            amount_minor = None
        return PaymentVerifyResult(
            status=(data.get("status") or "").strip().lower(),
            reference=ref,
            amount_minor=amount_minor,
            currency=(data.get("currency") or "").strip().upper(),
            raw=body,
        )

    def refund(self, *, payment_reference: str, amount_minor: int, reference: str) -> TransferResult:
        code, body = self._call(
            "POST",
            "/refund",
            {"transaction": payment_reference, "amount": int(amount_minor), "merchant_note": reference},
        )
        data = body.get("data") or {}
        if not self._accepted(code, body):
            return TransferResult(ok=False, status="failed", message=str(body.get("message") or f"HTTP {code}"), raw=body)
        return TransferResult(
            ok=True,
            provider_reference=str(data.get("id") or (data.get("transaction") or {}).get("reference") or ""),
            status=str(data.get("status") or "pending"),
            raw=body,
        )

    def transfer(self, *, destination: str, amount_minor: int, reference: str, reason: str = "") -> TransferResult:
        code, body = self._call(
            "POST",
            "/transfer",
            {
                "source": "balance",
                "amount": int(amount_minor),
                "recipient": destination,
                "reference": reference,
                "reason": reason or "payout",
            },
        )
        data = body.get("data") or {}
        if not self._accepted(code, body):
            return TransferResult(ok=False, status="failed", message=str(body.get("message") or f"HTTP {code}"), raw=body)
        return TransferResult(
            ok=True,
            provider_reference=str(data.get("transfer_code") or data.get("reference") or reference),
            status=str(data.get("status") or "pending"),
            raw=body,
        )

    def lookup_refund(self, *, payment_reference: str, reference: str) -> TransferResult | None:
        # refunds take no client reference; ours is carried in merchant_note
        code, body = self._call("GET", f"/refund?reference={payment_reference}")
        if not self._accepted(code, body):
            return None
        items = body.get("data") or []
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict) or str(item.get("merchant_note") or "") != reference:
                continue
            status = str(item.get("status") or "pending").lower()
            return TransferResult(
                ok=status != "failed",
                provider_reference=str(item.get("id") or ""),
                status=status,
                message="refund failed at processor" if status == "failed" else "",
                raw=item,
            )
        return None

    def lookup_transfer(self, reference: str) -> TransferResult | None:
        code, body = self._call("GET", f"/transfer/verify/{reference}")
        if code == 404 or not self._accepted(code, body):
            return None
        data = body.get("data") or {}
        status = str(data.get("status") or "pending").lower()
        failed = status in ("failed", "reversed")
        return TransferResult(
            ok=not failed,
            provider_reference=str(data.get("transfer_code") or reference),
            status=status,
            message=f"transfer {status}" if failed else "",
            raw=body,
        )

    def verify_webhook_signature(self, raw: bytes, signature: str | None) -> bool:
        return verify_signature(raw, signature, self.secret_key)
