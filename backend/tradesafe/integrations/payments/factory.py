from __future__ import annotations

import os

from tradesafe.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from tradesafe.integrations.payments.base import PaymentsProvider
from tradesafe.integrations.payments.mock_provider import MockPaymentsProvider
from tradesafe.integrations.payments.paystack_provider import PaystackPaymentsProvider

KNOWN_PROVIDERS = ("mock", "paystack")


def _selection(settings) -> tuple[str, bool, str]:
    mode = (settings.integrations_mode or "disabled").strip().lower()
    provider = (settings.payments_provider or "mock").strip().lower()
    return mode, bool(settings.paystack_enabled), provider


def _problems(mode: str, provider: str) -> list[str]:
    problems = []
    if provider not in KNOWN_PROVIDERS:
        problems.append(f"payments_provider={provider}")
    elif provider == "mock" and mode == "live":
        problems.append("mock provider in live mode")
    elif provider == "paystack" and not (os.getenv("PAYSTACK_SECRET_KEY") or "").strip():
        problems.append("PAYSTACK_SECRET_KEY")
    return problems


def build_payments_provider(settings) -> PaymentsProvider:
    """Processor client for the configured integrations mode; raises when payments cannot run."""
    mode, enabled, provider = _selection(settings)
    if mode == "disabled" or not enabled:
        raise IntegrationDisabledError("INTEGRATION_DISABLED:payments")
    problems = _problems(mode, provider)
    if problems:
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:{','.join(problems)}")
    if provider == "mock":
        return MockPaymentsProvider()
    return PaystackPaymentsProvider(secret_key=os.environ["PAYSTACK_SECRET_KEY"].strip())


def payment_health(settings) -> dict:
    mode, enabled, provider = _selection(settings)
    if mode == "disabled" or not enabled:
        return {"status": "disabled", "mode": mode, "provider": provider, "missing": []}
    problems = _problems(mode, provider)
    return {
        "status": "misconfigured" if problems else "configured",
        "mode": mode,
        "provider": provider,
        "missing": problems,
    }
