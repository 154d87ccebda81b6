from __future__ import annotations

import os
from dataclasses import dataclass

from tradesafe.utils.money import DEFAULT_PLATFORM_FEE_BPS


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in ("1", "true", "yes", "on")


def _env_int(name: str, default: int, *, minimum: int = 0, maximum: int = 10_000_000) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        value = int(raw) if raw else int(default)
    except ValueError:
        value = int(default)
    return max(minimum, min(value, maximum))


@dataclass(frozen=True)
class PlatformSettings:
    env: str = "dev"
    integrations_mode: str = "sandbox"
    payments_provider: str = "mock"
    paystack_enabled: bool = True
    notifications_provider: str = "log"
    notifications_webhook_url: str = ""
    platform_fee_bps: int = DEFAULT_PLATFORM_FEE_BPS
    auto_complete_hours: int = 72
    min_payout_minor: int = 100
    delivery_code_max_attempts: int = 5
    transfer_claim_seconds: int = 300
    webhook_queue: bool = False

    @property
    def is_production(self) -> bool:
        return self.env in ("prod", "production")


def load_settings() -> PlatformSettings:
    env = _env_str("TRADESAFE_ENV", "dev").lower()
    production = env in ("prod", "production")
    return PlatformSettings(
        env=env,
        # production has to opt into a live provider explicitly
        integrations_mode=_env_str("INTEGRATIONS_MODE", "disabled" if production else "sandbox").lower(),
        payments_provider=_env_str("PAYMENTS_PROVIDER", "mock").lower(),
        paystack_enabled=_env_bool("PAYSTACK_ENABLED", True),
        notifications_provider=_env_str("NOTIFICATIONS_PROVIDER", "log").lower(),
        notifications_webhook_url=_env_str("NOTIFICATIONS_WEBHOOK_URL"),
        platform_fee_bps=_env_int("PLATFORM_FEE_BPS", DEFAULT_PLATFORM_FEE_BPS, maximum=10000),
        auto_complete_hours=_env_int("AUTO_COMPLETE_HOURS", 72, minimum=1, maximum=24 * 60),
        min_payout_minor=_env_int("MIN_PAYOUT_MINOR", 100, minimum=1),
        delivery_code_max_attempts=_env_int("DELIVERY_CODE_MAX_ATTEMPTS", 5, minimum=1, maximum=50),
        transfer_claim_seconds=_env_int("TRANSFER_CLAIM_SECONDS", 300, minimum=5, maximum=86400),
        webhook_queue=_env_bool("PAYMENTS_WEBHOOK_QUEUE", False),
    )
