from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

DEFAULT_PLATFORM_FEE_BPS = 500


def money_major_to_minor(amount: float | Decimal | int | str | None) -> int:
    try:
        parsed = Decimal(str(amount if amount is not None else 0))
    except (InvalidOperation, ValueError):
        raise ValueError(f"invalid_amount {amount!r}")
    minor = (parsed * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(minor)


def money_minor_to_major(minor: int | None) -> float:
    parsed = Decimal(int(minor or 0))
    return float((parsed / Decimal("100")).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def bps_minor_half_up(amount_minor: int, bps: int) -> int:
    amt = Decimal(int(amount_minor))
    rate = Decimal(int(max(0, bps)))
    raw = (amt * rate) / Decimal("10000")
    return int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def split_platform_fee(total_minor: int, fee_bps: int = DEFAULT_PLATFORM_FEE_BPS) -> tuple[int, int]:
    """Return ``(platform_fee_minor, seller_net_minor)``; the two always sum to the total."""
    total = int(total_minor)
    if total <= 0:
        raise ValueError("total_minor must be positive")
    fee = bps_minor_half_up(total, fee_bps)
    fee = min(max(fee, 0), total)
    return fee, total - fee


def parse_amount_minor(payload: dict, key: str) -> int | None:
    """Read ``<key>_minor`` (integer) or ``<key>`` (major units) from a request payload."""
    raw_minor = payload.get(f"{key}_minor")
    if raw_minor is not None:
        if isinstance(raw_minor, bool):
            raise ValueError(f"invalid_amount {key}_minor")
        try:
            return int(raw_minor)
        except (TypeError, ValueError):
            raise ValueError(f"invalid_amount {key}_minor")
    raw = payload.get(key)
    if raw is None or raw == "":
        return None
    return money_major_to_minor(raw)
