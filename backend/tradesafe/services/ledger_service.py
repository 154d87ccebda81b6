from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from tradesafe.models import EntryType, LedgerEntry, Wallet
from tradesafe.services.errors import ConflictError, InvariantViolation, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Balance:
    available: int = 0
    pending: int = 0
    lifetime_earned: int = 0
    lifetime_spent: int = 0

    def __add__(self, other: "Balance") -> "Balance":
        return Balance(
            available=self.available + other.available,
            pending=self.pending + other.pending,
            lifetime_earned=self.lifetime_earned + other.lifetime_earned,
            lifetime_spent=self.lifetime_spent + other.lifetime_spent,
        )

    def to_dict(self) -> dict:
        return {
            "available_minor": self.available,
            "pending_minor": self.pending,
            "lifetime_earned_minor": self.lifetime_earned,
            "lifetime_spent_minor": self.lifetime_spent,
        }


_POSITIVE = {EntryType.CREDIT, EntryType.ESCROW_RELEASE, EntryType.REFUND}
_NEGATIVE = {EntryType.DEBIT, EntryType.PAYOUT}


def entry_delta(entry_type: EntryType, amount_minor: int) -> Balance:
    """Effect of one entry on a wallet. The fold and the materialized wallet both use this."""
    amt = int(amount_minor)
    if entry_type == EntryType.CREDIT:
        return Balance(available=amt, lifetime_earned=amt)
    if entry_type == EntryType.DEBIT:
        return Balance(available=amt, lifetime_spent=-amt)
    if entry_type == EntryType.ESCROW_HOLD:
        # negative holds reverse an earlier hold
        return Balance(pending=amt, lifetime_earned=amt)
    if entry_type == EntryType.ESCROW_RELEASE:
        return Balance(available=amt, pending=-amt)
    if entry_type in (EntryType.PAYOUT, EntryType.REFUND):
        return Balance(available=amt)
    raise ValidationError(f"unknown entry type {entry_type!r}", code="INVALID_ENTRY_TYPE")


def fold_entries(entries: Iterable[LedgerEntry]) -> Balance:
    total = Balance()
    for entry in entries:
        total = total + entry_delta(entry.entry_type, entry.amount_minor)
    return total


def wallet_balance(wallet: Wallet | None) -> Balance:
    if wallet is None:
        return Balance()
    return Balance(
        available=int(wallet.available_minor or 0),
        pending=int(wallet.pending_minor or 0),
        lifetime_earned=int(wallet.lifetime_earned_minor or 0),
        lifetime_spent=int(wallet.lifetime_spent_minor or 0),
    )


class Ledger:
    """Append-only per-user ledger with an incrementally maintained wallet.

    ``append`` never commits: the entry becomes durable together with the
    transition that caused it, or not at all.
    """

    def __init__(self, session):
        self.session = session

    def append(
        self,
        user_id: str,
        amount_minor: int,
        entry_type: EntryType,
        reference_id: int | str | None = None,
        *,
        reference_type: str | None = None,
        description: str = "",
        idempotency_key: str | None = None,
    ) -> LedgerEntry:
        user_id = (user_id or "").strip()
        if not user_id:
            raise ValidationError("user_id required", code="INVALID_USER")
        entry_type = EntryType(entry_type)
        if isinstance(amount_minor, bool) or not isinstance(amount_minor, int):
            raise ValidationError("amount must be an integer number of minor units", code="INVALID_AMOUNT")
        if amount_minor == 0:
            raise ValidationError("ledger amount must be non-zero", code="INVALID_AMOUNT")
        if entry_type in _POSITIVE and amount_minor < 0:
            raise ValidationError(f"{entry_type.value} entries must be positive", code="INVALID_AMOUNT")
        if entry_type in _NEGATIVE and amount_minor > 0:
            raise ValidationError(f"{entry_type.value} entries must be negative", code="INVALID_AMOUNT")

        key = (idempotency_key or "").strip()[:160] or None
        if key:
            existing = self.session.query(LedgerEntry).filter_by(idempotency_key=key).first()
            if existing is not None:
                if (existing.user_id, existing.amount_minor, existing.entry_type) != (user_id, amount_minor, entry_type):
                    raise InvariantViolation(
                        f"ledger key {key} reused for a different entry",
                        user_id=user_id,
                        existing_entry_id=int(existing.id),
                    )
                return existing

        self.ensure_wallet(user_id)
        self._apply_delta(user_id, entry_delta(entry_type, amount_minor))
        entry = LedgerEntry(
            user_id=user_id,
            amount_minor=amount_minor,
            entry_type=entry_type,
            reference_type=reference_type,
            reference_id=str(reference_id) if reference_id is not None else None,
            description=(description or "")[:240] or None,
            idempotency_key=key,
        )
        self.session.add(entry)
        self.session.flush()
        logger.info(
            "ledger_append user_id=%s type=%s amount_minor=%s ref=%s:%s",
            user_id,
            entry_type.value,
            amount_minor,
            reference_type or "",
            reference_id if reference_id is not None else "",
        )
        return entry

    def ensure_wallet(self, user_id: str) -> None:
        if self.session.query(Wallet.id).filter_by(user_id=user_id).first() is not None:
            return
        try:
            with self.session.begin_nested():
                self.session.add(Wallet(user_id=user_id))
        except IntegrityError:
            # created by a concurrent writer
            pass

    def _apply_delta(self, user_id: str, delta: Balance) -> None:
        stmt = update(Wallet).where(Wallet.user_id == user_id)
        if delta.available < 0:
            stmt = stmt.where(Wallet.available_minor + delta.available >= 0)
        if delta.pending < 0:
            stmt = stmt.where(Wallet.pending_minor + delta.pending >= 0)
        stmt = stmt.values(
            available_minor=Wallet.available_minor + delta.available,
            pending_minor=Wallet.pending_minor + delta.pending,
            lifetime_earned_minor=Wallet.lifetime_earned_minor + delta.lifetime_earned,
            lifetime_spent_minor=Wallet.lifetime_spent_minor + delta.lifetime_spent,
            updated_at=datetime.utcnow(),
        ).execution_options(synchronize_session=False)
        result = self.session.execute(stmt)
        if result.rowcount == 1:
            return

        current = self.wallet(user_id)
        if current is not None and int(current.pending_minor or 0) + delta.pending < 0:
            logger.critical("ledger_pending_underflow user_id=%s delta=%s", user_id, delta)
            raise InvariantViolation("pending balance would become negative", user_id=user_id)
        raise ConflictError(
            "insufficient available balance",
            code="INSUFFICIENT_FUNDS",
            available_minor=int(current.available_minor or 0) if current is not None else 0,
            requested_minor=-delta.available,
        )

    def wallet(self, user_id: str) -> Wallet | None:
        stmt = select(Wallet).where(Wallet.user_id == user_id).execution_options(populate_existing=True)
        return self.session.execute(stmt).scalar_one_or_none()

    def balance_of(self, user_id: str) -> Balance:
        return wallet_balance(self.wallet(user_id))

    def fold_balance(self, user_id: str) -> Balance:
        entries = self.session.query(LedgerEntry).filter_by(user_id=user_id).order_by(LedgerEntry.id.asc())
        return fold_entries(entries)

    def verify_wallet(self, user_id: str) -> Balance:
        stored = self.balance_of(user_id)
        folded = self.fold_balance(user_id)
        if stored != folded:
            logger.critical("wallet_fold_mismatch user_id=%s stored=%s folded=%s", user_id, stored, folded)
            raise InvariantViolation(
                "wallet does not match its ledger",
                user_id=user_id,
                stored=stored.to_dict(),
                folded=folded.to_dict(),
            )
        return stored

    def entries_for(self, user_id: str, *, limit: int = 50, reference_id: str | None = None) -> list[LedgerEntry]:
        q = self.session.query(LedgerEntry).filter_by(user_id=user_id)
        if reference_id is not None:
            q = q.filter_by(reference_id=str(reference_id))
        return q.order_by(LedgerEntry.id.desc()).limit(max(1, min(int(limit), 500))).all()
