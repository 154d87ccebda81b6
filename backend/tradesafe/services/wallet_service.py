from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError

from tradesafe.integrations.common import ProviderUnavailableError
from tradesafe.models import EntryType, ExternalTransfer, LedgerEntry, Order, TransferKind, TransferStatus, Wallet
from tradesafe.services.errors import (
    ConflictError,
    ExternalDependencyError,
    NotFoundError,
    ValidationError,
)
from tradesafe.services.ledger_service import Ledger
from tradesafe.utils.db import atomic
from tradesafe.utils.events import emit_event

logger = logging.getLogger(__name__)


def verify_charge(payments, reference: str, expected_minor: int) -> None:
    """Ask the processor whether a charge really happened before trusting a webhook about it."""
    try:
        result = payments.verify(reference)
    except ProviderUnavailableError as exc:
        raise ExternalDependencyError(f"payment verification unavailable: {exc}", reference=reference) from exc
    if not result.succeeded:
        raise ValidationError(
            f"payment {reference} is not successful at the processor",
            code="PAYMENT_NOT_VERIFIED",
            processor_status=result.status,
        )
    if result.amount_minor is not None and int(result.amount_minor) != int(expected_minor):
        raise ValidationError(
            "processor amount does not match",
            code="PAYMENT_AMOUNT_MISMATCH",
            expected_minor=int(expected_minor),
            processor_minor=int(result.amount_minor),
        )


def _parse_transfer_reference(reference: str) -> int | None:
    ref = (reference or "").strip()
    if not ref.startswith("transfer-"):
        return None
    try:
        return int(ref[len("transfer-"):])
    except ValueError:
        return None


class WalletService:
    """Wallet-side money movements: wallet charges, top-ups, payouts and refund transfers."""

    _TRANSFER_IN_FLIGHT = (TransferStatus.PENDING, TransferStatus.SUBMITTING, TransferStatus.UNCONFIRMED)
    _TRANSFER_SUCCEEDABLE = _TRANSFER_IN_FLIGHT + (TransferStatus.SUBMITTED,)
    _TRANSFER_FAILABLE = _TRANSFER_SUCCEEDABLE + (TransferStatus.SUCCEEDED,)

    def __init__(self, session, ledger: Ledger, payments, settings):
        self.session = session
        self.ledger = ledger
        self.payments = payments
        self.settings = settings

    # wallet views

    def summary(self, user_id: str) -> dict:
        wallet = self.ledger.wallet(user_id)
        if wallet is None:
            return Wallet(user_id=user_id, available_minor=0, pending_minor=0,
                          lifetime_earned_minor=0, lifetime_spent_minor=0).to_dict()
        return wallet.to_dict()

    def set_payout_destination(self, user_id: str, destination: str) -> Wallet:
        destination = (destination or "").strip()
        if not destination or len(destination) > 128:
            raise ValidationError("payout destination required", code="INVALID_PAYOUT_DESTINATION")
        with atomic(self.session):
            self.ledger.ensure_wallet(user_id)
            self.session.execute(
                update(Wallet)
                .where(Wallet.user_id == user_id)
                .values(payout_destination=destination, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
        return self.ledger.wallet(user_id)

    # ledger writers, inside the caller's transaction

    def charge(
        self,
        user_id: str,
        amount_minor: int,
        *,
        reference_type: str,
        reference_id: int | str,
        description: str,
        idempotency_key: str,
    ) -> LedgerEntry:
        if int(amount_minor) <= 0:
            raise ValidationError("charge amount must be positive", code="INVALID_AMOUNT")
        return self.ledger.append(
            user_id,
            -int(amount_minor),
            EntryType.DEBIT,
            reference_id,
            reference_type=reference_type,
            description=description,
            idempotency_key=idempotency_key,
        )

    def open_refund_transfer(self, order: Order, amount_minor: int) -> ExternalTransfer:
        """Record the intent to refund ``amount_minor`` of a card order to the original payment.

        The buyer's wallet is debited now and credited back if the processor
        definitively refuses the refund.
        """
        key = f"refund_transfer:order:{int(order.id)}"
        existing = self.session.query(ExternalTransfer).filter_by(idempotency_key=key).first()
        if existing is not None:
            return existing
        transfer = ExternalTransfer(
            kind=TransferKind.REFUND,
            status=TransferStatus.PENDING,
            user_id=order.buyer_id,
            order_id=int(order.id),
            amount_minor=int(amount_minor),
            destination=order.payment_reference,
            idempotency_key=key,
        )
        self.session.add(transfer)
        self.session.flush()
        self.ledger.append(
            order.buyer_id,
            -int(amount_minor),
            EntryType.PAYOUT,
            transfer.id,
            reference_type="transfer",
            description=f"Refund for order #{int(order.id)} sent to original payment method",
            idempotency_key=f"refund_disbursed:transfer:{int(transfer.id)}",
        )
        return transfer

    def refund_unapplied_charge(
        self,
        user_id: str,
        payment_reference: str,
        amount_minor: int,
        *,
        subject_type: str,
        subject_id: int,
        order_id: int | None = None,
    ) -> ExternalTransfer:
        """Send back a verified charge for something that can no longer be paid.

        The money never reached a wallet, so only the refund intent is
        recorded. If the processor refuses the refund the amount is credited
        to the payer's wallet instead.
        """
        key = f"unapplied_charge_refund:{payment_reference}"
        transfer = self.session.query(ExternalTransfer).filter_by(idempotency_key=key).first()
        if transfer is None:
            try:
                with atomic(self.session):
                    transfer = ExternalTransfer(
                        kind=TransferKind.REFUND,
                        status=TransferStatus.PENDING,
                        user_id=user_id,
                        order_id=order_id,
                        amount_minor=int(amount_minor),
                        destination=payment_reference,
                        idempotency_key=key,
                    )
                    self.session.add(transfer)
                    self.session.flush()
                    emit_event(
                        self.session,
                        "payment.refunded_unapplied",
                        subject_type=subject_type,
                        subject_id=subject_id,
                        recipients=[user_id],
                        idempotency_key=f"unapplied_charge:{payment_reference}",
                        metadata={"amount_minor": int(amount_minor), "reference": payment_reference},
                    )
            except IntegrityError:
                # a concurrent delivery of the same charge opened it first
                transfer = self.session.query(ExternalTransfer).filter_by(idempotency_key=key).one()
            logger.warning(
                "unapplied_charge_refund %s_id=%s reference=%s amount_minor=%s",
                subject_type,
                subject_id,
                payment_reference,
                amount_minor,
            )
        return self.submit_transfer(transfer.id)

    # standalone operations

    def credit_topup(self, user_id: str, amount_minor: int, reference: str) -> tuple[LedgerEntry, bool]:
        reference = (reference or "").strip()
        if not reference:
            raise ValidationError("payment reference required", code="INVALID_REFERENCE")
        if int(amount_minor) <= 0:
            raise ValidationError("top-up amount must be positive", code="INVALID_AMOUNT")
        key = f"topup:{reference}"
        existing = self.session.query(LedgerEntry).filter_by(idempotency_key=key).first()
        if existing is not None:
            return existing, False
        verify_charge(self.payments, reference, amount_minor)
        with atomic(self.session):
            entry = self.ledger.append(
                user_id,
                int(amount_minor),
                EntryType.CREDIT,
                reference,
                reference_type="payment",
                description="Wallet top-up",
                idempotency_key=key,
            )
            emit_event(
                self.session,
                "wallet.topped_up",
                subject_type="wallet",
                subject_id=user_id,
                recipients=[user_id],
                metadata={"amount_minor": int(amount_minor), "reference": reference},
            )
        return entry, True

    def request_payout(self, user_id: str, amount_minor: int) -> ExternalTransfer:
        if isinstance(amount_minor, bool) or not isinstance(amount_minor, int):
            raise ValidationError("amount must be an integer number of minor units", code="INVALID_AMOUNT")
        if amount_minor < int(self.settings.min_payout_minor):
            raise ValidationError(
                "payout below minimum",
                code="PAYOUT_BELOW_MINIMUM",
                min_payout_minor=int(self.settings.min_payout_minor),
            )
        wallet = self.ledger.wallet(user_id)
        if wallet is None or not (wallet.payout_destination or "").strip():
            raise ValidationError("set a payout destination first", code="PAYOUT_DESTINATION_MISSING")
        if wallet.frozen_at is not None:
            raise ConflictError("wallet is frozen pending reconciliation", code="WALLET_FROZEN")

        with atomic(self.session):
            transfer = ExternalTransfer(
                kind=TransferKind.PAYOUT,
                status=TransferStatus.PENDING,
                user_id=user_id,
                amount_minor=int(amount_minor),
                destination=wallet.payout_destination,
                idempotency_key=f"payout:{user_id}:{uuid.uuid4().hex}",
            )
            self.session.add(transfer)
            self.session.flush()
            self.ledger.append(
                user_id,
                -int(amount_minor),
                EntryType.PAYOUT,
                transfer.id,
                reference_type="transfer",
                description="Payout to bank account",
                idempotency_key=f"payout:transfer:{int(transfer.id)}",
            )
            emit_event(
                self.session,
                "payout.requested",
                subject_type="transfer",
                subject_id=transfer.id,
                recipients=[user_id],
                metadata={"amount_minor": int(amount_minor)},
            )
            transfer_id = int(transfer.id)
        return self.submit_transfer(transfer_id)

    def get_transfer(self, transfer_id: int) -> ExternalTransfer:
        transfer = self.session.get(ExternalTransfer, int(transfer_id), populate_existing=True)
        if transfer is None:
            raise NotFoundError(f"transfer {transfer_id} not found", code="TRANSFER_NOT_FOUND")
        return transfer

    def _claimable(self, transfer: ExternalTransfer, now: datetime) -> bool:
        if transfer.status in (TransferStatus.PENDING, TransferStatus.UNCONFIRMED):
            return True
        # a worker that died mid-call leaves its claim behind
        stale_before = now - timedelta(seconds=int(self.settings.transfer_claim_seconds))
        return transfer.status == TransferStatus.SUBMITTING and transfer.updated_at <= stale_before

    def _claim(self, transfer: ExternalTransfer) -> bool:
        """Take the transfer for one processor call; only one caller can win."""
        with atomic(self.session):
            result = self.session.execute(
                update(ExternalTransfer)
                .where(
                    ExternalTransfer.id == int(transfer.id),
                    ExternalTransfer.status == transfer.status,
                    ExternalTransfer.attempts == int(transfer.attempts or 0),
                )
                .values(
                    status=TransferStatus.SUBMITTING,
                    attempts=ExternalTransfer.attempts + 1,
                    updated_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    def _call_processor(self, kind: TransferKind, *, destination: str, amount_minor: int, reference: str, outcome_unknown: bool):
        if outcome_unknown:
            # an earlier call may have landed; never send the same money twice
            if kind == TransferKind.REFUND:
                found = self.payments.lookup_refund(payment_reference=destination, reference=reference)
            else:
                found = self.payments.lookup_transfer(reference)
            if found is not None:
                logger.info("transfer_found_at_processor reference=%s status=%s", reference, found.status)
                return found
        if kind == TransferKind.REFUND:
            return self.payments.refund(payment_reference=destination, amount_minor=amount_minor, reference=reference)
        return self.payments.transfer(destination=destination, amount_minor=amount_minor, reference=reference, reason="payout")

    def submit_transfer(self, transfer_id: int) -> ExternalTransfer:
        """Send a committed transfer intent to the processor.

        The transfer is claimed (``submitting``) before the call so concurrent
        callers cannot both send it. When the processor cannot be reached the
        transfer becomes ``unconfirmed``; the next attempt asks the processor
        whether the earlier request landed before sending it again.
        """
        transfer = self.get_transfer(transfer_id)
        if not self._claimable(transfer, datetime.utcnow()):
            return transfer
        outcome_unknown = transfer.status != TransferStatus.PENDING
        kind = transfer.kind
        amount_minor = int(transfer.amount_minor)
        destination = transfer.destination
        reference = transfer.reference
        if not self._claim(transfer):
            logger.info("transfer_claim_lost transfer_id=%s", transfer_id)
            return self.get_transfer(transfer_id)

        # no transaction stays open across the processor call
        try:
            result = self._call_processor(
                kind,
                destination=destination,
                amount_minor=amount_minor,
                reference=reference,
                outcome_unknown=outcome_unknown,
            )
        except ProviderUnavailableError as exc:
            with atomic(self.session):
                self.session.execute(
                    update(ExternalTransfer)
                    .where(ExternalTransfer.id == int(transfer_id), ExternalTransfer.status == TransferStatus.SUBMITTING)
                    .values(
                        status=TransferStatus.UNCONFIRMED,
                        last_error=str(exc)[:400],
                        updated_at=datetime.utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
            logger.warning("transfer_submit_deferred transfer_id=%s err=%s", transfer_id, exc)
            return self.get_transfer(transfer_id)

        if not result.ok:
            return self.record_transfer_outcome(reference, succeeded=False, reason=result.message or "declined")

        # refunds are final on acceptance, payouts wait for the transfer webhook
        target = TransferStatus.SUCCEEDED if kind == TransferKind.REFUND else TransferStatus.SUBMITTED
        with atomic(self.session):
            self.session.execute(
                update(ExternalTransfer)
                .where(ExternalTransfer.id == int(transfer_id), ExternalTransfer.status == TransferStatus.SUBMITTING)
                .values(
                    status=target,
                    provider_reference=(result.provider_reference or "")[:128] or None,
                    last_error=None,
                    updated_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
        logger.info("transfer_submitted transfer_id=%s kind=%s status=%s", transfer_id, kind.value, target.value)
        return self.get_transfer(transfer_id)

    def find_transfer(self, reference: str) -> ExternalTransfer:
        transfer_id = _parse_transfer_reference(reference)
        transfer = None
        if transfer_id is not None:
            transfer = self.session.get(ExternalTransfer, transfer_id, populate_existing=True)
        if transfer is None and (reference or "").strip():
            transfer = self.session.query(ExternalTransfer).filter_by(provider_reference=reference.strip()).first()
        if transfer is None:
            raise NotFoundError(f"transfer {reference} not found", code="TRANSFER_NOT_FOUND")
        return transfer

    def record_transfer_outcome(self, reference: str, *, succeeded: bool, reason: str = "") -> ExternalTransfer:
        """Apply a final processor outcome. Replays of the same outcome are no-ops."""
        transfer = self.find_transfer(reference)
        target = TransferStatus.SUCCEEDED if succeeded else TransferStatus.FAILED
        if transfer.status == target:
            return transfer
        sources = self._TRANSFER_SUCCEEDABLE if succeeded else self._TRANSFER_FAILABLE
        if transfer.status not in sources:
            raise ConflictError(
                f"transfer {transfer.reference} is already {transfer.status.value}",
                code="TRANSFER_ALREADY_FINAL",
            )

        with atomic(self.session):
            result = self.session.execute(
                update(ExternalTransfer)
                .where(ExternalTransfer.id == int(transfer.id), ExternalTransfer.status.in_(sources))
                .values(status=target, last_error=(reason or "")[:400] or None, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError("transfer changed concurrently", code="CONCURRENT_TRANSITION")
            if not succeeded:
                description = (
                    "Payout failed, amount returned to wallet"
                    if transfer.kind == TransferKind.PAYOUT
                    else "Card refund failed, amount kept in wallet"
                )
                self.ledger.append(
                    transfer.user_id,
                    int(transfer.amount_minor),
                    EntryType.REFUND,
                    transfer.id,
                    reference_type="transfer",
                    description=description,
                    idempotency_key=f"transfer_reversal:transfer:{int(transfer.id)}",
                )
            emit_event(
                self.session,
                f"{transfer.kind.value}.{target.value}",
                subject_type="transfer",
                subject_id=transfer.id,
                recipients=[transfer.user_id],
                idempotency_key=f"transfer:{int(transfer.id)}:{target.value}",
                metadata={"amount_minor": int(transfer.amount_minor), "reason": reason},
            )
        log = logger.info if succeeded else logger.warning
        log("transfer_outcome transfer_id=%s kind=%s status=%s reason=%s", transfer.id, transfer.kind.value, target.value, reason)
        return self.get_transfer(transfer.id)

    def retry_pending_transfers(self, *, limit: int = 50) -> dict:
        now = datetime.utcnow()
        stale_before = now - timedelta(seconds=int(self.settings.transfer_claim_seconds))
        ids = [
            row.id
            for row in self.session.query(ExternalTransfer.id)
            .filter(
                or_(
                    ExternalTransfer.status.in_((TransferStatus.PENDING, TransferStatus.UNCONFIRMED)),
                    and_(
                        ExternalTransfer.status == TransferStatus.SUBMITTING,
                        ExternalTransfer.updated_at <= stale_before,
                    ),
                )
            )
            .order_by(ExternalTransfer.id.asc())
            .limit(int(limit))
            .all()
        ]
        submitted = 0
        still_pending = 0
        for transfer_id in ids:
            transfer = self.submit_transfer(transfer_id)
            if transfer.status in self._TRANSFER_IN_FLIGHT:
                still_pending += 1
            else:
                submitted += 1
        return {"scanned": len(ids), "submitted": submitted, "pending": still_pending}

    def transfers_for(self, user_id: str, *, limit: int = 50) -> list[ExternalTransfer]:
        return (
            self.session.query(ExternalTransfer)
            .filter_by(user_id=user_id)
            .order_by(ExternalTransfer.id.desc())
            .limit(max(1, min(int(limit), 200)))
            .all()
        )
