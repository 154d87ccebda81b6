from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from tradesafe.models import PaymentMethod, Promotion, PromotionStatus
from tradesafe.services.errors import ConflictError, NotFoundError, PermissionDenied, ValidationError
from tradesafe.services.wallet_service import WalletService, verify_charge
from tradesafe.utils.db import atomic
from tradesafe.utils.events import emit_event

logger = logging.getLogger(__name__)

MAX_DURATION_HOURS = 24 * 90


class PromotionService:
    """Paid listing boosts: pending until paid, active for ``duration_hours``, then expired."""

    def __init__(self, session, wallets: WalletService, payments):
        self.session = session
        self.wallets = wallets
        self.payments = payments

    def get(self, promotion_id: int) -> Promotion:
        promo = self.session.get(Promotion, int(promotion_id), populate_existing=True)
        if promo is None:
            raise NotFoundError(f"promotion {promotion_id} not found", code="PROMOTION_NOT_FOUND")
        return promo

    def list_for_seller(self, seller_id: str, *, limit: int = 50) -> list[Promotion]:
        return (
            self.session.query(Promotion)
            .filter_by(seller_id=seller_id)
            .order_by(Promotion.id.desc())
            .limit(max(1, min(int(limit), 200)))
            .all()
        )

    def _switch(self, promo: Promotion, *, expected: tuple[PromotionStatus, ...], target: PromotionStatus, **values) -> bool:
        result = self.session.execute(
            update(Promotion)
            .where(Promotion.id == int(promo.id), Promotion.status.in_(expected))
            .values(status=target, updated_at=datetime.utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        self.session.refresh(promo)
        return True

    def _activation_values(self, promo: Promotion, now: datetime) -> dict:
        return {
            "paid_at": now,
            "starts_at": now,
            "ends_at": now + timedelta(hours=int(promo.duration_hours)),
        }

    def create(
        self,
        seller_id: str,
        item_id: str,
        plan_code: str,
        price_minor: int,
        duration_hours: int,
        *,
        payment_method: str = "wallet",
        payment_reference: str | None = None,
    ) -> Promotion:
        item_id = (item_id or "").strip()
        plan_code = (plan_code or "").strip()
        if not item_id or not plan_code:
            raise ValidationError("item_id and plan_code are required")
        if isinstance(price_minor, bool) or not isinstance(price_minor, int) or price_minor <= 0:
            raise ValidationError("price must be a positive number of minor units", code="INVALID_AMOUNT")
        try:
            hours = int(duration_hours)
        except (TypeError, ValueError):
            raise ValidationError("duration_hours must be an integer", code="INVALID_DURATION")
        if not 1 <= hours <= MAX_DURATION_HOURS:
            raise ValidationError("duration out of range", code="INVALID_DURATION")
        try:
            method = PaymentMethod(payment_method)
        except ValueError:
            raise ValidationError(f"unknown payment method {payment_method!r}", code="INVALID_PAYMENT_METHOD")
        reference = (payment_reference or "").strip()[:128] or None
        if method == PaymentMethod.WALLET:
            reference = None

        try:
            with atomic(self.session):
                promo = Promotion(
                    seller_id=seller_id,
                    item_id=item_id[:64],
                    plan_code=plan_code[:64],
                    price_minor=price_minor,
                    duration_hours=hours,
                    status=PromotionStatus.PENDING,
                    payment_method=method,
                    payment_reference=reference,
                )
                self.session.add(promo)
                self.session.flush()
                if method == PaymentMethod.WALLET:
                    self.wallets.charge(
                        seller_id,
                        price_minor,
                        reference_type="promotion",
                        reference_id=promo.id,
                        description=f"Promotion {plan_code} for item {item_id}",
                        idempotency_key=f"promotion_payment:promotion:{int(promo.id)}",
                    )
                    now = datetime.utcnow()
                    self._switch(
                        promo,
                        expected=(PromotionStatus.PENDING,),
                        target=PromotionStatus.ACTIVE,
                        payment_reference=f"wallet:promotion:{int(promo.id)}",
                        **self._activation_values(promo, now),
                    )
                    emit_event(
                        self.session,
                        "promotion.activated",
                        subject_type="promotion",
                        subject_id=promo.id,
                        actor_id=seller_id,
                        recipients=[seller_id],
                        idempotency_key=f"promotion:{int(promo.id)}:active",
                    )
        except IntegrityError as exc:
            raise ConflictError("payment reference already used", code="PAYMENT_REFERENCE_IN_USE") from exc
        logger.info("promotion_created promotion_id=%s method=%s status=%s", promo.id, method.value, promo.status.value)
        return promo

    def confirm_payment(self, promotion_id: int, reference: str, amount_minor: int | None = None) -> tuple[Promotion, bool]:
        """Activate a card-paid promotion. Replays of the same reference are no-ops.

        A charge for a promotion cancelled before payment is refunded and
        reported as ``PROMOTION_CANCELLED``.
        """
        reference = (reference or "").strip()
        if not reference:
            raise ValidationError("payment reference required", code="INVALID_REFERENCE")
        promo = self.get(promotion_id)
        if promo.payment_reference and promo.payment_reference != reference:
            raise ConflictError("promotion is bound to a different payment", code="PAYMENT_REFERENCE_MISMATCH")
        if promo.status != PromotionStatus.PENDING:
            if promo.paid_at is not None and promo.payment_reference == reference:
                return promo, False
            if promo.status == PromotionStatus.CANCELLED and promo.paid_at is None:
                self._refund_charge_after_cancel(promo, reference, amount_minor)
            raise ConflictError(f"promotion is {promo.status.value}", code="INVALID_TRANSITION")
        if amount_minor is not None and int(amount_minor) != int(promo.price_minor):
            raise ValidationError("paid amount does not match the promotion price", code="PAYMENT_AMOUNT_MISMATCH")

        verify_charge(self.payments, reference, int(promo.price_minor))
        try:
            with atomic(self.session):
                switched = self._switch(
                    promo,
                    expected=(PromotionStatus.PENDING,),
                    target=PromotionStatus.ACTIVE,
                    payment_reference=reference,
                    **self._activation_values(promo, datetime.utcnow()),
                )
                if not switched:
                    raise ConflictError("promotion changed concurrently", code="CONCURRENT_TRANSITION")
                emit_event(
                    self.session,
                    "promotion.activated",
                    subject_type="promotion",
                    subject_id=promo.id,
                    recipients=[promo.seller_id],
                    idempotency_key=f"promotion:{int(promo.id)}:active",
                )
        except ConflictError:
            current = self.get(promotion_id)
            if current.paid_at is not None and current.payment_reference == reference:
                return current, False
            if current.status == PromotionStatus.CANCELLED and current.paid_at is None:
                self._refund_charge_after_cancel(current, reference, amount_minor)
            raise
        except IntegrityError as exc:
            raise ConflictError("payment reference already used", code="PAYMENT_REFERENCE_IN_USE") from exc
        return promo, True

    def _refund_charge_after_cancel(self, promo: Promotion, reference: str, amount_minor: int | None) -> None:
        captured = int(amount_minor) if amount_minor is not None else int(promo.price_minor)
        verify_charge(self.payments, reference, captured)
        transfer = self.wallets.refund_unapplied_charge(
            promo.seller_id,
            reference,
            captured,
            subject_type="promotion",
            subject_id=int(promo.id),
        )
        raise ConflictError(
            "promotion was cancelled before payment; the charge is refunded",
            code="PROMOTION_CANCELLED",
            promotion_id=int(promo.id),
            refund_transfer_id=int(transfer.id),
        )

    def cancel(self, promotion_id: int, actor) -> Promotion:
        promo = self.get(promotion_id)
        if not (actor.is_admin or actor.user_id == promo.seller_id):
            raise PermissionDenied("only the seller can cancel this promotion")
        if promo.status == PromotionStatus.CANCELLED:
            return promo
        with atomic(self.session):
            if not self._switch(
                promo,
                expected=(PromotionStatus.PENDING, PromotionStatus.ACTIVE),
                target=PromotionStatus.CANCELLED,
                cancelled_at=datetime.utcnow(),
            ):
                raise ConflictError(f"promotion is {promo.status.value}", code="INVALID_TRANSITION")
        return promo

    def expire_due(self, *, now: datetime | None = None, limit: int = 500) -> dict:
        now = now or datetime.utcnow()
        ids = [
            row.id
            for row in self.session.query(Promotion.id)
            .filter(Promotion.status == PromotionStatus.ACTIVE, Promotion.ends_at <= now)
            .order_by(Promotion.ends_at.asc())
            .limit(int(limit))
            .all()
        ]
        expired = 0
        for promotion_id in ids:
            promo = self.get(promotion_id)
            with atomic(self.session):
                if self._switch(promo, expected=(PromotionStatus.ACTIVE,), target=PromotionStatus.EXPIRED):
                    expired += 1
                    emit_event(
                        self.session,
                        "promotion.expired",
                        subject_type="promotion",
                        subject_id=promo.id,
                        recipients=[promo.seller_id],
                        idempotency_key=f"promotion:{int(promo.id)}:expired",
                    )
        return {"scanned": len(ids), "expired": expired}
