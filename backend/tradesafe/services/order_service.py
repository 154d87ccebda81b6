from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from tradesafe.models import (
    DisputeDecision,
    EscrowStatus,
    Order,
    OrderStatus,
    OrderTransition,
    PaymentMethod,
)
from tradesafe.services.errors import (
    ConflictError,
    InvariantViolation,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from tradesafe.services.escrow_service import EscrowController, EscrowOutcome
from tradesafe.services.wallet_service import WalletService, verify_charge
from tradesafe.utils.db import atomic
from tradesafe.utils.events import emit_event
from tradesafe.utils.money import split_platform_fee
from tradesafe.utils.verification_codes import DROPOFF, PICKUP, generate_code, hash_code, verify_code

logger = logging.getLogger(__name__)


class OrderEvent(str, Enum):
    PAYMENT_CONFIRMED = "payment_confirmed"
    PICKUP_SCHEDULED = "pickup_scheduled"
    PICKED_UP = "picked_up"
    DELIVERY_SCHEDULED = "delivery_scheduled"
    DELIVERED = "delivered"
    BUYER_CONFIRMED = "buyer_confirmed"
    COMPLETION_TIMEOUT = "completion_timeout"
    DISPUTE_OPENED = "dispute_opened"
    RESOLVED_FOR_SELLER = "resolved_for_seller"
    RESOLVED_FOR_BUYER = "resolved_for_buyer"
    RESOLVED_SPLIT = "resolved_split"
    CANCEL_REQUESTED = "cancel_requested"


# statuses a dispute may be opened from
DISPUTABLE = (
    OrderStatus.PAID,
    OrderStatus.PICKUP_SCHEDULED,
    OrderStatus.PICKED_UP,
    OrderStatus.DELIVERY_SCHEDULED,
    OrderStatus.DELIVERED,
)

TRANSITIONS: dict[tuple[OrderStatus, OrderEvent], OrderStatus] = {
    (OrderStatus.CREATED, OrderEvent.PAYMENT_CONFIRMED): OrderStatus.PAID,
    (OrderStatus.CREATED, OrderEvent.CANCEL_REQUESTED): OrderStatus.CANCELLED,
    (OrderStatus.PAID, OrderEvent.PICKUP_SCHEDULED): OrderStatus.PICKUP_SCHEDULED,
    (OrderStatus.PAID, OrderEvent.CANCEL_REQUESTED): OrderStatus.CANCELLED,
    (OrderStatus.PICKUP_SCHEDULED, OrderEvent.PICKED_UP): OrderStatus.PICKED_UP,
    (OrderStatus.PICKED_UP, OrderEvent.DELIVERY_SCHEDULED): OrderStatus.DELIVERY_SCHEDULED,
    (OrderStatus.DELIVERY_SCHEDULED, OrderEvent.DELIVERED): OrderStatus.DELIVERED,
    (OrderStatus.DELIVERED, OrderEvent.BUYER_CONFIRMED): OrderStatus.COMPLETED,
    (OrderStatus.DELIVERED, OrderEvent.COMPLETION_TIMEOUT): OrderStatus.COMPLETED,
    (OrderStatus.DISPUTED, OrderEvent.RESOLVED_FOR_SELLER): OrderStatus.COMPLETED,
    (OrderStatus.DISPUTED, OrderEvent.RESOLVED_FOR_BUYER): OrderStatus.CANCELLED,
    (OrderStatus.DISPUTED, OrderEvent.RESOLVED_SPLIT): OrderStatus.COMPLETED,
}
for _status in DISPUTABLE:
    TRANSITIONS[(_status, OrderEvent.DISPUTE_OPENED)] = OrderStatus.DISPUTED

# rider assignment does not change status
RIDER_ASSIGNABLE = (
    OrderStatus.PAID,
    OrderStatus.PICKUP_SCHEDULED,
    OrderStatus.PICKED_UP,
    OrderStatus.DELIVERY_SCHEDULED,
)


def next_status(current: OrderStatus, event: OrderEvent) -> OrderStatus:
    try:
        return TRANSITIONS[(OrderStatus(current), OrderEvent(event))]
    except KeyError:
        raise ConflictError(
            f"{OrderEvent(event).value} is not allowed while order is {OrderStatus(current).value}",
            code="INVALID_TRANSITION",
            status=OrderStatus(current).value,
            event=OrderEvent(event).value,
        )


@dataclass(frozen=True)
class Actor:
    user_id: str | None
    role: str = "user"

    @classmethod
    def system(cls) -> "Actor":
        return cls(user_id=None, role="system")

    @classmethod
    def fulfillment(cls) -> "Actor":
        return cls(user_id=None, role="fulfillment")

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_system(self) -> bool:
        return self.role == "system"

    @property
    def is_staff(self) -> bool:
        return self.role in ("admin", "system", "fulfillment")


def _wallet_reference(order_id: int) -> str:
    return f"wallet:order:{int(order_id)}"


class OrderStateMachine:
    """Order lifecycle. Every status change goes through ``apply``."""

    def __init__(self, session, escrow: EscrowController, wallets: WalletService, payments, settings):
        self.session = session
        self.escrow = escrow
        self.wallets = wallets
        self.payments = payments
        self.settings = settings

    # reads

    def get(self, order_id: int, *, fresh: bool = False) -> Order:
        if fresh:
            order = self.session.get(Order, int(order_id), populate_existing=True)
        else:
            order = self.session.get(Order, int(order_id))
        if order is None:
            raise NotFoundError(f"order {order_id} not found", code="ORDER_NOT_FOUND")
        if int(order.seller_net_minor) + int(order.platform_fee_minor) != int(order.total_minor):
            logger.critical("order_fee_invariant_broken order_id=%s", order.id)
            raise InvariantViolation("order fee split does not add up", order_id=int(order.id))
        return order

    def get_for_actor(self, order_id: int, actor: Actor) -> Order:
        order = self.get(order_id)
        if actor.is_staff or actor.user_id in (order.buyer_id, order.seller_id, order.rider_id):
            return order
        raise PermissionDenied("not a participant of this order")

    def list_for_user(self, user_id: str, *, as_role: str = "buyer", limit: int = 50) -> list[Order]:
        q = self.session.query(Order)
        if as_role == "seller":
            q = q.filter(Order.seller_id == user_id)
        elif as_role == "rider":
            q = q.filter(Order.rider_id == user_id)
        elif as_role == "any":
            q = q.filter(or_(Order.buyer_id == user_id, Order.seller_id == user_id))
        else:
            q = q.filter(Order.buyer_id == user_id)
        return q.order_by(Order.id.desc()).limit(max(1, min(int(limit), 200))).all()

    def timeline(self, order_id: int) -> list[OrderTransition]:
        self.get(order_id)
        return (
            self.session.query(OrderTransition)
            .filter_by(order_id=int(order_id))
            .order_by(OrderTransition.id.asc())
            .all()
        )

    # core transition

    def _compare_and_swap(self, order_id: int, *, expected: OrderStatus, target: OrderStatus, changes: dict) -> int:
        result = self.session.execute(
            update(Order)
            .where(Order.id == int(order_id), Order.status == expected)
            .values(status=target, version=Order.version + 1, updated_at=datetime.utcnow(), **changes)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    def _record_transition(self, order: Order, *, from_status: str, to_status: str, event: str, actor: Actor, reason: str = "", metadata: dict | None = None) -> OrderTransition:
        row = OrderTransition(
            order_id=int(order.id),
            from_status=from_status,
            to_status=to_status,
            event=event,
            actor_type=actor.role[:32],
            actor_id=actor.user_id,
            reason=(reason or "")[:240] or None,
            metadata_json=json.dumps(metadata or {})[:4000],
        )
        self.session.add(row)
        self.session.flush()
        return row

    def apply(
        self,
        order: Order,
        event: OrderEvent,
        actor: Actor,
        *,
        reason: str = "",
        metadata: dict | None = None,
        changes: dict | None = None,
    ) -> Order:
        """Move ``order`` along one edge of TRANSITIONS inside the caller's transaction.

        Raises ConflictError when the edge does not exist or another writer
        moved the order first.
        """
        current = order.status
        target = next_status(current, event)
        if self._compare_and_swap(order.id, expected=current, target=target, changes=dict(changes or {})) != 1:
            raise ConflictError(
                "order changed concurrently",
                code="CONCURRENT_TRANSITION",
                order_id=int(order.id),
                expected=current.value,
            )
        self.session.refresh(order)
        self._record_transition(
            order,
            from_status=current.value,
            to_status=target.value,
            event=OrderEvent(event).value,
            actor=actor,
            reason=reason,
            metadata=metadata,
        )
        emit_event(
            self.session,
            "order.transitioned",
            subject_type="order",
            subject_id=order.id,
            actor_id=actor.user_id,
            recipients=[r for r in (order.buyer_id, order.seller_id, order.rider_id) if r],
            idempotency_key=f"order:{int(order.id)}:{target.value}",
            metadata={"from": current.value, "to": target.value, "event": OrderEvent(event).value},
        )
        logger.info(
            "order_transition order_id=%s %s->%s event=%s actor=%s:%s",
            order.id,
            current.value,
            target.value,
            OrderEvent(event).value,
            actor.role,
            actor.user_id or "",
        )
        return order

    # lifecycle operations

    def create_order(
        self,
        item_id: str,
        buyer_id: str,
        seller_id: str,
        total_minor: int,
        *,
        payment_method: str | PaymentMethod = PaymentMethod.CARD,
        payment_reference: str | None = None,
        actor: Actor | None = None,
    ) -> Order:
        item_id = (item_id or "").strip()
        buyer_id = (buyer_id or "").strip()
        seller_id = (seller_id or "").strip()
        if not item_id or not buyer_id or not seller_id:
            raise ValidationError("item_id, buyer_id and seller_id are required")
        if buyer_id == seller_id:
            raise ValidationError("buyer and seller must differ", code="SELF_PURCHASE")
        if isinstance(total_minor, bool) or not isinstance(total_minor, int) or total_minor <= 0:
            raise ValidationError("total must be a positive number of minor units", code="INVALID_AMOUNT")
        try:
            method = PaymentMethod(payment_method)
        except ValueError:
            raise ValidationError(f"unknown payment method {payment_method!r}", code="INVALID_PAYMENT_METHOD")

        fee_bps = int(self.settings.platform_fee_bps)
        fee, net = split_platform_fee(total_minor, fee_bps)
        actor = actor or Actor(user_id=buyer_id)
        try:
            with atomic(self.session):
                order = Order(
                    item_id=item_id[:64],
                    buyer_id=buyer_id,
                    seller_id=seller_id,
                    total_minor=total_minor,
                    platform_fee_minor=fee,
                    seller_net_minor=net,
                    fee_bps=fee_bps,
                    status=OrderStatus.CREATED,
                    escrow_status=EscrowStatus.NONE,
                    version=0,
                    payment_method=method,
                    payment_reference=(payment_reference or "").strip()[:128] or None,
                )
                self.session.add(order)
                self.session.flush()
                self._record_transition(
                    order, from_status="", to_status=OrderStatus.CREATED.value, event="order_created", actor=actor
                )
                emit_event(
                    self.session,
                    "order.created",
                    subject_type="order",
                    subject_id=order.id,
                    actor_id=actor.user_id,
                    recipients=[buyer_id, seller_id],
                    idempotency_key=f"order:{int(order.id)}:created",
                    metadata={"total_minor": total_minor, "platform_fee_minor": fee, "seller_net_minor": net},
                )
        except IntegrityError as exc:
            raise ConflictError("payment reference already used", code="PAYMENT_REFERENCE_IN_USE") from exc
        logger.info("order_created order_id=%s total_minor=%s fee_minor=%s", order.id, total_minor, fee)
        return order

    def confirm_payment(
        self,
        order_id: int,
        *,
        reference: str,
        amount_minor: int | None = None,
        actor: Actor | None = None,
    ) -> tuple[Order, bool]:
        """Mark a card-paid order as paid and hold its escrow.

        Returns ``(order, applied)``. A replay of the same reference after the
        order moved on is a successful no-op. A charge for an order cancelled
        before it was paid is refunded and reported as ``ORDER_CANCELLED``.
        """
        reference = (reference or "").strip()
        if not reference:
            raise ValidationError("payment reference required", code="INVALID_REFERENCE")
        actor = actor or Actor.system()
        order = self.get(order_id, fresh=True)

        if order.payment_reference and order.payment_reference != reference:
            raise ConflictError(
                "order is bound to a different payment reference",
                code="PAYMENT_REFERENCE_MISMATCH",
                order_id=int(order.id),
            )
        if order.status != OrderStatus.CREATED:
            if order.paid_at is not None and order.payment_reference == reference:
                return order, False
            if order.status == OrderStatus.CANCELLED and order.paid_at is None:
                self._refund_charge_after_cancel(order, reference, amount_minor)
            next_status(order.status, OrderEvent.PAYMENT_CONFIRMED)
        if amount_minor is not None and int(amount_minor) != int(order.total_minor):
            raise ValidationError(
                "paid amount does not match the order total",
                code="PAYMENT_AMOUNT_MISMATCH",
                expected_minor=int(order.total_minor),
                paid_minor=int(amount_minor),
            )

        verify_charge(self.payments, reference, int(order.total_minor))

        try:
            with atomic(self.session):
                self.apply(
                    order,
                    OrderEvent.PAYMENT_CONFIRMED,
                    actor,
                    metadata={"reference": reference},
                    changes={
                        "payment_reference": reference,
                        "payment_method": PaymentMethod.CARD,
                        "paid_at": datetime.utcnow(),
                    },
                )
                self.escrow.hold(order.id, order.seller_id, int(order.seller_net_minor))
        except ConflictError as exc:
            if exc.code != "CONCURRENT_TRANSITION":
                raise
            current = self.get(order_id, fresh=True)
            if current.paid_at is not None and current.payment_reference == reference:
                return current, False
            if current.status == OrderStatus.CANCELLED and current.paid_at is None:
                self._refund_charge_after_cancel(current, reference, amount_minor)
            raise
        except IntegrityError as exc:
            raise ConflictError("payment reference already used", code="PAYMENT_REFERENCE_IN_USE") from exc
        return order, True

    def pay_with_wallet(self, order_id: int, buyer: Actor) -> tuple[Order, bool]:
        """Debit the buyer's wallet and mark the order paid in one transaction."""
        order = self.get(order_id, fresh=True)
        if buyer.user_id != order.buyer_id:
            raise PermissionDenied("only the buyer can pay for this order")
        reference = _wallet_reference(order.id)
        if order.status != OrderStatus.CREATED:
            if order.payment_reference == reference:
                return order, False
            next_status(order.status, OrderEvent.PAYMENT_CONFIRMED)
        if order.payment_reference:
            raise ConflictError(
                "order is bound to a card payment",
                code="PAYMENT_REFERENCE_MISMATCH",
                order_id=int(order.id),
            )

        with atomic(self.session):
            self.apply(
                order,
                OrderEvent.PAYMENT_CONFIRMED,
                buyer,
                metadata={"reference": reference},
                changes={
                    "payment_reference": reference,
                    "payment_method": PaymentMethod.WALLET,
                    "paid_at": datetime.utcnow(),
                },
            )
            self.wallets.charge(
                order.buyer_id,
                int(order.total_minor),
                reference_type="order",
                reference_id=order.id,
                description=f"Wallet payment for order #{int(order.id)}",
                idempotency_key=f"wallet_payment:order:{int(order.id)}",
            )
            self.escrow.hold(order.id, order.seller_id, int(order.seller_net_minor))
        return order, True

    def assign_rider(self, order_id: int, rider_id: str, actor: Actor) -> Order:
        order = self.get(order_id, fresh=True)
        if not (actor.is_staff or actor.user_id == order.seller_id):
            raise PermissionDenied("only the seller or fulfillment can assign a rider")
        rider_id = (rider_id or "").strip()
        if not rider_id:
            raise ValidationError("rider_id required")
        if rider_id in (order.buyer_id, order.seller_id):
            raise ValidationError("rider must not be a party to the order", code="INVALID_RIDER")
        if order.status not in RIDER_ASSIGNABLE:
            raise ConflictError(
                f"cannot assign a rider while order is {order.status.value}",
                code="INVALID_TRANSITION",
            )
        with atomic(self.session):
            result = self.session.execute(
                update(Order)
                .where(Order.id == int(order.id), Order.status.in_(RIDER_ASSIGNABLE))
                .values(rider_id=rider_id, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError("order changed concurrently", code="CONCURRENT_TRANSITION")
            emit_event(
                self.session,
                "order.rider_assigned",
                subject_type="order",
                subject_id=order.id,
                actor_id=actor.user_id,
                recipients=[order.buyer_id, order.seller_id, rider_id],
                metadata={"rider_id": rider_id},
            )
        return self.get(order_id, fresh=True)

    def _can_handle_delivery(self, order: Order, actor: Actor) -> bool:
        return actor.is_staff or (order.rider_id is not None and actor.user_id == order.rider_id)

    def schedule_pickup(self, order_id: int, actor: Actor) -> tuple[Order, str]:
        """Schedule pickup and mint the code the seller hands to the rider."""
        order = self.get(order_id, fresh=True)
        if not (actor.is_staff or actor.user_id == order.seller_id):
            raise PermissionDenied("only the seller or fulfillment can schedule pickup")
        code = generate_code()
        with atomic(self.session):
            self.apply(
                order,
                OrderEvent.PICKUP_SCHEDULED,
                actor,
                changes={"pickup_code_hash": hash_code(order.id, PICKUP, code), "pickup_code_attempts": 0},
            )
            emit_event(
                self.session,
                "order.pickup_code_issued",
                subject_type="order",
                subject_id=order.id,
                recipients=[order.seller_id],
                idempotency_key=f"order:{int(order.id)}:pickup_code",
                metadata={"code": code},
            )
        return order, code

    def schedule_delivery(self, order_id: int, actor: Actor) -> tuple[Order, str]:
        """Schedule delivery and send the dropoff code to the buyer."""
        order = self.get(order_id, fresh=True)
        if not self._can_handle_delivery(order, actor):
            raise PermissionDenied("only the rider or fulfillment can schedule delivery")
        code = generate_code()
        with atomic(self.session):
            self.apply(
                order,
                OrderEvent.DELIVERY_SCHEDULED,
                actor,
                changes={"dropoff_code_hash": hash_code(order.id, DROPOFF, code), "dropoff_code_attempts": 0},
            )
            emit_event(
                self.session,
                "order.delivery_code_issued",
                subject_type="order",
                subject_id=order.id,
                recipients=[order.buyer_id],
                idempotency_key=f"order:{int(order.id)}:delivery_code",
                metadata={"code": code},
            )
        return order, code

    def _check_code(self, order: Order, step: str, code: str | None) -> None:
        hash_col = "pickup_code_hash" if step == PICKUP else "dropoff_code_hash"
        attempts_col = "pickup_code_attempts" if step == PICKUP else "dropoff_code_attempts"
        max_attempts = int(self.settings.delivery_code_max_attempts)
        if int(getattr(order, attempts_col) or 0) >= max_attempts:
            raise ConflictError("too many wrong codes, contact support", code="VERIFICATION_LOCKED")
        if verify_code(getattr(order, hash_col), order.id, step, code):
            return
        attempts = getattr(Order, attempts_col)
        with atomic(self.session):
            self.session.execute(
                update(Order)
                .where(Order.id == int(order.id))
                .values({attempts_col: attempts + 1})
                .execution_options(synchronize_session=False)
            )
        logger.warning("verification_code_rejected order_id=%s step=%s", order.id, step)
        raise ValidationError("invalid verification code", code="INVALID_VERIFICATION_CODE")

    def confirm_pickup(self, order_id: int, code: str | None, actor: Actor) -> Order:
        order = self.get(order_id, fresh=True)
        if not self._can_handle_delivery(order, actor):
            raise PermissionDenied("only the rider or fulfillment can confirm pickup")
        next_status(order.status, OrderEvent.PICKED_UP)
        self._check_code(order, PICKUP, code)
        with atomic(self.session):
            self.apply(order, OrderEvent.PICKED_UP, actor)
        return order

    def confirm_delivery(self, order_id: int, code: str | None, actor: Actor) -> Order:
        order = self.get(order_id, fresh=True)
        if not self._can_handle_delivery(order, actor):
            raise PermissionDenied("only the rider or fulfillment can confirm delivery")
        next_status(order.status, OrderEvent.DELIVERED)
        self._check_code(order, DROPOFF, code)
        with atomic(self.session):
            self.apply(order, OrderEvent.DELIVERED, actor, changes={"delivered_at": datetime.utcnow()})
        return order

    def complete(self, order_id: int, actor: Actor) -> Order:
        order = self.get(order_id, fresh=True)
        if actor.user_id != order.buyer_id:
            raise PermissionDenied("only the buyer can confirm receipt")
        with atomic(self.session):
            self.apply(order, OrderEvent.BUYER_CONFIRMED, actor, changes={"completed_at": datetime.utcnow()})
            self.escrow.release(order.id)
        return order

    def completion_due_at(self, order: Order) -> datetime | None:
        if order.delivered_at is None:
            return None
        return order.delivered_at + timedelta(hours=int(self.settings.auto_complete_hours))

    def auto_complete(self, order_id: int, *, now: datetime | None = None) -> Order:
        now = now or datetime.utcnow()
        order = self.get(order_id, fresh=True)
        if order.halted_at is not None:
            raise ConflictError("order is halted", code="ORDER_HALTED", order_id=int(order.id))
        due = self.completion_due_at(order)
        if order.status == OrderStatus.DELIVERED and (due is None or due > now):
            raise ConflictError("completion window still open", code="COMPLETION_NOT_DUE", order_id=int(order.id))
        with atomic(self.session):
            self.apply(
                order,
                OrderEvent.COMPLETION_TIMEOUT,
                Actor.system(),
                reason=f"no buyer response within {int(self.settings.auto_complete_hours)}h",
                changes={"completed_at": now},
            )
            self.escrow.release(order.id)
        return order

    def cancel(self, order_id: int, actor: Actor, reason: str = "") -> Order:
        order = self.get(order_id, fresh=True)
        if not (actor.is_admin or actor.user_id in (order.buyer_id, order.seller_id)):
            raise PermissionDenied("only the buyer or seller can cancel")
        reason = (reason or "").strip()[:240]
        with atomic(self.session):
            self.apply(
                order,
                OrderEvent.CANCEL_REQUESTED,
                actor,
                reason=reason,
                changes={"cancelled_at": datetime.utcnow(), "cancel_reason": reason or None},
            )
            outcome = EscrowOutcome()
            if order.escrow_status == EscrowStatus.HELD:
                outcome = self.escrow.reverse(order.id)
        self.submit_refund(outcome)
        return self.get(order_id, fresh=True)

    def open_dispute_transition(self, order: Order, actor: Actor, *, dispute_type: str) -> Order:
        """Freeze the order for a dispute. Runs inside the dispute's transaction."""
        return self.apply(order, OrderEvent.DISPUTE_OPENED, actor, metadata={"dispute_type": dispute_type})

    def settle_dispute(self, order: Order, decision, actor: Actor, *, seller_award_minor: int | None = None) -> EscrowOutcome:
        """Leave ``disputed`` according to the resolver's decision. Runs inside the dispute's transaction."""
        decision = DisputeDecision(decision)
        now = datetime.utcnow()
        if decision == DisputeDecision.FAVOR_SELLER:
            self.apply(order, OrderEvent.RESOLVED_FOR_SELLER, actor, changes={"completed_at": now})
            return self.escrow.release(order.id)
        if decision == DisputeDecision.FAVOR_BUYER:
            self.apply(
                order,
                OrderEvent.RESOLVED_FOR_BUYER,
                actor,
                changes={"cancelled_at": now, "cancel_reason": "dispute resolved for buyer"},
            )
            return self.escrow.reverse(order.id)
        if seller_award_minor is None:
            raise ValidationError("split decisions need seller_award_minor", code="INVALID_SPLIT")
        net = int(order.seller_net_minor)
        if not 0 < int(seller_award_minor) < net:
            raise ValidationError(
                "seller award must be between zero and the seller net",
                code="INVALID_SPLIT",
                seller_net_minor=net,
            )
        self.apply(
            order,
            OrderEvent.RESOLVED_SPLIT,
            actor,
            metadata={"seller_award_minor": int(seller_award_minor)},
            changes={"completed_at": now},
        )
        return self.escrow.split(order.id, int(seller_award_minor))

    def _refund_charge_after_cancel(self, order: Order, reference: str, amount_minor: int | None) -> None:
        captured = int(amount_minor) if amount_minor is not None else int(order.total_minor)
        verify_charge(self.payments, reference, captured)
        transfer = self.wallets.refund_unapplied_charge(
            order.buyer_id,
            reference,
            captured,
            subject_type="order",
            subject_id=int(order.id),
            order_id=int(order.id),
        )
        raise ConflictError(
            "order was cancelled before payment; the charge is refunded",
            code="ORDER_CANCELLED",
            order_id=int(order.id),
            refund_transfer_id=int(transfer.id),
        )

    def submit_refund(self, outcome: EscrowOutcome | None) -> None:
        """Send a committed refund intent to the processor."""
        if outcome is None or outcome.transfer is None:
            return
        self.wallets.submit_transfer(outcome.transfer.id)

    def halt(self, order_id: int, reason: str) -> Order:
        """Stop automatic transitions for an order until an operator looks at it."""
        order = self.get(order_id, fresh=True)
        if order.halted_at is not None:
            return order
        with atomic(self.session):
            self.session.execute(
                update(Order)
                .where(Order.id == int(order.id), Order.halted_at.is_(None))
                .values(halted_at=datetime.utcnow(), halt_reason=(reason or "halted")[:240])
                .execution_options(synchronize_session=False)
            )
        logger.warning("order_halted order_id=%s reason=%s", order.id, reason)
        return self.get(order_id, fresh=True)

    def due_for_auto_completion(self, *, now: datetime | None = None, limit: int = 200) -> list[int]:
        now = now or datetime.utcnow()
        cutoff = now - timedelta(hours=int(self.settings.auto_complete_hours))
        rows = (
            self.session.query(Order.id)
            .filter(
                Order.status == OrderStatus.DELIVERED,
                Order.halted_at.is_(None),
                Order.delivered_at.isnot(None),
                Order.delivered_at <= cutoff,
            )
            .order_by(Order.delivered_at.asc())
            .limit(int(limit))
            .all()
        )
        return [int(row.id) for row in rows]
