from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import update

from tradesafe.models import (
    EntryType,
    EscrowStatus,
    ExternalTransfer,
    LedgerEntry,
    Order,
    OrderStatus,
    PaymentMethod,
)
from tradesafe.services.errors import ConflictError, NotFoundError, ValidationError
from tradesafe.services.ledger_service import Ledger

logger = logging.getLogger(__name__)


@dataclass
class EscrowOutcome:
    applied: bool = False
    entries: list[LedgerEntry] = field(default_factory=list)
    transfer: ExternalTransfer | None = None


class EscrowController:
    """Moves an order's seller net between pending and available, or back to the buyer.

    Every operation runs in the caller's transaction and switches
    ``escrow_status`` by compare-and-swap. Repeating an operation that already
    applied returns an empty outcome.
    """

    # order status each operation requires
    _REQUIRED = {
        EscrowStatus.HELD: (OrderStatus.PAID,),
        EscrowStatus.RELEASED: (OrderStatus.COMPLETED,),
        EscrowStatus.REVERSED: (OrderStatus.CANCELLED,),
        EscrowStatus.SPLIT: (OrderStatus.COMPLETED,),
    }
    # a split already paid the seller, so a later release has nothing left to do
    _SETTLED_AS = {
        EscrowStatus.RELEASED: (EscrowStatus.RELEASED, EscrowStatus.SPLIT),
    }

    def __init__(self, session, ledger: Ledger, wallets):
        self.session = session
        self.ledger = ledger
        self.wallets = wallets

    def _load(self, order_id: int) -> Order:
        order = self.session.get(Order, int(order_id), populate_existing=True)
        if order is None:
            raise NotFoundError(f"order {order_id} not found", code="ORDER_NOT_FOUND")
        return order

    def _switch(self, order: Order, *, expected: EscrowStatus, target: EscrowStatus) -> bool:
        """CAS on escrow_status. False means the target was already reached."""
        if order.escrow_status in self._SETTLED_AS.get(target, (target,)):
            return False
        allowed = self._REQUIRED[target]
        if order.status not in allowed:
            raise ConflictError(
                f"escrow cannot become {target.value} while order is {order.status.value}",
                code="INVALID_ESCROW_TRANSITION",
                order_id=int(order.id),
            )
        if order.escrow_status != expected:
            raise ConflictError(
                f"escrow is {order.escrow_status.value}, expected {expected.value}",
                code="INVALID_ESCROW_TRANSITION",
                order_id=int(order.id),
            )
        result = self.session.execute(
            update(Order)
            .where(Order.id == int(order.id), Order.escrow_status == expected)
            .values(escrow_status=target, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError("escrow changed concurrently", code="CONCURRENT_TRANSITION", order_id=int(order.id))
        self.session.refresh(order)
        logger.info("escrow_%s order_id=%s", target.value, order.id)
        return True

    def hold(self, order_id: int, seller_id: str, amount_minor: int) -> EscrowOutcome:
        order = self._load(order_id)
        if seller_id != order.seller_id or int(amount_minor) != int(order.seller_net_minor):
            raise ValidationError(
                "escrow hold does not match the order snapshot",
                code="ESCROW_SNAPSHOT_MISMATCH",
                order_id=int(order.id),
            )
        if not self._switch(order, expected=EscrowStatus.NONE, target=EscrowStatus.HELD):
            return EscrowOutcome()
        entry = self.ledger.append(
            order.seller_id,
            int(order.seller_net_minor),
            EntryType.ESCROW_HOLD,
            order.id,
            reference_type="order",
            description=f"Escrow hold for order #{int(order.id)}",
            idempotency_key=f"escrow_hold:order:{int(order.id)}",
        )
        return EscrowOutcome(applied=True, entries=[entry])

    def release(self, order_id: int) -> EscrowOutcome:
        order = self._load(order_id)
        if not self._switch(order, expected=EscrowStatus.HELD, target=EscrowStatus.RELEASED):
            return EscrowOutcome()
        entry = self.ledger.append(
            order.seller_id,
            int(order.seller_net_minor),
            EntryType.ESCROW_RELEASE,
            order.id,
            reference_type="order",
            description=f"Escrow released for order #{int(order.id)}",
            idempotency_key=f"escrow_release:order:{int(order.id)}",
        )
        return EscrowOutcome(applied=True, entries=[entry])

    def reverse(self, order_id: int) -> EscrowOutcome:
        order = self._load(order_id)
        if not self._switch(order, expected=EscrowStatus.HELD, target=EscrowStatus.REVERSED):
            return EscrowOutcome()
        entries = [
            self.ledger.append(
                order.seller_id,
                -int(order.seller_net_minor),
                EntryType.ESCROW_HOLD,
                order.id,
                reference_type="order",
                description=f"Escrow reversed for order #{int(order.id)}",
                idempotency_key=f"escrow_reverse:order:{int(order.id)}",
            )
        ]
        outcome = EscrowOutcome(applied=True, entries=entries)
        self._refund_buyer(order, int(order.total_minor), outcome)
        return outcome

    def split(self, order_id: int, seller_award_minor: int) -> EscrowOutcome:
        order = self._load(order_id)
        net = int(order.seller_net_minor)
        award = int(seller_award_minor)
        if not 0 < award < net:
            raise ValidationError(
                "seller award must be between zero and the seller net",
                code="INVALID_SPLIT",
                seller_net_minor=net,
            )
        if not self._switch(order, expected=EscrowStatus.HELD, target=EscrowStatus.SPLIT):
            return EscrowOutcome()
        oid = int(order.id)
        entries = [
            self.ledger.append(
                order.seller_id,
                award,
                EntryType.ESCROW_RELEASE,
                oid,
                reference_type="order",
                description=f"Split award released for order #{oid}",
                idempotency_key=f"escrow_release:order:{oid}",
            ),
            self.ledger.append(
                order.seller_id,
                -(net - award),
                EntryType.ESCROW_HOLD,
                oid,
                reference_type="order",
                description=f"Escrow remainder reversed for order #{oid}",
                idempotency_key=f"escrow_reverse:order:{oid}",
            ),
        ]
        outcome = EscrowOutcome(applied=True, entries=entries)
        # platform forgoes its fee, buyer gets everything the seller did not
        self._refund_buyer(order, int(order.total_minor) - award, outcome)
        return outcome

    def _refund_buyer(self, order: Order, amount_minor: int, outcome: EscrowOutcome) -> None:
        outcome.entries.append(
            self.ledger.append(
                order.buyer_id,
                int(amount_minor),
                EntryType.REFUND,
                order.id,
                reference_type="order",
                description=f"Refund for order #{int(order.id)}",
                idempotency_key=f"refund:order:{int(order.id)}",
            )
        )
        if order.payment_method == PaymentMethod.CARD:
            outcome.transfer = self.wallets.open_refund_transfer(order, int(amount_minor))
