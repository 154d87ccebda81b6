from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from tradesafe.models import (
    Dispute,
    DisputeDecision,
    DisputeEvidence,
    DisputeMessage,
    DisputePriority,
    DisputeStatus,
    DisputeType,
    EvidenceType,
)
from tradesafe.services.errors import ConflictError, NotFoundError, PermissionDenied, ValidationError
from tradesafe.services.escrow_service import EscrowOutcome
from tradesafe.services.order_service import DISPUTABLE, Actor, OrderStateMachine
from tradesafe.utils.db import atomic
from tradesafe.utils.events import emit_event

logger = logging.getLogger(__name__)

MAX_MESSAGE_LEN = 4000


def _parse(enum_cls, value, code: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"{value!r} is not one of: {allowed}", code=code)


class DisputeProtocol:
    """Opening, discussing and resolving disputes.

    Resolution is the only way out of ``disputed``; it hands the decision to
    the order state machine, which settles escrow in the same transaction.
    """

    def __init__(self, session, orders: OrderStateMachine):
        self.session = session
        self.orders = orders

    def get(self, dispute_id: int) -> Dispute:
        dispute = self.session.get(Dispute, int(dispute_id), populate_existing=True)
        if dispute is None:
            raise NotFoundError(f"dispute {dispute_id} not found", code="DISPUTE_NOT_FOUND")
        return dispute

    def get_for_actor(self, dispute_id: int, actor: Actor) -> Dispute:
        dispute = self.get(dispute_id)
        if not (actor.is_admin or dispute.involves(actor.user_id)):
            raise PermissionDenied("not a party to this dispute")
        return dispute

    def for_order(self, order_id: int) -> Dispute | None:
        return self.session.query(Dispute).filter_by(order_id=int(order_id)).first()

    def list_for_user(self, user_id: str, *, status: str | None = None, limit: int = 50) -> list[Dispute]:
        q = self.session.query(Dispute).filter(or_(Dispute.reporter_id == user_id, Dispute.reported_id == user_id))
        if status:
            q = q.filter(Dispute.status == _parse(DisputeStatus, status, "INVALID_STATUS"))
        return q.order_by(Dispute.id.desc()).limit(max(1, min(int(limit), 200))).all()

    def list_all(self, *, status: str | None = None, limit: int = 100) -> list[Dispute]:
        q = self.session.query(Dispute)
        if status:
            q = q.filter(Dispute.status == _parse(DisputeStatus, status, "INVALID_STATUS"))
        return q.order_by(Dispute.id.desc()).limit(max(1, min(int(limit), 500))).all()

    def messages(self, dispute_id: int) -> list[DisputeMessage]:
        return (
            self.session.query(DisputeMessage)
            .filter_by(dispute_id=int(dispute_id))
            .order_by(DisputeMessage.id.asc())
            .all()
        )

    def evidence(self, dispute_id: int) -> list[DisputeEvidence]:
        return (
            self.session.query(DisputeEvidence)
            .filter_by(dispute_id=int(dispute_id))
            .order_by(DisputeEvidence.id.asc())
            .all()
        )

    def _system_message(self, dispute: Dispute, content: str) -> DisputeMessage:
        row = DisputeMessage(dispute_id=int(dispute.id), sender_id=None, content=content, is_system=True)
        self.session.add(row)
        return row

    def _add_evidence_row(self, dispute: Dispute, user_id: str, item: dict) -> DisputeEvidence:
        if not isinstance(item, dict):
            raise ValidationError("evidence items must be objects", code="INVALID_EVIDENCE")
        evidence_type = _parse(EvidenceType, item.get("evidence_type") or item.get("type"), "INVALID_EVIDENCE_TYPE")
        content = str(item.get("content") or item.get("url") or "").strip()
        if not content:
            raise ValidationError("evidence content required", code="INVALID_EVIDENCE")
        row = DisputeEvidence(
            dispute_id=int(dispute.id),
            user_id=user_id,
            evidence_type=evidence_type,
            content=content[:MAX_MESSAGE_LEN],
            description=(str(item.get("description") or "").strip()[:400]) or None,
        )
        self.session.add(row)
        self._system_message(dispute, f"New {evidence_type.value} evidence added")
        return row

    def open(
        self,
        order_id: int,
        reporter_id: str,
        dispute_type: str,
        description: str,
        *,
        priority: str = "medium",
        evidence: list[dict] | None = None,
    ) -> tuple[Dispute, bool]:
        """Open the one dispute an order may ever have.

        Returns ``(dispute, created)``; opening again while a dispute is
        active returns the existing one.
        """
        dtype = _parse(DisputeType, dispute_type, "INVALID_DISPUTE_TYPE")
        prio = _parse(DisputePriority, priority or "medium", "INVALID_PRIORITY")
        description = (description or "").strip()
        if not description:
            raise ValidationError("description required", code="DESCRIPTION_REQUIRED")

        order = self.orders.get(order_id, fresh=True)
        if reporter_id not in (order.buyer_id, order.seller_id):
            raise PermissionDenied("only the buyer or seller can open a dispute")
        reported_id = order.seller_id if reporter_id == order.buyer_id else order.buyer_id

        existing = self.for_order(order.id)
        if existing is not None:
            if existing.status.is_active:
                return existing, False
            raise ConflictError("this order's dispute is already resolved", code="DISPUTE_ALREADY_RESOLVED")
        if order.status not in DISPUTABLE:
            raise ConflictError(
                f"orders cannot be disputed while {order.status.value}",
                code="ORDER_NOT_DISPUTABLE",
                status=order.status.value,
            )

        actor = Actor(user_id=reporter_id)
        try:
            with atomic(self.session):
                self.orders.open_dispute_transition(order, actor, dispute_type=dtype.value)
                dispute = Dispute(
                    order_id=int(order.id),
                    reporter_id=reporter_id,
                    reported_id=reported_id,
                    dispute_type=dtype,
                    description=description[:MAX_MESSAGE_LEN],
                    status=DisputeStatus.OPEN,
                    priority=prio,
                )
                self.session.add(dispute)
                self.session.flush()
                self._system_message(dispute, f"Dispute opened: {dtype.label}")
                for item in evidence or []:
                    self._add_evidence_row(dispute, reporter_id, item)
                emit_event(
                    self.session,
                    "dispute.opened",
                    subject_type="dispute",
                    subject_id=dispute.id,
                    actor_id=reporter_id,
                    recipients=[reporter_id, reported_id],
                    idempotency_key=f"dispute:{int(dispute.id)}:opened",
                    metadata={"order_id": int(order.id), "dispute_type": dtype.value},
                )
        except (ConflictError, IntegrityError) as exc:
            if isinstance(exc, ConflictError) and exc.code not in ("CONCURRENT_TRANSITION", "INVALID_TRANSITION"):
                raise
            # lost a race: a concurrent open wins, anything else is a conflict
            current = self.for_order(order_id)
            if current is not None and current.status.is_active:
                return current, False
            if isinstance(exc, ConflictError):
                raise
            raise ConflictError("order changed concurrently", code="CONCURRENT_TRANSITION") from exc
        logger.info("dispute_opened dispute_id=%s order_id=%s type=%s", dispute.id, order.id, dtype.value)
        return dispute, True

    def _require_active_participant(self, dispute: Dispute, actor: Actor) -> None:
        if not (actor.is_admin or dispute.involves(actor.user_id)):
            raise PermissionDenied("not a party to this dispute")
        if not dispute.status.is_active:
            raise ConflictError(f"dispute is {dispute.status.value}", code="DISPUTE_NOT_ACTIVE")

    def add_message(self, dispute_id: int, actor: Actor, content: str) -> DisputeMessage:
        dispute = self.get(dispute_id)
        self._require_active_participant(dispute, actor)
        content = (content or "").strip()
        if not content:
            raise ValidationError("message content required", code="CONTENT_REQUIRED")
        with atomic(self.session):
            row = DisputeMessage(
                dispute_id=int(dispute.id),
                sender_id=actor.user_id,
                content=content[:MAX_MESSAGE_LEN],
                is_admin=actor.is_admin,
            )
            self.session.add(row)
            self.session.flush()
            emit_event(
                self.session,
                "dispute.message_added",
                subject_type="dispute",
                subject_id=dispute.id,
                actor_id=actor.user_id,
                recipients=[u for u in (dispute.reporter_id, dispute.reported_id) if u != actor.user_id],
                metadata={"message_id": int(row.id)},
            )
        return row

    def add_evidence(self, dispute_id: int, actor: Actor, item: dict) -> DisputeEvidence:
        dispute = self.get(dispute_id)
        self._require_active_participant(dispute, actor)
        with atomic(self.session):
            row = self._add_evidence_row(dispute, actor.user_id or "admin", item)
            self.session.flush()
        return row

    def _switch_status(self, dispute: Dispute, *, expected: tuple[DisputeStatus, ...], target: DisputeStatus, **values) -> None:
        result = self.session.execute(
            update(Dispute)
            .where(Dispute.id == int(dispute.id), Dispute.status.in_(expected))
            .values(status=target, updated_at=datetime.utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError("dispute changed concurrently", code="CONCURRENT_TRANSITION")
        self.session.refresh(dispute)

    def mark_investigating(self, dispute_id: int, actor: Actor) -> Dispute:
        if not actor.is_admin:
            raise PermissionDenied("admin only")
        dispute = self.get(dispute_id)
        if dispute.status == DisputeStatus.INVESTIGATING:
            return dispute
        if dispute.status != DisputeStatus.OPEN:
            raise ConflictError(f"dispute is {dispute.status.value}", code="DISPUTE_NOT_ACTIVE")
        with atomic(self.session):
            self._switch_status(dispute, expected=(DisputeStatus.OPEN,), target=DisputeStatus.INVESTIGATING)
            self._system_message(dispute, "Dispute is under investigation")
        return dispute

    def resolve(
        self,
        dispute_id: int,
        decision: str,
        resolution_text: str,
        resolver: Actor,
        *,
        seller_award_minor: int | None = None,
    ) -> Dispute:
        if not resolver.is_admin:
            raise PermissionDenied("only an admin can resolve disputes")
        verdict = _parse(DisputeDecision, decision, "INVALID_DECISION")
        resolution_text = (resolution_text or "").strip()
        if not resolution_text:
            raise ValidationError("resolution text required", code="RESOLUTION_REQUIRED")
        if verdict != DisputeDecision.SPLIT:
            seller_award_minor = None

        dispute = self.get(dispute_id)
        if not dispute.status.is_active:
            if dispute.decision == verdict and dispute.seller_award_minor == seller_award_minor:
                return dispute
            raise ConflictError("dispute already resolved", code="DISPUTE_ALREADY_RESOLVED")

        order = self.orders.get(dispute.order_id, fresh=True)
        with atomic(self.session):
            self._switch_status(
                dispute,
                expected=(DisputeStatus.OPEN, DisputeStatus.INVESTIGATING),
                target=DisputeStatus.RESOLVED,
                decision=verdict,
                seller_award_minor=seller_award_minor,
                resolution=resolution_text[:MAX_MESSAGE_LEN],
                resolved_by=resolver.user_id,
                resolved_at=datetime.utcnow(),
            )
            outcome: EscrowOutcome = self.orders.settle_dispute(
                order, verdict, resolver, seller_award_minor=seller_award_minor
            )
            self._system_message(dispute, f"Dispute resolved: {verdict.value.replace('_', ' ')}")
            emit_event(
                self.session,
                "dispute.resolved",
                subject_type="dispute",
                subject_id=dispute.id,
                actor_id=resolver.user_id,
                recipients=[dispute.reporter_id, dispute.reported_id],
                idempotency_key=f"dispute:{int(dispute.id)}:resolved",
                metadata={
                    "order_id": int(order.id),
                    "decision": verdict.value,
                    "seller_award_minor": seller_award_minor,
                },
            )
        logger.info("dispute_resolved dispute_id=%s order_id=%s decision=%s", dispute.id, order.id, verdict.value)
        self.orders.submit_refund(outcome)
        return self.get(dispute_id)

    def close(self, dispute_id: int, actor: Actor) -> Dispute:
        if not actor.is_admin:
            raise PermissionDenied("admin only")
        dispute = self.get(dispute_id)
        if dispute.status == DisputeStatus.CLOSED:
            return dispute
        if dispute.status != DisputeStatus.RESOLVED:
            raise ConflictError("only resolved disputes can be closed", code="DISPUTE_NOT_RESOLVED")
        with atomic(self.session):
            self._switch_status(
                dispute,
                expected=(DisputeStatus.RESOLVED,),
                target=DisputeStatus.CLOSED,
                closed_at=datetime.utcnow(),
            )
            self._system_message(dispute, "Dispute closed")
        return dispute

