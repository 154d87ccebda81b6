from tradesafe.models.order import EscrowStatus, Order, OrderStatus, PaymentMethod
from tradesafe.models.order_transition import OrderTransition
from tradesafe.models.ledger_entry import EntryType, LedgerEntry
from tradesafe.models.wallet import Wallet
from tradesafe.models.external_transfer import ExternalTransfer, TransferKind, TransferStatus
from tradesafe.models.dispute import (
    Dispute,
    DisputeDecision,
    DisputeEvidence,
    DisputeMessage,
    DisputePriority,
    DisputeStatus,
    DisputeType,
    EvidenceType,
)
from tradesafe.models.promotion import Promotion, PromotionStatus
from tradesafe.models.webhook_event import WebhookEvent
from tradesafe.models.platform_event import PlatformEvent
from tradesafe.models.idempotency_key import IdempotencyKey
from tradesafe.models.job_run import JobRun
from tradesafe.models.reconciliation_report import ReconciliationReport

__all__ = [
    "Dispute",
    "DisputeDecision",
    "DisputeEvidence",
    "DisputeMessage",
    "DisputePriority",
    "DisputeStatus",
    "DisputeType",
    "EntryType",
    "EscrowStatus",
    "EvidenceType",
    "ExternalTransfer",
    "IdempotencyKey",
    "JobRun",
    "LedgerEntry",
    "Order",
    "OrderStatus",
    "OrderTransition",
    "PaymentMethod",
    "PlatformEvent",
    "Promotion",
    "PromotionStatus",
    "ReconciliationReport",
    "TransferKind",
    "TransferStatus",
    "Wallet",
    "WebhookEvent",
]
