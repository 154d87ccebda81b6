from __future__ import annotations

from dataclasses import dataclass

from flask import current_app

from tradesafe.extensions import db
from tradesafe.integrations.common import IntegrationDisabledError
from tradesafe.services.dispute_service import DisputeProtocol
from tradesafe.services.escrow_service import EscrowController
from tradesafe.services.ledger_service import Ledger
from tradesafe.services.order_service import OrderStateMachine
from tradesafe.services.promotion_service import PromotionService
from tradesafe.services.wallet_service import WalletService
from tradesafe.utils.settings import PlatformSettings, load_settings


@dataclass
class Core:
    session: object
    payments: object
    settings: PlatformSettings
    ledger: Ledger
    wallets: WalletService
    escrow: EscrowController
    orders: OrderStateMachine
    disputes: DisputeProtocol
    promotions: PromotionService


def build_core(session, *, payments, settings: PlatformSettings | None = None) -> Core:
    """Wire the order/escrow/dispute components around one session."""
    settings = settings or load_settings()
    ledger = Ledger(session)
    wallets = WalletService(session, ledger, payments, settings)
    escrow = EscrowController(session, ledger, wallets)
    orders = OrderStateMachine(session, escrow, wallets, payments, settings)
    return Core(
        session=session,
        payments=payments,
        settings=settings,
        ledger=ledger,
        wallets=wallets,
        escrow=escrow,
        orders=orders,
        disputes=DisputeProtocol(session, orders),
        promotions=PromotionService(session, wallets, payments),
    )


def core_for_app(app=None) -> Core:
    """Core bound to ``db.session`` and the providers configured on the Flask app."""
    ext = (app or current_app).extensions["tradesafe"]
    payments = ext.get("payments")
    if payments is None:
        raise ext.get("payments_error") or IntegrationDisabledError("INTEGRATION_DISABLED:payments")
    return build_core(db.session, payments=payments, settings=ext["settings"])
