"""
Ledger Replication Service
==========================

Mirrors every value movement of a settled OTC trade into the participants'
activity as PAYMENT transactions pointing back at the request.

Exactly-once is enforced by the uq_transactions_activity_leg unique index on
(related_transaction_id, type, from_user_id, to_user_id, currency, amount).
Each leg is inserted inside its own SAVEPOINT; an IntegrityError means the
leg already exists and is skipped, so replication can be re-run at any time.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from database import managed_session
from models import (
    EscrowRecord, EscrowRecordStatus, OTCState, SignatureChoice, Transaction, TransactionType,
)
from services.notification_service import NotificationService
from utils.helpers import generate_transaction_id
from utils.otc_errors import NotFoundError, StateConflictError
from utils.otc_roles import depositor_id, fiat_payer_id, trade_legs

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerLeg:
    """One value movement to mirror"""
    from_user_id: str
    to_user_id: str
    amount: Decimal
    currency: str
    note: str


def settlement_legs(transaction: Transaction, record: EscrowRecord) -> List[LedgerLeg]:
    """Value movements implied by an executed escrow"""
    depositor = depositor_id(transaction)
    payer = fiat_payer_id(transaction)
    usdt_amount = Decimal(record.usdt_amount)
    usdt = Config.USDT_CURRENCY

    if record.initiator_choice == SignatureChoice.RELEASE.value:
        legs = trade_legs(transaction)
        return [
            LedgerLeg(depositor, payer, usdt_amount, usdt, "OTC escrow released"),
            LedgerLeg(payer, depositor, legs.fiat_amount, legs.fiat_currency, "OTC fiat payment"),
        ]
    # Refund: the deposit returns from the escrow contract to the depositor
    return [LedgerLeg(
        depositor, depositor, usdt_amount, usdt,
        f"OTC escrow refunded from contract {record.contract_address}",
    )]


class LedgerReplicationService:
    def __init__(self, session_factory: Optional[sessionmaker] = None,
                 notifications: Optional[NotificationService] = None):
        self.session_factory = session_factory
        self.notifications = notifications or NotificationService(session_factory)

    @staticmethod
    def _insert_leg(session: Session, request: Transaction, leg: LedgerLeg) -> Optional[Transaction]:
        entry = Transaction(
            id=generate_transaction_id(),
            from_user_id=leg.from_user_id,
            to_user_id=leg.to_user_id,
            type=TransactionType.PAYMENT.value,
            amount=leg.amount,
            currency=leg.currency,
            note=leg.note,
            privacy=request.privacy,
            is_otc=False,
            otc_state=OTCState.NONE.value,
            related_transaction_id=request.id,
            likes=0,
            comments=0,
            usdt_in_escrow=False,
            fiat_rejection_count=0,
        )
        try:
            with session.begin_nested():
                session.add(entry)
        except IntegrityError:
            logger.info(
                f"♻️ LEDGER_DUPLICATE_SKIPPED: {request.id} {leg.from_user_id}->{leg.to_user_id} "
                f"{leg.amount} {leg.currency}"
            )
            return None
        logger.info(
            f"📒 LEDGER_LEG_CREATED: {entry.id} for {request.id} {leg.from_user_id}->{leg.to_user_id} "
            f"{leg.amount} {leg.currency}"
        )
        return entry

    def replicate_settlement(self, transaction_id: str) -> List[Transaction]:
        """
        Create the missing activity entries for a settled request.

        Returns only the entries created by this call; an already mirrored
        settlement returns an empty list.
        """
        with managed_session(self.session_factory) as session:
            request = session.get(Transaction, transaction_id)
            if request is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            record = session.execute(
                select(EscrowRecord).where(EscrowRecord.transaction_id == transaction_id)
            ).scalar_one_or_none()
            if record is None or record.status != EscrowRecordStatus.EXECUTED.value:
                raise StateConflictError(
                    f"Transaction {transaction_id} has no executed escrow to replicate"
                )

            created = []
            for leg in settlement_legs(request, record):
                entry = self._insert_leg(session, request, leg)
                if entry is not None:
                    created.append(entry)

        logger.info(f"📒 LEDGER_REPLICATED: {transaction_id} created={len(created)}")
        for entry in created:
            self.notifications.notify_payment_received(entry)
        return created

    def list_activity_entries(self, transaction_id: str) -> List[Transaction]:
        with managed_session(self.session_factory) as session:
            return list(session.execute(
                select(Transaction)
                .where(Transaction.related_transaction_id == transaction_id)
                .order_by(Transaction.timestamp, Transaction.id)
            ).scalars().all())
