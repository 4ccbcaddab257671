"""
Escrow Record Service
=====================

Persistence for the single EscrowRecord backing an OTC trade: creating it
once, writing signer choices and flipping it to EXECUTED.

Execution is a compare-and-set: one UPDATE guarded by status = OPEN and the
agreement predicate. Only the caller whose UPDATE matched a row owns the
settlement side effects, so two agreeing signatures racing each other can
never settle twice.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from database import managed_session
from models import EscrowRecord, EscrowRecordStatus, SignatureChoice
from utils.otc_errors import DuplicateActionError, NotFoundError
from utils.otc_roles import SignerSlot

logger = logging.getLogger(__name__)


class EscrowRecordService:
    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory

    @staticmethod
    def create_record(
        session: Session,
        transaction_id: str,
        contract_address: str,
        requester_address: Optional[str],
        trader_address: Optional[str],
        usdt_amount: Decimal,
        onchain_order_id: int,
    ) -> EscrowRecord:
        """
        Insert the escrow record for a transaction.

        Raises:
            DuplicateActionError: If the transaction already has a record
        """
        existing = session.execute(
            select(EscrowRecord).where(EscrowRecord.transaction_id == transaction_id)
        ).scalar_one_or_none()
        if existing is not None:
            raise DuplicateActionError("The escrow order was already recorded", existing=existing)

        record = EscrowRecord(
            transaction_id=transaction_id,
            contract_address=contract_address,
            requester_address=requester_address,
            trader_address=trader_address,
            usdt_amount=usdt_amount,
            onchain_order_id=onchain_order_id,
            initiator_choice=SignatureChoice.NONE.value,
            counterparty_choice=SignatureChoice.NONE.value,
            initiator_signed=False,
            counterparty_signed=False,
            status=EscrowRecordStatus.OPEN.value,
            is_activated=False,
        )
        try:
            with session.begin_nested():
                session.add(record)
        except IntegrityError:
            raise DuplicateActionError("The escrow order was already recorded")
        logger.info(
            f"🔐 ESCROW_RECORD_CREATED: {transaction_id} order={onchain_order_id} "
            f"amount={usdt_amount} contract={contract_address}"
        )
        return record

    @staticmethod
    def apply_signature(
        record: EscrowRecord,
        slot: SignerSlot,
        choice: SignatureChoice,
        proof_url: Optional[str] = None,
    ) -> None:
        """Write one signer's choice onto a locked record"""
        if slot == SignerSlot.INITIATOR:
            record.initiator_choice = choice.value
            record.initiator_signed = True
        else:
            record.counterparty_choice = choice.value
            record.counterparty_signed = True
        if proof_url:
            record.payment_proof_url = proof_url
        logger.info(
            f"✍️ SIGNATURE_RECORDED: {record.transaction_id} {slot.value}={choice.name}"
        )

    @staticmethod
    def execute_if_agreed(session: Session, transaction_id: str) -> Optional[SignatureChoice]:
        """
        Flip an agreed record from OPEN to EXECUTED.

        Returns the agreed choice when this call performed the flip, None when
        the signers disagree or another caller already executed it.
        """
        session.flush()
        result = session.execute(
            update(EscrowRecord)
            .where(and_(
                EscrowRecord.transaction_id == transaction_id,
                EscrowRecord.status == EscrowRecordStatus.OPEN.value,
                EscrowRecord.initiator_signed.is_(True),
                EscrowRecord.counterparty_signed.is_(True),
                EscrowRecord.initiator_choice == EscrowRecord.counterparty_choice,
                EscrowRecord.initiator_choice != SignatureChoice.NONE.value,
            ))
            .values(
                status=EscrowRecordStatus.EXECUTED.value,
                is_activated=True,
                activated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None

        choice = session.execute(
            select(EscrowRecord.initiator_choice).where(EscrowRecord.transaction_id == transaction_id)
        ).scalar_one()
        # Refresh the identity-map copy so callers see the executed row
        record = session.execute(
            select(EscrowRecord).where(EscrowRecord.transaction_id == transaction_id)
            .execution_options(populate_existing=True)
        ).scalar_one()
        agreed = SignatureChoice(choice)
        logger.info(
            f"✅ ESCROW_EXECUTED: {transaction_id} choice={agreed.name} order={record.onchain_order_id}"
        )
        return agreed

    def get_record(self, transaction_id: str) -> EscrowRecord:
        with managed_session(self.session_factory) as session:
            record = session.execute(
                select(EscrowRecord).where(EscrowRecord.transaction_id == transaction_id)
            ).scalar_one_or_none()
        if record is None:
            raise NotFoundError(f"No escrow order recorded for transaction {transaction_id}")
        return record
