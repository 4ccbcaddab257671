"""
Database Row-Level Locking Utilities
Loads rows with SELECT FOR UPDATE so concurrent settlement calls on the same
OTC transaction serialize on the transaction row
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import Transaction, EscrowRecord, Bid
from utils.otc_errors import NotFoundError

logger = logging.getLogger(__name__)


class DatabaseLockingService:
    """Row locks for the OTC settlement tables"""

    @staticmethod
    def lock_transaction(session: Session, transaction_id: str) -> Transaction:
        """
        Lock a transaction row for the rest of the unit of work

        Raises:
            NotFoundError: If the transaction does not exist
        """
        transaction = session.execute(
            select(Transaction).where(Transaction.id == transaction_id).with_for_update()
        ).scalar_one_or_none()
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        logger.debug(f"🔒 ROW_LOCKED: transactions/{transaction_id}")
        return transaction

    @staticmethod
    def lock_escrow_record(session: Session, transaction_id: str) -> Optional[EscrowRecord]:
        """Lock the escrow record of a transaction, None when no order was recorded yet"""
        return session.execute(
            select(EscrowRecord)
            .where(EscrowRecord.transaction_id == transaction_id)
            .with_for_update()
        ).scalar_one_or_none()

    @staticmethod
    def lock_bid(session: Session, bid_id: str) -> Bid:
        bid = session.execute(
            select(Bid).where(Bid.id == bid_id).with_for_update()
        ).scalar_one_or_none()
        if bid is None:
            raise NotFoundError(f"Bid {bid_id} not found")
        return bid
