"""Wiring of the feed services around one session factory"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import sessionmaker

from services.bid_service import BidService
from services.escrow_record_service import EscrowRecordService
from services.ledger_replication_service import LedgerReplicationService
from services.notification_service import NotificationService, NotificationSink
from services.settlement_engine import SettlementEngine
from services.transaction_service import TransactionService
from services.user_service import UserService

logger = logging.getLogger(__name__)


@dataclass
class ServiceRegistry:
    users: UserService
    notifications: NotificationService
    transactions: TransactionService
    bids: BidService
    escrow_records: EscrowRecordService
    ledger: LedgerReplicationService
    settlement: SettlementEngine


def build_services(session_factory: Optional[sessionmaker] = None,
                   sink: Optional[NotificationSink] = None) -> ServiceRegistry:
    """All services share one notification service so a custom sink reaches every caller"""
    notifications = NotificationService(session_factory, sink)
    escrow_records = EscrowRecordService(session_factory)
    ledger = LedgerReplicationService(session_factory, notifications)
    registry = ServiceRegistry(
        users=UserService(session_factory),
        notifications=notifications,
        transactions=TransactionService(session_factory, notifications),
        bids=BidService(session_factory, notifications),
        escrow_records=escrow_records,
        ledger=ledger,
        settlement=SettlementEngine(session_factory, notifications, ledger, escrow_records),
    )
    logger.debug("🔧 SERVICES_WIRED")
    return registry
