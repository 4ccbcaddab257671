"""
Notification Service for the OTC payments feed
Directed in-app notifications on request creation, OTC state changes and
USDT payments, plus the inbox queries behind the notifications page.

Delivery is fire-and-forget: every notify_* method catches and logs its own
failures so a broken sink can never undo a settlement step.
"""

import logging
from typing import Collection, Dict, List, Optional, Protocol

from sqlalchemy import select, update, func
from sqlalchemy.orm import sessionmaker

from config import Config
from database import managed_session
from models import Notification, NotificationType, OTCState, Transaction, TransactionType, User
from utils.helpers import format_amount
from utils.otc_errors import AuthorizationError, NotFoundError
from utils.otc_roles import counterparty_id, fiat_payer_id, trade_legs

logger = logging.getLogger(__name__)


STATE_DESCRIPTIONS: Dict[OTCState, str] = {
    OTCState.OPEN_REQUEST: "The request is open for traders",
    OTCState.BIDDING: "A trader placed a bid on the request",
    OTCState.SELECTED_TRADER: "A trader was selected and the USDT deposit is next",
    OTCState.USDT_IN_ESCROW: "USDT is locked in escrow, the fiat payment is next",
    OTCState.AWAITING_FIAT_PAYMENT: "The fiat payment was reported as not received",
    OTCState.AWAITING_FIAT_CONFIRMATION: "The fiat payment was marked as sent and awaits confirmation",
    OTCState.COMPLETED: "Trade completed, USDT released from escrow",
    OTCState.FAILED: "Trade closed, USDT refunded from escrow",
}


class NotificationSink(Protocol):
    """Anything that can deliver a notification to one user"""

    def deliver(
        self,
        user_id: str,
        notification_type: NotificationType,
        title: str,
        message: str,
        transaction_id: Optional[str] = None,
        related_user_id: Optional[str] = None,
    ) -> None:
        ...


class DatabaseNotificationSink:
    """Stores notifications in the in-app inbox"""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory

    def deliver(
        self,
        user_id: str,
        notification_type: NotificationType,
        title: str,
        message: str,
        transaction_id: Optional[str] = None,
        related_user_id: Optional[str] = None,
    ) -> None:
        with managed_session(self.session_factory) as session:
            session.add(Notification(
                user_id=user_id,
                type=notification_type.value,
                title=title,
                message=message,
                transaction_id=transaction_id,
                related_user_id=related_user_id,
            ))


class NotificationService:
    """Builds notification text and hands it to the configured sink"""

    def __init__(self, session_factory: Optional[sessionmaker] = None,
                 sink: Optional[NotificationSink] = None):
        self.session_factory = session_factory
        self.sink = sink or DatabaseNotificationSink(session_factory)

    def _handle(self, user_id: Optional[str]) -> str:
        """@handle for message text, falls back to the raw id"""
        if not user_id:
            return "someone"
        with managed_session(self.session_factory) as session:
            handle = session.execute(
                select(User.handle).where(User.id == user_id)
            ).scalar_one_or_none()
        return f"@{handle}" if handle else user_id

    def _send(self, user_id: str, notification_type: NotificationType, title: str,
              message: str, transaction_id: Optional[str], related_user_id: Optional[str]) -> bool:
        if not Config.NOTIFICATIONS_ENABLED:
            logger.debug(f"🔕 NOTIFICATIONS_DISABLED: skipped {notification_type.value} for {user_id}")
            return False
        self.sink.deliver(
            user_id,
            notification_type,
            title,
            message,
            transaction_id=transaction_id,
            related_user_id=related_user_id,
        )
        logger.info(f"🔔 NOTIFICATION_SENT: {notification_type.value} -> {user_id} ({transaction_id})")
        return True

    def notify_request_created(self, transaction: Transaction) -> bool:
        """Tell the addressee of a request that it was posted"""
        try:
            if transaction.type != TransactionType.REQUEST.value or not transaction.to_user_id:
                return False
            requester = self._handle(transaction.from_user_id)
            amount = format_amount(transaction.amount, transaction.currency)
            if transaction.is_otc:
                offer = format_amount(transaction.otc_offer_amount, transaction.otc_fiat_currency)
                message = f"{requester} requested {amount} from you for {offer}"
            else:
                message = f"{requester} requested {amount} from you"
            return self._send(
                transaction.to_user_id,
                NotificationType.REQUEST_CREATED,
                "New payment request",
                message,
                transaction.id,
                transaction.from_user_id,
            )
        except Exception as e:
            logger.error(f"❌ NOTIFY_REQUEST_CREATED_FAILED: {transaction.id}: {e}")
            return False

    def notify_request_state_changed(self, transaction: Transaction, old_state: OTCState,
                                     new_state: OTCState, actor_id: Optional[str] = None,
                                     exclude: Collection[str] = ()) -> int:
        """
        Tell both sides of an OTC request about a state change, returns how many were sent.

        Users in exclude get a dedicated message for this step instead.
        """
        if old_state == new_state:
            return 0
        sent = 0
        recipients = []
        for user_id in (transaction.from_user_id, counterparty_id(transaction)):
            if user_id and user_id not in recipients and user_id not in exclude:
                recipients.append(user_id)

        description = STATE_DESCRIPTIONS.get(new_state, new_state.value)
        amount = format_amount(transaction.amount, transaction.currency)
        for user_id in recipients:
            try:
                other = (
                    counterparty_id(transaction)
                    if user_id == transaction.from_user_id
                    else transaction.from_user_id
                )
                if self._send(
                    user_id,
                    NotificationType.REQUEST_STATE_CHANGED,
                    f"Request update: {new_state.value.replace('_', ' ').title()}",
                    f"{description} ({amount} request)",
                    transaction.id,
                    other or actor_id,
                ):
                    sent += 1
            except Exception as e:
                logger.error(
                    f"❌ NOTIFY_STATE_CHANGED_FAILED: {transaction.id} "
                    f"{old_state.value}->{new_state.value} for {user_id}: {e}"
                )
        return sent

    def notify_payment_received(self, transaction: Transaction) -> bool:
        """USDT payments only; fiat moves off-platform"""
        try:
            if transaction.type != TransactionType.PAYMENT.value:
                return False
            if transaction.currency != Config.USDT_CURRENCY or not transaction.to_user_id:
                return False
            if transaction.to_user_id == transaction.from_user_id:
                return False
            sender = self._handle(transaction.from_user_id)
            return self._send(
                transaction.to_user_id,
                NotificationType.PAYMENT_RECEIVED,
                "Payment received",
                f"{sender} sent you {format_amount(transaction.amount, transaction.currency)}",
                transaction.related_transaction_id or transaction.id,
                transaction.from_user_id,
            )
        except Exception as e:
            logger.error(f"❌ NOTIFY_PAYMENT_RECEIVED_FAILED: {transaction.id}: {e}")
            return False

    def notify_usdt_in_escrow(self, transaction: Transaction) -> bool:
        """Prompt the fiat payer once the USDT deposit is recorded"""
        try:
            payer = fiat_payer_id(transaction)
            if not payer:
                return False
            legs = trade_legs(transaction)
            return self._send(
                payer,
                NotificationType.REQUEST_STATE_CHANGED,
                "USDT in escrow",
                f"{format_amount(legs.usdt_amount, Config.USDT_CURRENCY)} is locked in escrow. "
                f"Send {format_amount(legs.fiat_amount, legs.fiat_currency)} and mark it as sent.",
                transaction.id,
                transaction.from_user_id if payer != transaction.from_user_id else transaction.selected_trader_id,
            )
        except Exception as e:
            logger.error(f"❌ NOTIFY_USDT_IN_ESCROW_FAILED: {transaction.id}: {e}")
            return False

    def notify_refund_requested(self, transaction: Transaction, requested_by: str) -> bool:
        """Ask the fiat payer to counter-sign a refund"""
        try:
            payer = fiat_payer_id(transaction)
            if not payer or payer == requested_by:
                return False
            requester = self._handle(requested_by)
            return self._send(
                payer,
                NotificationType.REQUEST_STATE_CHANGED,
                "Refund requested",
                f"{requester} did not receive the fiat payment and requested a refund "
                f"of the escrowed USDT. Please counter-sign the refund or resubmit your payment proof.",
                transaction.id,
                requested_by,
            )
        except Exception as e:
            logger.error(f"❌ NOTIFY_REFUND_REQUESTED_FAILED: {transaction.id}: {e}")
            return False

    # ------------------------------------------------------------------
    # Inbox
    # ------------------------------------------------------------------

    def list_notifications(self, user_id: str, include_read: bool = False, limit: int = 50) -> List[Notification]:
        with managed_session(self.session_factory) as session:
            query = select(Notification).where(Notification.user_id == user_id)
            if not include_read:
                query = query.where(Notification.is_read.is_(False))
            query = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)
            return list(session.execute(query).scalars().all())

    def unread_count(self, user_id: str) -> int:
        with managed_session(self.session_factory) as session:
            return session.execute(
                select(func.count(Notification.id)).where(
                    Notification.user_id == user_id, Notification.is_read.is_(False)
                )
            ).scalar_one()

    def mark_as_read(self, notification_id: int, user_id: str) -> Notification:
        with managed_session(self.session_factory) as session:
            notification = session.get(Notification, notification_id)
            if notification is None:
                raise NotFoundError(f"Notification {notification_id} not found")
            if notification.user_id != user_id:
                raise AuthorizationError("You can only mark your own notifications as read")
            notification.is_read = True
            return notification

    def mark_all_as_read(self, user_id: str) -> int:
        with managed_session(self.session_factory) as session:
            result = session.execute(
                update(Notification)
                .where(Notification.user_id == user_id, Notification.is_read.is_(False))
                .values(is_read=True)
            )
            logger.info(f"📭 NOTIFICATIONS_READ: {result.rowcount} for {user_id}")
            return result.rowcount

    def delete_notification(self, notification_id: int, user_id: str) -> None:
        with managed_session(self.session_factory) as session:
            notification = session.get(Notification, notification_id)
            if notification is None:
                raise NotFoundError(f"Notification {notification_id} not found")
            if notification.user_id != user_id:
                raise AuthorizationError("You can only delete your own notifications")
            session.delete(notification)
