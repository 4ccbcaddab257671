"""
Bid Service
Traders bid on open fiat OTC requests; the requester later picks one of them.
"""

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from database import managed_session
from models import Bid, OTCState, Transaction
from services.notification_service import NotificationService
from utils.caller_context import CallerContext
from utils.database_locking import DatabaseLockingService
from utils.helpers import generate_bid_id
from utils.otc_actions import Action, ActionContext, authorize, require_state
from utils.otc_errors import AuthorizationError, DuplicateActionError, NotFoundError, ValidationError
from utils.otc_state_validator import OTCStateValidator

logger = logging.getLogger(__name__)

MAX_BID_MESSAGE_LENGTH = 500


class BidService:
    def __init__(self, session_factory: Optional[sessionmaker] = None,
                 notifications: Optional[NotificationService] = None):
        self.session_factory = session_factory
        self.notifications = notifications or NotificationService(session_factory)

    def create_bid(self, transaction_id: str, caller: CallerContext,
                   message: Optional[str] = None) -> Bid:
        """
        Place the caller's bid on a fiat OTC request.

        The first bid moves OPEN_REQUEST to BIDDING. A second bid by the same
        user raises DuplicateActionError carrying the existing bid.
        """
        if message and len(message) > MAX_BID_MESSAGE_LENGTH:
            raise ValidationError(f"Bid message must be at most {MAX_BID_MESSAGE_LENGTH} characters")

        try:
            with managed_session(self.session_factory) as session:
                transaction = DatabaseLockingService.lock_transaction(session, transaction_id)
                bidder_ids = set(session.execute(
                    select(Bid.user_id).where(Bid.transaction_id == transaction_id)
                ).scalars().all())
                ctx = ActionContext(transaction, None, caller.user_id, bidder_ids)

                authorize(Action.PLACE_BID, ctx)
                if caller.user_id in bidder_ids:
                    existing = session.execute(
                        select(Bid).where(
                            Bid.transaction_id == transaction_id, Bid.user_id == caller.user_id
                        )
                    ).scalar_one()
                    raise DuplicateActionError("You already placed a bid on this request", existing=existing)
                require_state(Action.PLACE_BID, ctx)

                old_state = OTCState(transaction.otc_state)
                bid = Bid(
                    id=generate_bid_id(),
                    transaction_id=transaction_id,
                    user_id=caller.user_id,
                    message=message,
                )
                session.add(bid)
                if old_state == OTCState.OPEN_REQUEST:
                    OTCStateValidator.validate_and_transition(transaction, OTCState.BIDDING)
                session.flush()
                new_state = OTCState(transaction.otc_state)
        except IntegrityError:
            # Lost a race against our own concurrent request
            raise DuplicateActionError(
                "You already placed a bid on this request",
                existing=self._find_bid(transaction_id, caller.user_id),
            )

        logger.info(f"🙋 BID_PLACED: {bid.id} on {transaction_id} by {caller.user_id}")
        self.notifications.notify_request_state_changed(transaction, old_state, new_state, caller.user_id)
        return bid

    def _find_bid(self, transaction_id: str, user_id: str) -> Optional[Bid]:
        with managed_session(self.session_factory) as session:
            return session.execute(
                select(Bid).where(Bid.transaction_id == transaction_id, Bid.user_id == user_id)
            ).scalar_one_or_none()

    def list_bids(self, transaction_id: str) -> List[Bid]:
        with managed_session(self.session_factory) as session:
            if session.get(Transaction, transaction_id) is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            return list(session.execute(
                select(Bid)
                .where(Bid.transaction_id == transaction_id)
                .order_by(Bid.timestamp, Bid.id)
            ).scalars().all())

    def delete_bid(self, bid_id: str, caller: CallerContext) -> None:
        """Withdraw the caller's own bid while the request is still open"""
        with managed_session(self.session_factory) as session:
            bid = DatabaseLockingService.lock_bid(session, bid_id)
            if bid.user_id != caller.user_id:
                raise AuthorizationError("Only the bidder can withdraw a bid")
            transaction = DatabaseLockingService.lock_transaction(session, bid.transaction_id)
            ctx = ActionContext(transaction, None, caller.user_id, {bid.user_id})
            authorize(Action.WITHDRAW_BID, ctx)
            require_state(Action.WITHDRAW_BID, ctx)
            session.delete(bid)
        logger.info(f"🗑️ BID_WITHDRAWN: {bid_id} on {bid.transaction_id} by {caller.user_id}")
