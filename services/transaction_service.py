"""
Transaction Service
Posting payments and requests to the feed, the social fields around them and
the feed/activity queries.

OTC lifecycle fields are owned by the settlement engine and can never be
written through this service.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, or_, and_, exists
from sqlalchemy.orm import sessionmaker, aliased

from config import Config
from database import managed_session
from models import (
    Currency, OTCState, Privacy, Transaction, TransactionReply, TransactionType, User,
)
from services.notification_service import NotificationService
from utils.caller_context import CallerContext
from utils.helpers import generate_transaction_id, parse_amount, parse_optional_amount, truncate_text
from utils.otc_errors import AuthorizationError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


# Client field name -> column, for fields the owner may edit after posting
EDITABLE_FIELDS = {
    "note": "note",
    "sticker": "sticker",
    "privacy": "privacy",
    "xPostId": "x_post_id",
    "x_post_id": "x_post_id",
}

# Written only by the settlement engine or ledger replication
PROTECTED_FIELDS = {
    "otcState", "otc_state", "selectedTraderId", "selected_trader_id",
    "usdtInEscrow", "usdt_in_escrow", "fiatRejectionCount", "fiat_rejection_count",
    "multisigContractAddress", "multisig_contract_address", "relatedTransactionId",
    "related_transaction_id", "isOTC", "is_otc", "amount", "currency", "type",
    "fromUserId", "from_user_id", "toUserId", "to_user_id", "otcOfferAmount",
    "otc_offer_amount", "otcFiatCurrency", "otc_fiat_currency", "likes", "comments",
    "otcProofImage", "otc_proof_image",
}

MAX_NOTE_LENGTH = 280
MAX_REPLY_LENGTH = 1000


@dataclass
class CreateTransactionRequest:
    """Validated input for posting a payment or request"""
    type: TransactionType
    amount: Decimal
    currency: str
    to_user_id: Optional[str] = None
    note: Optional[str] = None
    sticker: Optional[str] = None
    privacy: str = Privacy.PUBLIC.value
    is_otc: bool = False
    otc_fiat_currency: Optional[str] = None
    otc_offer_amount: Optional[Decimal] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "CreateTransactionRequest":
        """Parse a camelCase client payload"""
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")
        try:
            tx_type = TransactionType(str(payload.get("type", "")).upper())
        except ValueError:
            raise ValidationError("type must be PAYMENT or REQUEST")

        otc_fiat_currency = payload.get("otcFiatCurrency")
        return cls(
            type=tx_type,
            amount=parse_amount(payload.get("amount")),
            currency=str(payload.get("currency", "")).upper(),
            to_user_id=payload.get("toUserId") or None,
            note=payload.get("note"),
            sticker=payload.get("sticker"),
            privacy=payload.get("privacy") or Privacy.PUBLIC.value,
            is_otc=bool(payload.get("isOTC", False)),
            otc_fiat_currency=str(otc_fiat_currency).upper() if otc_fiat_currency else None,
            otc_offer_amount=parse_optional_amount(payload.get("otcOfferAmount"), "otcOfferAmount"),
        )

    def validate(self, from_user_id: str) -> None:
        supported = {c.value for c in Currency}
        if self.currency not in supported:
            raise ValidationError(f"Unsupported currency {self.currency!r}")
        if self.privacy not in {p.value for p in Privacy}:
            raise ValidationError(f"Unsupported privacy {self.privacy!r}")
        if self.note and len(self.note) > MAX_NOTE_LENGTH:
            raise ValidationError(f"note must be at most {MAX_NOTE_LENGTH} characters")
        if self.to_user_id and self.to_user_id == from_user_id:
            raise ValidationError("You cannot pay or request from yourself")
        if self.type == TransactionType.PAYMENT and not self.to_user_id:
            raise ValidationError("A payment needs a recipient")

        if not self.is_otc:
            if self.otc_fiat_currency or self.otc_offer_amount is not None:
                raise ValidationError("otcFiatCurrency and otcOfferAmount are only valid on OTC requests")
            return

        if self.type != TransactionType.REQUEST:
            raise ValidationError("Only requests can be OTC trades")
        if not self.otc_fiat_currency or self.otc_offer_amount is None:
            raise ValidationError("OTC requests need otcFiatCurrency and otcOfferAmount")
        usdt = Config.USDT_CURRENCY
        if (self.currency == usdt) == (self.otc_fiat_currency == usdt):
            raise ValidationError("An OTC request trades USDT against exactly one fiat currency")
        fiat = self.otc_fiat_currency if self.currency == usdt else self.currency
        if fiat not in Config.SUPPORTED_FIAT_CURRENCIES:
            raise ValidationError(f"Fiat currency {fiat} is not supported for OTC trades")
        usdt_amount = self.amount if self.currency == usdt else self.otc_offer_amount
        if usdt_amount < Config.MIN_OTC_AMOUNT:
            raise ValidationError(f"OTC trades need at least {Config.MIN_OTC_AMOUNT} USDT")


class TransactionService:
    def __init__(self, session_factory: Optional[sessionmaker] = None,
                 notifications: Optional[NotificationService] = None):
        self.session_factory = session_factory
        self.notifications = notifications or NotificationService(session_factory)

    def create_transaction(self, caller: CallerContext, request: CreateTransactionRequest) -> Transaction:
        """Post a payment or request on behalf of the caller"""
        request.validate(caller.user_id)

        with managed_session(self.session_factory) as session:
            if session.get(User, caller.user_id) is None:
                raise NotFoundError(f"User {caller.user_id} not found")
            if request.to_user_id and session.get(User, request.to_user_id) is None:
                raise NotFoundError(f"Recipient {request.to_user_id} not found")

            transaction = Transaction(
                id=generate_transaction_id(),
                from_user_id=caller.user_id,
                to_user_id=request.to_user_id,
                type=request.type.value,
                amount=request.amount,
                currency=request.currency,
                note=request.note,
                sticker=request.sticker,
                privacy=request.privacy,
                is_otc=request.is_otc,
                otc_state=(OTCState.OPEN_REQUEST if request.is_otc else OTCState.NONE).value,
                otc_fiat_currency=request.otc_fiat_currency,
                otc_offer_amount=request.otc_offer_amount,
                likes=0,
                comments=0,
                usdt_in_escrow=False,
                fiat_rejection_count=0,
            )
            session.add(transaction)
            session.flush()

        logger.info(
            f"📝 TRANSACTION_CREATED: {transaction.id} {transaction.type} "
            f"{transaction.amount} {transaction.currency} otc={transaction.is_otc} "
            f"by {caller.user_id} [req={caller.request_id}]"
        )

        if transaction.type == TransactionType.REQUEST.value:
            self.notifications.notify_request_created(transaction)
        else:
            self.notifications.notify_payment_received(transaction)
        return transaction

    def get_transaction(self, transaction_id: str) -> Transaction:
        with managed_session(self.session_factory) as session:
            transaction = session.get(Transaction, transaction_id)
            if transaction is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            # Load bids before the session closes
            transaction.bids
            return transaction

    def update_transaction(self, transaction_id: str, caller: CallerContext,
                           fields: Dict[str, Any]) -> Transaction:
        """Edit owner-controlled social fields; a newReply entry adds a reply"""
        if not isinstance(fields, dict) or not fields:
            raise ValidationError("Nothing to update")
        fields = dict(fields)
        new_reply = fields.pop("newReply", None)

        protected = sorted(k for k in fields if k in PROTECTED_FIELDS)
        if protected:
            raise ValidationError(
                f"Fields {protected} cannot be changed directly",
                details={"fields": protected},
            )
        unknown = sorted(k for k in fields if k not in EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown fields {unknown}", details={"fields": unknown})
        if "privacy" in fields and fields["privacy"] not in {p.value for p in Privacy}:
            raise ValidationError(f"Unsupported privacy {fields['privacy']!r}")
        if fields.get("note") and len(fields["note"]) > MAX_NOTE_LENGTH:
            raise ValidationError(f"note must be at most {MAX_NOTE_LENGTH} characters")

        if fields:
            with managed_session(self.session_factory) as session:
                transaction = session.get(Transaction, transaction_id)
                if transaction is None:
                    raise NotFoundError(f"Transaction {transaction_id} not found")
                if transaction.from_user_id != caller.user_id:
                    raise AuthorizationError("Only the author can edit this transaction")
                for key, value in fields.items():
                    setattr(transaction, EDITABLE_FIELDS[key], value)
            logger.info(f"✏️ TRANSACTION_UPDATED: {transaction_id} fields={sorted(fields)}")

        if new_reply:
            if isinstance(new_reply, dict):
                self.add_reply(transaction_id, caller, new_reply.get("text", ""), new_reply.get("proof"))
            else:
                self.add_reply(transaction_id, caller, str(new_reply))
        return self.get_transaction(transaction_id)

    def add_reply(self, transaction_id: str, caller: CallerContext, text: str,
                  proof_url: Optional[str] = None) -> TransactionReply:
        text = (text or "").strip()
        if not text:
            raise ValidationError("Reply text is required")
        if len(text) > MAX_REPLY_LENGTH:
            raise ValidationError(f"Reply must be at most {MAX_REPLY_LENGTH} characters")

        with managed_session(self.session_factory) as session:
            if session.get(Transaction, transaction_id) is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            reply = TransactionReply(
                transaction_id=transaction_id,
                user_id=caller.user_id,
                text=text,
                proof_url=proof_url,
            )
            session.add(reply)
            session.execute(
                update(Transaction)
                .where(Transaction.id == transaction_id)
                .values(comments=Transaction.comments + 1)
            )
            session.flush()
        logger.info(f"💬 REPLY_ADDED: {transaction_id} by {caller.user_id}: {truncate_text(text, 40)}")
        return reply

    def list_replies(self, transaction_id: str) -> List[TransactionReply]:
        with managed_session(self.session_factory) as session:
            return list(session.execute(
                select(TransactionReply)
                .where(TransactionReply.transaction_id == transaction_id)
                .order_by(TransactionReply.timestamp, TransactionReply.id)
            ).scalars().all())

    def like_transaction(self, transaction_id: str, caller: CallerContext) -> int:
        with managed_session(self.session_factory) as session:
            result = session.execute(
                update(Transaction)
                .where(Transaction.id == transaction_id)
                .values(likes=Transaction.likes + 1)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            likes = session.execute(
                select(Transaction.likes).where(Transaction.id == transaction_id)
            ).scalar_one()
        logger.debug(f"❤️ TRANSACTION_LIKED: {transaction_id} by {caller.user_id}")
        return likes

    def list_transactions(self, user_id: Optional[str] = None, tx_type: Optional[str] = None,
                          privacy: Optional[str] = None, include_activity: bool = False,
                          limit: int = 100) -> List[Transaction]:
        """Home feed; mirrored activity entries are hidden unless asked for"""
        query = select(Transaction)
        if user_id:
            query = query.where(or_(
                Transaction.from_user_id == user_id,
                Transaction.to_user_id == user_id,
                Transaction.selected_trader_id == user_id,
            ))
        if tx_type:
            query = query.where(Transaction.type == tx_type.upper())
        if privacy:
            query = query.where(Transaction.privacy == privacy)
        if not include_activity:
            query = query.where(Transaction.related_transaction_id.is_(None))
        query = query.order_by(Transaction.timestamp.desc()).limit(limit)

        with managed_session(self.session_factory) as session:
            return list(session.execute(query).scalars().all())

    def get_user_activity(self, user_id: str, limit: int = 100) -> List[Transaction]:
        """
        Profile activity: everything the user took part in, including
        mirrored settlement legs. A settled OTC request is hidden once an
        activity entry involving the user mirrors it.
        """
        activity = aliased(Transaction)
        mirrored = exists().where(and_(
            activity.related_transaction_id == Transaction.id,
            activity.type == TransactionType.PAYMENT.value,
            or_(activity.from_user_id == user_id, activity.to_user_id == user_id),
        ))
        query = (
            select(Transaction)
            .where(or_(
                Transaction.from_user_id == user_id,
                Transaction.to_user_id == user_id,
                Transaction.selected_trader_id == user_id,
            ))
            .where(~and_(Transaction.is_otc.is_(True), mirrored))
            .order_by(Transaction.timestamp.desc())
            .limit(limit)
        )
        with managed_session(self.session_factory) as session:
            return list(session.execute(query).scalars().all())
