"""
OTC Payments Feed - Database Schema
===================================

Schema for the peer-to-peer payments feed and its OTC settlement core:
- Payments and requests posted to the feed (with OTC trade metadata)
- Bids from traders against open fiat requests
- One escrow record per OTC trade once USDT is deposited on-chain
- Mirrored activity entries for every settled value movement
- In-app notifications
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Integer, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, func, text
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class TransactionType(Enum):
    """Feed entry types"""
    PAYMENT = "PAYMENT"
    REQUEST = "REQUEST"


class Currency(Enum):
    """Currencies accepted on the feed"""
    USDT = "USDT"
    NGN = "NGN"
    VES = "VES"
    USD = "USD"


class Privacy(Enum):
    """Feed visibility"""
    PUBLIC_X = "Public_X"  # Public and cross-posted to X
    PUBLIC = "Public"
    FRIENDS = "Friends"
    PRIVATE = "Private"


class OTCState(Enum):
    """OTC request lifecycle states"""
    NONE = "NONE"                                          # Not an OTC trade
    OPEN_REQUEST = "OPEN_REQUEST"                          # Posted, nobody engaged yet
    BIDDING = "BIDDING"                                    # At least one bid (fiat requests)
    SELECTED_TRADER = "SELECTED_TRADER"                    # Requester picked a bidder
    USDT_IN_ESCROW = "USDT_IN_ESCROW"                      # Deposit order recorded
    AWAITING_FIAT_PAYMENT = "AWAITING_FIAT_PAYMENT"        # Fiat claimed missing, waiting on payer
    AWAITING_FIAT_CONFIRMATION = "AWAITING_FIAT_CONFIRMATION"  # Payer says fiat was sent
    COMPLETED = "COMPLETED"                                # Escrow released to fiat payer
    FAILED = "FAILED"                                      # Escrow refunded to depositor


class EscrowRecordStatus(Enum):
    """On-chain escrow order status"""
    OPEN = "OPEN"
    EXECUTED = "EXECUTED"


class SignatureChoice(Enum):
    """Choice recorded by a 2-of-2 escrow signer"""
    NONE = 0
    REFUND = 1
    RELEASE = 2


class NotificationType(Enum):
    """In-app notification kinds"""
    REQUEST_CREATED = "REQUEST_CREATED"
    REQUEST_STATE_CHANGED = "REQUEST_STATE_CHANGED"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"


def _amount_str(value: Optional[Decimal]) -> Optional[str]:
    """Decimal to plain string without exponent or trailing zeros"""
    if value is None:
        return None
    return format(Decimal(value).normalize(), "f")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# TABLES
# ============================================================================

class User(Base):
    """Feed user as known from the identity provider"""
    __tablename__ = 'users'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    handle: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    wallet_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "handle": self.handle,
            "name": self.name,
            "walletAddress": self.wallet_address,
            "isVerified": self.is_verified,
        }


class Transaction(Base):
    """Payment or request posted to the feed, with OTC trade metadata"""
    __tablename__ = 'transactions'

    id: Mapped[str] = mapped_column(String(32), primary_key=True)

    # Parties
    from_user_id: Mapped[str] = mapped_column(String(64), ForeignKey('users.id'), nullable=False, index=True)
    to_user_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey('users.id'), nullable=True, index=True)

    # Primary leg
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)

    # Social fields
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sticker: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    privacy: Mapped[str] = mapped_column(String(16), default=Privacy.PUBLIC.value, nullable=False)
    likes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    comments: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    x_post_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # OTC trade
    is_otc: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    otc_state: Mapped[str] = mapped_column(String(32), default=OTCState.NONE.value, nullable=False, index=True)
    otc_fiat_currency: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)  # Counter-leg currency
    otc_offer_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(28, 8), nullable=True)  # Counter-leg amount
    selected_trader_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey('users.id'), nullable=True, index=True)
    multisig_contract_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    usdt_in_escrow: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    fiat_rejection_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    otc_proof_image: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    # Mirrored activity entries point at the request they settle
    related_transaction_id: Mapped[Optional[str]] = mapped_column(String(32), ForeignKey('transactions.id'), nullable=True, index=True)

    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    # Relationships
    bids: Mapped[list["Bid"]] = relationship("Bid", back_populates="transaction", order_by="Bid.timestamp")
    replies: Mapped[list["TransactionReply"]] = relationship("TransactionReply", back_populates="transaction", order_by="TransactionReply.timestamp")
    escrow_record: Mapped[Optional["EscrowRecord"]] = relationship("EscrowRecord", back_populates="transaction", uselist=False)

    __table_args__ = (
        CheckConstraint("is_otc OR otc_state = 'NONE'", name='ck_transaction_otc_state_requires_otc'),
        CheckConstraint('fiat_rejection_count >= 0', name='ck_transaction_rejections_positive'),
        CheckConstraint('amount > 0', name='ck_transaction_amount_positive'),
        # One mirrored entry per settled leg
        Index(
            'uq_transactions_activity_leg',
            'related_transaction_id', 'type', 'from_user_id', 'to_user_id', 'currency', 'amount',
            unique=True,
            sqlite_where=text('related_transaction_id IS NOT NULL'),
            postgresql_where=text('related_transaction_id IS NOT NULL'),
        ),
        Index('ix_transactions_type_privacy', 'type', 'privacy'),
    )

    def to_dict(self, include_bids: bool = False) -> dict:
        data = {
            "id": self.id,
            "fromUserId": self.from_user_id,
            "toUserId": self.to_user_id,
            "type": self.type,
            "amount": _amount_str(self.amount),
            "currency": self.currency,
            "note": self.note,
            "sticker": self.sticker,
            "privacy": self.privacy,
            "likes": self.likes,
            "comments": self.comments,
            "xPostId": self.x_post_id,
            "isOTC": self.is_otc,
            "otcState": self.otc_state,
            "otcFiatCurrency": self.otc_fiat_currency,
            "otcOfferAmount": _amount_str(self.otc_offer_amount),
            "selectedTraderId": self.selected_trader_id,
            "multisigContractAddress": self.multisig_contract_address,
            "usdtInEscrow": self.usdt_in_escrow,
            "fiatRejectionCount": self.fiat_rejection_count,
            "otcProofImage": self.otc_proof_image,
            "relatedTransactionId": self.related_transaction_id,
            "timestamp": _iso(self.timestamp),
        }
        if include_bids:
            data["bids"] = [bid.to_dict() for bid in self.bids]
        return data


class TransactionReply(Base):
    """Comment thread entry under a feed transaction"""
    __tablename__ = 'transaction_replies'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(String(32), ForeignKey('transactions.id'), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey('users.id'), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    proof_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)

    transaction: Mapped["Transaction"] = relationship("Transaction", back_populates="replies")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transactionId": self.transaction_id,
            "userId": self.user_id,
            "text": self.text,
            "proofUrl": self.proof_url,
            "timestamp": _iso(self.timestamp),
        }


class Bid(Base):
    """Trader bid against an open fiat OTC request"""
    __tablename__ = 'bids'

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    transaction_id: Mapped[str] = mapped_column(String(32), ForeignKey('transactions.id'), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey('users.id'), nullable=False, index=True)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)

    transaction: Mapped["Transaction"] = relationship("Transaction", back_populates="bids")

    __table_args__ = (
        UniqueConstraint('transaction_id', 'user_id', name='uq_bid_per_user'),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transactionId": self.transaction_id,
            "userId": self.user_id,
            "message": self.message,
            "timestamp": _iso(self.timestamp),
        }


class EscrowRecord(Base):
    """2-of-2 escrow order backing an OTC trade"""
    __tablename__ = 'escrow_records'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(String(32), ForeignKey('transactions.id'), nullable=False, unique=True)

    contract_address: Mapped[str] = mapped_column(String(128), nullable=False)
    requester_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    trader_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    usdt_amount: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    onchain_order_id: Mapped[int] = mapped_column(Integer, nullable=False)

    # Initiator is the requester, counterparty is the selected trader
    initiator_choice: Mapped[int] = mapped_column(Integer, default=SignatureChoice.NONE.value, nullable=False)
    counterparty_choice: Mapped[int] = mapped_column(Integer, default=SignatureChoice.NONE.value, nullable=False)
    initiator_signed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    counterparty_signed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    payment_proof_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    status: Mapped[str] = mapped_column(String(16), default=EscrowRecordStatus.OPEN.value, nullable=False)
    is_activated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    activated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    transaction: Mapped["Transaction"] = relationship("Transaction", back_populates="escrow_record")

    __table_args__ = (
        CheckConstraint('initiator_choice IN (0, 1, 2)', name='ck_escrow_initiator_choice'),
        CheckConstraint('counterparty_choice IN (0, 1, 2)', name='ck_escrow_counterparty_choice'),
        CheckConstraint(
            "status <> 'EXECUTED' OR (initiator_signed AND counterparty_signed "
            "AND initiator_choice = counterparty_choice AND initiator_choice <> 0)",
            name='ck_escrow_executed_requires_agreement',
        ),
    )

    @property
    def is_agreed(self) -> bool:
        return (
            self.initiator_signed
            and self.counterparty_signed
            and self.initiator_choice == self.counterparty_choice
            and self.initiator_choice != SignatureChoice.NONE.value
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transactionId": self.transaction_id,
            "contractAddress": self.contract_address,
            "requesterAddress": self.requester_address,
            "traderAddress": self.trader_address,
            "usdtAmount": _amount_str(self.usdt_amount),
            "onchainOrderId": self.onchain_order_id,
            "initiatorChoice": self.initiator_choice,
            "counterpartyChoice": self.counterparty_choice,
            "initiatorSigned": self.initiator_signed,
            "counterpartySigned": self.counterparty_signed,
            "paymentProofUrl": self.payment_proof_url,
            "status": self.status,
            "isActivated": self.is_activated,
            "activatedAt": _iso(self.activated_at),
        }


class Notification(Base):
    """In-app notification delivered to a single user"""
    __tablename__ = 'notifications'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey('users.id'), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(32), ForeignKey('transactions.id'), nullable=True)
    related_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        Index('ix_notifications_user_unread', 'user_id', 'is_read'),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "transactionId": self.transaction_id,
            "relatedUserId": self.related_user_id,
            "isRead": self.is_read,
            "createdAt": _iso(self.created_at),
        }
