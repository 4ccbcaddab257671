"""
OTC role and phase resolution
Works out which side of a trade a user is on and which settlement phase the
trade is in, from the transaction row and its escrow record alone.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import FrozenSet, Optional

from config import Config
from models import Transaction, EscrowRecord, OTCState, SignatureChoice


class OTCVariant(Enum):
    """Which side of the trade deposits USDT"""
    FIAT_REQUEST = "fiat_request"  # Requester asks for fiat and deposits USDT
    USDT_REQUEST = "usdt_request"  # Requester asks for USDT; the trader deposits


class Role(Enum):
    REQUESTER = "requester"
    TRADER = "trader"                          # The selected trader
    NON_OWNER = "non_owner"                    # Anyone except the requester
    PROSPECTIVE_TRADER = "prospective_trader"  # Non-owner while no trader is selected
    DEPOSITOR = "depositor"
    FIAT_PAYER = "fiat_payer"
    FIAT_RECEIVER = "fiat_receiver"


class SignerSlot(Enum):
    INITIATOR = "initiator"        # Requester (transaction.from_user_id)
    COUNTERPARTY = "counterparty"  # Selected trader


class SettlementPhase(Enum):
    NOT_OTC = "NOT_OTC"
    AWAITING_TRADER = "AWAITING_TRADER"
    AWAITING_DEPOSIT = "AWAITING_DEPOSIT"
    AWAITING_FIAT_PAYMENT = "AWAITING_FIAT_PAYMENT"
    AWAITING_FIAT_CONFIRMATION = "AWAITING_FIAT_CONFIRMATION"
    REFUND_PROPOSED = "REFUND_PROPOSED"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"


def variant_of(transaction: Transaction) -> OTCVariant:
    if transaction.currency == Config.USDT_CURRENCY:
        return OTCVariant.USDT_REQUEST
    return OTCVariant.FIAT_REQUEST


def depositor_id(transaction: Transaction) -> Optional[str]:
    if variant_of(transaction) == OTCVariant.FIAT_REQUEST:
        return transaction.from_user_id
    return transaction.selected_trader_id


def fiat_payer_id(transaction: Transaction) -> Optional[str]:
    if variant_of(transaction) == OTCVariant.FIAT_REQUEST:
        return transaction.selected_trader_id
    return transaction.from_user_id


def fiat_receiver_id(transaction: Transaction) -> Optional[str]:
    # Whoever locked the USDT is owed the fiat
    return depositor_id(transaction)


def counterparty_id(transaction: Transaction) -> Optional[str]:
    """The other side of the request as seen by the requester"""
    return transaction.selected_trader_id or transaction.to_user_id


def resolve_roles(transaction: Transaction, user_id: Optional[str]) -> FrozenSet[Role]:
    """All roles user_id holds on this transaction"""
    if not user_id:
        return frozenset()

    roles = set()
    if user_id == transaction.from_user_id:
        roles.add(Role.REQUESTER)
    else:
        roles.add(Role.NON_OWNER)
        if transaction.selected_trader_id is None:
            roles.add(Role.PROSPECTIVE_TRADER)
    if transaction.selected_trader_id and user_id == transaction.selected_trader_id:
        roles.add(Role.TRADER)

    if user_id == depositor_id(transaction):
        roles.add(Role.DEPOSITOR)
        roles.add(Role.FIAT_RECEIVER)
    if user_id == fiat_payer_id(transaction):
        roles.add(Role.FIAT_PAYER)
    return frozenset(roles)


def signer_slot(transaction: Transaction, user_id: str) -> Optional[SignerSlot]:
    if user_id == transaction.from_user_id:
        return SignerSlot.INITIATOR
    if transaction.selected_trader_id and user_id == transaction.selected_trader_id:
        return SignerSlot.COUNTERPARTY
    return None


def slot_for(transaction: Transaction, user_id: Optional[str]) -> Optional[SignerSlot]:
    return signer_slot(transaction, user_id) if user_id else None


def slot_signature(escrow: EscrowRecord, slot: SignerSlot) -> tuple:
    """(signed, choice) for one signer slot"""
    if slot == SignerSlot.INITIATOR:
        return escrow.initiator_signed, SignatureChoice(escrow.initiator_choice)
    return escrow.counterparty_signed, SignatureChoice(escrow.counterparty_choice)


def refund_proposed(transaction: Transaction, escrow: Optional[EscrowRecord]) -> bool:
    """The depositor has signed REFUND on an open escrow"""
    if escrow is None:
        return False
    slot = slot_for(transaction, depositor_id(transaction))
    if slot is None:
        return False
    signed, choice = slot_signature(escrow, slot)
    return signed and choice == SignatureChoice.REFUND


def settlement_phase(transaction: Transaction, escrow: Optional[EscrowRecord]) -> SettlementPhase:
    """Single derived tag describing where the trade stands"""
    if not transaction.is_otc:
        return SettlementPhase.NOT_OTC

    state = OTCState(transaction.otc_state)
    if state == OTCState.COMPLETED:
        return SettlementPhase.RELEASED
    if state == OTCState.FAILED:
        return SettlementPhase.REFUNDED
    if state in (OTCState.OPEN_REQUEST, OTCState.BIDDING):
        return SettlementPhase.AWAITING_TRADER
    if state == OTCState.SELECTED_TRADER:
        return SettlementPhase.AWAITING_DEPOSIT
    if refund_proposed(transaction, escrow):
        return SettlementPhase.REFUND_PROPOSED
    if state == OTCState.AWAITING_FIAT_CONFIRMATION:
        return SettlementPhase.AWAITING_FIAT_CONFIRMATION
    return SettlementPhase.AWAITING_FIAT_PAYMENT


@dataclass(frozen=True)
class TradeLegs:
    """USDT and fiat amounts of an OTC trade, whichever side asked"""
    usdt_amount: Decimal
    fiat_amount: Decimal
    fiat_currency: str


def trade_legs(transaction: Transaction) -> TradeLegs:
    if variant_of(transaction) == OTCVariant.FIAT_REQUEST:
        return TradeLegs(
            usdt_amount=Decimal(transaction.otc_offer_amount),
            fiat_amount=Decimal(transaction.amount),
            fiat_currency=transaction.currency,
        )
    return TradeLegs(
        usdt_amount=Decimal(transaction.amount),
        fiat_amount=Decimal(transaction.otc_offer_amount),
        fiat_currency=transaction.otc_fiat_currency,
    )
