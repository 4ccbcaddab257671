"""
OTC Settlement Engine
=====================

The state machine behind OTC requests: trader selection, recording the
on-chain escrow order, the 2-of-2 signature exchange and the "fiat not
received" escalation that ends in a refund.

Every public operation is one unit of work:
1. lock the transaction row (and its escrow record)
2. check the caller's role, then the trade's state, via the action table
3. write the new state
4. commit, and only then run side effects (notifications, ledger
   replication), each of which logs and swallows its own failures

The engine never talks to the escrow contract. It records outcomes the
client already obtained from the wallet provider.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, List, Optional, Set, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from database import managed_session
from models import Bid, EscrowRecord, OTCState, SignatureChoice, Transaction, User
from services.escrow_record_service import EscrowRecordService
from services.ledger_replication_service import LedgerReplicationService
from services.notification_service import NotificationService
from utils.caller_context import CallerContext
from utils.database_locking import DatabaseLockingService
from utils.helpers import normalize_address, parse_amount
from utils.otc_actions import Action, ActionContext, authorize, legal_actions, require_state
from utils.otc_errors import (
    AuthorizationError, DuplicateActionError, NotFoundError, OTCError,
    SettlementRecordingError, StateConflictError, ValidationError,
)
from utils.otc_roles import (
    OTCVariant, Role, SettlementPhase, SignerSlot, depositor_id, fiat_payer_id, settlement_phase,
    signer_slot, slot_signature, trade_legs, variant_of,
)
from utils.otc_state_validator import OTCStateValidator

logger = logging.getLogger(__name__)


@dataclass
class SignatureResult:
    escrow_record: EscrowRecord
    transaction: Transaction
    agreed: bool
    executed: bool


@dataclass
class FiatClaimResult:
    transaction: Transaction
    escrow_record: EscrowRecord
    refund_proposed: bool
    rejection_count: int
    executed: bool = False


@dataclass
class _Transition:
    """What a committed unit of work changed, for the post-commit side effects"""
    transaction: Transaction
    old_state: OTCState
    new_state: OTCState
    actor_id: str
    executed: Optional[SignatureChoice] = None
    notified_separately: Tuple[str, ...] = ()


def parse_signature_choice(value: Any) -> SignatureChoice:
    """Accept 1/2, "REFUND"/"RELEASE" or a SignatureChoice; NONE is never a valid signature"""
    if isinstance(value, SignatureChoice):
        choice = value
    elif isinstance(value, str) and not value.strip().isdigit():
        try:
            choice = SignatureChoice[value.strip().upper()]
        except KeyError:
            raise ValidationError(f"choice must be REFUND or RELEASE, got {value!r}")
    else:
        try:
            choice = SignatureChoice(int(value))
        except (TypeError, ValueError):
            raise ValidationError(f"choice must be 1 (REFUND) or 2 (RELEASE), got {value!r}")
    if choice == SignatureChoice.NONE:
        raise ValidationError("choice must be 1 (REFUND) or 2 (RELEASE)")
    return choice


class SettlementEngine:
    """OTC trade lifecycle operations"""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        notifications: Optional[NotificationService] = None,
        ledger: Optional[LedgerReplicationService] = None,
        escrow_records: Optional[EscrowRecordService] = None,
    ):
        self.session_factory = session_factory
        self.notifications = notifications or NotificationService(session_factory)
        self.ledger = ledger or LedgerReplicationService(session_factory, self.notifications)
        self.escrow_records = escrow_records or EscrowRecordService(session_factory)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _recording(self, operation: str, transaction_id: str, onchain_reference: Any = None):
        """
        Unit of work for recording an on-chain outcome.

        Storage failures surface as SettlementRecordingError so the client
        knows the chain is ahead and must retry the same call.
        """
        try:
            with managed_session(self.session_factory) as session:
                yield session
        except OTCError:
            raise
        except SQLAlchemyError as e:
            logger.error(
                f"🚨 SETTLEMENT_RECORDING_FAILED: {operation} on {transaction_id} "
                f"(onchain={onchain_reference}): {e}"
            )
            raise SettlementRecordingError(
                f"Could not record {operation} for {transaction_id}; the on-chain step "
                f"succeeded, retry the same request",
                onchain_reference=onchain_reference,
                details={"operation": operation, "transactionId": transaction_id},
            ) from e

    @staticmethod
    def _bidder_ids(session: Session, transaction_id: str) -> Set[str]:
        return set(session.execute(
            select(Bid.user_id).where(Bid.transaction_id == transaction_id)
        ).scalars().all())

    def _locked_context(self, session: Session, transaction_id: str, user_id: str,
                        with_bids: bool = False) -> ActionContext:
        transaction = DatabaseLockingService.lock_transaction(session, transaction_id)
        escrow = DatabaseLockingService.lock_escrow_record(session, transaction_id)
        bidder_ids = self._bidder_ids(session, transaction_id) if with_bids else set()
        return ActionContext(transaction, escrow, user_id, bidder_ids)

    @staticmethod
    def _registered_wallet(session: Session, user_id: Optional[str]) -> Optional[str]:
        if not user_id:
            return None
        return normalize_address(session.execute(
            select(User.wallet_address).where(User.id == user_id)
        ).scalar_one_or_none())

    @staticmethod
    def _settle(transaction: Transaction, agreed: SignatureChoice) -> None:
        """Terminal write after this caller won the execute compare-and-set"""
        final_state = OTCState.COMPLETED if agreed == SignatureChoice.RELEASE else OTCState.FAILED
        OTCStateValidator.validate_and_transition(transaction, final_state)
        transaction.usdt_in_escrow = False
        logger.info(f"🏁 OTC_SETTLED: {transaction.id} {agreed.name} -> {final_state.value}")

    def _after_commit(self, change: _Transition) -> None:
        """Side effects of a committed transition; failures are logged only"""
        self.notifications.notify_request_state_changed(
            change.transaction, change.old_state, change.new_state, change.actor_id,
            exclude=change.notified_separately,
        )
        if change.executed is not None:
            self._replicate_quietly(change.transaction.id)

    def _replicate_quietly(self, transaction_id: str) -> None:
        try:
            self.ledger.replicate_settlement(transaction_id)
        except Exception as e:
            # Safe to re-run later through replicate_ledger
            logger.error(f"❌ LEDGER_REPLICATION_FAILED: {transaction_id}: {e}")

    # ------------------------------------------------------------------
    # Trader selection
    # ------------------------------------------------------------------

    def select_trader(self, transaction_id: str, caller: CallerContext, trader_id: str) -> Transaction:
        """
        Fiat request: the requester picks one of the bidders.
        USDT request: a trader selects themselves; the state stays OPEN_REQUEST.
        """
        if not trader_id:
            raise ValidationError("traderId is required")

        with managed_session(self.session_factory) as session:
            ctx = self._locked_context(session, transaction_id, caller.user_id, with_bids=True)
            transaction = ctx.transaction
            variant = variant_of(transaction)

            if (variant == OTCVariant.USDT_REQUEST and transaction.selected_trader_id
                    and caller.user_id != transaction.from_user_id):
                if transaction.selected_trader_id == caller.user_id:
                    raise DuplicateActionError("You are already the selected trader", existing=transaction)
                raise StateConflictError("Another trader already took this request")

            authorize(Action.SELECT_TRADER, ctx)

            if variant == OTCVariant.USDT_REQUEST:
                if trader_id != caller.user_id:
                    raise AuthorizationError("On a USDT request a trader can only select themselves")
            else:
                if trader_id == transaction.from_user_id:
                    raise ValidationError("You cannot select yourself as the trader")
                if OTCState(transaction.otc_state) in (OTCState.OPEN_REQUEST, OTCState.BIDDING):
                    if not ctx.bidder_ids:
                        raise StateConflictError("No traders have bid on this request yet")
                    if trader_id not in ctx.bidder_ids:
                        raise StateConflictError("The selected user has not bid on this request")
            require_state(Action.SELECT_TRADER, ctx)

            if session.get(User, trader_id) is None:
                raise NotFoundError(f"User {trader_id} not found")

            old_state = OTCState(transaction.otc_state)
            transaction.selected_trader_id = trader_id
            if variant == OTCVariant.FIAT_REQUEST:
                OTCStateValidator.validate_and_transition(transaction, OTCState.SELECTED_TRADER)
            new_state = OTCState(transaction.otc_state)

        logger.info(f"🤝 TRADER_SELECTED: {transaction_id} trader={trader_id} by {caller.user_id}")
        self._after_commit(_Transition(transaction, old_state, new_state, caller.user_id))
        return transaction

    # ------------------------------------------------------------------
    # Escrow order
    # ------------------------------------------------------------------

    def record_escrow_order(
        self,
        transaction_id: str,
        caller: CallerContext,
        counterparty_address: str,
        amount: Any,
        onchain_order_id: Any,
    ) -> EscrowRecord:
        """Record the deposit order the depositor created on-chain"""
        usdt_amount = parse_amount(amount, "amount")
        try:
            order_id = int(onchain_order_id)
        except (TypeError, ValueError):
            raise ValidationError(f"onchainOrderId must be an integer, got {onchain_order_id!r}")
        if order_id < 0:
            raise ValidationError("onchainOrderId must not be negative")
        counterparty_wallet = normalize_address(counterparty_address)
        if not counterparty_wallet:
            raise ValidationError("counterpartyAddress is required")

        with self._recording("escrow order", transaction_id, order_id) as session:
            ctx = self._locked_context(session, transaction_id, caller.user_id)
            transaction = ctx.transaction
            variant = variant_of(transaction)

            authorize(Action.RECORD_ESCROW_ORDER, ctx)
            if ctx.escrow is not None:
                raise DuplicateActionError("The escrow order was already recorded", existing=ctx.escrow)
            require_state(Action.RECORD_ESCROW_ORDER, ctx)

            registered_wallet = self._registered_wallet(session, caller.user_id)
            if caller.wallet and registered_wallet and caller.wallet != registered_wallet:
                raise AuthorizationError("The connected wallet does not belong to the depositing user")
            depositor_wallet = caller.wallet or registered_wallet

            if variant == OTCVariant.USDT_REQUEST and transaction.selected_trader_id is None:
                transaction.selected_trader_id = caller.user_id
                logger.info(f"🤝 TRADER_SELF_SELECTED: {transaction_id} trader={caller.user_id}")

            expected = trade_legs(transaction).usdt_amount
            if usdt_amount != expected:
                raise ValidationError(
                    f"Escrow amount {usdt_amount} USDT does not match the trade amount {expected} USDT",
                    details={"expected": str(expected), "received": str(usdt_amount)},
                )

            counterparty_user = (
                transaction.selected_trader_id if variant == OTCVariant.FIAT_REQUEST
                else transaction.from_user_id
            )
            known_counterparty_wallet = self._registered_wallet(session, counterparty_user)
            if known_counterparty_wallet and known_counterparty_wallet != counterparty_wallet:
                raise ValidationError("counterpartyAddress does not match the counterparty's wallet")

            if variant == OTCVariant.FIAT_REQUEST:
                requester_address, trader_address = depositor_wallet, counterparty_wallet
            else:
                requester_address, trader_address = counterparty_wallet, depositor_wallet

            old_state = OTCState(transaction.otc_state)
            record = EscrowRecordService.create_record(
                session,
                transaction_id=transaction_id,
                contract_address=Config.MULTISIG_CONTRACT_ADDRESS,
                requester_address=requester_address,
                trader_address=trader_address,
                usdt_amount=usdt_amount,
                onchain_order_id=order_id,
            )
            OTCStateValidator.validate_and_transition(transaction, OTCState.USDT_IN_ESCROW)
            transaction.multisig_contract_address = Config.MULTISIG_CONTRACT_ADDRESS
            transaction.usdt_in_escrow = True
            session.flush()
            new_state = OTCState(transaction.otc_state)

        logger.info(
            f"💰 USDT_IN_ESCROW: {transaction_id} {usdt_amount} USDT order={order_id} "
            f"by {caller.user_id} [req={caller.request_id}]"
        )
        # The fiat payer gets the payment prompt instead of the generic update
        payer = fiat_payer_id(transaction)
        self._after_commit(_Transition(
            transaction, old_state, new_state, caller.user_id, notified_separately=(payer,) if payer else ()
        ))
        self.notifications.notify_usdt_in_escrow(transaction)
        return record

    def get_escrow_record(self, transaction_id: str) -> EscrowRecord:
        return self.escrow_records.get_record(transaction_id)

    # ------------------------------------------------------------------
    # Signatures
    # ------------------------------------------------------------------

    @staticmethod
    def _is_resubmission(ctx: ActionContext, slot: SignerSlot) -> bool:
        """Payer re-signing RELEASE after the receiver reported the fiat missing"""
        if ctx.escrow is None or OTCState(ctx.transaction.otc_state) != OTCState.AWAITING_FIAT_PAYMENT:
            return False
        return slot_signature(ctx.escrow, slot) == (True, SignatureChoice.RELEASE)

    @staticmethod
    def _signature_action(ctx: ActionContext, choice: SignatureChoice) -> Action:
        roles = ctx.roles
        if Role.FIAT_PAYER in roles:
            return Action.MARK_FIAT_SENT if choice == SignatureChoice.RELEASE else Action.AGREE_REFUND
        if choice == SignatureChoice.REFUND:
            raise StateConflictError(
                "To request a refund, report the fiat payment as not received",
                details={"otcState": ctx.transaction.otc_state},
            )
        return Action.CONFIRM_FIAT_RECEIVED

    def record_signature(self, transaction_id: str, caller: CallerContext, choice: Any,
                         proof_url: Optional[str] = None,
                         action: Optional[Action] = None) -> SignatureResult:
        """
        Record the caller's RELEASE or REFUND signature.

        When both signers now agree, this call alone executes the escrow and
        moves the request to COMPLETED (release) or FAILED (refund).
        Without an explicit action, the caller's role decides which step the
        signature stands for.
        """
        signature = parse_signature_choice(choice)

        with self._recording("signature", transaction_id) as session:
            ctx = self._locked_context(session, transaction_id, caller.user_id)
            transaction = ctx.transaction
            slot = signer_slot(transaction, caller.user_id)
            if slot is None:
                raise AuthorizationError("Only the requester and the selected trader can sign this escrow")

            if action is None:
                action = self._signature_action(ctx, signature)
            if action == Action.MARK_FIAT_SENT and self._is_resubmission(ctx, slot):
                action = Action.RESUBMIT_FIAT_PAYMENT
            authorize(action, ctx)

            escrow = ctx.escrow
            if escrow is not None and action != Action.RESUBMIT_FIAT_PAYMENT:
                signed, current = slot_signature(escrow, slot)
                if signed and current == signature:
                    raise DuplicateActionError(
                        f"You already signed {signature.name} for this escrow", existing=escrow
                    )
            require_state(action, ctx)
            if escrow is None:
                raise NotFoundError(f"No escrow order recorded for transaction {transaction_id}")

            old_state = OTCState(transaction.otc_state)
            EscrowRecordService.apply_signature(escrow, slot, signature, proof_url)
            if proof_url:
                transaction.otc_proof_image = proof_url
            if action in (Action.MARK_FIAT_SENT, Action.RESUBMIT_FIAT_PAYMENT):
                OTCStateValidator.validate_and_transition(transaction, OTCState.AWAITING_FIAT_CONFIRMATION)

            executed = EscrowRecordService.execute_if_agreed(session, transaction_id)
            if executed is not None:
                self._settle(transaction, executed)
            session.flush()
            new_state = OTCState(transaction.otc_state)
            agreed = escrow.is_agreed

        logger.info(
            f"✍️ SIGNATURE_ACCEPTED: {transaction_id} {action.value} by {caller.user_id} "
            f"agreed={agreed} executed={executed is not None} [req={caller.request_id}]"
        )
        self._after_commit(_Transition(transaction, old_state, new_state, caller.user_id, executed))
        return SignatureResult(escrow, transaction, agreed, executed is not None)

    def mark_fiat_sent(self, transaction_id: str, caller: CallerContext,
                       proof_url: Optional[str] = None) -> SignatureResult:
        return self.record_signature(
            transaction_id, caller, SignatureChoice.RELEASE, proof_url, action=Action.MARK_FIAT_SENT
        )

    def confirm_fiat_received(self, transaction_id: str, caller: CallerContext) -> SignatureResult:
        return self.record_signature(
            transaction_id, caller, SignatureChoice.RELEASE, action=Action.CONFIRM_FIAT_RECEIVED
        )

    def agree_refund(self, transaction_id: str, caller: CallerContext) -> SignatureResult:
        return self.record_signature(
            transaction_id, caller, SignatureChoice.REFUND, action=Action.AGREE_REFUND
        )

    # ------------------------------------------------------------------
    # Fiat escalation
    # ------------------------------------------------------------------

    def claim_fiat_not_received(self, transaction_id: str, caller: CallerContext) -> FiatClaimResult:
        """
        The fiat receiver reports the fiat payment missing.

        Each claim bumps fiat_rejection_count and hands the trade back to the
        payer. Reaching the refund threshold also records the receiver's
        REFUND signature, which the payer can then counter-sign.
        """
        with self._recording("fiat rejection", transaction_id) as session:
            ctx = self._locked_context(session, transaction_id, caller.user_id)
            transaction = ctx.transaction
            authorize(Action.CLAIM_FIAT_NOT_RECEIVED, ctx)
            require_state(Action.CLAIM_FIAT_NOT_RECEIVED, ctx)
            escrow = ctx.escrow
            if escrow is None:
                raise NotFoundError(f"No escrow order recorded for transaction {transaction_id}")

            old_state = OTCState(transaction.otc_state)
            transaction.fiat_rejection_count = (transaction.fiat_rejection_count or 0) + 1
            count = transaction.fiat_rejection_count

            refund_proposed = False
            if count >= Config.FIAT_REJECTION_REFUND_THRESHOLD:
                slot = signer_slot(transaction, caller.user_id)
                signed, current = slot_signature(escrow, slot)
                if signed and current == SignatureChoice.REFUND:
                    logger.warning(
                        f"⚠️ REPEATED_FIAT_REJECTION: {transaction_id} count={count}, "
                        f"refund already requested"
                    )
                else:
                    EscrowRecordService.apply_signature(escrow, slot, SignatureChoice.REFUND)
                    refund_proposed = True

            OTCStateValidator.validate_and_transition(transaction, OTCState.AWAITING_FIAT_PAYMENT)
            executed = EscrowRecordService.execute_if_agreed(session, transaction_id)
            if executed is not None:
                self._settle(transaction, executed)
            session.flush()
            new_state = OTCState(transaction.otc_state)

        logger.info(
            f"🚫 FIAT_NOT_RECEIVED: {transaction_id} count={count} "
            f"refund_proposed={refund_proposed} by {caller.user_id}"
        )
        self._after_commit(_Transition(transaction, old_state, new_state, caller.user_id, executed))
        if refund_proposed:
            self.notifications.notify_refund_requested(transaction, caller.user_id)
        return FiatClaimResult(transaction, escrow, refund_proposed, count, executed is not None)

    def resubmit_fiat_payment(self, transaction_id: str, caller: CallerContext,
                              proof_url: Optional[str] = None) -> Transaction:
        """The fiat payer answers a rejection by re-asserting the payment, optionally with new proof"""
        result = self.record_signature(
            transaction_id, caller, SignatureChoice.RELEASE, proof_url, action=Action.RESUBMIT_FIAT_PAYMENT
        )
        logger.info(f"🔁 FIAT_PAYMENT_RESUBMITTED: {transaction_id} by {caller.user_id}")
        return result.transaction

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def legal_actions(self, transaction_id: str, caller: CallerContext) -> List[Action]:
        """Actions the caller may take on the trade right now"""
        with managed_session(self.session_factory) as session:
            transaction = session.get(Transaction, transaction_id)
            if transaction is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            escrow = session.execute(
                select(EscrowRecord).where(EscrowRecord.transaction_id == transaction_id)
            ).scalar_one_or_none()
            ctx = ActionContext(transaction, escrow, caller.user_id, self._bidder_ids(session, transaction_id))
            return legal_actions(ctx)

    def trade_status(self, transaction_id: str, caller: CallerContext) -> dict:
        """Phase, caller roles and legal actions in one read"""
        with managed_session(self.session_factory) as session:
            transaction = session.get(Transaction, transaction_id)
            if transaction is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            escrow = session.execute(
                select(EscrowRecord).where(EscrowRecord.transaction_id == transaction_id)
            ).scalar_one_or_none()
            ctx = ActionContext(transaction, escrow, caller.user_id, self._bidder_ids(session, transaction_id))
            phase: SettlementPhase = settlement_phase(transaction, escrow)
            return {
                "transactionId": transaction_id,
                "otcState": transaction.otc_state,
                "phase": phase.value,
                "roles": sorted(r.value for r in ctx.roles),
                "actions": [a.value for a in legal_actions(ctx)],
                "fiatRejectionCount": transaction.fiat_rejection_count,
                "depositorId": depositor_id(transaction) if transaction.is_otc else None,
            }

    def replicate_ledger(self, transaction_id: str) -> List[Transaction]:
        """Re-run activity replication for a settled request; creates only missing legs"""
        return self.ledger.replicate_settlement(transaction_id)
