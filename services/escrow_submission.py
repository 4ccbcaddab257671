"""
Escrow Submission Coordinator
Client-side orchestration across the wallet boundary: run the on-chain step
through the wallet-signing provider, then record its outcome in the
settlement engine.

Ordering rules:
- deterministic checks run first (preflight against the action table), so a
  request that would be rejected never reaches the chain
- provider failures are classified into refused / infrastructure and nothing
  is recorded
- a recording failure after a successful on-chain step surfaces as
  SettlementRecordingError carrying the on-chain reference
"""

import logging
from decimal import Decimal
from typing import Any, Optional, Protocol

from config import Config
from models import SignatureChoice
from services.provider_error_classifier import ProviderErrorClassifier
from services.settlement_engine import (
    FiatClaimResult, SettlementEngine, SignatureResult, parse_signature_choice,
)
from utils.caller_context import CallerContext
from utils.helpers import parse_amount
from utils.otc_actions import Action
from utils.otc_errors import OTCError, StateConflictError
from utils.otc_roles import SettlementPhase

logger = logging.getLogger(__name__)


class WalletSigner(Protocol):
    """Wallet-signing provider in front of the escrow contract"""

    def create_order(self, contract_address: str, counterparty_address: str, amount: Decimal) -> int:
        """Deposit USDT into a new 2-of-2 order, returns the on-chain order id"""
        ...

    def sign_order(self, order_id: int, choice: int) -> str:
        """Sign an order with 1 (REFUND) or 2 (RELEASE), returns the chain transaction hash"""
        ...


SIGNATURE_ACTIONS = {
    SignatureChoice.RELEASE: {
        Action.MARK_FIAT_SENT, Action.RESUBMIT_FIAT_PAYMENT, Action.CONFIRM_FIAT_RECEIVED,
    },
    SignatureChoice.REFUND: {Action.AGREE_REFUND},
}


class EscrowSubmissionCoordinator:
    def __init__(self, engine: SettlementEngine, signer: WalletSigner):
        self.engine = engine
        self.signer = signer

    def _preflight(self, transaction_id: str, caller: CallerContext, wanted: set) -> None:
        actions = set(self.engine.legal_actions(transaction_id, caller))
        if not (actions & wanted):
            raise StateConflictError(
                "This step is not available for you right now",
                details={"allowed": sorted(a.value for a in actions)},
            )

    def _call_provider(self, operation: str, transaction_id: str, func, *args):
        try:
            return func(*args)
        except OTCError:
            raise
        except Exception as e:
            error = ProviderErrorClassifier.to_provider_error(
                e, operation, context={"transactionId": transaction_id}
            )
            logger.error(
                f"❌ PROVIDER_CALL_FAILED: {operation} for {transaction_id} "
                f"kind={error.kind.value} retryable={error.retryable}"
            )
            raise error from e

    def submit_deposit(self, transaction_id: str, caller: CallerContext,
                       counterparty_address: str, amount: Any):
        """createOrder on-chain, then record the escrow order"""
        usdt_amount = parse_amount(amount, "amount")
        self._preflight(transaction_id, caller, {Action.RECORD_ESCROW_ORDER})
        order_id = self._call_provider(
            "createOrder", transaction_id, self.signer.create_order,
            Config.MULTISIG_CONTRACT_ADDRESS, counterparty_address, usdt_amount,
        )
        logger.info(f"⛓️ ONCHAIN_ORDER_CREATED: {transaction_id} order={order_id}")
        return self.engine.record_escrow_order(
            transaction_id, caller, counterparty_address, usdt_amount, order_id
        )

    def submit_signature(self, transaction_id: str, caller: CallerContext, choice: Any,
                         proof_url: Optional[str] = None) -> SignatureResult:
        """signOrder on-chain, then record the signature"""
        signature = parse_signature_choice(choice)
        self._preflight(transaction_id, caller, SIGNATURE_ACTIONS[signature])
        record = self.engine.get_escrow_record(transaction_id)
        tx_hash = self._call_provider(
            "signOrder", transaction_id, self.signer.sign_order,
            record.onchain_order_id, signature.value,
        )
        logger.info(f"⛓️ ONCHAIN_ORDER_SIGNED: {transaction_id} {signature.name} tx={tx_hash}")
        return self.engine.record_signature(transaction_id, caller, signature, proof_url)

    def submit_fiat_not_received(self, transaction_id: str, caller: CallerContext) -> FiatClaimResult:
        """
        Report fiat as missing. When this claim reaches the refund threshold
        the REFUND signature is placed on-chain before it is recorded.
        """
        self._preflight(transaction_id, caller, {Action.CLAIM_FIAT_NOT_RECEIVED})
        status = self.engine.trade_status(transaction_id, caller)
        record = self.engine.get_escrow_record(transaction_id)
        will_propose_refund = (
            status["fiatRejectionCount"] + 1 >= Config.FIAT_REJECTION_REFUND_THRESHOLD
            and status["phase"] != SettlementPhase.REFUND_PROPOSED.value
        )
        if will_propose_refund:
            tx_hash = self._call_provider(
                "signOrder", transaction_id, self.signer.sign_order,
                record.onchain_order_id, SignatureChoice.REFUND.value,
            )
            logger.info(f"⛓️ ONCHAIN_REFUND_SIGNED: {transaction_id} tx={tx_hash}")
        return self.engine.claim_fiat_not_received(transaction_id, caller)
