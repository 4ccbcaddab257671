"""
OTC settlement end-to-end tests
Escrow order recording, the 2-of-2 signature exchange, the fiat rejection
escalation and activity replication, for both OTC variants.
"""

from decimal import Decimal

import pytest

from models import EscrowRecordStatus, OTCState, SignatureChoice, TransactionType
from services.settlement_engine import parse_signature_choice
from utils.caller_context import CallerContext
from utils.otc_actions import Action
from utils.otc_errors import (
    AuthorizationError, DuplicateActionError, NotFoundError, StateConflictError, ValidationError,
)

from conftest import WALLETS


def state_of(services, tx_id):
    return services.transactions.get_transaction(tx_id).otc_state


# ============================================================================
# FIAT REQUEST: REQUESTER DEPOSITS USDT
# ============================================================================

class TestFiatRequestRelease:

    def test_full_release_flow(self, services, fiat_request, alice, bob):
        tx = fiat_request()
        services.bids.create_bid(tx.id, bob)
        services.settlement.select_trader(tx.id, alice, "bob")

        record = services.settlement.record_escrow_order(tx.id, alice, WALLETS["bob"], "100", 42)
        assert record.onchain_order_id == 42
        assert record.status == EscrowRecordStatus.OPEN.value
        assert record.requester_address == WALLETS["alice"]
        assert record.trader_address == WALLETS["bob"]
        stored = services.transactions.get_transaction(tx.id)
        assert stored.otc_state == OTCState.USDT_IN_ESCROW.value
        assert stored.usdt_in_escrow is True
        assert stored.multisig_contract_address == record.contract_address

        sent = services.settlement.record_signature(tx.id, bob, 2, proof_url="https://img/receipt.png")
        assert sent.executed is False
        assert sent.transaction.otc_state == OTCState.AWAITING_FIAT_CONFIRMATION.value
        assert sent.transaction.otc_proof_image == "https://img/receipt.png"

        confirmed = services.settlement.record_signature(tx.id, alice, "RELEASE")
        assert confirmed.agreed is True
        assert confirmed.executed is True
        assert confirmed.escrow_record.status == EscrowRecordStatus.EXECUTED.value
        assert confirmed.escrow_record.is_activated is True

        final = services.transactions.get_transaction(tx.id)
        assert final.otc_state == OTCState.COMPLETED.value
        assert final.usdt_in_escrow is False

        legs = services.ledger.list_activity_entries(tx.id)
        usdt_legs = [leg for leg in legs if leg.currency == "USDT"]
        assert len(usdt_legs) == 1
        assert (usdt_legs[0].from_user_id, usdt_legs[0].to_user_id) == ("alice", "bob")
        assert usdt_legs[0].amount == Decimal("100")
        assert usdt_legs[0].type == TransactionType.PAYMENT.value
        fiat_legs = [leg for leg in legs if leg.currency == "NGN"]
        assert [(leg.from_user_id, leg.to_user_id, leg.amount) for leg in fiat_legs] == [
            ("bob", "alice", Decimal("165000"))
        ]

    def test_helpers_map_to_signatures(self, services, funded_fiat_trade, alice, bob):
        services.settlement.mark_fiat_sent(funded_fiat_trade.id, bob)
        result = services.settlement.confirm_fiat_received(funded_fiat_trade.id, alice)
        assert result.executed is True
        assert state_of(services, funded_fiat_trade.id) == OTCState.COMPLETED.value

    def test_fiat_sent_by_receiver_is_forbidden(self, services, funded_fiat_trade, alice):
        with pytest.raises(AuthorizationError):
            services.settlement.mark_fiat_sent(funded_fiat_trade.id, alice)

    def test_confirm_before_fiat_sent(self, services, funded_fiat_trade, alice):
        with pytest.raises(StateConflictError):
            services.settlement.record_signature(funded_fiat_trade.id, alice, 2)
        record = services.settlement.get_escrow_record(funded_fiat_trade.id)
        assert record.initiator_signed is False

    def test_outsider_cannot_sign(self, services, funded_fiat_trade, carol):
        with pytest.raises(AuthorizationError):
            services.settlement.record_signature(funded_fiat_trade.id, carol, 2)

    def test_repeat_signature_is_duplicate(self, services, funded_fiat_trade, bob):
        services.settlement.record_signature(funded_fiat_trade.id, bob, 2)
        with pytest.raises(DuplicateActionError) as exc_info:
            services.settlement.record_signature(funded_fiat_trade.id, bob, 2)
        assert exc_info.value.existing["counterpartyChoice"] == SignatureChoice.RELEASE.value

    def test_release_signature_redoes_payment_after_rejection(self, services, funded_fiat_trade, alice, bob):
        tx_id = funded_fiat_trade.id
        services.settlement.record_signature(tx_id, bob, 2)
        claim = services.settlement.claim_fiat_not_received(tx_id, alice)
        assert claim.transaction.otc_state == OTCState.AWAITING_FIAT_PAYMENT.value

        result = services.settlement.record_signature(tx_id, bob, 2, proof_url="https://img/again.png")
        assert result.transaction.otc_state == OTCState.AWAITING_FIAT_CONFIRMATION.value
        assert result.transaction.otc_proof_image == "https://img/again.png"
        assert result.escrow_record.counterparty_choice == SignatureChoice.RELEASE.value
        assert result.executed is False

        # Once the payment is back under review, the same signature is a repeat again
        with pytest.raises(DuplicateActionError):
            services.settlement.record_signature(tx_id, bob, 2)

        assert services.settlement.confirm_fiat_received(tx_id, alice).executed is True
        assert state_of(services, tx_id) == OTCState.COMPLETED.value

    def test_receiver_cannot_sign_refund_directly(self, services, funded_fiat_trade, alice, bob):
        services.settlement.record_signature(funded_fiat_trade.id, bob, 2)
        with pytest.raises(StateConflictError):
            services.settlement.record_signature(funded_fiat_trade.id, alice, 1)

    def test_completed_trade_is_frozen(self, services, funded_fiat_trade, alice, bob):
        services.settlement.record_signature(funded_fiat_trade.id, bob, 2)
        services.settlement.record_signature(funded_fiat_trade.id, alice, 2)
        with pytest.raises(StateConflictError):
            services.settlement.claim_fiat_not_received(funded_fiat_trade.id, alice)
        assert services.settlement.legal_actions(funded_fiat_trade.id, alice) == []
        assert services.settlement.legal_actions(funded_fiat_trade.id, bob) == []


class TestEscrowOrder:

    def test_order_before_selection(self, services, fiat_request, alice):
        tx = fiat_request()
        with pytest.raises(StateConflictError):
            services.settlement.record_escrow_order(tx.id, alice, WALLETS["bob"], "100", 1)

    def test_trader_cannot_record_fiat_request_order(self, services, fiat_request, alice, bob):
        tx = fiat_request()
        services.bids.create_bid(tx.id, bob)
        services.settlement.select_trader(tx.id, alice, "bob")
        with pytest.raises(AuthorizationError):
            services.settlement.record_escrow_order(tx.id, bob, WALLETS["alice"], "100", 1)

    def test_second_order_is_duplicate(self, services, funded_fiat_trade, alice):
        with pytest.raises(DuplicateActionError) as exc_info:
            services.settlement.record_escrow_order(funded_fiat_trade.id, alice, WALLETS["bob"], "100", 43)
        assert exc_info.value.existing["onchainOrderId"] == 42

    @pytest.mark.parametrize("amount,order_id,address", [
        ("99", 1, WALLETS["bob"]),
        ("100", "abc", WALLETS["bob"]),
        ("100", -1, WALLETS["bob"]),
        ("100", 1, ""),
        ("100", 1, WALLETS["carol"]),
        ("-100", 1, WALLETS["bob"]),
    ])
    def test_invalid_orders(self, services, fiat_request, alice, bob, amount, order_id, address):
        tx = fiat_request()
        services.bids.create_bid(tx.id, bob)
        services.settlement.select_trader(tx.id, alice, "bob")
        with pytest.raises(ValidationError):
            services.settlement.record_escrow_order(tx.id, alice, address, amount, order_id)
        assert state_of(services, tx.id) == OTCState.SELECTED_TRADER.value

    def test_foreign_wallet_rejected(self, services, fiat_request, alice, bob):
        tx = fiat_request()
        services.bids.create_bid(tx.id, bob)
        services.settlement.select_trader(tx.id, alice, "bob")
        impostor = CallerContext("alice", "0xdddd000000000000000000000000000000000004")
        with pytest.raises(AuthorizationError):
            services.settlement.record_escrow_order(tx.id, impostor, WALLETS["bob"], "100", 1)

    def test_addresses_compare_case_insensitively(self, services, fiat_request, alice, bob):
        tx = fiat_request()
        services.bids.create_bid(tx.id, bob)
        services.settlement.select_trader(tx.id, alice, "bob")
        record = services.settlement.record_escrow_order(tx.id, alice, WALLETS["bob"].upper(), "100.00", 5)
        assert record.trader_address == WALLETS["bob"]

    def test_missing_record(self, services, fiat_request):
        tx = fiat_request()
        with pytest.raises(NotFoundError):
            services.settlement.get_escrow_record(tx.id)


# ============================================================================
# USDT REQUEST: TRADER DEPOSITS USDT
# ============================================================================

class TestUsdtRequestRefund:

    def test_rejections_escalate_to_refund(self, services, usdt_request, alice, carol):
        tx = usdt_request()
        record = services.settlement.record_escrow_order(tx.id, carol, WALLETS["alice"], "50", 7)
        assert record.trader_address == WALLETS["carol"]
        assert record.requester_address == WALLETS["alice"]
        assert services.transactions.get_transaction(tx.id).selected_trader_id == "carol"

        services.settlement.record_signature(tx.id, alice, 2)
        assert state_of(services, tx.id) == OTCState.AWAITING_FIAT_CONFIRMATION.value

        first = services.settlement.claim_fiat_not_received(tx.id, carol)
        assert first.rejection_count == 1
        assert first.refund_proposed is False
        assert first.transaction.otc_state == OTCState.AWAITING_FIAT_PAYMENT.value

        services.settlement.resubmit_fiat_payment(tx.id, alice, proof_url="https://img/2.png")
        assert state_of(services, tx.id) == OTCState.AWAITING_FIAT_CONFIRMATION.value

        second = services.settlement.claim_fiat_not_received(tx.id, carol)
        assert second.rejection_count == 2
        assert second.refund_proposed is True
        assert second.executed is False
        assert second.escrow_record.counterparty_choice == SignatureChoice.REFUND.value
        assert second.escrow_record.status == EscrowRecordStatus.OPEN.value

        status = services.settlement.trade_status(tx.id, alice)
        assert status["phase"] == "REFUND_PROPOSED"
        assert Action.AGREE_REFUND.value in status["actions"]

        refund = services.settlement.record_signature(tx.id, alice, 1)
        assert refund.executed is True
        assert refund.escrow_record.status == EscrowRecordStatus.EXECUTED.value

        final = services.transactions.get_transaction(tx.id)
        assert final.otc_state == OTCState.FAILED.value
        assert final.usdt_in_escrow is False
        assert final.fiat_rejection_count == 2

        legs = services.ledger.list_activity_entries(tx.id)
        assert [(leg.from_user_id, leg.to_user_id, leg.amount, leg.currency) for leg in legs] == [
            ("carol", "carol", Decimal("50"), "USDT")
        ]

    def test_agree_refund_helper(self, services, funded_usdt_trade, alice, carol):
        tx_id = funded_usdt_trade.id
        services.settlement.mark_fiat_sent(tx_id, alice)
        services.settlement.claim_fiat_not_received(tx_id, carol)
        services.settlement.resubmit_fiat_payment(tx_id, alice)
        services.settlement.claim_fiat_not_received(tx_id, carol)
        result = services.settlement.agree_refund(tx_id, alice)
        assert result.executed is True
        assert state_of(services, tx_id) == OTCState.FAILED.value

    def test_refund_proposal_can_be_answered_with_new_payment(self, services, funded_usdt_trade, alice, carol):
        tx_id = funded_usdt_trade.id
        services.settlement.mark_fiat_sent(tx_id, alice)
        services.settlement.claim_fiat_not_received(tx_id, carol)
        services.settlement.resubmit_fiat_payment(tx_id, alice)
        services.settlement.claim_fiat_not_received(tx_id, carol)
        services.settlement.resubmit_fiat_payment(tx_id, alice)

        # carol changes her mind once the payment shows up
        result = services.settlement.confirm_fiat_received(tx_id, carol)
        assert result.executed is True
        assert state_of(services, tx_id) == OTCState.COMPLETED.value
        legs = services.ledger.list_activity_entries(tx_id)
        assert ("carol", "alice", Decimal("50"), "USDT") in [
            (leg.from_user_id, leg.to_user_id, leg.amount, leg.currency) for leg in legs
        ]

    def test_third_claim_only_counts(self, services, funded_usdt_trade, alice, carol):
        tx_id = funded_usdt_trade.id
        services.settlement.mark_fiat_sent(tx_id, alice)
        for _ in range(2):
            services.settlement.claim_fiat_not_received(tx_id, carol)
            services.settlement.resubmit_fiat_payment(tx_id, alice)
        third = services.settlement.claim_fiat_not_received(tx_id, carol)
        assert third.rejection_count == 3
        assert third.refund_proposed is False
        assert third.executed is False
        assert third.transaction.otc_state == OTCState.AWAITING_FIAT_PAYMENT.value

    def test_payer_cannot_claim(self, services, funded_usdt_trade, alice):
        services.settlement.mark_fiat_sent(funded_usdt_trade.id, alice)
        with pytest.raises(AuthorizationError):
            services.settlement.claim_fiat_not_received(funded_usdt_trade.id, alice)

    def test_refund_without_proposal_rejected(self, services, funded_usdt_trade, alice, carol):
        services.settlement.mark_fiat_sent(funded_usdt_trade.id, alice)
        services.settlement.claim_fiat_not_received(funded_usdt_trade.id, carol)
        with pytest.raises(StateConflictError):
            services.settlement.agree_refund(funded_usdt_trade.id, alice)

    def test_refund_notifies_payer(self, services, funded_usdt_trade, alice, carol):
        tx_id = funded_usdt_trade.id
        services.settlement.mark_fiat_sent(tx_id, alice)
        services.settlement.claim_fiat_not_received(tx_id, carol)
        services.settlement.resubmit_fiat_payment(tx_id, alice)
        services.settlement.claim_fiat_not_received(tx_id, carol)
        titles = [n.title for n in services.notifications.list_notifications("alice")]
        assert "Refund requested" in titles


# ============================================================================
# QUERIES AND PARSING
# ============================================================================

class TestQueries:

    def test_trade_status_for_depositor(self, services, funded_usdt_trade, carol):
        status = services.settlement.trade_status(funded_usdt_trade.id, carol)
        assert status["otcState"] == OTCState.USDT_IN_ESCROW.value
        assert status["phase"] == "AWAITING_FIAT_PAYMENT"
        assert status["depositorId"] == "carol"
        assert "depositor" in status["roles"]
        assert status["actions"] == []

    def test_legal_actions_unknown(self, services, users, alice):
        with pytest.raises(NotFoundError):
            services.settlement.legal_actions("TX_MISSING", alice)

    def test_replicate_requires_execution(self, services, funded_fiat_trade):
        with pytest.raises(StateConflictError):
            services.settlement.replicate_ledger(funded_fiat_trade.id)


class TestParseSignatureChoice:

    @pytest.mark.parametrize("value,expected", [
        (1, SignatureChoice.REFUND),
        (2, SignatureChoice.RELEASE),
        ("2", SignatureChoice.RELEASE),
        ("refund", SignatureChoice.REFUND),
        (SignatureChoice.RELEASE, SignatureChoice.RELEASE),
    ])
    def test_accepted(self, value, expected):
        assert parse_signature_choice(value) == expected

    @pytest.mark.parametrize("value", [0, 3, "NONE", "maybe", None])
    def test_rejected(self, value):
        with pytest.raises(ValidationError):
            parse_signature_choice(value)
