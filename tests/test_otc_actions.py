"""
Role resolution and the OTC action table

Pure tests on in-memory rows: no database involved.
"""

from decimal import Decimal
from types import SimpleNamespace

import pytest

from models import OTCState, SignatureChoice
from utils.otc_actions import Action, ActionContext, authorize, legal_actions, require, require_state
from utils.otc_errors import AuthorizationError, StateConflictError
from utils.otc_roles import (
    OTCVariant, Role, SettlementPhase, depositor_id, fiat_payer_id, resolve_roles,
    settlement_phase, trade_legs, variant_of,
)


def make_tx(currency="NGN", state=OTCState.OPEN_REQUEST, selected=None, **overrides):
    fields = dict(
        id="TX_UNIT",
        from_user_id="alice",
        to_user_id=None,
        currency=currency,
        amount=Decimal("165000") if currency != "USDT" else Decimal("50"),
        otc_fiat_currency="USDT" if currency != "USDT" else "NGN",
        otc_offer_amount=Decimal("100") if currency != "USDT" else Decimal("82500"),
        is_otc=True,
        otc_state=state.value,
        selected_trader_id=selected,
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


def make_escrow(initiator=None, counterparty=None):
    """initiator/counterparty: None for unsigned, else the SignatureChoice"""
    return SimpleNamespace(
        initiator_signed=initiator is not None,
        initiator_choice=(initiator or SignatureChoice.NONE).value,
        counterparty_signed=counterparty is not None,
        counterparty_choice=(counterparty or SignatureChoice.NONE).value,
    )


def actions_for(tx, user_id, escrow=None, bidders=()):
    return legal_actions(ActionContext(tx, escrow, user_id, set(bidders)))


class TestRoleResolution:

    def test_fiat_request_requester_deposits(self):
        tx = make_tx(selected="bob")
        assert variant_of(tx) == OTCVariant.FIAT_REQUEST
        assert depositor_id(tx) == "alice"
        assert fiat_payer_id(tx) == "bob"
        assert Role.FIAT_RECEIVER in resolve_roles(tx, "alice")
        assert Role.FIAT_PAYER in resolve_roles(tx, "bob")

    def test_usdt_request_trader_deposits(self):
        tx = make_tx(currency="USDT", selected="carol")
        assert variant_of(tx) == OTCVariant.USDT_REQUEST
        assert depositor_id(tx) == "carol"
        assert fiat_payer_id(tx) == "alice"
        roles = resolve_roles(tx, "carol")
        assert {Role.TRADER, Role.DEPOSITOR, Role.FIAT_RECEIVER} <= roles

    def test_prospective_trader_only_while_unselected(self):
        assert Role.PROSPECTIVE_TRADER in resolve_roles(make_tx(), "carol")
        assert Role.PROSPECTIVE_TRADER not in resolve_roles(make_tx(selected="bob"), "carol")

    def test_anonymous_caller_has_no_roles(self):
        assert resolve_roles(make_tx(), None) == frozenset()

    def test_trade_legs_by_variant(self):
        fiat = trade_legs(make_tx())
        assert (fiat.usdt_amount, fiat.fiat_amount, fiat.fiat_currency) == (Decimal("100"), Decimal("165000"), "NGN")
        usdt = trade_legs(make_tx(currency="USDT"))
        assert (usdt.usdt_amount, usdt.fiat_amount, usdt.fiat_currency) == (Decimal("50"), Decimal("82500"), "NGN")


class TestSettlementPhase:

    def test_non_otc(self):
        tx = make_tx(is_otc=False, state=OTCState.NONE)
        assert settlement_phase(tx, None) == SettlementPhase.NOT_OTC

    @pytest.mark.parametrize("state,phase", [
        (OTCState.OPEN_REQUEST, SettlementPhase.AWAITING_TRADER),
        (OTCState.BIDDING, SettlementPhase.AWAITING_TRADER),
        (OTCState.SELECTED_TRADER, SettlementPhase.AWAITING_DEPOSIT),
        (OTCState.USDT_IN_ESCROW, SettlementPhase.AWAITING_FIAT_PAYMENT),
        (OTCState.AWAITING_FIAT_CONFIRMATION, SettlementPhase.AWAITING_FIAT_CONFIRMATION),
        (OTCState.COMPLETED, SettlementPhase.RELEASED),
        (OTCState.FAILED, SettlementPhase.REFUNDED),
    ])
    def test_phase_follows_state(self, state, phase):
        assert settlement_phase(make_tx(state=state, selected="bob"), make_escrow()) == phase

    def test_depositor_refund_signature_marks_refund_proposed(self):
        tx = make_tx(state=OTCState.AWAITING_FIAT_PAYMENT, selected="bob")
        escrow = make_escrow(initiator=SignatureChoice.REFUND, counterparty=SignatureChoice.RELEASE)
        assert settlement_phase(tx, escrow) == SettlementPhase.REFUND_PROPOSED

    def test_payer_refund_signature_is_not_a_proposal(self):
        tx = make_tx(state=OTCState.AWAITING_FIAT_PAYMENT, selected="bob")
        escrow = make_escrow(counterparty=SignatureChoice.REFUND)
        assert settlement_phase(tx, escrow) == SettlementPhase.AWAITING_FIAT_PAYMENT


class TestLegalActions:

    def test_open_fiat_request(self):
        tx = make_tx()
        assert actions_for(tx, "alice") == []
        assert actions_for(tx, "alice", bidders={"bob"}) == [Action.SELECT_TRADER]
        assert actions_for(tx, "bob", bidders={"bob"}) == [Action.WITHDRAW_BID]
        assert actions_for(tx, "carol", bidders={"bob"}) == [Action.PLACE_BID]

    def test_open_usdt_request(self):
        tx = make_tx(currency="USDT")
        assert actions_for(tx, "carol") == [Action.SELECT_TRADER, Action.RECORD_ESCROW_ORDER]
        assert actions_for(tx, "alice") == []

    def test_selected_fiat_request_waits_for_requester_deposit(self):
        tx = make_tx(state=OTCState.SELECTED_TRADER, selected="bob")
        assert actions_for(tx, "alice") == [Action.RECORD_ESCROW_ORDER]
        assert actions_for(tx, "bob") == []

    def test_usdt_in_escrow(self):
        tx = make_tx(state=OTCState.USDT_IN_ESCROW, selected="bob")
        assert actions_for(tx, "bob", make_escrow()) == [Action.MARK_FIAT_SENT]
        assert actions_for(tx, "alice", make_escrow()) == []

    def test_awaiting_confirmation(self):
        tx = make_tx(state=OTCState.AWAITING_FIAT_CONFIRMATION, selected="bob")
        escrow = make_escrow(counterparty=SignatureChoice.RELEASE)
        assert actions_for(tx, "alice", escrow) == [
            Action.CONFIRM_FIAT_RECEIVED, Action.CLAIM_FIAT_NOT_RECEIVED,
        ]
        assert actions_for(tx, "bob", escrow) == []

    def test_refund_proposed(self):
        tx = make_tx(state=OTCState.AWAITING_FIAT_PAYMENT, selected="bob")
        escrow = make_escrow(initiator=SignatureChoice.REFUND, counterparty=SignatureChoice.RELEASE)
        assert actions_for(tx, "bob", escrow) == [Action.RESUBMIT_FIAT_PAYMENT, Action.AGREE_REFUND]
        assert actions_for(tx, "alice", escrow) == []

    def test_outsider_has_nothing_once_trader_selected(self):
        tx = make_tx(state=OTCState.AWAITING_FIAT_CONFIRMATION, selected="bob")
        assert actions_for(tx, "carol", make_escrow(counterparty=SignatureChoice.RELEASE)) == []

    @pytest.mark.parametrize("state", [OTCState.COMPLETED, OTCState.FAILED])
    def test_terminal_trades_offer_no_actions(self, state):
        tx = make_tx(state=state, selected="bob")
        escrow = make_escrow(SignatureChoice.RELEASE, SignatureChoice.RELEASE)
        for user_id in ("alice", "bob", "carol"):
            assert actions_for(tx, user_id, escrow) == []


class TestChecks:

    def test_role_is_checked_before_state(self):
        tx = make_tx(state=OTCState.COMPLETED, selected="bob")
        ctx = ActionContext(tx, make_escrow(), "carol")
        with pytest.raises(AuthorizationError):
            require(Action.CONFIRM_FIAT_RECEIVED, ctx)

    def test_state_conflict_carries_details(self):
        tx = make_tx(state=OTCState.USDT_IN_ESCROW, selected="bob")
        ctx = ActionContext(tx, make_escrow(), "alice")
        authorize(Action.CONFIRM_FIAT_RECEIVED, ctx)
        with pytest.raises(StateConflictError) as exc_info:
            require_state(Action.CONFIRM_FIAT_RECEIVED, ctx)
        assert exc_info.value.details["otcState"] == "USDT_IN_ESCROW"
        assert exc_info.value.details["action"] == "CONFIRM_FIAT_RECEIVED"
