"""
Bid Service tests
Bidding on fiat OTC requests and trader selection
"""

import pytest

from models import OTCState
from utils.otc_errors import (
    AuthorizationError, DuplicateActionError, NotFoundError, StateConflictError, ValidationError,
)


class TestPlaceBid:

    def test_first_bid_moves_request_to_bidding(self, services, fiat_request, bob):
        tx = fiat_request()
        bid = services.bids.create_bid(tx.id, bob, "Can pay via bank transfer")
        assert bid.user_id == "bob"
        assert bid.id.startswith("BD")
        assert services.transactions.get_transaction(tx.id).otc_state == OTCState.BIDDING.value

    def test_second_bidder_keeps_bidding(self, services, fiat_request, bob, carol):
        tx = fiat_request()
        services.bids.create_bid(tx.id, bob)
        services.bids.create_bid(tx.id, carol)
        bids = services.bids.list_bids(tx.id)
        assert [b.user_id for b in bids] == ["bob", "carol"]
        assert services.transactions.get_transaction(tx.id).otc_state == OTCState.BIDDING.value

    def test_duplicate_bid_carries_existing(self, services, fiat_request, bob):
        tx = fiat_request()
        first = services.bids.create_bid(tx.id, bob, "first")
        with pytest.raises(DuplicateActionError) as exc_info:
            services.bids.create_bid(tx.id, bob, "again")
        assert exc_info.value.existing["id"] == first.id
        assert exc_info.value.http_status == 409
        assert len(services.bids.list_bids(tx.id)) == 1

    def test_requester_cannot_bid(self, services, fiat_request, alice):
        tx = fiat_request()
        with pytest.raises(AuthorizationError):
            services.bids.create_bid(tx.id, alice)

    def test_usdt_requests_take_no_bids(self, services, usdt_request, bob):
        tx = usdt_request()
        with pytest.raises(StateConflictError):
            services.bids.create_bid(tx.id, bob)

    def test_no_bids_after_selection(self, services, fiat_request, alice, bob, carol):
        tx = fiat_request()
        services.bids.create_bid(tx.id, bob)
        services.settlement.select_trader(tx.id, alice, "bob")
        with pytest.raises(StateConflictError):
            services.bids.create_bid(tx.id, carol)

    def test_unknown_transaction(self, services, users, bob):
        with pytest.raises(NotFoundError):
            services.bids.create_bid("TX_MISSING", bob)

    def test_message_length(self, services, fiat_request, bob):
        tx = fiat_request()
        with pytest.raises(ValidationError):
            services.bids.create_bid(tx.id, bob, "x" * 501)


class TestWithdrawBid:

    def test_bidder_withdraws(self, services, fiat_request, bob):
        tx = fiat_request()
        bid = services.bids.create_bid(tx.id, bob)
        services.bids.delete_bid(bid.id, bob)
        assert services.bids.list_bids(tx.id) == []
        # The request stays in BIDDING once a bid was seen
        assert services.transactions.get_transaction(tx.id).otc_state == OTCState.BIDDING.value

    def test_only_bidder_withdraws(self, services, fiat_request, alice, bob):
        tx = fiat_request()
        bid = services.bids.create_bid(tx.id, bob)
        with pytest.raises(AuthorizationError):
            services.bids.delete_bid(bid.id, alice)

    def test_cannot_withdraw_after_selection(self, services, fiat_request, alice, bob):
        tx = fiat_request()
        bid = services.bids.create_bid(tx.id, bob)
        services.settlement.select_trader(tx.id, alice, "bob")
        with pytest.raises(StateConflictError):
            services.bids.delete_bid(bid.id, bob)

    def test_unknown_bid(self, services, users, bob):
        with pytest.raises(NotFoundError):
            services.bids.delete_bid("BD_MISSING", bob)


class TestSelectTrader:

    def test_requester_selects_bidder(self, services, fiat_request, alice, bob):
        tx = fiat_request()
        services.bids.create_bid(tx.id, bob)
        selected = services.settlement.select_trader(tx.id, alice, "bob")
        assert selected.selected_trader_id == "bob"
        assert selected.otc_state == OTCState.SELECTED_TRADER.value

    def test_select_without_bids(self, services, fiat_request, alice):
        tx = fiat_request()
        with pytest.raises(StateConflictError):
            services.settlement.select_trader(tx.id, alice, "bob")

    def test_select_user_without_bid(self, services, fiat_request, alice, bob):
        tx = fiat_request()
        services.bids.create_bid(tx.id, bob)
        with pytest.raises(StateConflictError):
            services.settlement.select_trader(tx.id, alice, "carol")

    def test_only_requester_selects(self, services, fiat_request, bob, carol):
        tx = fiat_request()
        services.bids.create_bid(tx.id, bob)
        with pytest.raises(AuthorizationError):
            services.settlement.select_trader(tx.id, carol, "bob")

    def test_requester_cannot_select_self(self, services, fiat_request, alice, bob):
        tx = fiat_request()
        services.bids.create_bid(tx.id, bob)
        with pytest.raises(ValidationError):
            services.settlement.select_trader(tx.id, alice, "alice")

    def test_selection_is_final(self, services, fiat_request, alice, bob, carol):
        tx = fiat_request()
        services.bids.create_bid(tx.id, bob)
        services.bids.create_bid(tx.id, carol)
        services.settlement.select_trader(tx.id, alice, "bob")
        with pytest.raises(StateConflictError):
            services.settlement.select_trader(tx.id, alice, "carol")

    def test_usdt_trader_self_selects(self, services, usdt_request, carol):
        tx = usdt_request()
        selected = services.settlement.select_trader(tx.id, carol, "carol")
        assert selected.selected_trader_id == "carol"
        assert selected.otc_state == OTCState.OPEN_REQUEST.value

    def test_usdt_trader_cannot_select_someone_else(self, services, usdt_request, carol):
        tx = usdt_request()
        with pytest.raises(AuthorizationError):
            services.settlement.select_trader(tx.id, carol, "bob")

    def test_usdt_second_trader_rejected(self, services, usdt_request, bob, carol):
        tx = usdt_request()
        services.settlement.select_trader(tx.id, carol, "carol")
        with pytest.raises(StateConflictError) as exc_info:
            services.settlement.select_trader(tx.id, bob, "bob")
        assert not isinstance(exc_info.value, DuplicateActionError)
        with pytest.raises(DuplicateActionError):
            services.settlement.select_trader(tx.id, carol, "carol")

    def test_selection_notifies_both_sides(self, services, fiat_request, alice, bob):
        tx = fiat_request()
        services.bids.create_bid(tx.id, bob)
        services.settlement.select_trader(tx.id, alice, "bob")
        titles = [n.title for n in services.notifications.list_notifications("bob")]
        assert "Request update: Selected Trader" in titles
