"""
Shared fixtures for the OTC feed test suite

Every test gets its own in-memory SQLite database with the full schema, a
service registry bound to it and three registered users:
- alice: requester in most scenarios
- bob, carol: traders
"""

import os

# Never touch a developer database from the test run
os.environ.setdefault("DATABASE_URL", "sqlite://")

import logging
from unittest.mock import Mock

import pytest

from database import build_engine, make_session_factory
from models import Base
from services.service_registry import build_services
from services.transaction_service import CreateTransactionRequest
from utils.caller_context import CallerContext

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

WALLETS = {
    "alice": "0xaaaa000000000000000000000000000000000001",
    "bob": "0xbbbb000000000000000000000000000000000002",
    "carol": "0xcccc000000000000000000000000000000000003",
}


# ============================================================================
# DATABASE
# ============================================================================

@pytest.fixture
def engine():
    test_engine = build_engine("sqlite://")
    Base.metadata.create_all(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def services(session_factory):
    return build_services(session_factory)


@pytest.fixture
def users(services):
    """Register alice, bob and carol with linked wallets"""
    for user_id in ("alice", "bob", "carol"):
        services.users.register_user(
            user_id, user_id, name=user_id.title(), wallet_address=WALLETS[user_id]
        )
    return WALLETS


# ============================================================================
# CALLERS
# ============================================================================

def as_user(user_id: str, with_wallet: bool = True) -> CallerContext:
    return CallerContext(user_id, WALLETS.get(user_id) if with_wallet else None)


@pytest.fixture
def caller_for():
    """Factory for callers outside the three default users"""
    return as_user


@pytest.fixture
def alice():
    return as_user("alice")


@pytest.fixture
def bob():
    return as_user("bob")


@pytest.fixture
def carol():
    return as_user("carol")


# ============================================================================
# TRADE FACTORIES
# ============================================================================

@pytest.fixture
def fiat_request(services, users, alice):
    """alice asks for 165,000 NGN and offers 100 USDT from her own wallet"""
    def _create(amount="165000", offer="100", currency="NGN"):
        payload = CreateTransactionRequest.from_payload({
            "type": "REQUEST",
            "amount": amount,
            "currency": currency,
            "isOTC": True,
            "otcFiatCurrency": "USDT",
            "otcOfferAmount": offer,
            "note": "Need naira",
        })
        return services.transactions.create_transaction(alice, payload)
    return _create


@pytest.fixture
def usdt_request(services, users, alice):
    """alice asks for 50 USDT and pays 82,500 NGN off-platform"""
    def _create(amount="50", offer="82500", fiat="NGN"):
        payload = CreateTransactionRequest.from_payload({
            "type": "REQUEST",
            "amount": amount,
            "currency": "USDT",
            "isOTC": True,
            "otcFiatCurrency": fiat,
            "otcOfferAmount": offer,
        })
        return services.transactions.create_transaction(alice, payload)
    return _create


@pytest.fixture
def funded_fiat_trade(services, fiat_request, alice, bob):
    """Fiat request with bob selected and alice's 100 USDT recorded in escrow"""
    tx = fiat_request()
    services.bids.create_bid(tx.id, bob, "I can pay today")
    services.settlement.select_trader(tx.id, alice, "bob")
    services.settlement.record_escrow_order(tx.id, alice, WALLETS["bob"], "100", 42)
    return tx


@pytest.fixture
def funded_usdt_trade(services, usdt_request, carol):
    """USDT request with carol self-selected and her 50 USDT recorded in escrow"""
    tx = usdt_request()
    services.settlement.record_escrow_order(tx.id, carol, WALLETS["alice"], "50", 7)
    return tx


@pytest.fixture
def failing_sink():
    sink = Mock()
    sink.deliver.side_effect = RuntimeError("push gateway down")
    return sink
