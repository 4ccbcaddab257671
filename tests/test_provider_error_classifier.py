"""
Wallet provider error classification tests
"""

import pytest

from services.provider_error_classifier import ProviderErrorClassifier, ProviderErrorCode
from utils.otc_errors import ProviderErrorKind


@pytest.mark.parametrize("message,code", [
    ("MetaMask Tx Signature: User denied transaction signature.", ProviderErrorCode.USER_REJECTED),
    ("code 4001: request rejected", ProviderErrorCode.USER_REJECTED),
    ("insufficient funds for gas * price + value", ProviderErrorCode.INSUFFICIENT_FUNDS),
    ("ERC20: insufficient allowance", ProviderErrorCode.INSUFFICIENT_ALLOWANCE),
    ("execution reverted: order exists", ProviderErrorCode.CONTRACT_REVERTED),
    ("invalid address", ProviderErrorCode.INVALID_PARAMS),
])
def test_refusals_are_not_retryable(message, code):
    kind, error_code, retryable, delay = ProviderErrorClassifier.classify_error(Exception(message))
    assert kind == ProviderErrorKind.REFUSED
    assert error_code == code
    assert retryable is False
    assert delay == 0


@pytest.mark.parametrize("message,code,delay", [
    ("RPC request timed out", ProviderErrorCode.RPC_TIMEOUT, 2),
    ("429 Too Many Requests", ProviderErrorCode.RATE_LIMITED, 10),
    ("nonce too low", ProviderErrorCode.NONCE_CONFLICT, 5),
    ("503 Service Unavailable", ProviderErrorCode.RPC_UNAVAILABLE, 5),
    ("connection reset by peer", ProviderErrorCode.NETWORK_ERROR, 2),
])
def test_infrastructure_errors_are_retryable(message, code, delay):
    kind, error_code, retryable, recommended = ProviderErrorClassifier.classify_error(Exception(message))
    assert kind == ProviderErrorKind.INFRASTRUCTURE
    assert error_code == code
    assert retryable is True
    assert recommended == delay


def test_unknown_errors_default_to_retryable():
    kind, error_code, retryable, delay = ProviderErrorClassifier.classify_error(RuntimeError("weird"))
    assert kind == ProviderErrorKind.INFRASTRUCTURE
    assert error_code == ProviderErrorCode.UNKNOWN_ERROR
    assert retryable is True
    assert delay == 10


def test_refusal_wins_over_infrastructure_hint():
    kind, error_code, _, _ = ProviderErrorClassifier.classify_error(
        Exception("User rejected the request after timeout")
    )
    assert kind == ProviderErrorKind.REFUSED
    assert error_code == ProviderErrorCode.USER_REJECTED


def test_provider_error_carries_details():
    error = ProviderErrorClassifier.to_provider_error(
        Exception("bad gateway"), "createOrder", context={"transactionId": "TX1"}
    )
    data = error.to_dict()
    assert data["error"] == "PROVIDER_ERROR"
    assert data["kind"] == "infrastructure"
    assert data["retryable"] is True
    assert data["details"]["operation"] == "createOrder"
    assert data["details"]["providerErrorCode"] == "rpc_unavailable"
    assert "retry" in error.message
