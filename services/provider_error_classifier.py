"""
Wallet Provider Error Classification
Determines whether a wallet-signing failure was refused (do not retry) or an
infrastructure hiccup (safe to retry with the same parameters)
"""

import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from utils.otc_errors import ExternalProviderError, ProviderErrorKind

logger = logging.getLogger(__name__)


class ProviderErrorCode(Enum):
    USER_REJECTED = "user_rejected"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INSUFFICIENT_ALLOWANCE = "insufficient_allowance"
    CONTRACT_REVERTED = "contract_reverted"
    INVALID_PARAMS = "invalid_params"
    WALLET_NOT_CONNECTED = "wallet_not_connected"
    NETWORK_ERROR = "network_error"
    RPC_TIMEOUT = "rpc_timeout"
    RPC_UNAVAILABLE = "rpc_unavailable"
    RATE_LIMITED = "rate_limited"
    NONCE_CONFLICT = "nonce_conflict"
    UNKNOWN_ERROR = "unknown_error"


class ProviderErrorClassifier:
    """Classifies wallet provider errors for retry decisions"""

    REFUSED_ERROR_PATTERNS = {
        r"user.*(rejected|denied|cancel)|rejected.*by.*user|4001": ProviderErrorCode.USER_REJECTED,
        r"insufficient.*funds|balance.*too.*low|exceeds.*balance": ProviderErrorCode.INSUFFICIENT_FUNDS,
        r"insufficient.*allowance|allowance.*exceeded|approve.*first": ProviderErrorCode.INSUFFICIENT_ALLOWANCE,
        r"execution.*reverted|transaction.*reverted|revert": ProviderErrorCode.CONTRACT_REVERTED,
        r"invalid.*(address|amount|param|argument)|-32602": ProviderErrorCode.INVALID_PARAMS,
        r"wallet.*not.*connected|no.*account|not.*authorized.*account": ProviderErrorCode.WALLET_NOT_CONNECTED,
    }

    INFRASTRUCTURE_ERROR_PATTERNS = {
        r"timeout|timed.*out": ProviderErrorCode.RPC_TIMEOUT,
        r"rate.*limit|too.*many.*requests|429": ProviderErrorCode.RATE_LIMITED,
        r"nonce.*too.*low|replacement.*underpriced|already.*known": ProviderErrorCode.NONCE_CONFLICT,
        r"service.*unavailable|bad.*gateway|502|503|504|-32603|internal.*json-rpc": ProviderErrorCode.RPC_UNAVAILABLE,
        r"network.*error|connection.*(error|refused|reset)|econnreset|failed.*to.*fetch": ProviderErrorCode.NETWORK_ERROR,
    }

    RETRY_CONFIG = {
        ProviderErrorCode.RPC_TIMEOUT: {"max_retries": 3, "backoff_delays": [2, 5, 15]},
        ProviderErrorCode.RATE_LIMITED: {"max_retries": 3, "backoff_delays": [10, 30, 60]},
        ProviderErrorCode.NONCE_CONFLICT: {"max_retries": 2, "backoff_delays": [5, 15]},
        ProviderErrorCode.RPC_UNAVAILABLE: {"max_retries": 4, "backoff_delays": [5, 15, 30, 60]},
        ProviderErrorCode.NETWORK_ERROR: {"max_retries": 4, "backoff_delays": [2, 5, 15, 30]},
        ProviderErrorCode.UNKNOWN_ERROR: {"max_retries": 1, "backoff_delays": [10]},
    }

    @classmethod
    def _detect_error_code(cls, error_message: str) -> Tuple[ProviderErrorKind, ProviderErrorCode]:
        # Refusals win: "user rejected ... timeout" is still a refusal
        for pattern, code in cls.REFUSED_ERROR_PATTERNS.items():
            if re.search(pattern, error_message, re.IGNORECASE):
                return ProviderErrorKind.REFUSED, code
        for pattern, code in cls.INFRASTRUCTURE_ERROR_PATTERNS.items():
            if re.search(pattern, error_message, re.IGNORECASE):
                return ProviderErrorKind.INFRASTRUCTURE, code
        return ProviderErrorKind.INFRASTRUCTURE, ProviderErrorCode.UNKNOWN_ERROR

    @classmethod
    def classify_error(
        cls, exception: Exception, context: Optional[Dict[str, Any]] = None
    ) -> Tuple[ProviderErrorKind, ProviderErrorCode, bool, int]:
        """
        Classify a wallet provider error

        Returns:
            Tuple of (kind, error_code, retryable, recommended_delay_seconds)
        """
        error_message = str(exception)
        logger.info(
            f"🔍 PROVIDER_CLASSIFICATION_START: {type(exception).__name__}: {error_message[:100]}"
        )
        if context:
            logger.debug(f"🔍 PROVIDER_CLASSIFICATION_CONTEXT: {context}")

        kind, error_code = cls._detect_error_code(error_message)
        retryable = kind == ProviderErrorKind.INFRASTRUCTURE
        recommended_delay = 0
        if retryable:
            recommended_delay = cls.RETRY_CONFIG.get(error_code, {"backoff_delays": [10]})["backoff_delays"][0]

        logger.info(
            f"✅ PROVIDER_CLASSIFICATION_RESULT: {error_code.value} -> {kind.value} "
            f"(retryable={retryable}, delay={recommended_delay}s)"
        )
        return kind, error_code, retryable, recommended_delay

    @classmethod
    def to_provider_error(
        cls, exception: Exception, operation: str, context: Optional[Dict[str, Any]] = None
    ) -> ExternalProviderError:
        """Wrap a raw provider exception into the OTC error taxonomy"""
        kind, error_code, retryable, delay = cls.classify_error(exception, context)
        if kind == ProviderErrorKind.REFUSED:
            message = f"Wallet provider refused {operation}: {exception}"
        else:
            message = f"Wallet provider unavailable during {operation}, please retry: {exception}"
        return ExternalProviderError(
            message,
            kind=kind,
            details={
                "operation": operation,
                "providerErrorCode": error_code.value,
                "retryAfterSeconds": delay,
                "classifiedAt": datetime.now(timezone.utc).isoformat(),
            },
        )
