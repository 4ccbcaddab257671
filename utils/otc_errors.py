"""
OTC error taxonomy
Every failure the settlement core raises derives from OTCError and carries a
stable error code plus the HTTP status the API layer answers with.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(Enum):
    """Error categories for classification"""

    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    STATE_CONFLICT = "state_conflict"
    NOT_FOUND = "not_found"
    EXTERNAL_API = "external_api"
    DATABASE = "database"


class ProviderErrorKind(Enum):
    """Why the wallet-signing provider failed"""

    REFUSED = "refused"                # User rejected or provider declined; do not retry
    INFRASTRUCTURE = "infrastructure"  # Network, RPC, timeout; safe to retry


class OTCError(Exception):
    """Base class for settlement core errors"""

    code = "OTC_ERROR"
    category = ErrorCategory.VALIDATION
    http_status = 400
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "error": self.code,
            "category": self.category.value,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            data["details"] = self.details
        return data


class ValidationError(OTCError):
    """Malformed or out-of-range input"""

    code = "VALIDATION_ERROR"
    category = ErrorCategory.VALIDATION
    http_status = 400


class AuthorizationError(OTCError):
    """Caller does not hold the role the action requires"""

    code = "NOT_AUTHORIZED"
    category = ErrorCategory.AUTHORIZATION
    http_status = 403


class StateConflictError(OTCError):
    """Action is not legal in the transaction's current state"""

    code = "STATE_CONFLICT"
    category = ErrorCategory.STATE_CONFLICT
    http_status = 409


class DuplicateActionError(StateConflictError):
    """The action was already performed; carries the existing entity when known"""

    code = "DUPLICATE_ACTION"

    def __init__(self, message: str, existing: Any = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        # Snapshot now: the row is gone from the session once the unit of work rolls back
        if existing is not None and hasattr(existing, "to_dict"):
            existing = existing.to_dict()
        self.existing: Optional[Dict[str, Any]] = existing

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.existing is not None:
            data["existing"] = self.existing
        return data


class NotFoundError(OTCError):
    """Referenced transaction, bid, escrow record or user does not exist"""

    code = "NOT_FOUND"
    category = ErrorCategory.NOT_FOUND
    http_status = 404


class ExternalProviderError(OTCError):
    """Wallet-signing provider failed before anything was recorded"""

    code = "PROVIDER_ERROR"
    category = ErrorCategory.EXTERNAL_API
    http_status = 502

    def __init__(
        self,
        message: str,
        kind: ProviderErrorKind = ProviderErrorKind.INFRASTRUCTURE,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.kind = kind

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.kind == ProviderErrorKind.INFRASTRUCTURE

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["kind"] = self.kind.value
        return data


class SettlementRecordingError(OTCError):
    """
    The on-chain step succeeded but recording it failed.

    The chain is now ahead of the feed; the caller must retry the recording
    call with the same on-chain reference.
    """

    code = "SETTLEMENT_RECORDING_FAILED"
    category = ErrorCategory.DATABASE
    http_status = 503
    retryable = True

    def __init__(self, message: str, onchain_reference: Any = None, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if onchain_reference is not None:
            details.setdefault("onchainReference", onchain_reference)
        super().__init__(message, details)
        self.onchain_reference = onchain_reference
