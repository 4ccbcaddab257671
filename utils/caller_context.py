"""
Request-scoped caller identity
Every operation that acts on behalf of a user receives a CallerContext instead
of reading identity from shared state.
"""

import uuid
from dataclasses import dataclass, field
from typing import Optional

from utils.helpers import normalize_address
from utils.otc_errors import AuthorizationError


@dataclass(frozen=True)
class CallerContext:
    user_id: str
    wallet_address: Optional[str] = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    @classmethod
    def from_headers(cls, user_id: Optional[str], wallet_address: Optional[str] = None,
                     request_id: Optional[str] = None) -> "CallerContext":
        """Build a context from identity-provider headers"""
        if not user_id or not user_id.strip():
            raise AuthorizationError("Missing caller identity")
        if request_id:
            return cls(user_id.strip(), normalize_address(wallet_address), request_id)
        return cls(user_id.strip(), normalize_address(wallet_address))

    @property
    def wallet(self) -> Optional[str]:
        return normalize_address(self.wallet_address)
