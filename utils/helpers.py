"""Helper functions shared by the feed services"""

import uuid
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from utils.otc_errors import ValidationError

logger = logging.getLogger(__name__)

CURRENCY_SYMBOLS = {
    "USDT": "₮",
    "NGN": "₦",
    "VES": "Bs.",
    "USD": "$",
}


def generate_unique_id(prefix: str = "") -> str:
    """Short sortable id: PREFIX + seconds-of-epoch tail + random hex"""
    timestamp = int(datetime.now(timezone.utc).timestamp())
    random_part = uuid.uuid4().hex[:10].upper()
    if prefix:
        return f"{prefix.upper()}{timestamp % 1000000:06d}{random_part}"
    return f"{timestamp % 1000000:06d}{random_part}"


def generate_transaction_id() -> str:
    return generate_unique_id("TX")


def generate_bid_id() -> str:
    return generate_unique_id("BD")


def parse_amount(value: Any, field_name: str = "amount") -> Decimal:
    """Parse a positive decimal amount from user input"""
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field_name} is required")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field_name} must be a number, got {value!r}")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"{field_name} must be greater than zero")
    return amount


def parse_optional_amount(value: Any, field_name: str) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return parse_amount(value, field_name)


def format_amount(amount, currency: str) -> str:
    """Format amount with currency for notification text"""
    symbol = CURRENCY_SYMBOLS.get(currency, "")
    value = Decimal(str(amount))
    if currency == "USDT":
        text = f"{value:,.2f}"
    else:
        text = f"{value:,.0f}" if value == value.to_integral_value() else f"{value:,.2f}"
    return f"{symbol}{text} {currency}".strip()


def truncate_text(text: str, max_length: int = 100) -> str:
    """Truncate text with ellipsis"""
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def normalize_address(address: Optional[str]) -> Optional[str]:
    """EVM addresses compare case-insensitively"""
    if not address:
        return None
    return address.strip().lower()
