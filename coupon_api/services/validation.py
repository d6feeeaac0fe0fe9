"""
Field-level validation for coupon records.

Runs on the merged record (stored values overlaid with the incoming
changes) at create and update time, and returns every problem found so an
admin UI can show them all at once.
"""

import re
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional

from coupon_api.models.coupon import DiscountType, IssuanceChannel, to_decimal

CODE_PATTERN = re.compile(r"^[A-Z0-9]{3,20}$")

FieldError = Dict[str, str]


def normalize_code(code: str) -> str:
    """Coupon codes are stored trimmed and uppercase."""
    return code.strip().upper()


def _as_decimal(value: Any) -> Optional[Decimal]:
    try:
        return to_decimal(value)
    except (InvalidOperation, ValueError, TypeError):
        return None


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _expiration_day(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).date()
    if isinstance(value, date):
        return value
    return None


def validate_coupon_fields(
    data: Mapping[str, Any],
    today: Optional[date] = None,
) -> List[FieldError]:
    """
    Validate a full coupon record.

    Args:
        data: Field values keyed by model attribute name. ``used_count`` and
            ``issued_count`` may be present for records that already exist.
        today: Reference day for the expiration check, defaults to today (UTC).

    Returns:
        List of ``{"field", "message"}`` dicts, empty when the record is valid.
    """
    errors: List[FieldError] = []
    today = today or datetime.now(timezone.utc).date()

    def add(field: str, message: str) -> None:
        errors.append({"field": field, "message": message})

    code = data.get("code")
    if not code:
        add("code", "Coupon code is required")
    elif not CODE_PATTERN.match(code):
        add(
            "code",
            "Coupon code must be 3-20 characters long and contain only letters and numbers",
        )

    name = (data.get("name") or "").strip()
    if not name or len(name) > 100:
        add("name", "Name must be 1-100 characters long")

    description = data.get("description")
    if description is not None and len(description) > 500:
        add("description", "Description must not exceed 500 characters")

    discount_type = data.get("discount_type")
    valid_types = {t.value for t in DiscountType}
    if discount_type not in valid_types:
        add("discount_type", "Discount type must be either percentage or fixed")

    discount_value = _as_decimal(data.get("discount_value"))
    if discount_value is None:
        add("discount_value", "Discount value is required")
    elif discount_type == DiscountType.PERCENTAGE.value:
        if not (Decimal(0) < discount_value <= Decimal(100)):
            add("discount_value", "Percentage discount must be between 0 and 100")
    elif discount_value <= 0:
        add("discount_value", "Fixed discount must be greater than 0")

    minimum = data.get("minimum_order_amount")
    if minimum is not None:
        minimum = _as_decimal(minimum)
        if minimum is None or minimum < 0:
            add("minimum_order_amount", "Minimum order amount must be 0 or greater")

    maximum = data.get("maximum_discount_amount")
    if maximum is not None:
        maximum = _as_decimal(maximum)
        if maximum is None or maximum <= 0:
            add(
                "maximum_discount_amount",
                "Maximum discount amount must be greater than 0 when specified",
            )

    expiration = data.get("expiration_date")
    expiration_day = _expiration_day(expiration)
    if expiration is None:
        add("expiration_date", "Expiration date is required")
    elif expiration_day is None:
        add("expiration_date", "Expiration date must be a valid date")
    elif expiration_day < today:
        add("expiration_date", "Expiration date must be today or in the future")

    usage_limit = data.get("usage_limit")
    if usage_limit is not None:
        if not _is_positive_int(usage_limit):
            add("usage_limit", "Usage limit must be a positive integer or null for unlimited")
        elif usage_limit < (data.get("used_count") or 0):
            add(
                "usage_limit",
                f"Usage limit cannot be lower than the current usage count ({data['used_count']})",
            )

    issuance_limit = data.get("issuance_limit")
    if issuance_limit is not None:
        if not _is_positive_int(issuance_limit):
            add(
                "issuance_limit",
                "Issuance limit must be a positive integer or null for unlimited",
            )
        elif issuance_limit < (data.get("issued_count") or 0):
            add(
                "issuance_limit",
                f"Issuance limit cannot be lower than the current issued count ({data['issued_count']})",
            )

    user_usage_limit = data.get("user_usage_limit", 1)
    if not _is_positive_int(user_usage_limit):
        add("user_usage_limit", "User usage limit must be a positive integer")
    elif user_usage_limit < (data.get("max_user_usage") or 0):
        add(
            "user_usage_limit",
            "User usage limit cannot be lower than an existing user's usage count "
            f"({data['max_user_usage']})",
        )

    return errors


def validate_channel(channel: str) -> List[FieldError]:
    if channel not in {c.value for c in IssuanceChannel}:
        return [{"field": "channel", "message": "Invalid channel"}]
    return []
