"""Input checks applied before a request reaches the billing core."""

from __future__ import annotations

import math
from decimal import Decimal, InvalidOperation
from typing import Any, Optional
from urllib.parse import urlparse

from .errors import ValidationError
from .models import AllowanceStatus, BillingInterval

DEFAULT_PAGE_LIMIT = 50
MAX_PAGE_LIMIT = 100

# Owners may pause and resume; "exhausted" is set by the system.
SETTABLE_ALLOWANCE_STATUSES = (AllowanceStatus.ACTIVE.value, AllowanceStatus.PAUSED.value)


def require_id(field: str, value: Optional[str], label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field, f"{label} is required")
    return value


def validate_number(field: str, value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(field, f"{field} must be a number")
    try:
        dec = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(field, f"{field} must be a number") from None
    if not dec.is_finite():
        raise ValidationError(field, f"{field} must be a finite number")
    return dec


def validate_limit(field: str, value: Any) -> Decimal:
    dec = validate_number(field, value)
    if dec < 0:
        raise ValidationError(field, f"{field} must be greater than or equal to 0")
    return dec


def validate_amount(value: Any, field: str = "amount") -> Decimal:
    dec = validate_number(field, value)
    if dec <= 0:
        raise ValidationError(field, "Amount must be positive")
    return dec


def validate_interval(value: Optional[str]) -> BillingInterval:
    if value is None:
        return BillingInterval.MONTHLY
    try:
        return BillingInterval(value)
    except ValueError:
        allowed = ", ".join(i.value for i in BillingInterval)
        raise ValidationError("interval", f"interval must be one of: {allowed}") from None


def validate_allowance_status(value: Optional[str]) -> Optional[AllowanceStatus]:
    if value is None:
        return None
    if value not in SETTABLE_ALLOWANCE_STATUSES:
        raise ValidationError("status", "status must be one of: active, paused")
    return AllowanceStatus(value)


def validate_pagination(limit: Optional[int] = None, offset: Optional[int] = None) -> tuple[int, int]:
    """Return ``(limit, offset)`` with defaults applied."""
    if limit is None:
        limit = DEFAULT_PAGE_LIMIT
    if offset is None:
        offset = 0
    if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_PAGE_LIMIT:
        raise ValidationError("limit", f"limit must be between 1 and {MAX_PAGE_LIMIT}")
    if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
        raise ValidationError("offset", "offset must be greater than or equal to 0")
    return limit, offset


def validate_webhook_url(url: Optional[str]) -> str:
    if not isinstance(url, str) or not url:
        raise ValidationError("url", "Webhook URL is required")
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError("url", f"Invalid webhook URL: {url}")
    return url


def validate_due_at(value: Optional[int]) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValidationError("due_at", "due_at must be a timestamp in milliseconds")
    return int(value)
