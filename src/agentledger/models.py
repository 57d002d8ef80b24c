"""
Ledger entities.

Amounts are integer micros, timestamps integer milliseconds since the epoch.
Entities reference each other by identifier only.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from .money import micros_to_float


class AllowanceStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    EXHAUSTED = "exhausted"


class TransactionStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    CANCELLED = "cancelled"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class BillingInterval(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


def now_ms(clock: Callable[[], float] = time.time) -> int:
    return int(clock() * 1000)


def period_keys(timestamp_ms: int) -> tuple[str, str, str]:
    """Return the UTC (day, ISO week, month) keys a timestamp falls in."""
    dt = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    iso_year, iso_week, _ = dt.isocalendar()
    return dt.strftime("%Y-%m-%d"), f"{iso_year}-W{iso_week:02d}", dt.strftime("%Y-%m")


@dataclass
class Allowance:
    """A spending budget granted by an owner to an agent."""

    allowance_id: str
    agent_id: str
    owner_id: str
    daily_limit_micros: int = 0
    weekly_limit_micros: int = 0
    monthly_limit_micros: int = 0
    spent_today_micros: int = 0
    spent_this_week_micros: int = 0
    spent_this_month_micros: int = 0
    status: str = AllowanceStatus.ACTIVE.value
    created_at: int = 0
    day_key: str = ""
    week_key: str = ""
    month_key: str = ""

    def rolled(self, timestamp_ms: int) -> Allowance:
        """Copy with counters of elapsed periods reset to zero."""
        day, week, month = period_keys(timestamp_ms)
        return replace(
            self,
            spent_today_micros=self.spent_today_micros if self.day_key == day else 0,
            spent_this_week_micros=self.spent_this_week_micros if self.week_key == week else 0,
            spent_this_month_micros=self.spent_this_month_micros if self.month_key == month else 0,
            day_key=day,
            week_key=week,
            month_key=month,
        )

    def windows(self) -> list[tuple[str, int, int]]:
        """(name, limit, spent) per period, in the order limits are enforced."""
        return [
            ("Daily", self.daily_limit_micros, self.spent_today_micros),
            ("Weekly", self.weekly_limit_micros, self.spent_this_week_micros),
            ("Monthly", self.monthly_limit_micros, self.spent_this_month_micros),
        ]

    def to_dict(self) -> dict:
        return {
            "allowance_id": self.allowance_id,
            "agent_id": self.agent_id,
            "owner_id": self.owner_id,
            "daily_limit": micros_to_float(self.daily_limit_micros),
            "weekly_limit": micros_to_float(self.weekly_limit_micros),
            "monthly_limit": micros_to_float(self.monthly_limit_micros),
            "spent_today": micros_to_float(self.spent_today_micros),
            "spent_this_week": micros_to_float(self.spent_this_week_micros),
            "spent_this_month": micros_to_float(self.spent_this_month_micros),
            "status": self.status,
            "created_at": self.created_at,
        }


@dataclass
class Transaction:
    """An immutable record of a completed spend."""

    transaction_id: str
    allowance_id: str
    amount_micros: int
    category: str
    recipient: str
    status: str = TransactionStatus.SUCCESS.value
    timestamp: int = 0

    @property
    def amount(self) -> float:
        return micros_to_float(self.amount_micros)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["amount"] = self.amount
        del d["amount_micros"]
        return d


@dataclass
class Invoice:
    """A bill from an issuer to a recipient."""

    invoice_id: str
    issuer_id: str
    recipient_id: str
    amount_micros: int
    currency: str = "USDC"
    status: str = InvoiceStatus.DRAFT.value
    due_at: Optional[int] = None
    created_at: int = 0
    memo: Optional[str] = None
    paid_transaction_id: Optional[str] = None

    @property
    def amount(self) -> float:
        return micros_to_float(self.amount_micros)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["amount"] = self.amount
        del d["amount_micros"]
        return d


@dataclass
class Subscription:
    """A recurring billing agreement bound to one allowance."""

    subscription_id: str
    subscriber_id: str
    provider_id: str
    plan_id: str
    amount_micros: int
    interval: str
    next_billing_date: int
    allowance_id: str
    status: str = SubscriptionStatus.ACTIVE.value
    created_at: int = 0

    @property
    def amount(self) -> float:
        return micros_to_float(self.amount_micros)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["amount"] = self.amount
        del d["amount_micros"]
        return d
