"""
Recurring billing.

Each cycle creates an invoice from provider to subscriber, sends it and pays it
from the subscription's bound allowance. The payment and the move of
``next_billing_date`` commit together; a failed step leaves the subscription
untouched so the next scan retries it.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from dateutil.relativedelta import relativedelta

from .allowance import Amount
from .errors import StorageError
from .ledger import Ledger
from .models import BillingInterval, Subscription, SubscriptionStatus, now_ms
from .money import amount_to_micros, micros_to_decimal
from .store import LedgerStore

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)


def advance_billing_date(timestamp_ms: int, interval: str | BillingInterval) -> int:
    """Move a billing date forward by one interval (UTC, calendar-aware months).

    Month-end dates clamp to the last day of the next month, so Jan 31 bills
    next on Feb 28 (or 29).
    """
    unit = BillingInterval(interval)
    current = _EPOCH + timedelta(milliseconds=timestamp_ms)
    if unit is BillingInterval.DAILY:
        nxt = current + timedelta(days=1)
    elif unit is BillingInterval.WEEKLY:
        nxt = current + timedelta(days=7)
    else:
        nxt = current + relativedelta(months=1)
    return (nxt - _EPOCH) // _ONE_MS


@dataclass
class SubscriptionResult:
    """Result of a subscription operation or billing cycle."""

    success: bool
    subscription_id: Optional[str] = None
    invoice_id: Optional[str] = None
    transaction_id: Optional[str] = None
    next_billing_date: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "subscription_id": self.subscription_id,
            "invoice_id": self.invoice_id,
            "transaction_id": self.transaction_id,
            "next_billing_date": self.next_billing_date,
            "error": self.error,
        }


@dataclass
class BillingRun:
    """Aggregate outcome of one due-subscription scan."""

    processed: int = 0
    failures: int = 0
    details: list[dict] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "failures": self.failures,
            "details": self.details,
            "error": self.error,
        }


class SubscriptionBiller:
    """Creates subscriptions and drives their billing cycles through the ledger."""

    def __init__(
        self,
        store: LedgerStore,
        ledger: Ledger,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.ledger = ledger
        self.clock = clock

    def create_subscription(
        self,
        subscriber_id: str,
        provider_id: str,
        plan_id: str,
        amount: Amount,
        interval: str | BillingInterval,
        allowance_id: str,
    ) -> SubscriptionResult:
        created_at = now_ms(self.clock)
        sub = Subscription(
            subscription_id=str(uuid.uuid4()),
            subscriber_id=subscriber_id,
            provider_id=provider_id,
            plan_id=plan_id,
            amount_micros=amount_to_micros(amount),
            interval=BillingInterval(interval).value,
            # first charge happens on the next processing pass
            next_billing_date=created_at,
            allowance_id=allowance_id,
            status=SubscriptionStatus.ACTIVE.value,
            created_at=created_at,
        )
        try:
            with self.store.transaction() as conn:
                self.store.insert_subscription(conn, sub)
        except StorageError:
            logger.exception("Create subscription failed for %s", subscriber_id)
            return SubscriptionResult(success=False, error="Database error")
        logger.info(
            "Created %s subscription %s (%s -> %s)",
            sub.interval,
            sub.subscription_id,
            subscriber_id,
            provider_id,
        )
        return SubscriptionResult(
            success=True,
            subscription_id=sub.subscription_id,
            next_billing_date=sub.next_billing_date,
        )

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self.store.read() as conn:
            return self.store.get_subscription(conn, subscription_id)

    def list_subscriptions(
        self,
        agent_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Subscription]:
        with self.store.read() as conn:
            return self.store.list_subscriptions(conn, agent_id=agent_id, status=status, limit=limit, offset=offset)

    def set_status(self, subscription_id: str, status: str | SubscriptionStatus) -> SubscriptionResult:
        """Pause, resume or cancel a subscription. Cancelled is terminal."""
        target = SubscriptionStatus(status)
        try:
            with self.store.transaction() as conn:
                sub = self.store.get_subscription(conn, subscription_id)
                if sub is None:
                    return SubscriptionResult(
                        success=False, subscription_id=subscription_id, error="Subscription not found"
                    )
                if sub.status == SubscriptionStatus.CANCELLED.value:
                    return SubscriptionResult(
                        success=False, subscription_id=subscription_id, error="Subscription is cancelled"
                    )
                self.store.set_subscription_status(conn, subscription_id, target)
        except StorageError:
            logger.exception("Status change for subscription %s failed", subscription_id)
            return SubscriptionResult(success=False, subscription_id=subscription_id, error="Database error")
        logger.info("Subscription %s is now %s", subscription_id, target.value)
        return SubscriptionResult(success=True, subscription_id=subscription_id)

    def process_billing(self, subscription_id: str) -> SubscriptionResult:
        """Run one billing cycle for a subscription."""
        try:
            sub = self.get_subscription(subscription_id)
        except StorageError:
            logger.exception("Billing lookup for subscription %s failed", subscription_id)
            return SubscriptionResult(success=False, subscription_id=subscription_id, error="Database error")

        if sub is None:
            return SubscriptionResult(success=False, subscription_id=subscription_id, error="Subscription not found")
        if sub.status != SubscriptionStatus.ACTIVE.value:
            return SubscriptionResult(
                success=False, subscription_id=subscription_id, error="Subscription is not active"
            )
        try:
            next_date = advance_billing_date(sub.next_billing_date, sub.interval)
        except ValueError:
            return SubscriptionResult(
                success=False,
                subscription_id=subscription_id,
                error=f"Unsupported billing interval: {sub.interval}",
            )

        created = self.ledger.create_invoice(
            issuer_id=sub.provider_id,
            recipient_id=sub.subscriber_id,
            amount=micros_to_decimal(sub.amount_micros),
            due_at=now_ms(self.clock),
            memo=f"Subscription {sub.subscription_id} ({sub.plan_id})",
        )
        if not created.success or created.invoice_id is None:
            return SubscriptionResult(success=False, subscription_id=subscription_id, error=created.error)
        invoice_id = created.invoice_id

        sent = self.ledger.send_invoice(invoice_id)
        if not sent.success:
            return SubscriptionResult(
                success=False, subscription_id=subscription_id, invoice_id=invoice_id, error=sent.error
            )

        try:
            with self.store.transaction() as conn:
                current = self.store.get_subscription(conn, subscription_id)
                if (
                    current is None
                    or current.status != SubscriptionStatus.ACTIVE.value
                    or current.next_billing_date != sub.next_billing_date
                ):
                    return SubscriptionResult(
                        success=False,
                        subscription_id=subscription_id,
                        invoice_id=invoice_id,
                        error="Subscription changed during billing",
                    )
                paid = self.ledger.pay_within(conn, invoice_id, sub.subscriber_id, sub.allowance_id)
                if not paid.success:
                    return SubscriptionResult(
                        success=False,
                        subscription_id=subscription_id,
                        invoice_id=invoice_id,
                        error=paid.error or "Payment failed",
                    )
                self.store.set_next_billing_date(conn, subscription_id, next_date)
        except StorageError:
            logger.exception("Billing payment for subscription %s failed", subscription_id)
            return SubscriptionResult(
                success=False, subscription_id=subscription_id, invoice_id=invoice_id, error="Database error"
            )

        logger.info("Billed subscription %s (tx %s)", subscription_id, paid.transaction_id)
        return SubscriptionResult(
            success=True,
            subscription_id=subscription_id,
            invoice_id=invoice_id,
            transaction_id=paid.transaction_id,
            next_billing_date=next_date,
        )

    def process_due_subscriptions(
        self,
        now: Optional[int] = None,
        on_result: Optional[Callable[[Subscription, SubscriptionResult], None]] = None,
    ) -> BillingRun:
        """
        Bill every active subscription whose billing date has arrived, one at a time.

        ``on_result`` is called after each cycle with the subscription as it was
        before billing.
        """
        cutoff = now if now is not None else now_ms(self.clock)
        try:
            with self.store.read() as conn:
                due = self.store.list_due_subscriptions(conn, cutoff)
        except StorageError:
            logger.exception("Due-subscription scan failed")
            return BillingRun(error="Database error")

        run = BillingRun()
        for sub in due:
            result = self.process_billing(sub.subscription_id)
            run.details.append(result.to_dict())
            if on_result is not None:
                on_result(sub, result)
            if result.success:
                run.processed += 1
            else:
                run.failures += 1
                logger.warning("Billing failed for subscription %s: %s", sub.subscription_id, result.error)
        return run
