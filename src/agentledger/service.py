"""
AgentLedger: the single entry point wiring the store, allowance engine,
ledger, subscription biller and webhook notifier together.

Inputs are validated here before reaching the core, and every state change an
agent cares about is announced through its registered webhooks. Notification
failures are logged and never change the outcome of the operation.
"""

from __future__ import annotations

import logging
import time
from decimal import Decimal
from typing import Any, Callable, Optional

from . import validation
from .allowance import Amount, AllowanceEngine, SpendCheck, SpendResult
from .config import LedgerConfig
from .errors import StorageError, ValidationError
from .ledger import DEFAULT_CURRENCY, Ledger, LedgerResult
from .models import (
    Allowance,
    BillingInterval,
    Invoice,
    Subscription,
    SubscriptionStatus,
    Transaction,
)
from .money import MICROS_PER_UNIT, amount_to_micros, micros_to_float
from .store import LedgerStore
from .subscriptions import BillingRun, SubscriptionBiller, SubscriptionResult
from .webhooks import NotificationResult, WebhookEvent, WebhookNotifier, WebhookRegistry

logger = logging.getLogger(__name__)

LIMIT_WARNING_RATIO = Decimal("0.8")

# Billing periods per month, for the recurring-spend estimate.
_MONTHLY_FACTOR = {
    BillingInterval.DAILY.value: Decimal(30),
    BillingInterval.WEEKLY.value: Decimal(52) / Decimal(12),
    BillingInterval.MONTHLY.value: Decimal(1),
}


class AgentLedger:
    """Validated, notifying front door to allowances, invoices and subscriptions."""

    def __init__(
        self,
        store: LedgerStore,
        notifier: Optional[WebhookNotifier] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.clock = clock
        self.allowances = AllowanceEngine(store, clock=clock)
        self.ledger = Ledger(store, self.allowances, clock=clock)
        self.biller = SubscriptionBiller(store, self.ledger, clock=clock)
        self.notifier = notifier if notifier is not None else WebhookNotifier()

    @classmethod
    def from_config(cls, config: Optional[LedgerConfig] = None) -> "AgentLedger":
        config = config or LedgerConfig.from_env()
        return cls(
            LedgerStore(config.db_path),
            notifier=WebhookNotifier(timeout_seconds=config.webhook_timeout_seconds),
        )

    @property
    def registry(self) -> WebhookRegistry:
        return self.notifier.registry

    def close(self) -> None:
        self.notifier.close()

    # ── Webhooks ──────────────────────────────────────────────────

    def register_webhook(self, agent_id: str, url: str) -> None:
        validation.require_id("agent_id", agent_id, "Agent ID")
        self.registry.register(agent_id, validation.validate_webhook_url(url))

    def unregister_webhook(self, agent_id: str, url: str) -> None:
        self.registry.unregister(agent_id, url)

    def get_webhooks(self, agent_id: str) -> list[str]:
        return self.registry.get_webhooks(agent_id)

    def _notify(self, agent_id: str, event: WebhookEvent, data: dict[str, Any]) -> NotificationResult:
        try:
            return self.notifier.notify_agent(agent_id, event, data)
        except Exception:
            logger.exception("Webhook %s for agent %s could not be dispatched", event.value, agent_id)
            return NotificationResult()

    # ── Allowances ────────────────────────────────────────────────

    def create_allowance(
        self,
        agent_id: str,
        owner_id: str,
        daily_limit: Amount = 0,
        weekly_limit: Amount = 0,
        monthly_limit: Amount = 0,
    ) -> Allowance:
        validation.require_id("agent_id", agent_id, "Agent ID")
        validation.require_id("owner_id", owner_id, "Owner ID")
        return self.allowances.create_allowance(
            agent_id,
            owner_id,
            daily_limit=validation.validate_limit("daily_limit", daily_limit),
            weekly_limit=validation.validate_limit("weekly_limit", weekly_limit),
            monthly_limit=validation.validate_limit("monthly_limit", monthly_limit),
        )

    def update_allowance(
        self,
        allowance_id: str,
        daily_limit: Optional[Amount] = None,
        weekly_limit: Optional[Amount] = None,
        monthly_limit: Optional[Amount] = None,
        status: Optional[str] = None,
    ) -> Optional[Allowance]:
        validation.require_id("allowance_id", allowance_id, "Allowance ID")
        return self.allowances.update_allowance(
            allowance_id,
            daily_limit=None if daily_limit is None else validation.validate_limit("daily_limit", daily_limit),
            weekly_limit=None if weekly_limit is None else validation.validate_limit("weekly_limit", weekly_limit),
            monthly_limit=(
                None if monthly_limit is None else validation.validate_limit("monthly_limit", monthly_limit)
            ),
            status=validation.validate_allowance_status(status),
        )

    def get_allowance(self, allowance_id: str) -> Optional[Allowance]:
        return self.allowances.get_allowance(allowance_id)

    def list_allowances(
        self,
        agent_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> list[Allowance]:
        limit, offset = validation.validate_pagination(limit, offset)
        return self.allowances.list_allowances(agent_id=agent_id, status=status, limit=limit, offset=offset)

    def list_transactions(
        self,
        allowance_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> list[Transaction]:
        limit, offset = validation.validate_pagination(limit, offset)
        return self.allowances.list_transactions(allowance_id=allowance_id, limit=limit, offset=offset)

    def check_spend(
        self,
        agent_id: str,
        amount: Amount,
        category: str,
        allowance_id: Optional[str] = None,
    ) -> SpendCheck:
        validation.require_id("agent_id", agent_id, "Agent ID")
        amount = validation.validate_number("amount", amount)
        return self.allowances.check_spend(agent_id, amount, category, allowance_id=allowance_id)

    def deduct_spend(
        self,
        agent_id: str,
        amount: Amount,
        category: str,
        recipient: str,
        allowance_id: Optional[str] = None,
    ) -> SpendResult:
        validation.require_id("agent_id", agent_id, "Agent ID")
        amount = validation.validate_number("amount", amount)
        result = self.allowances.deduct_spend(agent_id, amount, category, recipient, allowance_id=allowance_id)
        if result.success and result.allowance_id:
            self._check_limits(agent_id, result.allowance_id, amount_to_micros(amount))
        return result

    def _check_limits(self, agent_id: str, allowance_id: str, spent_micros: int) -> None:
        """Warn the agent when a spend pushed a window past 80% or 100% of its limit."""
        try:
            allowance = self.allowances.get_allowance(allowance_id)
        except StorageError:
            logger.exception("Limit check for allowance %s failed", allowance_id)
            return
        if allowance is None:
            return
        for name, limit, spent in allowance.windows():
            if limit <= 0:
                continue
            before = Decimal(spent - spent_micros) / limit
            after = Decimal(spent) / limit
            limit_type = name.lower()
            if after >= 1 > before:
                self._notify(
                    agent_id,
                    WebhookEvent.ALLOWANCE_EXHAUSTED,
                    {"allowance_id": allowance_id, "limit_type": limit_type},
                )
            elif after >= LIMIT_WARNING_RATIO > before:
                self._notify(
                    agent_id,
                    WebhookEvent.ALLOWANCE_LIMIT_WARNING,
                    {
                        "allowance_id": allowance_id,
                        "limit_type": limit_type,
                        "percent_used": float(round(after * 100, 2)),
                    },
                )

    # ── Invoices ──────────────────────────────────────────────────

    def create_invoice(
        self,
        issuer_id: str,
        recipient_id: str,
        amount: Amount,
        due_at: Optional[int] = None,
        currency: str = DEFAULT_CURRENCY,
        memo: Optional[str] = None,
    ) -> LedgerResult:
        validation.require_id("issuer_id", issuer_id, "Issuer ID")
        validation.require_id("recipient_id", recipient_id, "Recipient ID")
        amount = validation.validate_amount(amount)
        result = self.ledger.create_invoice(
            issuer_id,
            recipient_id,
            amount,
            due_at=validation.validate_due_at(due_at),
            currency=currency or DEFAULT_CURRENCY,
            memo=memo,
        )
        if result.success:
            self._notify(
                recipient_id,
                WebhookEvent.INVOICE_CREATED,
                {"invoice_id": result.invoice_id, "amount": float(amount), "issuer_id": issuer_id},
            )
        return result

    def send_invoice(self, invoice_id: str) -> LedgerResult:
        validation.require_id("invoice_id", invoice_id, "Invoice ID")
        result = self.ledger.send_invoice(invoice_id)
        if result.success:
            invoice = self.ledger.get_invoice(invoice_id)
            if invoice is not None:
                self._notify(
                    invoice.recipient_id,
                    WebhookEvent.INVOICE_SENT,
                    {"invoice_id": invoice_id, "amount": invoice.amount, "due_at": invoice.due_at},
                )
        return result

    def pay_invoice(self, invoice_id: str, agent_id: str, allowance_id: Optional[str] = None) -> LedgerResult:
        validation.require_id("invoice_id", invoice_id, "Invoice ID")
        validation.require_id("agent_id", agent_id, "Agent ID")
        result = self.ledger.pay_invoice(invoice_id, agent_id, allowance_id=allowance_id)
        if result.success:
            invoice = self.ledger.get_invoice(invoice_id)
            if invoice is not None:
                self._notify(
                    invoice.issuer_id,
                    WebhookEvent.INVOICE_PAID,
                    {"invoice_id": invoice_id, "amount": invoice.amount, "transaction_id": result.transaction_id},
                )
                if result.allowance_id:
                    self._check_limits(agent_id, result.allowance_id, invoice.amount_micros)
        return result

    def cancel_invoice(self, invoice_id: str) -> LedgerResult:
        validation.require_id("invoice_id", invoice_id, "Invoice ID")
        return self.ledger.cancel_invoice(invoice_id)

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        return self.ledger.get_invoice(invoice_id)

    def list_invoices(
        self,
        agent_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> list[Invoice]:
        limit, offset = validation.validate_pagination(limit, offset)
        return self.ledger.list_invoices(agent_id=agent_id, status=status, limit=limit, offset=offset)

    def notify_overdue_invoices(self, now: Optional[int] = None) -> list[str]:
        """Send ``invoice.overdue`` to the recipient of every overdue invoice. Returns their ids."""
        overdue = self.ledger.overdue_invoices(now)
        for invoice in overdue:
            self._notify(
                invoice.recipient_id,
                WebhookEvent.INVOICE_OVERDUE,
                {
                    "invoice_id": invoice.invoice_id,
                    "amount": invoice.amount,
                    "due_at": invoice.due_at,
                    "issuer_id": invoice.issuer_id,
                },
            )
        return [invoice.invoice_id for invoice in overdue]

    # ── Subscriptions ─────────────────────────────────────────────

    def create_subscription(
        self,
        subscriber_id: str,
        provider_id: str,
        plan_id: str,
        amount: Amount,
        interval: Optional[str] = None,
        allowance_id: Optional[str] = None,
    ) -> SubscriptionResult:
        validation.require_id("subscriber_id", subscriber_id, "Subscriber ID")
        validation.require_id("provider_id", provider_id, "Provider ID")
        validation.require_id("plan_id", plan_id, "Plan ID")
        validation.require_id("allowance_id", allowance_id, "Allowance ID")
        amount = validation.validate_amount(amount)
        unit = validation.validate_interval(interval)
        result = self.biller.create_subscription(subscriber_id, provider_id, plan_id, amount, unit, allowance_id)
        if result.success:
            self._notify(
                provider_id,
                WebhookEvent.SUBSCRIPTION_CREATED,
                {
                    "subscription_id": result.subscription_id,
                    "subscriber_id": subscriber_id,
                    "plan_id": plan_id,
                    "amount": float(amount),
                    "interval": unit.value,
                },
            )
        return result

    def process_billing(self, subscription_id: str) -> SubscriptionResult:
        validation.require_id("subscription_id", subscription_id, "Subscription ID")
        try:
            sub = self.biller.get_subscription(subscription_id)
        except StorageError:
            logger.exception("Failed to load subscription %s", subscription_id)
            sub = None
        result = self.biller.process_billing(subscription_id)
        # missing or inactive subscriptions are rejected before any charge
        if sub is not None and sub.status == SubscriptionStatus.ACTIVE.value:
            self._after_billing(sub, result)
        return result

    def process_due_subscriptions(self, now: Optional[int] = None) -> BillingRun:
        return self.biller.process_due_subscriptions(now, on_result=self._after_billing)

    def _after_billing(self, sub: Subscription, result: SubscriptionResult) -> None:
        if result.success:
            self._notify(
                sub.subscriber_id,
                WebhookEvent.SUBSCRIPTION_BILLED,
                {
                    "subscription_id": sub.subscription_id,
                    "amount": sub.amount,
                    "next_billing_date": result.next_billing_date,
                    "invoice_id": result.invoice_id,
                    "transaction_id": result.transaction_id,
                },
            )
            self._check_limits(sub.subscriber_id, sub.allowance_id, sub.amount_micros)
        else:
            self._notify(
                sub.subscriber_id,
                WebhookEvent.SUBSCRIPTION_FAILED,
                {"subscription_id": sub.subscription_id, "reason": result.error},
            )

    def set_subscription_status(self, subscription_id: str, status: str) -> SubscriptionResult:
        validation.require_id("subscription_id", subscription_id, "Subscription ID")
        try:
            target = SubscriptionStatus(status)
        except ValueError:
            raise ValidationError("status", "status must be one of: active, paused, cancelled") from None
        return self.biller.set_status(subscription_id, target)

    def cancel_subscription(self, subscription_id: str) -> SubscriptionResult:
        return self.set_subscription_status(subscription_id, SubscriptionStatus.CANCELLED.value)

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return self.biller.get_subscription(subscription_id)

    def list_subscriptions(
        self,
        agent_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> list[Subscription]:
        limit, offset = validation.validate_pagination(limit, offset)
        return self.biller.list_subscriptions(agent_id=agent_id, status=status, limit=limit, offset=offset)

    # ── Summary ───────────────────────────────────────────────────

    def agent_summary(self, agent_id: str) -> dict:
        """Spending, limits and recurring commitments across all of an agent's allowances."""
        validation.require_id("agent_id", agent_id, "Agent ID")
        allowances = self.allowances.list_allowances(agent_id=agent_id)
        subs = [
            s
            for s in self.biller.list_subscriptions(agent_id=agent_id, status=SubscriptionStatus.ACTIVE.value)
            if s.subscriber_id == agent_id
        ]
        recurring_micros = sum(
            (Decimal(s.amount_micros) * _MONTHLY_FACTOR.get(s.interval, Decimal(0)) for s in subs),
            Decimal(0),
        )
        return {
            "agent_id": agent_id,
            "spending": {
                "today": micros_to_float(sum(a.spent_today_micros for a in allowances)),
                "this_week": micros_to_float(sum(a.spent_this_week_micros for a in allowances)),
                "this_month": micros_to_float(sum(a.spent_this_month_micros for a in allowances)),
            },
            "limits": {
                "daily": micros_to_float(sum(a.daily_limit_micros for a in allowances)),
                "weekly": micros_to_float(sum(a.weekly_limit_micros for a in allowances)),
                "monthly": micros_to_float(sum(a.monthly_limit_micros for a in allowances)),
            },
            "subscriptions": {
                "active": len(subs),
                "monthly_recurring": float(round(recurring_micros / MICROS_PER_UNIT, 6)),
            },
        }
