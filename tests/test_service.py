"""Tests for the AgentLedger facade: validation, notifications and summaries."""

import json
import threading

import httpx
import pytest

from agentledger.errors import StorageError, ValidationError
from agentledger.service import AgentLedger
from agentledger.store import LedgerStore
from agentledger.webhooks import WebhookNotifier


class Hooks:
    """Collects webhook deliveries as (agent URL, event, data)."""

    def __init__(self):
        self.events: list[tuple[str, str, dict]] = []
        self._lock = threading.Lock()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        with self._lock:
            self.events.append((str(request.url), body["event"], body["data"]))
        return httpx.Response(204)

    def names(self, url=None):
        return [event for u, event, _ in self.events if url is None or u == url]


@pytest.fixture
def hooks():
    return Hooks()


@pytest.fixture
def service(tmp_path, clock, hooks):
    notifier = WebhookNotifier(client=httpx.Client(transport=httpx.MockTransport(hooks)))
    svc = AgentLedger(LedgerStore(tmp_path / "ledger.sqlite3"), notifier=notifier, clock=clock)
    for agent in ("payer", "provider"):
        svc.register_webhook(agent, f"https://{agent}.example/hook")
    return svc


PAYER_HOOK = "https://payer.example/hook"
PROVIDER_HOOK = "https://provider.example/hook"


class TestValidation:
    def test_rejects_bad_input_before_core(self, service):
        with pytest.raises(ValidationError, match="Agent ID is required"):
            service.create_allowance("", "owner")
        with pytest.raises(ValidationError):
            service.create_allowance("payer", "owner", daily_limit=-1)
        with pytest.raises(ValidationError, match="Amount must be positive"):
            service.create_invoice("provider", "payer", 0)
        with pytest.raises(ValidationError):
            service.create_subscription("payer", "provider", "pro", 5, interval="hourly", allowance_id="a")
        with pytest.raises(ValidationError, match="Allowance ID is required"):
            service.create_subscription("payer", "provider", "pro", 5)
        with pytest.raises(ValidationError):
            service.update_allowance("a", status="exhausted")
        with pytest.raises(ValidationError):
            service.list_invoices(limit=500)
        with pytest.raises(ValidationError):
            service.register_webhook("payer", "ftp://nope")

    def test_subscription_interval_defaults_to_monthly(self, service):
        allowance = service.create_allowance("payer", "owner")
        result = service.create_subscription("payer", "provider", "pro", 5, allowance_id=allowance.allowance_id)
        assert service.get_subscription(result.subscription_id).interval == "monthly"


class TestNotifications:
    def test_invoice_flow_events(self, service, hooks):
        service.create_allowance("payer", "owner")
        invoice_id = service.create_invoice("provider", "payer", 20).invoice_id
        service.send_invoice(invoice_id)
        paid = service.pay_invoice(invoice_id, "payer")
        assert paid.success

        assert hooks.names(PAYER_HOOK) == ["invoice.created", "invoice.sent"]
        assert hooks.names(PROVIDER_HOOK) == ["invoice.paid"]
        _, _, data = hooks.events[-1]
        assert data == {
            "agent_id": "provider",
            "invoice_id": invoice_id,
            "amount": 20.0,
            "transaction_id": paid.transaction_id,
        }

    def test_failed_operations_do_not_notify(self, service, hooks):
        invoice_id = service.create_invoice("provider", "payer", 20).invoice_id
        hooks.events.clear()

        assert not service.pay_invoice(invoice_id, "payer").success
        assert hooks.events == []

    def test_limit_warning_then_exhausted(self, service, hooks):
        service.create_allowance("payer", "owner", daily_limit=10)

        service.deduct_spend("payer", 5, "api", "vendor")
        assert hooks.names() == []

        service.deduct_spend("payer", 3.5, "api", "vendor")
        assert hooks.names() == ["allowance.limit_warning"]
        _, _, data = hooks.events[-1]
        assert data["limit_type"] == "daily"
        assert data["percent_used"] == 85.0

        service.deduct_spend("payer", 0.5, "api", "vendor")
        assert hooks.names() == ["allowance.limit_warning"]

        service.deduct_spend("payer", 1, "api", "vendor")
        assert hooks.names() == ["allowance.limit_warning", "allowance.exhausted"]

    def test_unlimited_allowance_never_warns(self, service, hooks):
        service.create_allowance("payer", "owner")
        service.deduct_spend("payer", 1_000, "api", "vendor")
        assert hooks.events == []

    def test_subscription_events(self, service, hooks):
        allowance = service.create_allowance("payer", "owner", daily_limit=15)
        ok = service.create_subscription("payer", "provider", "pro", 10, "daily", allowance.allowance_id)
        assert hooks.names(PROVIDER_HOOK) == ["subscription.created"]

        billed = service.process_billing(ok.subscription_id)
        assert billed.success
        assert "subscription.billed" in hooks.names(PAYER_HOOK)
        billed_data = next(d for _, e, d in hooks.events if e == "subscription.billed")
        assert billed_data["next_billing_date"] == billed.next_billing_date

        service.create_subscription("payer", "provider", "max", 10, "daily", allowance.allowance_id)
        run = service.process_due_subscriptions()
        assert run.failures == 1
        failed = next(d for _, e, d in hooks.events if e == "subscription.failed")
        assert failed["reason"] == "Daily limit exceeded"

    def test_overdue_invoices(self, service, hooks, clock):
        now_ms = int(clock.now * 1000)
        invoice_id = service.create_invoice("provider", "payer", 5, due_at=now_ms - 1).invoice_id
        service.send_invoice(invoice_id)
        hooks.events.clear()

        assert service.notify_overdue_invoices() == [invoice_id]
        assert hooks.names(PAYER_HOOK) == ["invoice.overdue"]

    def test_unreachable_webhook_does_not_fail_operation(self, tmp_path, clock):
        def down(request):
            raise httpx.ConnectError("connection refused")

        notifier = WebhookNotifier(client=httpx.Client(transport=httpx.MockTransport(down)))
        svc = AgentLedger(LedgerStore(tmp_path / "ledger.sqlite3"), notifier=notifier, clock=clock)
        svc.register_webhook("payer", PAYER_HOOK)

        assert svc.create_invoice("provider", "payer", 5).success


class TestSummary:
    def test_agent_summary(self, service):
        service.create_allowance("payer", "owner", daily_limit=100, weekly_limit=300, monthly_limit=1000)
        second = service.create_allowance("payer", "owner", daily_limit=50)
        service.deduct_spend("payer", 30, "api", "vendor")
        service.deduct_spend("payer", 10, "api", "vendor", allowance_id=second.allowance_id)

        for amount, interval in ((1, "daily"), (12, "weekly"), (20, "monthly")):
            service.create_subscription("payer", "provider", "p", amount, interval, second.allowance_id)
        cancelled = service.create_subscription("payer", "provider", "p", 99, "monthly", second.allowance_id)
        service.cancel_subscription(cancelled.subscription_id)
        # provider-side subscriptions are not the payer's commitments
        service.create_subscription("provider", "payer", "p", 7, "monthly", second.allowance_id)

        summary = service.agent_summary("payer")
        assert summary["agent_id"] == "payer"
        assert summary["spending"] == {"today": 40.0, "this_week": 40.0, "this_month": 40.0}
        assert summary["limits"] == {"daily": 150.0, "weekly": 300.0, "monthly": 1000.0}
        assert summary["subscriptions"]["active"] == 3
        # 1 * 30 + 12 * 52 / 12 + 20
        assert summary["subscriptions"]["monthly_recurring"] == 102.0

    def test_summary_for_unknown_agent(self, service):
        summary = service.agent_summary("ghost")
        assert summary["spending"] == {"today": 0.0, "this_week": 0.0, "this_month": 0.0}
        assert summary["subscriptions"] == {"active": 0, "monthly_recurring": 0.0}


def test_unregistered_webhook_gets_nothing(service, hooks):
    service.unregister_webhook("payer", PAYER_HOOK)
    assert service.get_webhooks("payer") == []

    service.create_invoice("provider", "payer", 1)
    assert hooks.events == []


def test_billing_inactive_subscription_sends_no_failure(service, hooks):
    allowance = service.create_allowance("payer", "owner")
    sub = service.create_subscription("payer", "provider", "pro", 5, "daily", allowance.allowance_id)
    service.set_subscription_status(sub.subscription_id, "paused")
    hooks.events.clear()

    result = service.process_billing(sub.subscription_id)
    assert result.error == "Subscription is not active"
    assert hooks.events == []


def test_billing_survives_storage_error_on_lookup(service, hooks, monkeypatch):
    allowance = service.create_allowance("payer", "owner")
    sub = service.create_subscription("payer", "provider", "pro", 5, "daily", allowance.allowance_id)
    hooks.events.clear()

    def broken(subscription_id):
        raise StorageError("disk I/O error")

    monkeypatch.setattr(service.biller, "get_subscription", broken)
    result = service.process_billing(sub.subscription_id)
    assert not result.success
    assert result.error == "Database error"
    assert hooks.events == []
