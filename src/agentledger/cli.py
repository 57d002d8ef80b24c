"""
agentledger CLI: allowances, invoices and subscriptions for AI agents.

Commands:
    agentledger allowance ...     Create, list, inspect and update allowances
    agentledger check / spend     Evaluate or record a spend
    agentledger invoice ...       Create, send, pay, cancel and list invoices
    agentledger subscription ...  Manage and bill recurring subscriptions
    agentledger summary           Spending summary for an agent
    agentledger balance           On-chain token balance of a wallet
"""

from __future__ import annotations

import json
import logging
import sys
import time
from typing import Optional

import click

from . import __version__
from .config import LedgerConfig
from .errors import ValidationError
from .ledger import LedgerResult
from .models import BillingInterval, SubscriptionStatus
from .money import amount_to_micros, format_amount
from .onchain import OnChainReader
from .service import AgentLedger
from .validation import validate_webhook_url
from .webhooks import WebhookEvent, WebhookNotifier, WebhookRegistry


def _config() -> LedgerConfig:
    try:
        return LedgerConfig.from_env()
    except ValueError as e:
        click.echo(f"❌ Invalid configuration: {e}", err=True)
        sys.exit(1)


def _ledger() -> AgentLedger:
    return AgentLedger.from_config(_config())


def _fail(message: str) -> None:
    click.echo(f"❌ {message}", err=True)
    sys.exit(1)


def _fmt_ts(ts_ms: Optional[int]) -> str:
    if ts_ms is None:
        return "-"
    return time.strftime("%Y-%m-%d %H:%M", time.localtime(ts_ms / 1000))


def _limit(value: float) -> str:
    return f"{value:.2f}" if value else "unlimited"


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--log-level",
    default=None,
    help="Logging level (default: env AGENTLEDGER_LOG_LEVEL or WARNING)",
)
def main(log_level: Optional[str]):
    """agentledger: allowances, invoices and subscriptions for AI agents."""
    config = _config()
    if log_level:
        config.log_level = log_level
    logging.basicConfig(
        level=config.log_level_value,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Allowances ────────────────────────────────────────────────────


@main.group("allowance")
def allowance_group():
    """Spending allowances granted to agents."""
    pass


@allowance_group.command("create")
@click.option("--agent-id", required=True, help="Agent receiving the allowance")
@click.option("--owner-id", required=True, help="Owner granting the allowance")
@click.option("--daily-limit", type=float, default=0.0, help="Daily cap (0 = unlimited)")
@click.option("--weekly-limit", type=float, default=0.0, help="Weekly cap (0 = unlimited)")
@click.option("--monthly-limit", type=float, default=0.0, help="Monthly cap (0 = unlimited)")
def allowance_create(agent_id: str, owner_id: str, daily_limit: float, weekly_limit: float, monthly_limit: float):
    """Create an allowance for an agent."""
    ledger = _ledger()
    try:
        allowance = ledger.create_allowance(agent_id, owner_id, daily_limit, weekly_limit, monthly_limit)
    except ValidationError as e:
        _fail(f"Invalid allowance: {e}")
    except Exception as e:
        _fail(f"Failed to create allowance: {e}")
    finally:
        ledger.close()

    click.echo(f"✅ Allowance created: {allowance.allowance_id}")
    click.echo(f"   Agent:   {allowance.agent_id}")
    click.echo(f"   Owner:   {allowance.owner_id}")
    click.echo(
        f"   Limits:  {_limit(daily_limit)}/day, {_limit(weekly_limit)}/week, {_limit(monthly_limit)}/month"
    )


@allowance_group.command("list")
@click.option("--agent-id", default=None, help="Filter by agent ID")
@click.option("--status", default=None, help="Filter by status")
@click.option("--limit", type=int, default=50, help="Page size (1-100)")
@click.option("--offset", type=int, default=0, help="Rows to skip")
def allowance_list(agent_id: Optional[str], status: Optional[str], limit: int, offset: int):
    """List allowances."""
    ledger = _ledger()
    try:
        allowances = ledger.list_allowances(agent_id=agent_id, status=status, limit=limit, offset=offset)
    except ValidationError as e:
        _fail(str(e))
    finally:
        ledger.close()

    if not allowances:
        click.echo("No allowances found.")
        return
    for a in allowances:
        d = a.to_dict()
        click.echo(
            f"- {a.allowance_id} agent={a.agent_id} status={a.status} "
            f"today={d['spent_today']:.2f}/{_limit(d['daily_limit'])} "
            f"month={d['spent_this_month']:.2f}/{_limit(d['monthly_limit'])}"
        )


@allowance_group.command("show")
@click.argument("allowance_id")
def allowance_show(allowance_id: str):
    """Show an allowance as JSON."""
    ledger = _ledger()
    try:
        allowance = ledger.get_allowance(allowance_id)
    finally:
        ledger.close()
    if allowance is None:
        _fail(f"Allowance not found: {allowance_id}")
    click.echo(json.dumps(allowance.to_dict(), indent=2))


@allowance_group.command("update")
@click.argument("allowance_id")
@click.option("--daily-limit", type=float, default=None, help="New daily cap")
@click.option("--weekly-limit", type=float, default=None, help="New weekly cap")
@click.option("--monthly-limit", type=float, default=None, help="New monthly cap")
@click.option("--status", type=click.Choice(["active", "paused"]), default=None, help="Pause or resume")
def allowance_update(
    allowance_id: str,
    daily_limit: Optional[float],
    weekly_limit: Optional[float],
    monthly_limit: Optional[float],
    status: Optional[str],
):
    """Change an allowance's limits or status."""
    ledger = _ledger()
    try:
        allowance = ledger.update_allowance(allowance_id, daily_limit, weekly_limit, monthly_limit, status)
    except ValidationError as e:
        _fail(f"Invalid update: {e}")
    finally:
        ledger.close()
    if allowance is None:
        _fail(f"Allowance not found: {allowance_id}")
    click.echo(f"✅ Allowance updated: {allowance.allowance_id} (status={allowance.status})")


# ── Spending ──────────────────────────────────────────────────────


@main.command()
@click.option("--agent-id", required=True, help="Spending agent")
@click.option("--amount", type=float, required=True, help="Amount to spend")
@click.option("--category", default="general", help="Spend category")
@click.option("--allowance-id", default=None, help="Allowance to check (default: agent's first)")
def check(agent_id: str, amount: float, category: str, allowance_id: Optional[str]):
    """Check whether a spend fits the agent's allowance."""
    ledger = _ledger()
    try:
        result = ledger.check_spend(agent_id, amount, category, allowance_id=allowance_id)
    except ValidationError as e:
        _fail(str(e))
    finally:
        ledger.close()
    if result.allowed:
        click.echo(f"✅ Spend of {amount:.2f} allowed (allowance {result.allowance_id})")
    else:
        _fail(f"Spend denied: {result.reason}")


@main.command()
@click.option("--agent-id", required=True, help="Spending agent")
@click.option("--amount", type=float, required=True, help="Amount to spend")
@click.option("--recipient", required=True, help="Who receives the funds")
@click.option("--category", default="general", help="Spend category")
@click.option("--allowance-id", default=None, help="Allowance to charge (default: agent's first)")
def spend(agent_id: str, amount: float, recipient: str, category: str, allowance_id: Optional[str]):
    """Record a spend against the agent's allowance."""
    ledger = _ledger()
    try:
        result = ledger.deduct_spend(agent_id, amount, category, recipient, allowance_id=allowance_id)
    except ValidationError as e:
        _fail(str(e))
    finally:
        ledger.close()
    if not result.success:
        _fail(f"Spend rejected: {result.reason}")
    click.echo(f"✅ Spent {amount:.2f} → {recipient}")
    click.echo(f"   Transaction: {result.transaction_id}")
    click.echo(f"   Allowance:   {result.allowance_id}")


@main.command()
@click.option("--allowance-id", default=None, help="Filter by allowance ID")
@click.option("--limit", type=int, default=50, help="Page size (1-100)")
@click.option("--offset", type=int, default=0, help="Rows to skip")
def transactions(allowance_id: Optional[str], limit: int, offset: int):
    """List recorded transactions in the order they happened."""
    ledger = _ledger()
    try:
        txs = ledger.list_transactions(allowance_id=allowance_id, limit=limit, offset=offset)
    except ValidationError as e:
        _fail(str(e))
    finally:
        ledger.close()
    if not txs:
        click.echo("No transactions found.")
        return
    for tx in txs:
        status = "✅" if tx.status == "success" else "❌"
        click.echo(f"  {_fmt_ts(tx.timestamp)} {status} {tx.amount:.2f} {tx.category} → {tx.recipient} ({tx.transaction_id})")


# ── Invoices ──────────────────────────────────────────────────────


@main.group("invoice")
def invoice_group():
    """Invoices between agents."""
    pass


@invoice_group.command("create")
@click.option("--issuer-id", required=True, help="Agent issuing the invoice")
@click.option("--recipient-id", required=True, help="Agent who pays")
@click.option("--amount", type=float, required=True, help="Invoice amount")
@click.option("--currency", default="USDC", help="Currency label")
@click.option("--due-at", type=int, default=None, help="Due date (epoch milliseconds)")
@click.option("--memo", default=None, help="Free-text memo")
def invoice_create(
    issuer_id: str,
    recipient_id: str,
    amount: float,
    currency: str,
    due_at: Optional[int],
    memo: Optional[str],
):
    """Create a draft invoice."""
    ledger = _ledger()
    try:
        result = ledger.create_invoice(issuer_id, recipient_id, amount, due_at=due_at, currency=currency, memo=memo)
    except ValidationError as e:
        _fail(f"Invalid invoice: {e}")
    finally:
        ledger.close()
    if not result.success:
        _fail(f"Failed to create invoice: {result.error}")
    click.echo(f"✅ Invoice created: {result.invoice_id}")
    click.echo(f"   {issuer_id} → {recipient_id}: {format_amount(amount_to_micros(amount), currency)}")
    if due_at is not None:
        click.echo(f"   Due: {_fmt_ts(due_at)}")


def _invoice_action(action: str, invoice_id: str, **kwargs) -> LedgerResult:
    ledger = _ledger()
    try:
        result = getattr(ledger, f"{action}_invoice")(invoice_id, **kwargs)
    except ValidationError as e:
        _fail(str(e))
    finally:
        ledger.close()
    if not result.success:
        _fail(f"Failed to {action} invoice {invoice_id}: {result.error}")
    return result


@invoice_group.command("send")
@click.argument("invoice_id")
def invoice_send(invoice_id: str):
    """Mark a draft invoice as sent."""
    _invoice_action("send", invoice_id)
    click.echo(f"✅ Invoice sent: {invoice_id}")


@invoice_group.command("pay")
@click.argument("invoice_id")
@click.option("--agent-id", required=True, help="Paying agent (must be the recipient)")
@click.option("--allowance-id", default=None, help="Allowance to charge")
def invoice_pay(invoice_id: str, agent_id: str, allowance_id: Optional[str]):
    """Pay an invoice from the agent's allowance."""
    result = _invoice_action("pay", invoice_id, agent_id=agent_id, allowance_id=allowance_id)
    click.echo(f"✅ Invoice paid: {invoice_id}")
    click.echo(f"   Transaction: {result.transaction_id}")


@invoice_group.command("cancel")
@click.argument("invoice_id")
def invoice_cancel(invoice_id: str):
    """Cancel an unpaid invoice."""
    _invoice_action("cancel", invoice_id)
    click.echo(f"✅ Invoice cancelled: {invoice_id}")


@invoice_group.command("list")
@click.option("--agent-id", default=None, help="Issuer or recipient")
@click.option("--status", default=None, help="Filter by status")
@click.option("--limit", type=int, default=50, help="Page size (1-100)")
@click.option("--offset", type=int, default=0, help="Rows to skip")
def invoice_list(agent_id: Optional[str], status: Optional[str], limit: int, offset: int):
    """List invoices."""
    ledger = _ledger()
    try:
        invoices = ledger.list_invoices(agent_id=agent_id, status=status, limit=limit, offset=offset)
    except ValidationError as e:
        _fail(str(e))
    finally:
        ledger.close()
    if not invoices:
        click.echo("No invoices found.")
        return
    for inv in invoices:
        click.echo(
            f"- {inv.invoice_id} {inv.issuer_id} → {inv.recipient_id} "
            f"{inv.amount:.2f} {inv.currency} [{inv.status}] due={_fmt_ts(inv.due_at)}"
        )


# ── Subscriptions ─────────────────────────────────────────────────


@main.group("subscription")
def subscription_group():
    """Recurring subscriptions."""
    pass


@subscription_group.command("create")
@click.option("--subscriber-id", required=True, help="Paying agent")
@click.option("--provider-id", required=True, help="Billing agent")
@click.option("--plan-id", required=True, help="Plan identifier")
@click.option("--amount", type=float, required=True, help="Amount per cycle")
@click.option(
    "--interval",
    type=click.Choice([i.value for i in BillingInterval]),
    default=BillingInterval.MONTHLY.value,
    help="Billing interval",
)
@click.option("--allowance-id", required=True, help="Allowance the subscriber pays from")
def subscription_create(
    subscriber_id: str,
    provider_id: str,
    plan_id: str,
    amount: float,
    interval: str,
    allowance_id: str,
):
    """Create a subscription; the first cycle is due immediately."""
    ledger = _ledger()
    try:
        result = ledger.create_subscription(subscriber_id, provider_id, plan_id, amount, interval, allowance_id)
    except ValidationError as e:
        _fail(f"Invalid subscription: {e}")
    finally:
        ledger.close()
    if not result.success:
        _fail(f"Failed to create subscription: {result.error}")
    click.echo(f"✅ Subscription created: {result.subscription_id}")
    click.echo(f"   {subscriber_id} → {provider_id}: {amount:.2f} {interval} ({plan_id})")


@subscription_group.command("bill")
@click.argument("subscription_id")
def subscription_bill(subscription_id: str):
    """Run one billing cycle now."""
    ledger = _ledger()
    try:
        result = ledger.process_billing(subscription_id)
    except ValidationError as e:
        _fail(str(e))
    finally:
        ledger.close()
    if not result.success:
        _fail(f"Billing failed: {result.error}")
    click.echo(f"✅ Billed subscription {subscription_id}")
    click.echo(f"   Invoice:     {result.invoice_id}")
    click.echo(f"   Transaction: {result.transaction_id}")
    click.echo(f"   Next bill:   {_fmt_ts(result.next_billing_date)}")


@subscription_group.command("process-due")
def subscription_process_due():
    """Bill every subscription that is due."""
    ledger = _ledger()
    try:
        run = ledger.process_due_subscriptions()
    finally:
        ledger.close()
    if run.error:
        _fail(f"Billing scan failed: {run.error}")
    click.echo(f"Processed {run.processed}, failed {run.failures}")
    for detail in run.details:
        status = "✅" if detail["success"] else "❌"
        reason = f" ({detail['error']})" if detail["error"] else ""
        click.echo(f"  {status} {detail['subscription_id']}{reason}")
    if run.failures:
        sys.exit(1)


@subscription_group.command("list")
@click.option("--agent-id", default=None, help="Subscriber or provider")
@click.option("--status", default=None, help="Filter by status")
@click.option("--limit", type=int, default=50, help="Page size (1-100)")
@click.option("--offset", type=int, default=0, help="Rows to skip")
def subscription_list(agent_id: Optional[str], status: Optional[str], limit: int, offset: int):
    """List subscriptions."""
    ledger = _ledger()
    try:
        subs = ledger.list_subscriptions(agent_id=agent_id, status=status, limit=limit, offset=offset)
    except ValidationError as e:
        _fail(str(e))
    finally:
        ledger.close()
    if not subs:
        click.echo("No subscriptions found.")
        return
    for s in subs:
        click.echo(
            f"- {s.subscription_id} {s.subscriber_id} → {s.provider_id} {s.amount:.2f} "
            f"{s.interval} [{s.status}] next={_fmt_ts(s.next_billing_date)}"
        )


@subscription_group.command("cancel")
@click.argument("subscription_id")
def subscription_cancel(subscription_id: str):
    """Cancel a subscription for good."""
    ledger = _ledger()
    try:
        result = ledger.set_subscription_status(subscription_id, SubscriptionStatus.CANCELLED.value)
    finally:
        ledger.close()
    if not result.success:
        _fail(f"Failed to cancel subscription: {result.error}")
    click.echo(f"✅ Subscription cancelled: {subscription_id}")


# ── Reporting ─────────────────────────────────────────────────────


@main.command()
@click.argument("agent_id")
def summary(agent_id: str):
    """Spending summary for an agent."""
    ledger = _ledger()
    try:
        s = ledger.agent_summary(agent_id)
    finally:
        ledger.close()
    spending, limits, subs = s["spending"], s["limits"], s["subscriptions"]
    click.echo(f"📊 Summary for {agent_id}")
    click.echo(f"   Today:         {spending['today']:.2f} of {_limit(limits['daily'])}")
    click.echo(f"   This week:     {spending['this_week']:.2f} of {_limit(limits['weekly'])}")
    click.echo(f"   This month:    {spending['this_month']:.2f} of {_limit(limits['monthly'])}")
    click.echo(f"   Subscriptions: {subs['active']} active, {subs['monthly_recurring']:.2f}/month")


@main.command()
@click.argument("address")
@click.option("--native", is_flag=True, help="Show the native (ETH) balance instead")
def balance(address: str, native: bool):
    """On-chain token balance of a wallet."""
    config = _config()
    with OnChainReader(config.rpc_url, config.token_contract, timeout_seconds=config.rpc_timeout_seconds) as reader:
        result = reader.get_native_balance(address) if native else reader.get_token_balance(
            address, config.token_contract
        )
    if result.error:
        _fail(f"Balance lookup failed: {result.error}")
    label = "ETH" if native else "tokens"
    click.echo(f"{address}: {result.balance} {label}")


@main.command("verify-balance")
@click.argument("address")
@click.argument("required", type=float)
def verify_balance(address: str, required: float):
    """Exit 0 when the wallet holds at least REQUIRED tokens."""
    config = _config()
    with OnChainReader(config.rpc_url, config.token_contract, timeout_seconds=config.rpc_timeout_seconds) as reader:
        check_result = reader.verify_balance(address, required)
    if not check_result.sufficient:
        _fail(f"Insufficient balance: {check_result.balance} < {check_result.required}")
    click.echo(f"✅ Sufficient balance: {check_result.balance} ≥ {check_result.required}")


@main.command("webhook-test")
@click.argument("url")
@click.option("--agent-id", default="webhook-test", help="Agent ID placed in the payload")
@click.option(
    "--event",
    type=click.Choice([e.value for e in WebhookEvent]),
    default=WebhookEvent.INVOICE_CREATED.value,
    help="Event name to send",
)
def webhook_test(url: str, agent_id: str, event: str):
    """Send a test event to a webhook URL."""
    try:
        validate_webhook_url(url)
    except ValidationError as e:
        _fail(str(e))

    registry = WebhookRegistry()
    registry.register(agent_id, url)
    with WebhookNotifier(registry, timeout_seconds=_config().webhook_timeout_seconds) as notifier:
        result = notifier.notify_agent(agent_id, event, {"test": True})
    if result.failed:
        _fail(f"Failed to deliver webhook: {'; '.join(result.errors)}")
    click.echo(f"Webhook delivered: {url}")


if __name__ == "__main__":
    main()
