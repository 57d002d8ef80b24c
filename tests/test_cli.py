"""CLI command tests."""

import json
import re
from pathlib import Path

import httpx
from click.testing import CliRunner

from agentledger.cli import main


UUID_RE = r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"


def _env(tmp_path: Path) -> dict[str, str]:
    return {"AGENTLEDGER_HOME": str(tmp_path / "home")}


def _created_id(output: str) -> str:
    match = re.search(UUID_RE, output)
    assert match, output
    return match.group(0)


def _invoke(runner, tmp_path, *args):
    return runner.invoke(main, list(args), env=_env(tmp_path))


def test_allowance_spend_and_summary(tmp_path):
    runner = CliRunner()

    created = _invoke(runner, tmp_path, "allowance", "create", "--agent-id", "bot", "--owner-id", "me", "--daily-limit", "10")
    assert created.exit_code == 0, created.output
    assert "✅ Allowance created" in created.output
    allowance_id = _created_id(created.output)

    spent = _invoke(runner, tmp_path, "spend", "--agent-id", "bot", "--amount", "4", "--recipient", "vendor")
    assert spent.exit_code == 0, spent.output
    assert allowance_id in spent.output

    denied = _invoke(runner, tmp_path, "check", "--agent-id", "bot", "--amount", "7")
    assert denied.exit_code == 1
    assert "Daily limit exceeded" in denied.output

    allowed = _invoke(runner, tmp_path, "check", "--agent-id", "bot", "--amount", "6")
    assert allowed.exit_code == 0

    shown = _invoke(runner, tmp_path, "allowance", "show", allowance_id)
    assert json.loads(shown.output)["spent_today"] == 4.0

    txs = _invoke(runner, tmp_path, "transactions", "--allowance-id", allowance_id)
    assert "vendor" in txs.output

    summary = _invoke(runner, tmp_path, "summary", "bot")
    assert summary.exit_code == 0
    assert "4.00 of 10.00" in summary.output


def test_allowance_update_and_list(tmp_path):
    runner = CliRunner()
    created = _invoke(runner, tmp_path, "allowance", "create", "--agent-id", "bot", "--owner-id", "me")
    allowance_id = _created_id(created.output)

    paused = _invoke(runner, tmp_path, "allowance", "update", allowance_id, "--status", "paused")
    assert paused.exit_code == 0
    assert "status=paused" in paused.output

    rejected = _invoke(runner, tmp_path, "spend", "--agent-id", "bot", "--amount", "1", "--recipient", "v")
    assert rejected.exit_code == 1
    assert "paused or inactive" in rejected.output

    listed = _invoke(runner, tmp_path, "allowance", "list", "--agent-id", "bot")
    assert allowance_id in listed.output

    missing = _invoke(runner, tmp_path, "allowance", "update", "nope", "--daily-limit", "5")
    assert missing.exit_code == 1
    assert "Allowance not found" in missing.output


def test_invalid_input_exits_nonzero(tmp_path):
    runner = CliRunner()
    result = _invoke(runner, tmp_path, "allowance", "create", "--agent-id", "bot", "--owner-id", "me", "--daily-limit", "-5")
    assert result.exit_code == 1
    assert "Invalid allowance" in result.output

    bad_page = _invoke(runner, tmp_path, "invoice", "list", "--limit", "0")
    assert bad_page.exit_code == 1


def test_invoice_flow(tmp_path):
    runner = CliRunner()
    _invoke(runner, tmp_path, "allowance", "create", "--agent-id", "payer", "--owner-id", "me")

    created = _invoke(runner, tmp_path, "invoice", "create", "--issuer-id", "shop", "--recipient-id", "payer", "--amount", "3.5")
    assert created.exit_code == 0, created.output
    invoice_id = _created_id(created.output)

    assert _invoke(runner, tmp_path, "invoice", "send", invoice_id).exit_code == 0

    wrong_payer = _invoke(runner, tmp_path, "invoice", "pay", invoice_id, "--agent-id", "shop")
    assert wrong_payer.exit_code == 1
    assert "Recipient mismatch" in wrong_payer.output

    paid = _invoke(runner, tmp_path, "invoice", "pay", invoice_id, "--agent-id", "payer")
    assert paid.exit_code == 0, paid.output
    assert "✅ Invoice paid" in paid.output

    cancel = _invoke(runner, tmp_path, "invoice", "cancel", invoice_id)
    assert cancel.exit_code == 1
    assert "Invoice already paid" in cancel.output

    listed = _invoke(runner, tmp_path, "invoice", "list", "--agent-id", "payer")
    assert "[paid]" in listed.output


def test_subscription_flow(tmp_path):
    runner = CliRunner()
    allowance_id = _created_id(
        _invoke(runner, tmp_path, "allowance", "create", "--agent-id", "payer", "--owner-id", "me").output
    )

    created = _invoke(
        runner, tmp_path,
        "subscription", "create",
        "--subscriber-id", "payer",
        "--provider-id", "saas",
        "--plan-id", "pro",
        "--amount", "9.99",
        "--interval", "weekly",
        "--allowance-id", allowance_id,
    )
    assert created.exit_code == 0, created.output
    sub_id = _created_id(created.output)

    due = _invoke(runner, tmp_path, "subscription", "process-due")
    assert due.exit_code == 0, due.output
    assert "Processed 1, failed 0" in due.output

    assert "Processed 0" in _invoke(runner, tmp_path, "subscription", "process-due").output

    cancelled = _invoke(runner, tmp_path, "subscription", "cancel", sub_id)
    assert cancelled.exit_code == 0
    bill = _invoke(runner, tmp_path, "subscription", "bill", sub_id)
    assert bill.exit_code == 1
    assert "Subscription is not active" in bill.output

    listed = _invoke(runner, tmp_path, "subscription", "list", "--agent-id", "saas")
    assert "[cancelled]" in listed.output


def test_webhook_test_command(tmp_path, monkeypatch):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200)

    real_client = httpx.Client
    monkeypatch.setattr(
        "agentledger.webhooks.httpx.Client",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )

    runner = CliRunner()
    result = _invoke(runner, tmp_path, "webhook-test", "https://hooks.example/x", "--agent-id", "bot")
    assert result.exit_code == 0, result.output
    assert "Webhook delivered" in result.output
    assert seen[0]["event"] == "invoice.created"
    assert seen[0]["data"] == {"agent_id": "bot", "test": True}

    invalid = _invoke(runner, tmp_path, "webhook-test", "ftp://hooks.example/x")
    assert invalid.exit_code == 1


def test_balance_commands(tmp_path, monkeypatch):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": hex(3 * 10**18)})

    real_client = httpx.Client
    monkeypatch.setattr(
        "agentledger.onchain.httpx.Client",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )
    wallet = "0x" + "ab" * 20

    runner = CliRunner()
    balance = _invoke(runner, tmp_path, "balance", wallet)
    assert balance.exit_code == 0, balance.output
    assert "3 tokens" in balance.output

    enough = _invoke(runner, tmp_path, "verify-balance", wallet, "2")
    assert enough.exit_code == 0
    short = _invoke(runner, tmp_path, "verify-balance", wallet, "5")
    assert short.exit_code == 1
    assert "Insufficient balance" in short.output
