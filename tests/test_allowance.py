"""Tests for the allowance engine."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from agentledger.allowance import AllowanceEngine
from agentledger.errors import StorageError
from agentledger.models import AllowanceStatus
from agentledger.store import LedgerStore


DAY = 86_400


class TestCheckSpend:
    def test_allowed_within_limits(self, engine):
        allowance = engine.create_allowance("agent-1", "owner-1", daily_limit=100)

        result = engine.check_spend("agent-1", 30, "api")
        assert result.allowed
        assert result.reason is None
        assert result.allowance_id == allowance.allowance_id

    def test_unknown_agent(self, engine):
        result = engine.check_spend("nobody", 1, "api")
        assert not result.allowed
        assert result.reason == "Allowance not found"

    def test_paused_allowance(self, engine):
        allowance = engine.create_allowance("agent-1", "owner-1", daily_limit=100)
        engine.update_allowance(allowance.allowance_id, status=AllowanceStatus.PAUSED)

        result = engine.check_spend("agent-1", 1, "api")
        assert result.reason == "Allowance is paused or inactive"

    def test_non_positive_amount(self, engine):
        engine.create_allowance("agent-1", "owner-1")
        assert engine.check_spend("agent-1", 0, "api").reason == "Amount must be positive"
        assert engine.check_spend("agent-1", -5, "api").reason == "Amount must be positive"

    def test_status_checked_before_amount(self, engine):
        allowance = engine.create_allowance("agent-1", "owner-1")
        engine.update_allowance(allowance.allowance_id, status=AllowanceStatus.EXHAUSTED)
        assert engine.check_spend("agent-1", 0, "api").reason == "Allowance is paused or inactive"

    def test_limits_checked_daily_then_weekly_then_monthly(self, engine):
        engine.create_allowance("agent-1", "owner-1", daily_limit=10, weekly_limit=5, monthly_limit=1)
        assert engine.check_spend("agent-1", 20, "api").reason == "Daily limit exceeded"
        assert engine.check_spend("agent-1", 8, "api").reason == "Weekly limit exceeded"
        assert engine.check_spend("agent-1", 3, "api").reason == "Monthly limit exceeded"

    def test_zero_limit_is_unlimited(self, engine):
        engine.create_allowance("agent-1", "owner-1")
        assert engine.check_spend("agent-1", 1_000_000, "api").allowed

    def test_spending_exactly_to_the_limit_is_allowed(self, engine):
        engine.create_allowance("agent-1", "owner-1", daily_limit=100)
        assert engine.deduct_spend("agent-1", 60, "api", "vendor").success

        assert engine.check_spend("agent-1", 40, "api").allowed
        assert engine.check_spend("agent-1", 40.01, "api").reason == "Daily limit exceeded"

    def test_check_has_no_side_effects(self, engine):
        allowance = engine.create_allowance("agent-1", "owner-1", daily_limit=100)
        engine.check_spend("agent-1", 50, "api")

        assert engine.get_allowance(allowance.allowance_id).spent_today_micros == 0
        assert engine.list_transactions(allowance.allowance_id) == []

    def test_explicit_allowance_must_belong_to_agent(self, engine):
        theirs = engine.create_allowance("agent-2", "owner-1")
        engine.create_allowance("agent-1", "owner-1")

        result = engine.check_spend("agent-1", 1, "api", allowance_id=theirs.allowance_id)
        assert not result.allowed
        assert result.reason == "Allowance not found"

    def test_default_is_oldest_allowance(self, engine, clock):
        first = engine.create_allowance("agent-1", "owner-1", daily_limit=1)
        clock.advance(1)
        second = engine.create_allowance("agent-1", "owner-1", daily_limit=100)

        assert engine.check_spend("agent-1", 1, "api").allowance_id == first.allowance_id
        assert engine.check_spend("agent-1", 5, "api").reason == "Daily limit exceeded"
        chosen = engine.check_spend("agent-1", 5, "api", allowance_id=second.allowance_id)
        assert chosen.allowed
        assert chosen.allowance_id == second.allowance_id


class TestDeductSpend:
    def test_deduction_bumps_all_counters_and_records_transaction(self, engine):
        allowance = engine.create_allowance("agent-1", "owner-1", daily_limit=100)

        result = engine.deduct_spend("agent-1", 30, "api", "vendor-x")
        assert result.success
        assert result.allowance_id == allowance.allowance_id

        updated = engine.get_allowance(allowance.allowance_id)
        assert updated.spent_today_micros == 30_000_000
        assert updated.spent_this_week_micros == 30_000_000
        assert updated.spent_this_month_micros == 30_000_000

        txs = engine.list_transactions(allowance.allowance_id)
        assert len(txs) == 1
        assert txs[0].transaction_id == result.transaction_id
        assert txs[0].amount == 30.0
        assert txs[0].category == "api"
        assert txs[0].recipient == "vendor-x"
        assert txs[0].status == "success"

    def test_rejection_changes_nothing(self, engine):
        allowance = engine.create_allowance("agent-1", "owner-1", daily_limit=10)

        result = engine.deduct_spend("agent-1", 11, "api", "vendor")
        assert not result.success
        assert result.reason == "Daily limit exceeded"
        assert result.transaction_id is None
        assert engine.get_allowance(allowance.allowance_id).spent_today_micros == 0
        assert engine.list_transactions() == []

    def test_daily_counter_resets_next_day(self, engine, clock):
        allowance = engine.create_allowance("agent-1", "owner-1", daily_limit=10, monthly_limit=100)
        assert engine.deduct_spend("agent-1", 10, "api", "vendor").success
        assert engine.check_spend("agent-1", 1, "api").reason == "Daily limit exceeded"

        clock.advance(DAY)
        assert engine.check_spend("agent-1", 10, "api").allowed
        view = engine.get_allowance(allowance.allowance_id)
        assert view.spent_today_micros == 0
        assert view.spent_this_month_micros == 10_000_000

        assert engine.deduct_spend("agent-1", 10, "api", "vendor").success
        assert engine.get_allowance(allowance.allowance_id).spent_this_month_micros == 20_000_000

    def test_weekly_counter_resets_on_monday(self, engine, clock):
        # the fixture clock starts on a Monday; move to Sunday of the same ISO week
        clock.advance(6 * DAY)
        allowance = engine.create_allowance("agent-1", "owner-1", weekly_limit=10)
        assert engine.deduct_spend("agent-1", 10, "api", "vendor").success

        clock.advance(DAY)
        assert engine.get_allowance(allowance.allowance_id).spent_this_week_micros == 0
        assert engine.deduct_spend("agent-1", 10, "api", "vendor").success

    def test_concurrent_deductions_never_overspend(self, engine):
        allowance = engine.create_allowance("agent-1", "owner-1", daily_limit=10)

        def attempt(i: int) -> bool:
            return engine.deduct_spend("agent-1", 1, "api", f"vendor-{i}").success

        with ThreadPoolExecutor(max_workers=16) as ex:
            results = list(ex.map(attempt, range(40)))

        assert sum(results) == 10
        assert engine.get_allowance(allowance.allowance_id).spent_today_micros == 10_000_000
        assert len(engine.list_transactions(allowance.allowance_id)) == 10

    def test_failed_insert_rolls_back_counters(self, engine, store, monkeypatch):
        allowance = engine.create_allowance("agent-1", "owner-1", daily_limit=100)

        def broken_insert(conn, tx):
            conn.execute("INSERT INTO no_such_table VALUES (1)")

        monkeypatch.setattr(store, "insert_transaction", broken_insert)
        result = engine.deduct_spend("agent-1", 5, "api", "vendor")

        assert not result.success
        assert result.reason == "Database error"
        assert engine.get_allowance(allowance.allowance_id).spent_today_micros == 0


class TestAllowanceManagement:
    def test_create_and_list(self, engine, clock):
        a1 = engine.create_allowance("agent-1", "owner-1", daily_limit=5)
        clock.advance(1)
        engine.create_allowance("agent-2", "owner-1")

        assert [a.allowance_id for a in engine.list_allowances(agent_id="agent-1")] == [a1.allowance_id]
        assert len(engine.list_allowances()) == 2
        assert a1.status == "active"
        assert a1.to_dict()["daily_limit"] == 5.0

    def test_update_missing_returns_none(self, engine):
        assert engine.update_allowance("missing", daily_limit=1) is None

    def test_update_limits(self, engine):
        allowance = engine.create_allowance("agent-1", "owner-1", daily_limit=5)
        updated = engine.update_allowance(allowance.allowance_id, daily_limit=50, monthly_limit=500)

        assert updated.daily_limit_micros == 50_000_000
        assert updated.monthly_limit_micros == 500_000_000
        assert updated.weekly_limit_micros == 0
        assert engine.check_spend("agent-1", 20, "api").allowed

    def test_caller_supplied_id(self, engine):
        allowance = engine.create_allowance("agent-1", "owner-1", allowance_id="allow-fixed")
        assert allowance.allowance_id == "allow-fixed"
        assert engine.get_allowance("allow-fixed").agent_id == "agent-1"

    def test_duplicate_id_raises_storage_error(self, engine):
        engine.create_allowance("agent-1", "owner-1", allowance_id="dup")
        with pytest.raises(StorageError):
            engine.create_allowance("agent-1", "owner-1", allowance_id="dup")

    def test_state_survives_reopen(self, tmp_path, clock):
        path = tmp_path / "ledger.sqlite3"
        engine = AllowanceEngine(LedgerStore(path), clock=clock)
        allowance = engine.create_allowance("agent-1", "owner-1", daily_limit=10)
        engine.deduct_spend("agent-1", 4, "api", "vendor")

        reopened = AllowanceEngine(LedgerStore(path), clock=clock)
        assert reopened.get_allowance(allowance.allowance_id).spent_today_micros == 4_000_000
