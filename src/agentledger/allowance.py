"""
Allowance engine: spend checks and deductions against per-agent budgets.

A deduction re-runs the limit check, bumps the daily/weekly/monthly counters and
records the transaction inside one ``BEGIN IMMEDIATE`` transaction, so
concurrent deductions against the same allowance cannot overspend and a
failed insert never leaves counters updated without a transaction row.
"""

from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Callable, Optional

from .errors import StorageError
from .models import Allowance, AllowanceStatus, Transaction, TransactionStatus, now_ms, period_keys
from .money import amount_to_micros, limit_to_micros
from .store import LedgerStore

logger = logging.getLogger(__name__)

Amount = Decimal | float | int | str


@dataclass
class SpendCheck:
    """Outcome of a limit check."""

    allowed: bool
    reason: Optional[str] = None
    allowance_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {"allowed": self.allowed, "reason": self.reason, "allowance_id": self.allowance_id}


@dataclass
class SpendResult:
    """Outcome of a deduction."""

    success: bool
    transaction_id: Optional[str] = None
    reason: Optional[str] = None
    allowance_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "transaction_id": self.transaction_id,
            "reason": self.reason,
            "allowance_id": self.allowance_id,
        }


class AllowanceEngine:
    """Evaluates and records spends against allowances."""

    def __init__(self, store: LedgerStore, clock: Callable[[], float] = time.time):
        self.store = store
        self.clock = clock

    def create_allowance(
        self,
        agent_id: str,
        owner_id: str,
        daily_limit: Amount = 0,
        weekly_limit: Amount = 0,
        monthly_limit: Amount = 0,
        allowance_id: Optional[str] = None,
    ) -> Allowance:
        created_at = now_ms(self.clock)
        day, week, month = period_keys(created_at)
        allowance = Allowance(
            allowance_id=allowance_id or str(uuid.uuid4()),
            agent_id=agent_id,
            owner_id=owner_id,
            daily_limit_micros=limit_to_micros(daily_limit),
            weekly_limit_micros=limit_to_micros(weekly_limit),
            monthly_limit_micros=limit_to_micros(monthly_limit),
            status=AllowanceStatus.ACTIVE.value,
            created_at=created_at,
            day_key=day,
            week_key=week,
            month_key=month,
        )
        with self.store.transaction() as conn:
            self.store.insert_allowance(conn, allowance)
        logger.info("Created allowance %s for agent %s", allowance.allowance_id, agent_id)
        return allowance

    def get_allowance(self, allowance_id: str) -> Optional[Allowance]:
        """Load an allowance with counters of elapsed periods shown as zero."""
        with self.store.read() as conn:
            allowance = self.store.get_allowance(conn, allowance_id)
        return allowance.rolled(now_ms(self.clock)) if allowance else None

    def list_allowances(
        self,
        agent_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Allowance]:
        ts = now_ms(self.clock)
        with self.store.read() as conn:
            rows = self.store.list_allowances(conn, agent_id=agent_id, status=status, limit=limit, offset=offset)
        return [a.rolled(ts) for a in rows]

    def update_allowance(
        self,
        allowance_id: str,
        daily_limit: Optional[Amount] = None,
        weekly_limit: Optional[Amount] = None,
        monthly_limit: Optional[Amount] = None,
        status: Optional[AllowanceStatus] = None,
    ) -> Optional[Allowance]:
        """Change limits and/or status. Returns None when the allowance is missing."""
        with self.store.transaction() as conn:
            current = self.store.get_allowance(conn, allowance_id)
            if current is None:
                return None
            updated = current.rolled(now_ms(self.clock))
            if daily_limit is not None:
                updated.daily_limit_micros = limit_to_micros(daily_limit)
            if weekly_limit is not None:
                updated.weekly_limit_micros = limit_to_micros(weekly_limit)
            if monthly_limit is not None:
                updated.monthly_limit_micros = limit_to_micros(monthly_limit)
            if status is not None:
                updated.status = AllowanceStatus(status).value
            self.store.update_allowance(conn, updated)
        logger.info("Updated allowance %s (status=%s)", allowance_id, updated.status)
        return updated

    def list_transactions(
        self,
        allowance_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Transaction]:
        with self.store.read() as conn:
            return self.store.list_transactions(conn, allowance_id=allowance_id, limit=limit, offset=offset)

    def check_spend(
        self,
        agent_id: str,
        amount: Amount,
        category: str,
        allowance_id: Optional[str] = None,
    ) -> SpendCheck:
        """Check whether a proposed spend fits the agent's allowance. No side effects."""
        amount_micros = amount_to_micros(amount)
        try:
            with self.store.read() as conn:
                allowance = self._resolve(conn, agent_id, allowance_id)
        except StorageError:
            logger.exception("Spend check failed for agent %s", agent_id)
            return SpendCheck(allowed=False, reason="Database error")

        if allowance is not None:
            allowance = allowance.rolled(now_ms(self.clock))
        reason = _evaluate(allowance, amount_micros)
        if reason is not None:
            logger.info("Spend check denied for agent %s (%s): %s", agent_id, category, reason)
            return SpendCheck(allowed=False, reason=reason)
        assert allowance is not None
        return SpendCheck(allowed=True, allowance_id=allowance.allowance_id)

    def deduct_spend(
        self,
        agent_id: str,
        amount: Amount,
        category: str,
        recipient: str,
        allowance_id: Optional[str] = None,
    ) -> SpendResult:
        """Atomically check limits, bump counters and record a transaction."""
        amount_micros = amount_to_micros(amount)
        try:
            with self.store.transaction() as conn:
                return self.deduct_within(
                    conn,
                    agent_id=agent_id,
                    amount_micros=amount_micros,
                    category=category,
                    recipient=recipient,
                    allowance_id=allowance_id,
                )
        except StorageError:
            logger.exception("Spend deduction failed for agent %s", agent_id)
            return SpendResult(success=False, reason="Database error")

    def deduct_within(
        self,
        conn: sqlite3.Connection,
        agent_id: str,
        amount_micros: int,
        category: str,
        recipient: str,
        allowance_id: Optional[str] = None,
    ) -> SpendResult:
        """
        Deduct inside a transaction the caller already holds.

        Lets the ledger commit the debit and the invoice status change together.
        Storage errors propagate to the caller's transaction.
        """
        ts = now_ms(self.clock)
        allowance = self._resolve(conn, agent_id, allowance_id)
        if allowance is not None:
            allowance = allowance.rolled(ts)
        reason = _evaluate(allowance, amount_micros)
        if reason is not None:
            logger.info("Spend denied for agent %s (%s): %s", agent_id, category, reason)
            return SpendResult(success=False, reason=reason)
        assert allowance is not None

        self.store.update_allowance(
            conn,
            replace(
                allowance,
                spent_today_micros=allowance.spent_today_micros + amount_micros,
                spent_this_week_micros=allowance.spent_this_week_micros + amount_micros,
                spent_this_month_micros=allowance.spent_this_month_micros + amount_micros,
            ),
        )
        tx = Transaction(
            transaction_id=str(uuid.uuid4()),
            allowance_id=allowance.allowance_id,
            amount_micros=amount_micros,
            category=category,
            recipient=recipient,
            status=TransactionStatus.SUCCESS.value,
            timestamp=ts,
        )
        self.store.insert_transaction(conn, tx)
        logger.info(
            "Recorded %s spend %s of %d micros against allowance %s",
            category,
            tx.transaction_id,
            amount_micros,
            allowance.allowance_id,
        )
        return SpendResult(success=True, transaction_id=tx.transaction_id, allowance_id=allowance.allowance_id)

    def _resolve(
        self,
        conn: sqlite3.Connection,
        agent_id: str,
        allowance_id: Optional[str],
    ) -> Optional[Allowance]:
        # An explicit id wins, but only for an allowance the agent owns.
        if allowance_id:
            allowance = self.store.get_allowance(conn, allowance_id)
            if allowance is None or allowance.agent_id != agent_id:
                return None
            return allowance
        return self.store.first_allowance_for_agent(conn, agent_id)


def _evaluate(allowance: Optional[Allowance], amount_micros: int) -> Optional[str]:
    if allowance is None:
        return "Allowance not found"
    if allowance.status != AllowanceStatus.ACTIVE.value:
        return "Allowance is paused or inactive"
    if amount_micros <= 0:
        return "Amount must be positive"
    for name, limit, spent in allowance.windows():
        if limit > 0 and spent + amount_micros > limit:
            return f"{name} limit exceeded"
    return None
