"""
SQLite persistence for allowances, transactions, invoices and subscriptions.

Writers run inside ``BEGIN IMMEDIATE`` transactions, so a read-check-write
sequence executed within ``LedgerStore.transaction()`` is serialized across
threads and processes sharing the database file.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from .config import DEFAULT_HOME
from .errors import StorageError
from .models import Allowance, Invoice, InvoiceStatus, Subscription, SubscriptionStatus, Transaction
from .storage import ensure_private_dir, secure_database_files


DEFAULT_DB_PATH = DEFAULT_HOME / "ledger.sqlite3"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS allowances (
        id TEXT PRIMARY KEY,
        agent_id TEXT NOT NULL,
        owner_id TEXT NOT NULL,
        daily_limit INTEGER NOT NULL DEFAULT 0,
        weekly_limit INTEGER NOT NULL DEFAULT 0,
        monthly_limit INTEGER NOT NULL DEFAULT 0,
        spent_today INTEGER NOT NULL DEFAULT 0,
        spent_this_week INTEGER NOT NULL DEFAULT 0,
        spent_this_month INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'active',
        created_at INTEGER NOT NULL,
        day_key TEXT NOT NULL DEFAULT '',
        week_key TEXT NOT NULL DEFAULT '',
        month_key TEXT NOT NULL DEFAULT ''
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_allowances_agent ON allowances (agent_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS transactions (
        id TEXT PRIMARY KEY,
        allowance_id TEXT NOT NULL,
        amount INTEGER NOT NULL,
        category TEXT NOT NULL,
        recipient TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'success',
        timestamp INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_transactions_allowance ON transactions (allowance_id, timestamp)",
    """
    CREATE TABLE IF NOT EXISTS invoices (
        id TEXT PRIMARY KEY,
        issuer_id TEXT NOT NULL,
        recipient_id TEXT NOT NULL,
        amount INTEGER NOT NULL,
        currency TEXT NOT NULL DEFAULT 'USDC',
        status TEXT NOT NULL DEFAULT 'draft',
        due_at INTEGER,
        created_at INTEGER NOT NULL,
        memo TEXT,
        paid_transaction_id TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_invoices_status ON invoices (status, due_at)",
    """
    CREATE TABLE IF NOT EXISTS subscriptions (
        id TEXT PRIMARY KEY,
        subscriber_id TEXT NOT NULL,
        provider_id TEXT NOT NULL,
        plan_id TEXT NOT NULL,
        amount INTEGER NOT NULL,
        interval TEXT NOT NULL DEFAULT 'monthly',
        next_billing_date INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'active',
        allowance_id TEXT NOT NULL,
        created_at INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_subscriptions_due ON subscriptions (status, next_billing_date)",
)


class LedgerStore:
    """Owns the SQLite database file and maps rows to ledger entities."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = db_path or DEFAULT_DB_PATH
        ensure_private_dir(self.db_path.parent)
        self._init_db()
        secure_database_files(self.db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self.read() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            for statement in _SCHEMA:
                conn.execute(statement)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Open a write transaction; commits on exit, rolls back on error."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            raise StorageError(f"{type(e).__name__}: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        except sqlite3.Error as e:
            raise StorageError(f"{type(e).__name__}: {e}") from e
        finally:
            conn.close()

    # ── Allowances ────────────────────────────────────────────────

    def insert_allowance(self, conn: sqlite3.Connection, allowance: Allowance) -> None:
        conn.execute(
            """
            INSERT INTO allowances (
                id, agent_id, owner_id, daily_limit, weekly_limit, monthly_limit,
                spent_today, spent_this_week, spent_this_month, status, created_at,
                day_key, week_key, month_key
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                allowance.allowance_id,
                allowance.agent_id,
                allowance.owner_id,
                allowance.daily_limit_micros,
                allowance.weekly_limit_micros,
                allowance.monthly_limit_micros,
                allowance.spent_today_micros,
                allowance.spent_this_week_micros,
                allowance.spent_this_month_micros,
                allowance.status,
                allowance.created_at,
                allowance.day_key,
                allowance.week_key,
                allowance.month_key,
            ),
        )

    def get_allowance(self, conn: sqlite3.Connection, allowance_id: str) -> Optional[Allowance]:
        row = conn.execute("SELECT * FROM allowances WHERE id = ?", (allowance_id,)).fetchone()
        return _row_to_allowance(row) if row else None

    def first_allowance_for_agent(self, conn: sqlite3.Connection, agent_id: str) -> Optional[Allowance]:
        row = conn.execute(
            "SELECT * FROM allowances WHERE agent_id = ? ORDER BY created_at ASC, id ASC LIMIT 1",
            (agent_id,),
        ).fetchone()
        return _row_to_allowance(row) if row else None

    def update_allowance(self, conn: sqlite3.Connection, allowance: Allowance) -> None:
        """Write limits, counters, period keys and status in one statement."""
        conn.execute(
            """
            UPDATE allowances
            SET daily_limit = ?, weekly_limit = ?, monthly_limit = ?,
                spent_today = ?, spent_this_week = ?, spent_this_month = ?,
                status = ?, day_key = ?, week_key = ?, month_key = ?
            WHERE id = ?
            """,
            (
                allowance.daily_limit_micros,
                allowance.weekly_limit_micros,
                allowance.monthly_limit_micros,
                allowance.spent_today_micros,
                allowance.spent_this_week_micros,
                allowance.spent_this_month_micros,
                allowance.status,
                allowance.day_key,
                allowance.week_key,
                allowance.month_key,
                allowance.allowance_id,
            ),
        )

    def list_allowances(
        self,
        conn: sqlite3.Connection,
        agent_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Allowance]:
        where, params = _filters(("agent_id = ?", agent_id), ("status = ?", status))
        rows = _page(conn, "allowances", where, params, "created_at ASC, id ASC", limit, offset)
        return [_row_to_allowance(r) for r in rows]

    # ── Transactions ──────────────────────────────────────────────

    def insert_transaction(self, conn: sqlite3.Connection, tx: Transaction) -> None:
        conn.execute(
            """
            INSERT INTO transactions (id, allowance_id, amount, category, recipient, status, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                tx.transaction_id,
                tx.allowance_id,
                tx.amount_micros,
                tx.category,
                tx.recipient,
                tx.status,
                tx.timestamp,
            ),
        )

    def list_transactions(
        self,
        conn: sqlite3.Connection,
        allowance_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Transaction]:
        where, params = _filters(("allowance_id = ?", allowance_id))
        rows = _page(conn, "transactions", where, params, "timestamp ASC, id ASC", limit, offset)
        return [_row_to_tx(r) for r in rows]

    # ── Invoices ──────────────────────────────────────────────────

    def insert_invoice(self, conn: sqlite3.Connection, invoice: Invoice) -> None:
        conn.execute(
            """
            INSERT INTO invoices (
                id, issuer_id, recipient_id, amount, currency, status,
                due_at, created_at, memo, paid_transaction_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                invoice.invoice_id,
                invoice.issuer_id,
                invoice.recipient_id,
                invoice.amount_micros,
                invoice.currency,
                invoice.status,
                invoice.due_at,
                invoice.created_at,
                invoice.memo,
                invoice.paid_transaction_id,
            ),
        )

    def get_invoice(self, conn: sqlite3.Connection, invoice_id: str) -> Optional[Invoice]:
        row = conn.execute("SELECT * FROM invoices WHERE id = ?", (invoice_id,)).fetchone()
        return _row_to_invoice(row) if row else None

    def set_invoice_status(
        self,
        conn: sqlite3.Connection,
        invoice_id: str,
        status: InvoiceStatus,
        paid_transaction_id: Optional[str] = None,
    ) -> None:
        conn.execute(
            """
            UPDATE invoices
            SET status = ?, paid_transaction_id = COALESCE(?, paid_transaction_id)
            WHERE id = ?
            """,
            (status.value, paid_transaction_id, invoice_id),
        )

    def list_invoices(
        self,
        conn: sqlite3.Connection,
        agent_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Invoice]:
        where, params = _filters(
            ("(issuer_id = ? OR recipient_id = ?)", (agent_id, agent_id) if agent_id else None),
            ("status = ?", status),
        )
        rows = _page(conn, "invoices", where, params, "created_at ASC, id ASC", limit, offset)
        return [_row_to_invoice(r) for r in rows]

    def list_overdue_invoices(self, conn: sqlite3.Connection, now_ms: int) -> list[Invoice]:
        rows = conn.execute(
            """
            SELECT * FROM invoices
            WHERE status = ? AND due_at IS NOT NULL AND due_at < ?
            ORDER BY due_at ASC, id ASC
            """,
            (InvoiceStatus.SENT.value, now_ms),
        ).fetchall()
        return [_row_to_invoice(r) for r in rows]

    # ── Subscriptions ─────────────────────────────────────────────

    def insert_subscription(self, conn: sqlite3.Connection, sub: Subscription) -> None:
        conn.execute(
            """
            INSERT INTO subscriptions (
                id, subscriber_id, provider_id, plan_id, amount, interval,
                next_billing_date, status, allowance_id, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                sub.subscription_id,
                sub.subscriber_id,
                sub.provider_id,
                sub.plan_id,
                sub.amount_micros,
                sub.interval,
                sub.next_billing_date,
                sub.status,
                sub.allowance_id,
                sub.created_at,
            ),
        )

    def get_subscription(self, conn: sqlite3.Connection, subscription_id: str) -> Optional[Subscription]:
        row = conn.execute("SELECT * FROM subscriptions WHERE id = ?", (subscription_id,)).fetchone()
        return _row_to_subscription(row) if row else None

    def set_next_billing_date(self, conn: sqlite3.Connection, subscription_id: str, next_billing_date: int) -> None:
        conn.execute(
            "UPDATE subscriptions SET next_billing_date = ? WHERE id = ?",
            (next_billing_date, subscription_id),
        )

    def set_subscription_status(
        self, conn: sqlite3.Connection, subscription_id: str, status: SubscriptionStatus
    ) -> None:
        conn.execute(
            "UPDATE subscriptions SET status = ? WHERE id = ?",
            (status.value, subscription_id),
        )

    def list_subscriptions(
        self,
        conn: sqlite3.Connection,
        agent_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Subscription]:
        where, params = _filters(
            ("(subscriber_id = ? OR provider_id = ?)", (agent_id, agent_id) if agent_id else None),
            ("status = ?", status),
        )
        rows = _page(conn, "subscriptions", where, params, "created_at ASC, id ASC", limit, offset)
        return [_row_to_subscription(r) for r in rows]

    def list_due_subscriptions(self, conn: sqlite3.Connection, now_ms: int) -> list[Subscription]:
        rows = conn.execute(
            """
            SELECT * FROM subscriptions
            WHERE status = ? AND next_billing_date <= ?
            ORDER BY next_billing_date ASC, id ASC
            """,
            (SubscriptionStatus.ACTIVE.value, now_ms),
        ).fetchall()
        return [_row_to_subscription(r) for r in rows]


def _filters(*clauses: tuple[str, Any]) -> tuple[list[str], list[Any]]:
    where: list[str] = []
    params: list[Any] = []
    for clause, value in clauses:
        if value is None:
            continue
        where.append(clause)
        if isinstance(value, tuple):
            params.extend(value)
        else:
            params.append(value)
    return where, params


def _page(
    conn: sqlite3.Connection,
    table: str,
    where: list[str],
    params: list[Any],
    order_by: str,
    limit: Optional[int],
    offset: int,
) -> list[sqlite3.Row]:
    sql = f"SELECT * FROM {table}"
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += f" ORDER BY {order_by} LIMIT ? OFFSET ?"
    return conn.execute(sql, (*params, -1 if limit is None else limit, offset)).fetchall()


def _row_to_allowance(row: sqlite3.Row) -> Allowance:
    return Allowance(
        allowance_id=row["id"],
        agent_id=row["agent_id"],
        owner_id=row["owner_id"],
        daily_limit_micros=row["daily_limit"],
        weekly_limit_micros=row["weekly_limit"],
        monthly_limit_micros=row["monthly_limit"],
        spent_today_micros=row["spent_today"],
        spent_this_week_micros=row["spent_this_week"],
        spent_this_month_micros=row["spent_this_month"],
        status=row["status"],
        created_at=row["created_at"],
        day_key=row["day_key"],
        week_key=row["week_key"],
        month_key=row["month_key"],
    )


def _row_to_tx(row: sqlite3.Row) -> Transaction:
    return Transaction(
        transaction_id=row["id"],
        allowance_id=row["allowance_id"],
        amount_micros=row["amount"],
        category=row["category"],
        recipient=row["recipient"],
        status=row["status"],
        timestamp=row["timestamp"],
    )


def _row_to_invoice(row: sqlite3.Row) -> Invoice:
    return Invoice(
        invoice_id=row["id"],
        issuer_id=row["issuer_id"],
        recipient_id=row["recipient_id"],
        amount_micros=row["amount"],
        currency=row["currency"],
        status=row["status"],
        due_at=row["due_at"],
        created_at=row["created_at"],
        memo=row["memo"],
        paid_transaction_id=row["paid_transaction_id"],
    )


def _row_to_subscription(row: sqlite3.Row) -> Subscription:
    return Subscription(
        subscription_id=row["id"],
        subscriber_id=row["subscriber_id"],
        provider_id=row["provider_id"],
        plan_id=row["plan_id"],
        amount_micros=row["amount"],
        interval=row["interval"],
        next_billing_date=row["next_billing_date"],
        status=row["status"],
        allowance_id=row["allowance_id"],
        created_at=row["created_at"],
    )
