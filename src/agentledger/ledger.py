"""
Invoicing.

Invoices move draft → sent → paid; cancelled is reachable from any unpaid
state. Paying an invoice debits the recipient's allowance and marks the invoice
paid in the same database transaction, so an invoice is paid at most once.
"""

from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from .allowance import Amount, AllowanceEngine
from .errors import StorageError
from .models import Invoice, InvoiceStatus, now_ms
from .money import amount_to_micros
from .store import LedgerStore

logger = logging.getLogger(__name__)

INVOICE_PAYMENT_CATEGORY = "invoice_payment"
DEFAULT_CURRENCY = "USDC"


@dataclass
class LedgerResult:
    """Result of an invoice operation."""

    success: bool
    invoice_id: Optional[str] = None
    transaction_id: Optional[str] = None
    allowance_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "invoice_id": self.invoice_id,
            "transaction_id": self.transaction_id,
            "allowance_id": self.allowance_id,
            "error": self.error,
        }


class Ledger:
    """Creates, sends, pays and cancels invoices."""

    def __init__(
        self,
        store: LedgerStore,
        allowances: AllowanceEngine,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.allowances = allowances
        self.clock = clock

    def create_invoice(
        self,
        issuer_id: str,
        recipient_id: str,
        amount: Amount,
        due_at: Optional[int] = None,
        currency: str = DEFAULT_CURRENCY,
        memo: Optional[str] = None,
    ) -> LedgerResult:
        invoice = Invoice(
            invoice_id=str(uuid.uuid4()),
            issuer_id=issuer_id,
            recipient_id=recipient_id,
            amount_micros=amount_to_micros(amount),
            currency=currency,
            status=InvoiceStatus.DRAFT.value,
            due_at=due_at,
            created_at=now_ms(self.clock),
            memo=memo,
        )
        try:
            with self.store.transaction() as conn:
                self.store.insert_invoice(conn, invoice)
        except StorageError:
            logger.exception("Create invoice failed (%s -> %s)", issuer_id, recipient_id)
            return LedgerResult(success=False, error="Database error")
        logger.info("Created invoice %s (%s -> %s)", invoice.invoice_id, issuer_id, recipient_id)
        return LedgerResult(success=True, invoice_id=invoice.invoice_id)

    def send_invoice(self, invoice_id: str) -> LedgerResult:
        try:
            with self.store.transaction() as conn:
                invoice = self.store.get_invoice(conn, invoice_id)
                if invoice is None:
                    return LedgerResult(success=False, invoice_id=invoice_id, error="Invoice not found")
                if invoice.status != InvoiceStatus.DRAFT.value:
                    return LedgerResult(
                        success=False,
                        invoice_id=invoice_id,
                        error="Invoice must be in draft status to send",
                    )
                self.store.set_invoice_status(conn, invoice_id, InvoiceStatus.SENT)
        except StorageError:
            logger.exception("Send invoice %s failed", invoice_id)
            return LedgerResult(success=False, invoice_id=invoice_id, error="Database error")
        return LedgerResult(success=True, invoice_id=invoice_id)

    def pay_invoice(
        self,
        invoice_id: str,
        agent_id: str,
        allowance_id: Optional[str] = None,
    ) -> LedgerResult:
        """
        Pay an invoice from the recipient's allowance.

        Draft invoices are payable too; subscription billing sends first, but
        internally generated invoices need not.
        """
        try:
            with self.store.transaction() as conn:
                result = self.pay_within(conn, invoice_id, agent_id, allowance_id)
        except StorageError:
            logger.exception("Pay invoice %s failed", invoice_id)
            return LedgerResult(success=False, invoice_id=invoice_id, error="Database error")
        if result.success:
            logger.info("Invoice %s paid by %s (tx %s)", invoice_id, agent_id, result.transaction_id)
        return result

    def pay_within(
        self,
        conn: sqlite3.Connection,
        invoice_id: str,
        agent_id: str,
        allowance_id: Optional[str] = None,
    ) -> LedgerResult:
        """Pay an invoice inside a transaction the caller already holds."""
        invoice = self.store.get_invoice(conn, invoice_id)
        if invoice is None:
            return LedgerResult(success=False, invoice_id=invoice_id, error="Invoice not found")
        if invoice.status == InvoiceStatus.PAID.value:
            return LedgerResult(success=False, invoice_id=invoice_id, error="Invoice already paid")
        if invoice.status == InvoiceStatus.CANCELLED.value:
            return LedgerResult(success=False, invoice_id=invoice_id, error="Invoice is cancelled")
        if invoice.recipient_id != agent_id:
            return LedgerResult(success=False, invoice_id=invoice_id, error="Recipient mismatch")

        spend = self.allowances.deduct_within(
            conn,
            agent_id=agent_id,
            amount_micros=invoice.amount_micros,
            category=INVOICE_PAYMENT_CATEGORY,
            recipient=invoice.issuer_id,
            allowance_id=allowance_id,
        )
        if not spend.success:
            return LedgerResult(success=False, invoice_id=invoice_id, error=spend.reason or "Spend failed")
        self.store.set_invoice_status(
            conn,
            invoice_id,
            InvoiceStatus.PAID,
            paid_transaction_id=spend.transaction_id,
        )
        return LedgerResult(
            success=True,
            invoice_id=invoice_id,
            transaction_id=spend.transaction_id,
            allowance_id=spend.allowance_id,
        )

    def cancel_invoice(self, invoice_id: str) -> LedgerResult:
        try:
            with self.store.transaction() as conn:
                invoice = self.store.get_invoice(conn, invoice_id)
                if invoice is None:
                    return LedgerResult(success=False, invoice_id=invoice_id, error="Invoice not found")
                if invoice.status == InvoiceStatus.PAID.value:
                    return LedgerResult(success=False, invoice_id=invoice_id, error="Invoice already paid")
                if invoice.status == InvoiceStatus.CANCELLED.value:
                    return LedgerResult(success=False, invoice_id=invoice_id, error="Invoice already cancelled")
                self.store.set_invoice_status(conn, invoice_id, InvoiceStatus.CANCELLED)
        except StorageError:
            logger.exception("Cancel invoice %s failed", invoice_id)
            return LedgerResult(success=False, invoice_id=invoice_id, error="Database error")
        return LedgerResult(success=True, invoice_id=invoice_id)

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        with self.store.read() as conn:
            return self.store.get_invoice(conn, invoice_id)

    def list_invoices(
        self,
        agent_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Invoice]:
        with self.store.read() as conn:
            return self.store.list_invoices(conn, agent_id=agent_id, status=status, limit=limit, offset=offset)

    def overdue_invoices(self, now: Optional[int] = None) -> list[Invoice]:
        """Sent invoices whose due date has passed."""
        cutoff = now if now is not None else now_ms(self.clock)
        with self.store.read() as conn:
            return self.store.list_overdue_invoices(conn, cutoff)
