"""
agentledger: financial rails for AI agents.

Owners grant agents spending allowances; agents invoice each other, pay from
their allowances and run recurring subscriptions, with webhook notifications
and on-chain balance checks alongside.
"""

__version__ = "0.1.0"

from .allowance import AllowanceEngine, SpendCheck, SpendResult
from .config import LedgerConfig
from .errors import LedgerError, NetworkError, RpcError, StorageError, ValidationError
from .ledger import Ledger, LedgerResult
from .models import (
    Allowance,
    AllowanceStatus,
    BillingInterval,
    Invoice,
    InvoiceStatus,
    Subscription,
    SubscriptionStatus,
    Transaction,
    TransactionStatus,
)
from .onchain import BalanceCheck, BalanceResult, OnChainReader
from .service import AgentLedger
from .store import LedgerStore
from .subscriptions import BillingRun, SubscriptionBiller, SubscriptionResult
from .webhooks import NotificationResult, WebhookEvent, WebhookNotifier, WebhookRegistry

__all__ = [
    "AgentLedger", "LedgerConfig", "LedgerStore",
    "AllowanceEngine", "SpendCheck", "SpendResult",
    "Ledger", "LedgerResult",
    "SubscriptionBiller", "SubscriptionResult", "BillingRun",
    "WebhookEvent", "WebhookRegistry", "WebhookNotifier", "NotificationResult",
    "OnChainReader", "BalanceResult", "BalanceCheck",
    "Allowance", "AllowanceStatus", "Transaction", "TransactionStatus",
    "Invoice", "InvoiceStatus", "Subscription", "SubscriptionStatus", "BillingInterval",
    "LedgerError", "ValidationError", "StorageError", "NetworkError", "RpcError",
]
