"""
Outbound webhook notifications.

Agents register callback URLs; events are POSTed to every URL of the agent in
parallel. Delivery is best effort: there is no retry queue and the registry
lives in memory only.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import httpx

from . import __version__

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0
USER_AGENT = f"agentledger-webhooks/{__version__}"


class WebhookEvent(str, Enum):
    INVOICE_CREATED = "invoice.created"
    INVOICE_SENT = "invoice.sent"
    INVOICE_PAID = "invoice.paid"
    INVOICE_OVERDUE = "invoice.overdue"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_BILLED = "subscription.billed"
    SUBSCRIPTION_FAILED = "subscription.failed"
    ALLOWANCE_LIMIT_WARNING = "allowance.limit_warning"
    ALLOWANCE_EXHAUSTED = "allowance.exhausted"


class WebhookRegistry:
    """Thread-safe agent → ordered, de-duplicated URL list."""

    def __init__(self):
        self._lock = threading.Lock()
        self._urls: dict[str, list[str]] = {}

    def register(self, agent_id: str, url: str) -> None:
        with self._lock:
            urls = self._urls.setdefault(agent_id, [])
            if url not in urls:
                urls.append(url)

    def unregister(self, agent_id: str, url: str) -> None:
        with self._lock:
            urls = self._urls.get(agent_id)
            if not urls or url not in urls:
                return
            urls.remove(url)
            if not urls:
                del self._urls[agent_id]

    def get_webhooks(self, agent_id: str) -> list[str]:
        with self._lock:
            return list(self._urls.get(agent_id, ()))


@dataclass
class NotificationResult:
    sent: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"sent": self.sent, "failed": self.failed, "errors": list(self.errors)}


class WebhookNotifier:
    """Delivers webhook events for agents in a registry."""

    def __init__(
        self,
        registry: Optional[WebhookRegistry] = None,
        client: Optional[httpx.Client] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_workers: int = 8,
    ):
        self.registry = registry if registry is not None else WebhookRegistry()
        self.timeout_seconds = timeout_seconds
        self.max_workers = max_workers
        self._owns_client = client is None
        self._http = client if client is not None else httpx.Client(timeout=timeout_seconds)

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def __enter__(self) -> "WebhookNotifier":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def notify_agent(
        self,
        agent_id: str,
        event: WebhookEvent | str,
        data: Optional[dict[str, Any]] = None,
    ) -> NotificationResult:
        urls = self.registry.get_webhooks(agent_id)
        try:
            event_name = WebhookEvent(event).value
        except ValueError:
            logger.warning("Unknown webhook event %r for agent %s", event, agent_id)
            return NotificationResult(failed=len(urls), errors=[f"Unknown webhook event: {event}"])
        if not urls:
            return NotificationResult()

        body = {
            "event": event_name,
            "timestamp": int(time.time() * 1000),
            "data": {"agent_id": agent_id, **(data or {})},
        }
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Webhook-Event": event_name,
        }

        result = NotificationResult()
        pool = ThreadPoolExecutor(max_workers=min(self.max_workers, len(urls)))
        try:
            futures = {pool.submit(self._deliver, url, body, headers): url for url in urls}
            # a stalled delivery is abandoned, not joined
            done, pending = wait(futures, timeout=self.timeout_seconds + 1.0)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        for future, url in futures.items():
            error = "Timeout" if future in pending else future.result()
            if error is None:
                result.sent += 1
            else:
                result.failed += 1
                result.errors.append(f"{url}: {error}")

        if result.failed:
            logger.warning(
                "Webhook %s for agent %s: %d sent, %d failed",
                event_name,
                agent_id,
                result.sent,
                result.failed,
            )
        return result

    def _deliver(self, url: str, body: dict, headers: dict[str, str]) -> Optional[str]:
        """POST one event. Returns None on success, else a short error."""
        deadline = time.monotonic() + self.timeout_seconds
        try:
            # the status line is all we need; the body is never read
            with self._http.stream("POST", url, json=body, headers=headers, timeout=self.timeout_seconds) as response:
                status = response.status_code
                ok = response.is_success
        except httpx.TimeoutException:
            return "Timeout"
        except httpx.HTTPError as e:
            return f"{type(e).__name__}: {e}"
        if time.monotonic() > deadline:
            return "Timeout"
        if not ok:
            return f"HTTP {status}"
        return None
