"""Webhook delivery for extraction and crawl events.

``WebhookDispatcher.send()`` is fire-and-forget: delivery runs on the
``DetachedTaskRunner``, so a caller that times out or is cancelled never
drops a notification. ``deliver()`` does the same work inline and returns a
``DeliveryResult`` for callers that track deliveries.

Request format:
    - ``POST`` with a JSON body ``{"event", "timestamp", "job_id", "data"}``
    - ``Content-Type: application/json``, ``User-Agent: ScrapeGate-Webhook/1.0``
    - With a secret: ``X-ScrapeGate-Signature`` (hex HMAC-SHA256 of the body)
      and ``X-ScrapeGate-Signature-256: sha256=<hex>``
    - Custom headers last, so they may override the standard ones

A delivery succeeds on any 2xx status. Failed attempts are retried with a
quadratic pause (4 s before the second attempt, 9 s before the third).
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import httpx
from pydantic import BaseModel, ConfigDict, Field

from scrapegate.tasks import DetachedTaskRunner

__all__ = [
    "USER_AGENT",
    "MAX_RESPONSE_BODY",
    "WebhookConfig",
    "DeliveryResult",
    "WebhookDispatcher",
    "compute_signature",
    "is_event_subscribed",
]

logger = logging.getLogger(__name__)

USER_AGENT = "ScrapeGate-Webhook/1.0"
MAX_RESPONSE_BODY = 64 * 1024
SIGNATURE_HEADER = "X-ScrapeGate-Signature"
SIGNATURE_256_HEADER = "X-ScrapeGate-Signature-256"


class WebhookConfig(BaseModel):
    """Where and how to deliver one webhook.

    Attributes:
        url: Endpoint receiving the POST.
        secret: Shared secret for HMAC signing; unsigned when empty.
        headers: Extra request headers as ``(name, value)`` pairs.
        events: Subscribed event types. Empty or ``"*"`` matches everything.
        webhook_id: Identifier of a stored webhook, None for ad-hoc ones.
    """

    model_config = ConfigDict(frozen=True)

    url: str = Field(..., min_length=1)
    secret: str = Field(default="", repr=False)
    headers: Tuple[Tuple[str, str], ...] = ()
    events: Tuple[str, ...] = ()
    webhook_id: Optional[str] = None


class DeliveryResult(BaseModel):
    """Outcome of the last delivery attempt."""

    model_config = ConfigDict(frozen=True)

    url: str
    event: str
    attempts: int = 0
    status_code: int = 0
    response_body: str = ""
    response_time_ms: int = 0
    error: str = ""

    @property
    def success(self) -> bool:
        return not self.error and 200 <= self.status_code < 300


def compute_signature(payload: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of ``payload`` keyed with ``secret``."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def is_event_subscribed(events: Tuple[str, ...], event: str) -> bool:
    """Return True when ``event`` passes the subscription filter."""
    if not events:
        return True
    return any(candidate == "*" or candidate == event for candidate in events)


def build_payload(event: str, job_id: str, data: Any) -> bytes:
    """Serialize the webhook body."""
    body = {
        "event": event,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "job_id": job_id,
        "data": data,
    }
    return json.dumps(body, default=str).encode("utf-8")


class WebhookDispatcher:
    """Delivers webhook events with retries.

    Args:
        tasks: Runner used by ``send()``.
        client: Shared ``httpx.AsyncClient``; one is created per delivery
                when None.
        timeout: HTTP timeout of one attempt in seconds.
        max_attempts: Attempts per delivery.
        backoff_seconds: Base of the pause before attempt ``n``
                         (``backoff_seconds * n ** 2``).
    """

    def __init__(
        self,
        tasks: DetachedTaskRunner,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
    ) -> None:
        self._tasks = tasks
        self._client = client
        self._timeout = timeout
        self._max_attempts = max(1, max_attempts)
        self._backoff_seconds = backoff_seconds

    def send(
        self,
        config: WebhookConfig,
        event: str,
        job_id: str,
        data: Any,
    ) -> Optional["asyncio.Task[Optional[DeliveryResult]]"]:
        """Deliver in the background. Returns None when not subscribed."""
        if not is_event_subscribed(config.events, event):
            logger.debug("Webhook %s not subscribed to %s", config.url, event)
            return None

        # The dispatcher retries on its own; the runner only bounds the total.
        budget = self._max_attempts * self._timeout + self._backoff_seconds * sum(
            attempt ** 2 for attempt in range(2, self._max_attempts + 1)
        )
        return self._tasks.submit(
            lambda: self.deliver(config, event, job_id, data),
            name=f"webhook:{event}",
            timeout=budget,
            max_attempts=1,
        )

    async def deliver(
        self,
        config: WebhookConfig,
        event: str,
        job_id: str,
        data: Any,
    ) -> Optional[DeliveryResult]:
        """Deliver now, retrying failed attempts.

        Returns:
            The result of the last attempt, or None when not subscribed.
        """
        if not is_event_subscribed(config.events, event):
            return None

        payload = build_payload(event, job_id, data)
        headers = self._headers(config, payload)

        if self._client is not None:
            return await self._deliver_with_retries(self._client, config, event, payload, headers)
        async with httpx.AsyncClient() as client:
            return await self._deliver_with_retries(client, config, event, payload, headers)

    def _headers(self, config: WebhookConfig, payload: bytes) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        if config.secret:
            signature = compute_signature(payload, config.secret)
            headers[SIGNATURE_HEADER] = signature
            headers[SIGNATURE_256_HEADER] = f"sha256={signature}"
        for name, value in config.headers:
            headers[name] = value
        return headers

    async def _deliver_with_retries(
        self,
        client: httpx.AsyncClient,
        config: WebhookConfig,
        event: str,
        payload: bytes,
        headers: Dict[str, str],
    ) -> DeliveryResult:
        result = DeliveryResult(url=config.url, event=event)

        for attempt in range(1, self._max_attempts + 1):
            if attempt > 1:
                await asyncio.sleep(self._backoff_seconds * attempt ** 2)

            result = await self._attempt(client, config, event, payload, headers, attempt)
            if result.success:
                logger.info(
                    "Webhook %s delivered to %s (status %d, attempt %d, %d ms)",
                    event,
                    config.url,
                    result.status_code,
                    attempt,
                    result.response_time_ms,
                )
                return result

            if attempt < self._max_attempts:
                logger.warning(
                    "Webhook %s to %s failed (attempt %d/%d): %s",
                    event,
                    config.url,
                    attempt,
                    self._max_attempts,
                    result.error,
                )

        logger.error(
            "Webhook %s to %s failed after %d attempt(s): %s",
            event,
            config.url,
            self._max_attempts,
            result.error,
        )
        return result

    async def _attempt(
        self,
        client: httpx.AsyncClient,
        config: WebhookConfig,
        event: str,
        payload: bytes,
        headers: Dict[str, str],
        attempt: int,
    ) -> DeliveryResult:
        started = time.monotonic()
        try:
            response = await client.post(
                config.url,
                content=payload,
                headers=headers,
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            return DeliveryResult(
                url=config.url,
                event=event,
                attempts=attempt,
                response_time_ms=int((time.monotonic() - started) * 1000),
                error=str(exc) or type(exc).__name__,
            )

        elapsed = int((time.monotonic() - started) * 1000)
        body = response.content[:MAX_RESPONSE_BODY].decode("utf-8", errors="replace")
        error = ""
        if not 200 <= response.status_code < 300:
            error = f"HTTP {response.status_code}: {response.reason_phrase}"
        return DeliveryResult(
            url=config.url,
            event=event,
            attempts=attempt,
            status_code=response.status_code,
            response_body=body,
            response_time_ms=elapsed,
            error=error,
        )

