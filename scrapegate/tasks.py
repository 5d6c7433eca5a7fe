"""Detached background work.

Some side effects must finish even when the request that triggered them
is cancelled: usage records, webhook deliveries, capability-cache refreshes.
``DetachedTaskRunner`` runs such work on its own ``asyncio.Task``, with its
own timeout and retry policy, and keeps a strong reference to it until it
completes.

Usage::

    runner = DetachedTaskRunner()

    # Fire and forget
    runner.submit(lambda: billing.record_usage(record), name="record-usage")

    # Wait for it, but let it finish even if *we* get cancelled
    await runner.run(lambda: billing.record_usage(record), name="record-usage")

    # On shutdown
    await runner.drain()

Work is passed as a zero-argument factory returning a coroutine so that
every retry gets a fresh coroutine.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Set, TypeVar

__all__ = ["DetachedTaskRunner"]

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DetachedTaskRunner:
    """Runs coroutines independently of the caller's cancellation.

    Args:
        default_timeout: Seconds allowed for one attempt.
        default_max_attempts: Attempts before giving up.
        backoff_seconds: Base of the quadratic backoff. The pause before
                         attempt ``n`` is ``backoff_seconds * (n - 1) ** 2``.
    """

    def __init__(
        self,
        *,
        default_timeout: float = 10.0,
        default_max_attempts: int = 3,
        backoff_seconds: float = 1.0,
    ) -> None:
        self._default_timeout = default_timeout
        self._default_max_attempts = max(1, default_max_attempts)
        self._backoff_seconds = backoff_seconds
        self._tasks: Set["asyncio.Task[Any]"] = set()

    @property
    def pending(self) -> int:
        """Number of submitted tasks that have not finished yet."""
        return len(self._tasks)

    def submit(
        self,
        factory: Callable[[], Awaitable[T]],
        *,
        name: str,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ) -> "asyncio.Task[Optional[T]]":
        """Schedule work and return immediately.

        Must be called from within a running event loop.

        Args:
            factory: Zero-argument callable returning the coroutine to run.
            name: Label used in logs and as the task name.
            timeout: Per-attempt timeout in seconds (runner default if None).
            max_attempts: Attempts before giving up (runner default if None).

        Returns:
            The task. Its result is the work's return value, or None when
            every attempt failed.
        """
        task = asyncio.get_running_loop().create_task(
            self._run_with_policy(
                factory,
                name,
                self._default_timeout if timeout is None else timeout,
                self._default_max_attempts if max_attempts is None else max(1, max_attempts),
            ),
            name=f"detached:{name}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run(
        self,
        factory: Callable[[], Awaitable[T]],
        *,
        name: str,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ) -> Optional[T]:
        """Schedule work and wait for it.

        If the caller is cancelled while waiting, the caller sees
        ``CancelledError`` but the work keeps running.
        """
        task = self.submit(factory, name=name, timeout=timeout, max_attempts=max_attempts)
        return await asyncio.shield(task)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for every pending task, up to ``timeout`` seconds."""
        if not self._tasks:
            return
        pending = set(self._tasks)
        logger.debug("Draining %d detached task(s)", len(pending))
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        if still_pending:
            logger.warning(
                "%d detached task(s) still running after drain timeout",
                len(still_pending),
            )

    async def _run_with_policy(
        self,
        factory: Callable[[], Awaitable[T]],
        name: str,
        timeout: float,
        max_attempts: int,
    ) -> Optional[T]:
        last_error: Optional[BaseException] = None

        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                await asyncio.sleep(self._backoff_seconds * (attempt - 1) ** 2)
            try:
                return await asyncio.wait_for(factory(), timeout)
            except asyncio.TimeoutError as exc:
                last_error = exc
                logger.warning(
                    "Detached task %s timed out after %.1fs (attempt %d/%d)",
                    name,
                    timeout,
                    attempt,
                    max_attempts,
                )
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "Detached task %s failed (attempt %d/%d): %s",
                    name,
                    attempt,
                    max_attempts,
                    exc,
                )

        logger.error(
            "Detached task %s gave up after %d attempt(s): %r",
            name,
            max_attempts,
            last_error,
        )
        return None
