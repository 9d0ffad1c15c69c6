"""
retry.py - Retry with exponential backoff for agent operations.

RetryExecutor wraps a zero-argument coroutine factory and re-invokes it on
recoverable failures (crash, timeout, validation) with jittered exponential
backoff. Attempt counters are kept in memory per (run, agent, error kind)
for the executor's lifetime; a restarted process starts from zero.

Usage:
    executor = RetryExecutor(RetryPolicy(max_attempts=3), events=stream)
    result = await executor.execute_with_retry(
        lambda: invoker.invoke(request),
        RetryContext(run_id=run_id, agent="builder"),
    )
"""

from __future__ import annotations

import asyncio
import logging
import random
import threading
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from .errors import RetryExhaustedError, RunCancelledError, error_kind_of
from .events import EventStream
from .types import (
    RECOVERABLE_ERROR_KINDS,
    ErrorKind,
    RetryContext,
    RetryDelay,
    RetryExhausted,
    RetryFailed,
    RetryKey,
    RetryStarted,
    RetrySucceeded,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration.

    Attributes:
        max_attempts: Total invocations allowed per operation (>= 1).
        base_delay_seconds: Delay after the first failure.
        max_delay_seconds: Upper bound for any delay.
        backoff_multiplier: Growth factor per attempt.
        recoverable_errors: Error kinds eligible for retry.
        jitter: Relative jitter applied to each delay (0.1 = +/-10%).
    """

    max_attempts: int = 2
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    recoverable_errors: Tuple[ErrorKind, ...] = field(default=RECOVERABLE_ERROR_KINDS)
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("delays must be >= 0")


class RetryExecutor:
    """Executes operations with retry and exponential backoff.

    ``rng`` and ``sleep`` are injectable so tests can run deterministically
    without waiting.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        events: Optional[EventStream] = None,
        rng: Optional[random.Random] = None,
        sleep: Optional[SleepFn] = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.events = events or EventStream()
        self._rng = rng or random.Random()
        self._sleep = sleep or asyncio.sleep
        self._attempts: Dict[RetryKey, int] = {}

    # -------------------------------------------------------------------------
    # Pure helpers
    # -------------------------------------------------------------------------

    def is_recoverable(self, kind: ErrorKind) -> bool:
        return kind in self.policy.recoverable_errors

    def should_retry(self, kind: ErrorKind, attempt: int) -> bool:
        """True if a failure of ``kind`` on ``attempt`` may be retried."""
        return self.is_recoverable(kind) and attempt < self.policy.max_attempts

    def base_delay(self, attempt: int) -> float:
        """Unjittered delay after ``attempt`` (1-based), clamped to max."""
        delay = self.policy.base_delay_seconds * self.policy.backoff_multiplier ** (attempt - 1)
        return min(delay, self.policy.max_delay_seconds)

    def get_delay(self, attempt: int) -> float:
        """Jittered delay after ``attempt``, never above max_delay_seconds."""
        raw = self.policy.base_delay_seconds * self.policy.backoff_multiplier ** (attempt - 1)
        factor = self._rng.uniform(1 - self.policy.jitter, 1 + self.policy.jitter)
        return min(raw * factor, self.policy.max_delay_seconds)

    def classify(self, error: BaseException, context: RetryContext) -> ErrorKind:
        """Error kind of a failure.

        The declared kind of the context wins over agent and foreign errors;
        conductor errors of a non-agent kind (not found, cancelled, ...) keep
        their own kind. Timeouts are ``timeout``, anything else is ``crash``.
        """
        own = error_kind_of(error)
        if own is not None and own not in RECOVERABLE_ERROR_KINDS:
            return own
        if context.error_kind is not None:
            return context.error_kind
        if own is not None:
            return own
        if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
            return ErrorKind.TIMEOUT
        return ErrorKind.CRASH

    # -------------------------------------------------------------------------
    # Counters
    # -------------------------------------------------------------------------

    def get_attempt_count(self, context: RetryContext) -> int:
        """Recorded attempts for the context (highest over kinds if undeclared)."""
        if context.error_kind is not None:
            return self._attempts.get(RetryKey.for_context(context, context.error_kind), 0)
        counts = [
            count
            for key, count in self._attempts.items()
            if key.run_id == context.run_id and key.agent == context.agent
        ]
        return max(counts, default=0)

    def reset_attempts(self, context: RetryContext) -> None:
        """Clear counters of the context (only its declared kind, if any)."""
        for key in list(self._attempts):
            if key.run_id != context.run_id or key.agent != context.agent:
                continue
            if context.error_kind is None or key.error_kind == context.error_kind:
                del self._attempts[key]

    def reset_all(self) -> None:
        self._attempts.clear()

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        context: RetryContext,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> T:
        """Run ``operation`` until it succeeds or attempts are exhausted.

        Raises:
            RetryExhaustedError: All attempts failed with recoverable errors.
                The last error is chained as ``__cause__``.
            RunCancelledError: ``cancel_event`` was set before an attempt or
                during a backoff delay.
            Exception: Non-recoverable errors propagate unchanged.
        """
        attempt = 0
        if context.error_kind is not None:
            attempt = self._attempts.get(RetryKey.for_context(context, context.error_kind), 0)
        max_attempts = self.policy.max_attempts

        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise RunCancelledError(
                    f"{context.agent} cancelled before attempt {attempt + 1}",
                    {"run_id": context.run_id, "agent": context.agent},
                )

            attempt += 1
            self.events.publish(RetryStarted(context=context, attempt=attempt, max_attempts=max_attempts))
            logger.debug("Attempt %d/%d for %s/%s", attempt, max_attempts, context.run_id, context.agent)

            try:
                result = await operation()
            except Exception as error:
                kind = self.classify(error, context)
                key = RetryKey.for_context(context, kind)
                self._attempts[key] = attempt
                message = str(error) or type(error).__name__
                self.events.publish(
                    RetryFailed(context=context, attempt=attempt, error=message, error_kind=kind)
                )

                if not self.is_recoverable(kind):
                    del self._attempts[key]
                    raise

                if attempt >= max_attempts:
                    del self._attempts[key]
                    logger.warning(
                        "Retries exhausted for %s/%s after %d attempts: %s",
                        context.run_id,
                        context.agent,
                        attempt,
                        message,
                    )
                    self.events.publish(
                        RetryExhausted(context=context, total_attempts=attempt, error=message)
                    )
                    raise RetryExhaustedError(message, attempt, kind, error) from error

                delay = self.get_delay(attempt)
                logger.warning(
                    "%s/%s failed (%s, attempt %d/%d), retrying in %.2fs: %s",
                    context.run_id,
                    context.agent,
                    kind.value,
                    attempt,
                    max_attempts,
                    delay,
                    message,
                )
                self.events.publish(RetryDelay(context=context, delay_seconds=delay, attempt=attempt))
                await self._wait(delay, context, cancel_event)
                continue

            self.reset_attempts(RetryContext(run_id=context.run_id, agent=context.agent))
            self.events.publish(RetrySucceeded(context=context, attempt=attempt))
            return result

    async def _wait(
        self, delay: float, context: RetryContext, cancel_event: Optional[asyncio.Event]
    ) -> None:
        if cancel_event is None:
            await self._sleep(delay)
            return
        await run_cancellable(
            self._sleep(delay),
            cancel_event,
            RunCancelledError(
                f"{context.agent} retry delay abandoned",
                {"run_id": context.run_id, "agent": context.agent},
            ),
        )


async def run_cancellable(awaitable: Awaitable[T], cancel_event: asyncio.Event, error: BaseException) -> T:
    """Await ``awaitable`` unless ``cancel_event`` is set first.

    Raises ``error`` when the cancel signal wins; the awaitable is then
    cancelled.
    """
    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (work, waiter):
            if not task.done():
                task.cancel()

    if cancel_event.is_set() or not work.done() or work.cancelled():
        if work.done() and not work.cancelled():
            work.exception()
        raise error
    return work.result()


class CancelSignals:
    """Registry of cancel events for in-flight work, keyed by run or mission.

    Events belong to the loop that armed them; ``signal`` may be called
    from any thread.
    """

    def __init__(self) -> None:
        self._signals: Dict[str, Tuple[asyncio.AbstractEventLoop, asyncio.Event]] = {}
        self._lock = threading.Lock()

    def arm(self, key: str) -> asyncio.Event:
        event = asyncio.Event()
        with self._lock:
            self._signals[key] = (asyncio.get_running_loop(), event)
        return event

    def disarm(self, key: str, event: asyncio.Event) -> None:
        with self._lock:
            entry = self._signals.get(key)
            if entry is not None and entry[1] is event:
                del self._signals[key]

    def is_armed(self, key: str) -> bool:
        with self._lock:
            return key in self._signals

    def signal(self, key: str) -> bool:
        """Set the cancel event of ``key``. Returns False if nothing is in flight."""
        with self._lock:
            entry = self._signals.get(key)
        if entry is None:
            return False
        loop, event = entry
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            event.set()
            return True
        try:
            loop.call_soon_threadsafe(event.set)
        except RuntimeError:
            logger.debug("Event loop for %s already closed", key)
            return False
        return True
