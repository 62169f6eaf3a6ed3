"""Poll scheduler — delayed, self-re-arming re-checks on the event loop.

Scheduling never suspends the caller: schedule() registers a timer and
returns immediately. The callback fires once, after at least the given
delay. It may be sync or async, and it may schedule a follow-up.

poll_until() packages the common loop: run a check every interval
until it reports done, or until max_attempts checks have run. Each
chain is keyed (e.g. "quorum:<message_id>", "anchor:<batch_id>").
Arming a key that already has a pending timer replaces that timer,
which is how a manual action preempts the next scheduled retry.
A check that is already running is never cancelled.

There is no ordering guarantee between independently keyed chains.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

logger = structlog.get_logger(__name__)

Callback = Callable[[], Union[None, Awaitable[Any]]]
Check = Callable[[], Union[bool, Awaitable[bool]]]


@dataclass
class PollHandle:
    """A scheduled callback. Cancelling only affects a not-yet-fired timer."""
    key: str
    delay: float
    attempt: int = 0
    _timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)
    fired: bool = False
    cancelled: bool = False

    def cancel(self) -> bool:
        if self.fired or self.cancelled:
            return False
        self.cancelled = True
        if self._timer is not None:
            self._timer.cancel()
        return True


class PollScheduler:
    """Non-blocking delayed callbacks with keyed, bounded re-arming.

    Usage:
        scheduler = PollScheduler()
        scheduler.poll_until(
            f"quorum:{message_id}",
            interval=30.0,
            check=lambda: tracker.is_quorum_reached(message_id),
            max_attempts=120,
        )
    """

    def __init__(self) -> None:
        self._pending: dict[str, PollHandle] = {}
        self._tasks: set[asyncio.Task] = set()
        self._anon = itertools.count(1)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def schedule(
        self,
        delay: float,
        callback: Callback,
        key: Optional[str] = None,
        attempt: int = 0,
    ) -> PollHandle:
        """Run callback once after at least delay seconds.

        Must be called from within a running event loop. Returns at once.
        """
        if delay < 0:
            raise ValueError(f"Delay must be non-negative, got {delay}")
        loop = asyncio.get_running_loop()
        key = key or f"anon:{next(self._anon)}"

        previous = self._pending.pop(key, None)
        if previous is not None and previous.cancel():
            logger.debug("poll_preempted", key=key, attempt=previous.attempt)

        handle = PollHandle(key=key, delay=delay, attempt=attempt)
        handle._timer = loop.call_later(delay, self._fire, handle, callback)
        self._pending[key] = handle
        return handle

    def poll_until(
        self,
        key: str,
        interval: float,
        check: Check,
        max_attempts: Optional[int] = None,
        on_exhausted: Optional[Callback] = None,
        initial_delay: Optional[float] = None,
    ) -> PollHandle:
        """Re-run check every interval until it returns True.

        After max_attempts checks without success the chain stops and
        on_exhausted (if given) runs. max_attempts=None means no cap; use
        it only for checks that are guaranteed to terminate.
        """
        if max_attempts is not None and max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

        def arm(attempt: int, delay: float) -> PollHandle:
            async def run() -> None:
                done = check()
                if inspect.isawaitable(done):
                    done = await done
                if done:
                    logger.debug("poll_done", key=key, attempt=attempt)
                    return
                if max_attempts is not None and attempt >= max_attempts:
                    logger.warning("poll_exhausted", key=key, attempts=attempt)
                    if on_exhausted is not None:
                        result = on_exhausted()
                        if inspect.isawaitable(result):
                            await result
                    return
                arm(attempt + 1, interval)

            return self.schedule(delay, run, key=key, attempt=attempt)

        return arm(1, interval if initial_delay is None else initial_delay)

    def cancel(self, key: str) -> bool:
        """Cancel the pending timer for key. Returns False if none was pending."""
        handle = self._pending.pop(key, None)
        return handle is not None and handle.cancel()

    def cancel_all(self) -> int:
        count = 0
        for key in list(self._pending):
            if self.cancel(key):
                count += 1
        return count

    def pending_keys(self) -> list[str]:
        return sorted(self._pending)

    def is_pending(self, key: str) -> bool:
        return key in self._pending

    @property
    def running_count(self) -> int:
        return len(self._tasks)

    async def join(self, poll: float = 0.001) -> None:
        """Wait until no timers are pending and no callbacks are running."""
        while self._pending or self._tasks:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            else:
                await asyncio.sleep(poll)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _fire(self, handle: PollHandle, callback: Callback) -> None:
        if handle.cancelled:
            return
        handle.fired = True
        if self._pending.get(handle.key) is handle:
            del self._pending[handle.key]

        try:
            result = callback()
        except Exception as e:
            logger.error("poll_callback_failed", key=handle.key, error=str(e))
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(lambda t, key=handle.key: self._task_done(key, t))

    def _task_done(self, key: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.info("poll_callback_cancelled", key=key)
            return
        error = task.exception()
        if error is not None:
            logger.error("poll_callback_failed", key=key, error=str(error))
