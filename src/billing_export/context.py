"""Run-scoped cancellation and blocking-call helpers."""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

from .errors import RunCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RunContext:
    """Cancellation scope shared by every wait in a run.

    Sleeps go through ``sleep()`` so a deadline or a signal unblocks all
    in-flight waits at once instead of leaving them parked on a global sleep.
    """

    def __init__(self, deadline_seconds: float | None = None) -> None:
        self._cancel_event = asyncio.Event()
        self._reason: str | None = None
        self._started = time.monotonic()
        self._deadline_seconds = deadline_seconds or None
        self._deadline_handle: asyncio.TimerHandle | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def start_deadline(self) -> None:
        """Arm the run-level deadline on the running loop."""
        if self._deadline_seconds is None or self._deadline_handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._deadline_handle = loop.call_later(
            self._deadline_seconds,
            self.cancel,
            f"Run deadline of {self._deadline_seconds:.0f}s exceeded",
        )

    def stop_deadline(self) -> None:
        if self._deadline_handle is not None:
            self._deadline_handle.cancel()
            self._deadline_handle = None

    def cancel(self, reason: str = "Cancelled") -> None:
        if self._cancel_event.is_set():
            return
        self._reason = reason
        logger.warning("Run cancellation requested", extra={"reason": reason})
        self._cancel_event.set()

    def raise_if_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise RunCancelled(self._reason or "Cancelled")

    def elapsed(self) -> float:
        return time.monotonic() - self._started

    async def sleep(self, seconds: float) -> None:
        """Sleep unless the run is cancelled first.

        Raises:
            RunCancelled: If cancellation happens before or during the sleep.
        """
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=seconds)
        except TimeoutError:
            return
        self.raise_if_cancelled()


async def run_blocking(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking SDK call on the default executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))
