from __future__ import annotations

import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import TypeVar

from rulecraft.core.errors import CancelledError, EvaluationTimeoutError

T = TypeVar("T")


class CancellationToken:
    """Deadline plus cancel flag handed down to every suspending call.

    Child tokens observe their parent's cancellation and never outlive the
    parent's deadline, so bounds compose from evaluation to rule to action.
    """

    def __init__(
        self,
        timeout_s: float | None = None,
        parent: CancellationToken | None = None,
        reason: str = "operation",
    ) -> None:
        self.parent = parent
        self.reason = reason
        self._event = threading.Event()
        self.timeout_s = timeout_s
        deadline = time.monotonic() + timeout_s if timeout_s is not None else None
        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
        self.deadline = deadline

    def child(self, timeout_s: float | None = None, reason: str = "operation") -> CancellationToken:
        return CancellationToken(timeout_s=timeout_s, parent=self, reason=reason)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self.parent.cancelled if self.parent is not None else False

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CancelledError(f"{self.reason} cancelled")
        if self.expired:
            raise EvaluationTimeoutError(f"{self.reason} timed out", timeout_s=self.timeout_s)

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True early if the token is cancelled."""
        end = time.monotonic() + max(0.0, seconds)
        while True:
            if self.cancelled:
                return True
            left = end - time.monotonic()
            if left <= 0:
                return False
            self._event.wait(min(left, 0.05))


class TimeoutRunner:
    """Runs callables on a bounded worker pool, waiting at most the token's remaining time."""

    def __init__(self, max_workers: int = 8) -> None:
        self._pool = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="rulecraft")

    def run(self, fn: Callable[[], T], token: CancellationToken) -> T:
        token.raise_if_cancelled()
        future = self._pool.submit(fn)
        try:
            return future.result(timeout=token.remaining())
        except FutureTimeoutError as exc:
            token.cancel()
            future.cancel()
            raise EvaluationTimeoutError(
                f"{token.reason} exceeded its time limit",
                timeout_s=token.timeout_s,
            ) from exc

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
