"""Threaded runner for fire-and-forget side effects with retry."""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from threading import Lock

logger = logging.getLogger(__name__)


class SideEffectRunner:
    """Wrapper around :class:`ThreadPoolExecutor` for at-least-once jobs.

    A submitted job is retried up to ``max_attempts`` times when it raises.
    Jobs must therefore be idempotent (for example an insert keyed by a
    pre-generated id). The caller never waits for the job; a job that fails
    every attempt is logged and dropped.
    """

    def __init__(self, max_workers: int = 2, max_attempts: int = 3, backoff: float = 0.05):
        self.executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="side-effect"
        )
        self.max_attempts = max(max_attempts, 1)
        self.backoff = backoff
        self._lock = Lock()
        self._futures: set[Future] = set()

    @classmethod
    def from_env(cls) -> "SideEffectRunner":
        return cls(
            max_workers=int(os.getenv("SIDE_EFFECT_WORKERS", "2")),
            max_attempts=int(os.getenv("SIDE_EFFECT_MAX_ATTEMPTS", "3")),
        )

    # Job signature
    Job = Callable[[], None]

    def submit(self, name: str, fn: Job) -> Future:
        """Schedule ``fn``; returns a future resolving to ``True`` on success."""
        future = self.executor.submit(self._run, name, fn)
        with self._lock:
            self._futures.add(future)
        future.add_done_callback(self._forget)
        return future

    def _run(self, name: str, fn: Job) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            try:
                fn()
                return True
            except Exception:
                if attempt == self.max_attempts:
                    logger.exception(
                        "Side effect %s failed after %d attempt(s)", name, attempt
                    )
                    return False
                logger.warning(
                    "Side effect %s failed on attempt %d; retrying", name, attempt
                )
                time.sleep(self.backoff * attempt)
        return False

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._futures.discard(future)

    def pending(self) -> int:
        with self._lock:
            return len(self._futures)

    def wait(self, timeout: float | None = None) -> None:
        """Block until every job submitted so far has finished."""
        with self._lock:
            futures = list(self._futures)
        wait(futures, timeout=timeout)

    def shutdown(self) -> None:
        self.executor.shutdown(wait=True)
