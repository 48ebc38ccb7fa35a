from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional


WORKER_THREAD_PREFIX = "batchcrawl-worker"


class ThreadPoolController:
    """Manages concurrent job execution using a bounded thread pool.

    A slot must be acquired before work is submitted and is released when
    the work returns. The concurrency limit can be lowered or raised at
    runtime without blocking; lowering it never interrupts running work,
    it only holds back new slots until the active count drops below the
    new limit. While paused, no new slot is granted.
    """

    def __init__(self, max_workers: int, initial_limit: int) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix=WORKER_THREAD_PREFIX)

        self._lock = threading.RLock()
        self._cv = threading.Condition(self._lock)

        self._limit = max(1, initial_limit)
        self._active = 0
        self._peak = 0
        self._running = False
        self._paused = False

    def start(self) -> None:
        with self._cv:
            self._running = True
            self._paused = False

    def stop(self, wait: bool = True) -> None:
        with self._cv:
            self._running = False
            self._cv.notify_all()
        self._executor.shutdown(wait=wait, cancel_futures=False)

    def halt(self) -> None:
        """Refuse new slots without shutting the executor down."""
        with self._cv:
            self._running = False
            self._cv.notify_all()

    def pause(self) -> None:
        with self._cv:
            self._paused = True

    def unpause(self) -> None:
        with self._cv:
            self._paused = False
            self._cv.notify_all()

    def acquire_slot(self, timeout: Optional[float] = None) -> bool:
        """Block until a slot is free; False if stopped or the timeout expires."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cv:
            while self._running and (self._paused or self._active >= self._limit):
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cv.wait(timeout=remaining)
            if not self._running:
                return False
            self._active += 1
            self._peak = max(self._peak, self._active)
            return True

    def release_slot(self) -> None:
        with self._cv:
            self._active = max(0, self._active - 1)
            self._cv.notify_all()

    def submit(self, fn: Callable[..., Any], *args: Any) -> Future:
        """Run ``fn`` on the pool; the caller must already hold a slot."""
        return self._executor.submit(self._wrap_task, fn, *args)

    def _wrap_task(self, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return fn(*args)
        finally:
            self.release_slot()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until no slot is held; True when idle before the timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cv:
            while self._active > 0:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cv.wait(timeout=remaining)
            return True

    def set_concurrency_limit(self, new_limit: int) -> tuple[int, int]:
        """Dynamically adjust the concurrency limit at runtime (non-blocking)."""
        with self._cv:
            old_limit = self._limit
            self._limit = max(1, int(new_limit))
            self._cv.notify_all()
            return old_limit, self._limit

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def active(self) -> int:
        return self._active

    @property
    def peak(self) -> int:
        return self._peak

    @property
    def paused(self) -> bool:
        return self._paused
