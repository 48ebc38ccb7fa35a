from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from .controller import WORKER_THREAD_PREFIX, ThreadPoolController
from .domain_limiter import DomainRateLimiter
from .errors import ConfigurationError, FetchError, ManagerStateError, ProgressNotFoundError
from .factory import FetcherFactory
from .jobs import select_jobs
from .logging_utils import log_event
from .models import (
    BatchOptions,
    BatchResult,
    ErrorAction,
    ErrorType,
    FetchResult,
    Job,
    ProgressSnapshot,
    TaskStatus,
)
from .progress import ProgressCallback, ProgressTracker
from .recovery import ErrorRecovery
from .storage import JsonlStorage

logger = logging.getLogger(__name__)

CONCURRENCY_SHRINK_FACTOR = 0.8
DEFAULT_AUTOSAVE_INTERVAL = 30.0


class Fetcher(Protocol):
    def run(self, job: Job) -> FetchResult:
        ...


class BatchCrawlerManager:
    """Runs a batch of jobs against a fetcher under a concurrency cap.

    One dispatch loop pulls Pending jobs from a ready-time ordered queue,
    acquires a worker slot, marks the job Running and hands it to the pool.
    A worker waits for the job's domain gate, calls the fetcher and reports
    the outcome to the ProgressTracker. Failures go through ErrorRecovery,
    whose decision either re-queues the job (with a not-before time, so a
    job waiting out its backoff holds no slot), ends it, shrinks the cap or
    aborts the batch.

    A manager runs one batch at a time. pause(), unpause() and stop() are
    meant to be called from another thread (or a signal handler) while
    start(), resume() or retry_failed() is executing.
    """

    def __init__(
        self,
        fetcher: Optional[Fetcher] = None,
        factory: Optional[FetcherFactory] = None,
        rate_limiter: Optional[DomainRateLimiter] = None,
        recovery: Optional[ErrorRecovery] = None,
        autosave_interval: Optional[float] = DEFAULT_AUTOSAVE_INTERVAL,
    ) -> None:
        self._fetcher = fetcher
        self._factory = factory or FetcherFactory()
        self._given_rate_limiter = rate_limiter
        self._rate_limiter = rate_limiter
        self._recovery = recovery or ErrorRecovery()
        self._autosave_interval = autosave_interval
        self._observers: List[Tuple[str, Any]] = []

        self._state_lock = threading.RLock()
        self._cv = threading.Condition(threading.RLock())
        self._running = False
        self._stop_requested = False
        self._abort_requested = False
        self._paused = False
        self._halt = threading.Event()
        self._finished = threading.Event()
        self._finished.set()

        self._tracker: Optional[ProgressTracker] = None
        self._controller: Optional[ThreadPoolController] = None
        self._storage: Optional[JsonlStorage] = None
        self._jobs: Dict[str, Job] = {}
        self._queue: List[Tuple[float, int, str]] = []
        self._seq = itertools.count()
        self._in_flight = 0
        self._options = BatchOptions()

    # -- public API ----------------------------------------------------

    def start(self, jobs: Iterable[Job], options: Optional[BatchOptions] = None) -> BatchResult:
        """Run a new batch over ``jobs`` and return its summary."""
        options = options or BatchOptions()
        self._check_idle()
        selected = select_jobs(jobs, options.filter, options.start_from, options.limit)
        if not selected:
            raise ConfigurationError("no jobs left to run after filtering")

        metadata = dict(options.metadata)
        if options.filter:
            metadata.setdefault("filter", options.filter)
        tracker = ProgressTracker.create(
            [job.job_id for job in selected],
            metadata,
            progress_dir=options.progress_dir,
            max_retry_attempts=options.max_retry_attempts,
        )
        log_event(
            logger,
            "batch_started",
            progress_id=tracker.progress_id,
            total=len(selected),
            concurrency=options.concurrency,
        )
        return self._run(tracker, selected, options)

    def resume(
        self,
        progress_id: str,
        jobs: Iterable[Job],
        options: Optional[BatchOptions] = None,
    ) -> BatchResult:
        """Continue an interrupted batch from its snapshot.

        Pending tasks, tasks left Running by a crashed process and Failed
        tasks with retry budget are run again; Completed tasks never are."""
        options = options or BatchOptions()
        self._check_idle()
        tracker = self._load_tracker(progress_id, options)
        for job_id in tracker.job_ids(TaskStatus.RUNNING):
            tracker.reset_config(job_id)
        for job_id in tracker.get_retryable_configs():
            tracker.reset_config(job_id)

        remaining = tracker.job_ids(TaskStatus.PENDING)
        if not remaining:
            log_event(logger, "batch_resume_noop", progress_id=tracker.progress_id)
            return self._summary(tracker.get_progress(), 0.0, [], [])
        log_event(logger, "batch_resumed", progress_id=tracker.progress_id, remaining=len(remaining))
        return self._run(tracker, self._resolve_jobs(remaining, jobs), options)

    def retry_failed(
        self,
        progress_id: str,
        jobs: Iterable[Job],
        options: Optional[BatchOptions] = None,
    ) -> BatchResult:
        """Re-run only the Failed tasks that have retry budget, with fresh attempt counters."""
        options = options or BatchOptions()
        self._check_idle()
        tracker = self._load_tracker(progress_id, options)
        retryable = tracker.get_retryable_configs()
        if not retryable:
            log_event(logger, "batch_retry_noop", progress_id=tracker.progress_id)
            return self._summary(tracker.get_progress(), 0.0, [], [])
        for job_id in retryable:
            tracker.reset_config(job_id, reset_attempts=True)
        log_event(logger, "batch_retry_failed", progress_id=tracker.progress_id, retrying=len(retryable))
        return self._run(tracker, self._resolve_jobs(retryable, jobs), options)

    def pause(self) -> None:
        with self._state_lock:
            if not self._running:
                raise ManagerStateError("no batch is running")
            with self._cv:
                self._paused = True
            self._controller.pause()
        log_event(logger, "batch_paused")

    def unpause(self) -> None:
        with self._state_lock:
            if not self._running:
                raise ManagerStateError("no batch is running")
            with self._cv:
                self._paused = False
                self._cv.notify_all()
            self._controller.unpause()
        log_event(logger, "batch_unpaused")

    def stop(self, timeout: Optional[float] = None, wait: bool = True) -> bool:
        """Stop dispatching and wait (bounded) for the running batch to wind down.

        Returns True once the batch has finished and its snapshot is
        persisted. In-flight fetches are not interrupted. With ``wait=False``
        (e.g. from a signal handler on the thread running the batch) only the
        request is made."""
        with self._state_lock:
            if not self._running:
                return True
            self._request_halt(abort=False)
            wait_for = self._options.stop_timeout if timeout is None else timeout
        log_event(logger, "batch_stopping")
        if not wait or threading.current_thread().name.startswith(WORKER_THREAD_PREFIX):
            return False
        return self._finished.wait(wait_for + 1.0)

    def get_progress(self) -> Optional[ProgressSnapshot]:
        tracker = self._tracker
        return tracker.get_progress() if tracker is not None else None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def concurrency_limit(self) -> Optional[int]:
        return self._controller.limit if self._controller is not None else None

    def on_progress(self, callback: ProgressCallback) -> None:
        self._observers.append(("progress", callback))

    def on_error(self, callback: Any) -> None:
        self._observers.append(("error", callback))

    def on_complete(self, callback: ProgressCallback) -> None:
        self._observers.append(("complete", callback))

    # -- run lifecycle -------------------------------------------------

    def _check_idle(self) -> None:
        with self._state_lock:
            if self._running:
                raise ManagerStateError("a batch is already running")

    def _load_tracker(self, progress_id: str, options: BatchOptions) -> ProgressTracker:
        path = ProgressTracker.find_progress_file(options.progress_dir, progress_id)
        if path is None:
            raise ProgressNotFoundError(f"no progress file for {progress_id!r} in {options.progress_dir}")
        return ProgressTracker.load(
            path,
            progress_dir=options.progress_dir,
            max_retry_attempts=options.max_retry_attempts,
        )

    @staticmethod
    def _resolve_jobs(job_ids: List[str], jobs: Iterable[Job]) -> List[Job]:
        by_id = {job.job_id: job for job in jobs}
        missing = [job_id for job_id in job_ids if job_id not in by_id]
        if missing:
            raise ConfigurationError(f"no job definition for: {', '.join(missing[:10])}")
        return [by_id[job_id] for job_id in job_ids]

    def _run(self, tracker: ProgressTracker, jobs: List[Job], options: BatchOptions) -> BatchResult:
        with self._state_lock:
            if self._running:
                raise ManagerStateError("a batch is already running")
            self._begin(tracker, jobs, options)

        started = time.monotonic()
        run_started_at = time.time()
        try:
            self._dispatch_loop()
        finally:
            self._finish()

        snapshot = tracker.get_progress()
        errors = [
            f"{record.job_id}: {record.message}"
            for record in self._recovery.get_error_summary().permanent
            if record.timestamp >= run_started_at
        ]
        output_files = []
        if self._storage is not None and self._storage.path.exists() and self._storage.path.stat().st_size:
            output_files.append(str(self._storage.path))
        result = self._summary(snapshot, time.monotonic() - started, errors, output_files)
        if self._abort_requested:
            result = replace(result, success=False)

        log_event(
            logger,
            "batch_finished",
            progress_id=result.progress_id,
            total=result.total,
            completed=result.completed,
            failed=result.failed,
            skipped=result.skipped,
            duration_s=round(result.duration, 3),
            aborted=self._abort_requested,
            stopped=self._stop_requested,
        )
        return result

    def _begin(self, tracker: ProgressTracker, jobs: List[Job], options: BatchOptions) -> None:
        self._running = True
        self._stop_requested = False
        self._abort_requested = False
        self._paused = False
        self._halt.clear()
        self._finished.clear()
        self._options = options

        self._tracker = tracker
        tracker.set_max_retry_attempts(options.max_retry_attempts)
        self._attach_observers(tracker)
        if self._autosave_interval:
            tracker.start_autosave(self._autosave_interval)

        self._recovery.max_retry_attempts = max(1, options.max_retry_attempts)
        self._rate_limiter = self._given_rate_limiter or DomainRateLimiter(options.domain_delay_ms)
        self._controller = ThreadPoolController(max_workers=options.concurrency, initial_limit=options.concurrency)
        self._controller.start()
        self._storage = None
        if options.output_dir:
            self._storage = JsonlStorage(options.output_dir, tracker.progress_id)

        self._jobs = {job.job_id: job for job in jobs}
        self._queue = []
        self._in_flight = 0
        now = time.monotonic()
        for job in jobs:
            heapq.heappush(self._queue, (now, next(self._seq), job.job_id))
        tracker.save()

    def _finish(self) -> None:
        tracker = self._tracker
        controller = self._controller
        try:
            # Wake workers sleeping out the inter-task delay.
            self._halt.set()
            if not controller.wait_idle(self._options.stop_timeout):
                log_event(logger, "batch_stop_timeout", level=logging.WARNING, in_flight=controller.active)
            controller.stop(wait=False)
            if self._abort_requested:
                self._skip_remaining("batch aborted")
            if self._storage is not None:
                self._storage.close()
            self._rate_limiter.cleanup()
            self._persist()
        finally:
            tracker.cleanup()
            with self._state_lock:
                self._running = False
            self._finished.set()

    def _skip_remaining(self, reason: str) -> None:
        with self._cv:
            self._queue.clear()
        for job_id in self._tracker.job_ids(TaskStatus.PENDING):
            self._tracker.update_progress(job_id, TaskStatus.SKIPPED, reason)

    def _request_halt(self, abort: bool) -> None:
        with self._cv:
            if abort:
                self._abort_requested = True
            else:
                self._stop_requested = True
            self._cv.notify_all()
        self._halt.set()
        if self._controller is not None:
            self._controller.halt()

    def _persist(self) -> None:
        try:
            self._tracker.save()
        except OSError:
            logger.exception("failed to persist progress %s", self._tracker.progress_id)

    # -- scheduling ----------------------------------------------------

    def _dispatch_loop(self) -> None:
        while True:
            if not self._controller.acquire_slot():
                break
            job = self._next_job()
            if job is None:
                self._controller.release_slot()
                break
            try:
                self._tracker.update_progress(job.job_id, TaskStatus.RUNNING)
                self._controller.submit(self._execute, job)
            except Exception:
                with self._cv:
                    self._in_flight -= 1
                    self._cv.notify_all()
                self._controller.release_slot()
                raise

    def _next_job(self) -> Optional[Job]:
        """Pop the next ready job; None once nothing is left or a halt was requested."""
        with self._cv:
            while True:
                if self._stop_requested or self._abort_requested:
                    return None
                if self._paused:
                    self._cv.wait()
                    continue
                if self._queue:
                    ready_at, _, job_id = self._queue[0]
                    wait = ready_at - time.monotonic()
                    if wait <= 0:
                        heapq.heappop(self._queue)
                        self._in_flight += 1
                        return self._jobs[job_id]
                    self._cv.wait(timeout=wait)
                    continue
                if self._in_flight == 0:
                    return None
                self._cv.wait()

    def _requeue(self, job: Job, delay: float) -> None:
        with self._cv:
            heapq.heappush(self._queue, (time.monotonic() + max(0.0, delay), next(self._seq), job.job_id))
            self._cv.notify_all()

    # -- execution -----------------------------------------------------

    def _execute(self, job: Job) -> None:
        terminal = True
        try:
            terminal = self._execute_once(job)
        except Exception as exc:  # noqa: BLE001
            logger.exception("job %s: unexpected failure in task execution", job.job_id)
            self._fail_stranded(job, exc)
        finally:
            with self._cv:
                self._in_flight -= 1
                self._cv.notify_all()
            self._persist()

        delay = self._options.delay_ms / 1000.0
        if terminal and delay > 0:
            self._halt.wait(delay)

    def _fail_stranded(self, job: Job, exc: BaseException) -> None:
        """Mark a job Failed when its outcome could not be recorded normally."""
        message = f"internal error: {str(exc) or type(exc).__name__}"
        try:
            if self._tracker.get_task(job.job_id).status is TaskStatus.RUNNING:
                self._tracker.update_progress(job.job_id, TaskStatus.FAILED, message)
        except Exception:  # noqa: BLE001
            logger.exception("job %s: could not mark task failed", job.job_id)

    def _execute_once(self, job: Job) -> bool:
        """Fetch one job and record the outcome; True when the job reached a terminal state."""
        attempt = self._tracker.get_task(job.job_id).attempts
        error: Optional[BaseException] = None
        result: Optional[FetchResult] = None
        try:
            self._rate_limiter.wait_for_domain(job.url, job.delay_ms)
            fetcher = self._fetcher or self._factory.create_fetcher(job)
            result = fetcher.run(job)
        except Exception as exc:  # noqa: BLE001
            error = exc

        if result is not None and result.success:
            # Stored before Completed so a lost write never counts as done.
            if self._storage is not None:
                self._storage.write(result, attempt)
            self._tracker.update_progress(job.job_id, TaskStatus.COMPLETED)
            return True

        if error is None:
            error = FetchError(
                result.error_message or result.error_type or "fetch failed",
                error_type=result.error_type,
                status_code=result.status_code,
            )
        return self._handle_failure(job, error, attempt)

    def _handle_failure(self, job: Job, error: BaseException, attempt: int) -> bool:
        decision = self._recovery.decide(job.job_id, error, attempt)
        message = str(error) or type(error).__name__

        if decision.action is ErrorAction.REDUCE_CONCURRENCY:
            self._reduce_concurrency()

        if decision.retry:
            self._tracker.update_progress(job.job_id, TaskStatus.PENDING, message)
            self._requeue(job, decision.delay)
            return False

        if decision.action is ErrorAction.ABORT:
            self._tracker.update_progress(job.job_id, TaskStatus.FAILED, message)
            log_event(logger, "batch_abort", level=logging.ERROR, job_id=job.job_id, error=message)
            self._request_halt(abort=True)
            return True

        final = TaskStatus.FAILED if decision.error_type is ErrorType.CONFIGURATION else TaskStatus.SKIPPED
        self._tracker.update_progress(job.job_id, final, message)
        return True

    def _reduce_concurrency(self) -> None:
        controller = self._controller
        new_limit = max(1, int(controller.limit * CONCURRENCY_SHRINK_FACTOR))
        old_limit, new_limit = controller.set_concurrency_limit(new_limit)
        log_event(logger, "concurrency_reduced", level=logging.WARNING, old_limit=old_limit, new_limit=new_limit)

    # -- observers & summary --------------------------------------------

    def _attach_observers(self, tracker: ProgressTracker) -> None:
        last_decile = [-1]

        def log_progress(snapshot: ProgressSnapshot) -> None:
            decile = int(snapshot.percentage // 10)
            if decile > last_decile[0]:
                last_decile[0] = decile
                log_event(
                    logger,
                    "batch_progress",
                    percentage=round(snapshot.percentage, 1),
                    completed=snapshot.completed,
                    total=snapshot.total,
                )

        def log_error(job_id: str, error: str) -> None:
            log_event(logger, "job_error", level=logging.WARNING, job_id=job_id, error=error)

        tracker.on_progress(log_progress)
        tracker.on_error(log_error)
        for kind, callback in self._observers:
            getattr(tracker, f"on_{kind}")(callback)

    @staticmethod
    def _summary(
        snapshot: ProgressSnapshot,
        duration: float,
        errors: List[str],
        output_files: List[str],
    ) -> BatchResult:
        return BatchResult(
            success=snapshot.failed == 0,
            total=snapshot.total,
            completed=snapshot.completed,
            failed=snapshot.failed,
            skipped=snapshot.skipped,
            duration=duration,
            errors=errors,
            progress_id=snapshot.progress_id,
            output_files=output_files,
        )
