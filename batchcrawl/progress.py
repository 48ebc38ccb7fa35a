from __future__ import annotations

import json
import logging
import os
import threading
import time
import uuid
from dataclasses import asdict, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .errors import ConfigurationError, CorruptStateError, ProgressNotFoundError, StateTransitionError
from .logging_utils import log_event
from .models import ProgressSnapshot, TaskState, TaskStatus, freeze_mapping

logger = logging.getLogger(__name__)

DEFAULT_PROGRESS_DIR = ".progress"
DEFAULT_AUTOSAVE_INTERVAL = 30.0
SNAPSHOT_VERSION = 1

ProgressCallback = Callable[[ProgressSnapshot], None]
ErrorCallback = Callable[[str, str], None]
CompleteCallback = Callable[[ProgressSnapshot], None]

_ALLOWED_TRANSITIONS = {
    TaskStatus.PENDING: {TaskStatus.RUNNING, TaskStatus.SKIPPED},
    TaskStatus.RUNNING: {TaskStatus.COMPLETED, TaskStatus.PENDING, TaskStatus.FAILED, TaskStatus.SKIPPED},
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
    TaskStatus.SKIPPED: set(),
}

_COUNTER_FIELDS = ("pending", "running", "completed", "failed", "skipped")


def generate_progress_id(metadata: Optional[Mapping[str, Any]] = None) -> str:
    """Build a sortable, unique batch id from the filter metadata."""
    metadata = metadata or {}
    label = str(metadata.get("filter") or metadata.get("category") or "all")
    label = "".join(ch if ch.isalnum() else "_" for ch in label)[:32] or "all"
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    return f"batch-{label}-{stamp}-{uuid.uuid4().hex[:8]}"


class ProgressTracker:
    """Authoritative, durable record of per-job state for one batch run.

    Every transition is applied under a single lock, counters are
    recomputed from the task map in the same critical section, and the
    observers are called synchronously with the resulting snapshot. The
    snapshot can be written to and read back from a JSON file so that an
    interrupted batch can be resumed by a later process.
    """

    def __init__(
        self,
        progress_id: str,
        tasks: Mapping[str, TaskState],
        metadata: Optional[Mapping[str, Any]] = None,
        created_at: Optional[float] = None,
        progress_dir: str = DEFAULT_PROGRESS_DIR,
        max_retry_attempts: int = 3,
        autosave_interval: Optional[float] = None,
        errors: Iterable[str] = (),
    ) -> None:
        self._lock = threading.RLock()
        self._save_lock = threading.Lock()
        # Snapshots are numbered under _lock; an older one never replaces a newer file.
        self._save_seq = 0
        self._saved_seq: Dict[Path, int] = {}
        self._progress_id = progress_id
        self._metadata: Dict[str, Any] = dict(metadata or {})
        self._created_at = created_at if created_at is not None else time.time()
        self._tasks: Dict[str, TaskState] = dict(tasks)
        self._errors: List[str] = list(errors)
        self._progress_dir = Path(progress_dir)
        self._max_retry_attempts = max_retry_attempts
        self._current_item: Optional[str] = None
        self._last_update = self._created_at
        # Start of the current run; ETA extrapolates from here.
        self._run_started = time.time()
        self._run_completed = 0

        self._progress_callbacks: List[ProgressCallback] = []
        self._error_callbacks: List[ErrorCallback] = []
        self._complete_callbacks: List[CompleteCallback] = []

        self._autosave_stop = threading.Event()
        self._autosave_thread: Optional[threading.Thread] = None
        if autosave_interval:
            self.start_autosave(autosave_interval)

    @classmethod
    def create(
        cls,
        job_ids: Iterable[str],
        metadata: Optional[Mapping[str, Any]] = None,
        **kwargs: Any,
    ) -> "ProgressTracker":
        """Allocate a snapshot with a fresh id and every job Pending."""
        ids = list(job_ids)
        if len(set(ids)) != len(ids):
            raise ConfigurationError("duplicate job ids in batch")
        tasks = {job_id: TaskState(job_id=job_id) for job_id in ids}
        tracker = cls(generate_progress_id(metadata), tasks, metadata=metadata, **kwargs)
        log_event(logger, "progress_created", progress_id=tracker.progress_id, total=len(ids))
        return tracker

    @property
    def progress_id(self) -> str:
        return self._progress_id

    @property
    def default_path(self) -> Path:
        return self._progress_dir / f"{self._progress_id}.json"

    # -- transitions -------------------------------------------------

    def update_progress(self, job_id: str, new_state: TaskStatus, error: Optional[str] = None) -> ProgressSnapshot:
        """Apply one state transition and notify observers."""
        with self._lock:
            task = self._tasks.get(job_id)
            if task is None:
                raise KeyError(f"unknown job id: {job_id}")
            if new_state not in _ALLOWED_TRANSITIONS[task.status]:
                raise StateTransitionError(f"{job_id}: {task.status.value} -> {new_state.value} is not allowed")

            now = time.time()
            changes: Dict[str, Any] = {"status": new_state}
            if new_state is TaskStatus.RUNNING:
                changes["attempts"] = task.attempts + 1
                changes["started_at"] = now
                changes["finished_at"] = None
            if new_state.is_terminal:
                changes["finished_at"] = now
            if error:
                changes["last_error"] = error
            self._tasks[job_id] = replace(task, **changes)

            if new_state is TaskStatus.COMPLETED:
                self._run_completed += 1
            if error:
                self._errors.append(f"{job_id}: {error}")
            self._current_item = job_id if new_state is TaskStatus.RUNNING else None
            self._last_update = now

            snapshot = self._snapshot()
            error_callbacks = list(self._error_callbacks) if error else []
            progress_callbacks = list(self._progress_callbacks)
            complete_callbacks = list(self._complete_callbacks) if snapshot.is_finished else []

            for callback in error_callbacks:
                self._notify(callback, job_id, error)
            for callback in progress_callbacks:
                self._notify(callback, snapshot)
            for callback in complete_callbacks:
                self._notify(callback, snapshot)

        log_event(
            logger,
            "progress_updated",
            level=logging.DEBUG,
            job_id=job_id,
            status=new_state.value,
            percentage=round(snapshot.percentage, 1),
        )
        return snapshot

    def reset_config(self, job_id: str, reset_attempts: bool = False) -> None:
        """Force a task back to Pending, clearing its last error.

        The attempt history is kept unless ``reset_attempts`` is set. A task
        that is already Pending is left untouched."""
        with self._lock:
            task = self._tasks.get(job_id)
            if task is None:
                raise KeyError(f"unknown job id: {job_id}")
            if task.status is TaskStatus.PENDING and not (reset_attempts and task.attempts):
                return
            self._tasks[job_id] = replace(
                task,
                status=TaskStatus.PENDING,
                last_error=None,
                finished_at=None,
                attempts=0 if reset_attempts else task.attempts,
            )
            self._last_update = time.time()

    # -- queries -----------------------------------------------------

    def get_progress(self) -> ProgressSnapshot:
        with self._lock:
            return self._snapshot()

    def get_task(self, job_id: str) -> TaskState:
        with self._lock:
            return self._tasks[job_id]

    def job_ids(self, *statuses: TaskStatus) -> List[str]:
        with self._lock:
            return [job_id for job_id, task in self._tasks.items() if not statuses or task.status in statuses]

    def get_failed_configs(self) -> List[str]:
        return self.job_ids(TaskStatus.FAILED)

    def get_retryable_configs(self) -> List[str]:
        """Failed jobs that still have retry budget left."""
        with self._lock:
            return [
                job_id
                for job_id, task in self._tasks.items()
                if task.status is TaskStatus.FAILED and task.attempts < self._max_retry_attempts
            ]

    def set_max_retry_attempts(self, value: int) -> None:
        self._max_retry_attempts = max(1, int(value))

    def _snapshot(self) -> ProgressSnapshot:
        counts = dict.fromkeys(_COUNTER_FIELDS, 0)
        durations = []
        for task in self._tasks.values():
            counts[task.status.value] += 1
            if task.status is TaskStatus.COMPLETED and task.started_at and task.finished_at:
                durations.append(task.finished_at - task.started_at)

        total = len(self._tasks)
        finished = counts["completed"] + counts["failed"] + counts["skipped"]
        percentage = (finished / total) * 100 if total else 0.0

        eta = 0.0
        if self._run_completed:
            elapsed = time.time() - self._run_started
            eta = elapsed / self._run_completed * counts["pending"]
        average = sum(durations) / len(durations) if durations else 0.0

        return ProgressSnapshot(
            progress_id=self._progress_id,
            created_at=self._created_at,
            metadata=freeze_mapping(self._metadata),
            tasks=freeze_mapping(self._tasks),
            total=total,
            percentage=percentage,
            estimated_time_remaining=eta,
            average_time_per_task=average,
            current_item=self._current_item,
            last_update_time=self._last_update,
            errors=tuple(self._errors),
            **counts,
        )

    # -- observers ---------------------------------------------------

    def on_progress(self, callback: ProgressCallback) -> None:
        self._progress_callbacks.append(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        self._error_callbacks.append(callback)

    def on_complete(self, callback: CompleteCallback) -> None:
        self._complete_callbacks.append(callback)

    @staticmethod
    def _notify(callback: Callable[..., None], *args: Any) -> None:
        try:
            callback(*args)
        except Exception:  # noqa: BLE001
            logger.exception("progress observer %r failed", callback)

    # -- persistence -------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            snapshot = self._snapshot()
            return {
                "version": SNAPSHOT_VERSION,
                "progress_id": snapshot.progress_id,
                "created_at": snapshot.created_at,
                "last_update_time": snapshot.last_update_time,
                "metadata": dict(snapshot.metadata),
                "max_retry_attempts": self._max_retry_attempts,
                "total": snapshot.total,
                **snapshot.counts(),
                "percentage": snapshot.percentage,
                "errors": list(snapshot.errors),
                "tasks": {
                    job_id: {**asdict(task), "status": task.status.value}
                    for job_id, task in snapshot.tasks.items()
                },
            }

    def save(self, path: Optional[os.PathLike] = None) -> Path:
        """Write the snapshot as JSON, replacing any previous file atomically."""
        target = Path(path) if path is not None else self.default_path
        target.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            data = self.to_dict()
            self._save_seq += 1
            seq = self._save_seq
        payload = json.dumps(data, ensure_ascii=False, indent=2)
        with self._save_lock:
            if seq <= self._saved_seq.get(target, 0):
                log_event(logger, "progress_save_superseded", level=logging.DEBUG, path=str(target), seq=seq)
                return target
            tmp = target.with_name(f".{target.name}.{uuid.uuid4().hex[:6]}.tmp")
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, target)
            self._saved_seq[target] = seq
        log_event(logger, "progress_saved", level=logging.DEBUG, path=str(target))
        return target

    @classmethod
    def load(cls, path: os.PathLike, **kwargs: Any) -> "ProgressTracker":
        """Rebuild a tracker from a snapshot file written by save()."""
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError as exc:
            raise ProgressNotFoundError(f"progress file not found: {path}") from exc
        except (OSError, ValueError) as exc:
            raise CorruptStateError(f"cannot read progress file {path}: {exc}") from exc

        tasks = _parse_tasks(data, path)
        _check_counters(data, tasks, path)

        header = _parse_header(data, path)
        kwargs.setdefault("progress_dir", str(path.parent))
        kwargs.setdefault("max_retry_attempts", header["max_retry_attempts"])
        tracker = cls(
            header["progress_id"],
            tasks,
            metadata=header["metadata"],
            created_at=header["created_at"],
            errors=header["errors"],
            **kwargs,
        )
        tracker._last_update = header["last_update_time"]
        log_event(logger, "progress_loaded", progress_id=tracker.progress_id, path=str(path))
        return tracker

    @staticmethod
    def list_progress_files(progress_dir: os.PathLike = DEFAULT_PROGRESS_DIR) -> List[Path]:
        directory = Path(progress_dir)
        if not directory.is_dir():
            return []
        return sorted(p for p in directory.glob("batch-*.json") if p.is_file())

    @classmethod
    def find_progress_file(cls, progress_dir: os.PathLike, progress_id: str) -> Optional[Path]:
        exact = Path(progress_dir) / f"{progress_id}.json"
        if exact.is_file():
            return exact
        for candidate in cls.list_progress_files(progress_dir):
            if progress_id in candidate.stem:
                return candidate
        return None

    # -- autosave ----------------------------------------------------

    def start_autosave(self, interval: float = DEFAULT_AUTOSAVE_INTERVAL) -> None:
        if self._autosave_thread is not None:
            return
        self._autosave_stop.clear()
        self._autosave_thread = threading.Thread(
            target=self._autosave_loop, args=(interval,), name=f"autosave-{self._progress_id}", daemon=True
        )
        self._autosave_thread.start()

    def _autosave_loop(self, interval: float) -> None:
        while not self._autosave_stop.wait(interval):
            try:
                self.save()
            except OSError:
                logger.exception("autosave of %s failed", self._progress_id)

    def cleanup(self) -> None:
        """Stop the autosave thread; the snapshot file is left in place."""
        self._autosave_stop.set()
        thread, self._autosave_thread = self._autosave_thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)

    def generate_report(self) -> str:
        snap = self.get_progress()

        def fmt(seconds: float) -> str:
            seconds = int(seconds)
            minutes, sec = divmod(seconds, 60)
            hours, minutes = divmod(minutes, 60)
            if hours:
                return f"{hours}h {minutes}m"
            if minutes:
                return f"{minutes}m {sec}s"
            return f"{sec}s"

        def share(count: int) -> str:
            return f"{count} ({count / snap.total * 100:.1f}%)" if snap.total else str(count)

        filters = ", ".join(f"{k}={v}" for k, v in sorted(snap.metadata.items())) or "none"
        lines = [
            f"Batch progress report: {snap.progress_id}",
            f"Filters: {filters}",
            f"Total: {snap.total}",
            f"Completed: {share(snap.completed)}",
            f"Failed: {share(snap.failed)}",
            f"Skipped: {share(snap.skipped)}",
            f"Running: {snap.running}",
            f"Pending: {snap.pending}",
            f"Progress: {snap.percentage:.1f}%",
            f"Elapsed: {fmt(time.time() - snap.created_at)}",
            f"Estimated remaining: {fmt(snap.estimated_time_remaining)}",
            f"Average per task: {fmt(snap.average_time_per_task)}",
            f"Current: {snap.current_item or 'idle'}",
        ]
        return "\n".join(lines)


def _parse_tasks(data: Any, path: Path) -> Dict[str, TaskState]:
    if not isinstance(data, dict):
        raise CorruptStateError(f"{path}: snapshot must be a JSON object")
    for key in ("progress_id", "created_at", "tasks", "total"):
        if key not in data:
            raise CorruptStateError(f"{path}: missing field {key!r}")
    raw_tasks = data["tasks"]
    if not isinstance(raw_tasks, dict):
        raise CorruptStateError(f"{path}: 'tasks' must be an object")

    tasks: Dict[str, TaskState] = {}
    for job_id, raw in raw_tasks.items():
        try:
            tasks[job_id] = TaskState(
                job_id=str(raw.get("job_id", job_id)),
                status=TaskStatus(raw["status"]),
                attempts=int(raw.get("attempts") or 0),
                last_error=raw.get("last_error"),
                started_at=_timestamp(raw.get("started_at"), "started_at"),
                finished_at=_timestamp(raw.get("finished_at"), "finished_at"),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise CorruptStateError(f"{path}: invalid task {job_id!r}: {exc}") from exc
    return tasks


def _timestamp(value: Any, name: str, required: bool = False) -> Optional[float]:
    if value is None and not required:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number, got {value!r}")
    return float(value)


def _parse_header(data: Dict[str, Any], path: Path) -> Dict[str, Any]:
    """Validate the batch-level fields of a snapshot."""
    try:
        progress_id = data["progress_id"]
        if not isinstance(progress_id, str) or not progress_id:
            raise ValueError(f"progress_id must be a non-empty string, got {progress_id!r}")
        created_at = _timestamp(data["created_at"], "created_at", required=True)
        max_retry_attempts = data.get("max_retry_attempts", 3)
        if isinstance(max_retry_attempts, bool) or not isinstance(max_retry_attempts, int):
            raise ValueError(f"max_retry_attempts must be an integer, got {max_retry_attempts!r}")
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValueError("metadata must be an object")
        errors = data.get("errors") or []
        if not isinstance(errors, list):
            raise ValueError("errors must be a list")
        last_update = data.get("last_update_time")
        last_update = created_at if last_update is None else _timestamp(last_update, "last_update_time")
    except (KeyError, TypeError, ValueError) as exc:
        raise CorruptStateError(f"{path}: invalid snapshot header: {exc}") from exc
    return {
        "progress_id": progress_id,
        "created_at": created_at,
        "max_retry_attempts": max_retry_attempts,
        "metadata": metadata,
        "errors": [str(e) for e in errors],
        "last_update_time": last_update,
    }


def _check_counters(data: Dict[str, Any], tasks: Mapping[str, TaskState], path: Path) -> None:
    if data["total"] != len(tasks):
        raise CorruptStateError(f"{path}: total {data['total']} does not match {len(tasks)} tasks")
    for name in _COUNTER_FIELDS:
        if name not in data:
            continue
        actual = sum(1 for task in tasks.values() if task.status.value == name)
        if data[name] != actual:
            raise CorruptStateError(f"{path}: counter {name}={data[name]} does not match task map ({actual})")
