from __future__ import annotations

import enum
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlsplit


def extract_domain(url: str) -> str:
    """Return the hostname of ``url``, or the url itself when it has none."""
    try:
        host = urlsplit(url).hostname
    except ValueError:
        host = None
    return host or url


@dataclass(frozen=True)
class Job:
    job_id: str
    url: str
    delay_ms: Optional[int] = None
    fetcher: str = "http"
    params: Dict[str, Any] = field(default_factory=dict)
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def domain(self) -> str:
        return extract_domain(self.url)


class TaskStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED)


@dataclass(frozen=True)
class TaskState:
    job_id: str
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None


@dataclass(frozen=True)
class ProgressSnapshot:
    progress_id: str
    created_at: float
    metadata: Mapping[str, Any]
    tasks: Mapping[str, TaskState]
    total: int
    pending: int
    running: int
    completed: int
    failed: int
    skipped: int
    percentage: float
    estimated_time_remaining: float
    average_time_per_task: float
    current_item: Optional[str]
    last_update_time: float
    errors: Tuple[str, ...] = ()

    @property
    def is_finished(self) -> bool:
        return self.pending == 0 and self.running == 0

    def counts(self) -> Dict[str, int]:
        return {
            "pending": self.pending,
            "running": self.running,
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
        }


def freeze_mapping(data: Mapping[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(dict(data))


class ErrorType(str, enum.Enum):
    NETWORK = "network"
    RATE_LIMITED = "rate_limited"
    STRUCTURAL = "structural"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in (ErrorType.NETWORK, ErrorType.RATE_LIMITED, ErrorType.UNKNOWN)


class ErrorAction(str, enum.Enum):
    RETRY = "retry"
    RETRY_AFTER_DELAY = "retry_after_delay"
    REDUCE_CONCURRENCY = "reduce_concurrency"
    SKIP = "skip"
    ABORT = "abort"


@dataclass(frozen=True)
class ErrorRecord:
    job_id: str
    error_type: ErrorType
    action: ErrorAction
    attempt: int
    timestamp: float
    message: str
    retry_delay: Optional[float] = None
    permanent: bool = False


@dataclass(frozen=True)
class RecoveryDecision:
    action: ErrorAction
    error_type: ErrorType
    delay: float = 0.0
    permanent: bool = False
    retry: bool = False


@dataclass(frozen=True)
class ErrorSummary:
    total: int
    by_type: Dict[str, int]
    by_action: Dict[str, int]
    recent: List[ErrorRecord]
    transient: List[ErrorRecord]
    permanent: List[ErrorRecord]


@dataclass(frozen=True)
class FetchResult:
    job_id: str
    url: str
    success: bool
    status_code: Optional[int]
    latency_ms: int
    data: Optional[Any]
    error_type: Optional[str]
    error_message: Optional[str] = None


@dataclass
class BatchOptions:
    concurrency: int = 3
    delay_ms: int = 0
    domain_delay_ms: int = 2000
    max_retry_attempts: int = 3
    start_from: int = 0
    limit: Optional[int] = None
    filter: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    progress_dir: str = ".progress"
    output_dir: Optional[str] = "output"
    stop_timeout: float = 30.0


@dataclass(frozen=True)
class BatchResult:
    success: bool
    total: int
    completed: int
    failed: int
    skipped: int
    duration: float
    errors: List[str]
    progress_id: str
    output_files: List[str]
