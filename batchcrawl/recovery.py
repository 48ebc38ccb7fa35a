from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections import Counter, deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Deque, Dict, List, Optional, Tuple, Union

import requests

from .backoff import BackoffStrategy
from .errors import ConfigurationError, FetchError
from .logging_utils import log_event
from .models import ErrorAction, ErrorRecord, ErrorSummary, ErrorType, RecoveryDecision

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRY_ATTEMPTS = 3
DEFAULT_RATE_LIMIT_THRESHOLD = 5
DEFAULT_RATE_LIMIT_WINDOW_SECS = 60.0
DEFAULT_UNKNOWN_ABORT_THRESHOLD = 5
DEFAULT_UNKNOWN_WINDOW_SECS = 60.0
RECENT_WINDOW_SECS = 300.0

_NETWORK_NAMES = {
    "Timeout",
    "TimeoutError",
    "ReadTimeout",
    "ConnectTimeout",
    "ConnectionError",
    "ConnectionResetError",
    "ConnectionRefusedError",
    "ChunkedEncodingError",
    "ProxyError",
    "SSLError",
    "socket.timeout",
}
_STRUCTURAL_NAMES = {"KeyError", "IndexError", "JSONDecodeError", "ParseError", "SelectorError", "StructureError"}
_CONFIGURATION_NAMES = {"ConfigurationError", "MissingSchema", "InvalidSchema", "InvalidURL", "URLRequired"}

_RATE_LIMIT_PATTERNS = ("429", "too many requests", "rate limit", "quota exceeded", "throttl")
_NETWORK_PATTERNS = (
    "timeout",
    "timed out",
    "connection reset",
    "connection refused",
    "connection aborted",
    "network",
    "socket",
    "econnreset",
    "enotfound",
    "etimedout",
)
_STRUCTURAL_PATTERNS = ("selector", "parse error", "malformed", "not found", "404", "no data")
_CONFIGURATION_PATTERNS = ("invalid configuration", "missing url", "url is required", "invalid url")

ErrorInput = Union[BaseException, str]


class ErrorRecovery:
    """Turns a failed attempt into a bounded recovery action.

    Keeps an in-memory log of every handled error plus two sliding windows:
    one of rate-limit signals (to trigger concurrency reduction) and one of
    unknown failures per job (to detect a systemic outage). Permanent
    errors are appended to ``error_log_path`` as JSON lines."""

    def __init__(
        self,
        max_retry_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS,
        backoff: Optional[BackoffStrategy] = None,
        error_log_path: Optional[str] = None,
        rate_limit_threshold: int = DEFAULT_RATE_LIMIT_THRESHOLD,
        rate_limit_window_secs: float = DEFAULT_RATE_LIMIT_WINDOW_SECS,
        unknown_abort_threshold: int = DEFAULT_UNKNOWN_ABORT_THRESHOLD,
        unknown_window_secs: float = DEFAULT_UNKNOWN_WINDOW_SECS,
        immediate_first_retry: bool = True,
    ) -> None:
        self.max_retry_attempts = max(1, max_retry_attempts)
        self._backoff = backoff or BackoffStrategy()
        self._error_log_path = Path(error_log_path) if error_log_path else None
        self._rate_limit_threshold = rate_limit_threshold
        self._rate_limit_window = rate_limit_window_secs
        self._unknown_threshold = unknown_abort_threshold
        self._unknown_window = unknown_window_secs
        self._immediate_first_retry = immediate_first_retry

        self._lock = threading.Lock()
        self._records: List[ErrorRecord] = []
        self._rate_limited: Deque[float] = deque()
        self._unknown: Deque[Tuple[float, str]] = deque()

    # -- classification ----------------------------------------------

    def classify_error(self, error: ErrorInput) -> ErrorType:
        """Map an exception, a FetchError or a bare message onto the taxonomy."""
        if isinstance(error, ConfigurationError):
            return ErrorType.CONFIGURATION

        status = getattr(error, "status_code", None)
        if status is None and isinstance(error, requests.HTTPError) and error.response is not None:
            status = error.response.status_code
        if status in (429, 403):
            return ErrorType.RATE_LIMITED
        if status == 404:
            return ErrorType.STRUCTURAL
        if status is not None and 500 <= int(status) < 600:
            return ErrorType.NETWORK

        name = _error_name(error)
        message = str(error).lower()

        if name in _CONFIGURATION_NAMES or any(p in message for p in _CONFIGURATION_PATTERNS):
            return ErrorType.CONFIGURATION
        if name in ("HTTP_429", "HTTP_403") or any(p in message for p in _RATE_LIMIT_PATTERNS):
            return ErrorType.RATE_LIMITED
        if isinstance(error, (requests.Timeout, requests.ConnectionError, TimeoutError, ConnectionError)):
            return ErrorType.NETWORK
        if name in _NETWORK_NAMES or (name or "").startswith("HTTP_5"):
            return ErrorType.NETWORK
        if name in _STRUCTURAL_NAMES or name == "HTTP_404":
            return ErrorType.STRUCTURAL
        if any(p in message for p in _NETWORK_PATTERNS):
            return ErrorType.NETWORK
        if any(p in message for p in _STRUCTURAL_PATTERNS):
            return ErrorType.STRUCTURAL
        return ErrorType.UNKNOWN

    # -- decisions ---------------------------------------------------

    def handle_error(self, job_id: str, error: ErrorInput, attempt: int) -> ErrorAction:
        return self.decide(job_id, error, attempt).action

    def decide(self, job_id: str, error: ErrorInput, attempt: int) -> RecoveryDecision:
        """Classify the failure of ``attempt`` (1-based) and pick an action."""
        error_type = self.classify_error(error)
        now = time.time()
        has_budget = attempt < self.max_retry_attempts

        with self._lock:
            if error_type is ErrorType.CONFIGURATION or error_type is ErrorType.STRUCTURAL:
                decision = RecoveryDecision(ErrorAction.SKIP, error_type, permanent=True)
            elif error_type is ErrorType.UNKNOWN and self._is_systemic(job_id, now):
                decision = RecoveryDecision(ErrorAction.ABORT, error_type, permanent=True)
            elif error_type is ErrorType.RATE_LIMITED and self._rate_limit_storm(now):
                decision = RecoveryDecision(
                    ErrorAction.REDUCE_CONCURRENCY,
                    error_type,
                    delay=self.calculate_retry_delay(attempt, error_type) if has_budget else 0.0,
                    permanent=not has_budget,
                    retry=has_budget,
                )
            elif has_budget:
                if self._immediate_first_retry and attempt == 1 and error_type is ErrorType.NETWORK:
                    decision = RecoveryDecision(ErrorAction.RETRY, error_type, retry=True)
                else:
                    decision = RecoveryDecision(
                        ErrorAction.RETRY_AFTER_DELAY,
                        error_type,
                        delay=self.calculate_retry_delay(attempt, error_type),
                        retry=True,
                    )
            else:
                decision = RecoveryDecision(ErrorAction.SKIP, error_type, permanent=True)

            record = ErrorRecord(
                job_id=job_id,
                error_type=error_type,
                action=decision.action,
                attempt=attempt,
                timestamp=now,
                message=str(error),
                retry_delay=decision.delay if decision.retry else None,
                permanent=decision.permanent,
            )
            self._records.append(record)

        log_event(
            logger,
            "error_handled",
            level=logging.WARNING,
            job_id=job_id,
            attempt=attempt,
            error_type=error_type.value,
            action=decision.action.value,
            retry_delay=record.retry_delay,
            message=record.message,
        )
        if record.permanent:
            self._append_error_log(record)
        return decision

    def _rate_limit_storm(self, now: float) -> bool:
        self._rate_limited.append(now)
        while self._rate_limited and now - self._rate_limited[0] > self._rate_limit_window:
            self._rate_limited.popleft()
        if len(self._rate_limited) >= self._rate_limit_threshold:
            # Start a fresh window so one storm shrinks the pool once.
            self._rate_limited.clear()
            return True
        return False

    def _is_systemic(self, job_id: str, now: float) -> bool:
        self._unknown.append((now, job_id))
        while self._unknown and now - self._unknown[0][0] > self._unknown_window:
            self._unknown.popleft()
        return len({jid for _, jid in self._unknown}) >= self._unknown_threshold

    def calculate_retry_delay(self, attempt: int, error_type: Optional[ErrorType] = None) -> float:
        """Backoff delay in seconds before retry number ``attempt``."""
        return self._backoff.get_sleep(attempt, error_type)

    # -- reporting ---------------------------------------------------

    def get_error_summary(self) -> ErrorSummary:
        with self._lock:
            records = list(self._records)
        now = time.time()
        by_type = Counter(r.error_type.value for r in records)
        by_action = Counter(r.action.value for r in records)
        return ErrorSummary(
            total=len(records),
            by_type={t.value: by_type.get(t.value, 0) for t in ErrorType},
            by_action={a.value: by_action.get(a.value, 0) for a in ErrorAction},
            recent=[r for r in records if now - r.timestamp < RECENT_WINDOW_SECS],
            transient=[r for r in records if not r.permanent],
            permanent=[r for r in records if r.permanent],
        )

    def get_permanent_failures(self) -> List[str]:
        seen: Dict[str, None] = {}
        for record in self.get_error_summary().permanent:
            seen.setdefault(record.job_id)
        return list(seen)

    def cleanup_old_errors(self, max_age_secs: float = 86400.0) -> None:
        cutoff = time.time() - max_age_secs
        with self._lock:
            self._records = [r for r in self._records if r.timestamp >= cutoff]

    def reset(self) -> None:
        with self._lock:
            self._records.clear()
            self._rate_limited.clear()
            self._unknown.clear()

    def export_error_report(self) -> str:
        summary = self.get_error_summary()

        def share(count: int) -> str:
            pct = (count / summary.total * 100) if summary.total else 0.0
            return f"{count} ({pct:.1f}%)"

        lines = ["Error recovery report", f"Total errors: {summary.total}", "", "By type:"]
        lines += [f"  {name}: {share(count)}" for name, count in summary.by_type.items()]
        lines += ["", "By action:"]
        lines += [f"  {name}: {share(count)}" for name, count in summary.by_action.items()]
        lines += [
            "",
            f"Recent (5 min): {len(summary.recent)}",
            f"Transient: {len(summary.transient)}",
            f"Permanent: {len(summary.permanent)}",
        ]
        for record in summary.permanent[:10]:
            lines.append(f"  - {record.job_id}: {record.message}")
        if len(summary.permanent) > 10:
            lines.append(f"  ... and {len(summary.permanent) - 10} more")
        return "\n".join(lines)

    def _append_error_log(self, record: ErrorRecord) -> None:
        if self._error_log_path is None:
            return
        entry = {
            "timestamp": datetime.fromtimestamp(record.timestamp, tz=timezone.utc).isoformat(),
            "job_id": record.job_id,
            "error_type": record.error_type.value,
            "action": record.action.value,
            "attempt": record.attempt,
            "message": record.message,
        }
        try:
            self._error_log_path.parent.mkdir(parents=True, exist_ok=True)
            with self._lock, open(self._error_log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, ensure_ascii=False) + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError:
            logger.exception("failed to append to error log %s", self._error_log_path)


def _error_name(error: ErrorInput) -> Optional[str]:
    if isinstance(error, FetchError):
        return error.error_type
    if isinstance(error, BaseException):
        return type(error).__name__
    return None
