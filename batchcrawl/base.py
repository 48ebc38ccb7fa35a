from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Any

from .errors import ConfigurationError
from .models import FetchResult, Job


class BaseFetcher(ABC):
    """Abstract base class defining the fetch-then-parse pipeline for one job.

    run() never raises: validation, transport and parse failures all come
    back as a failed FetchResult whose ``error_type`` is either ``HTTP_<code>``
    or the exception class name, which is what error classification keys on.
    """

    def run(self, job: Job) -> FetchResult:
        start_ms = self._now_ms()
        status_code = None

        try:
            self.validate(job)
            response = self.fetch(job)
            status_code = getattr(response, "status_code", None)

            try:
                parsed = self.parse(response)
            except Exception as parse_exc:  # noqa: BLE001
                return self._failure(job, start_ms, status_code, parse_exc)

            success = status_code is None or 200 <= int(status_code) < 300
            return FetchResult(
                job_id=job.job_id,
                url=job.url,
                success=success,
                status_code=status_code,
                latency_ms=self._now_ms() - start_ms,
                data=parsed,
                error_type=None if success else f"HTTP_{status_code}",
                error_message=None if success else f"HTTP {status_code} for {job.url}",
            )

        except Exception as exc:  # noqa: BLE001
            return self._failure(job, start_ms, status_code, exc)

    def _failure(self, job: Job, start_ms: int, status_code: Any, exc: Exception) -> FetchResult:
        return FetchResult(
            job_id=job.job_id,
            url=job.url,
            success=False,
            status_code=status_code,
            latency_ms=self._now_ms() - start_ms,
            data=None,
            error_type=type(exc).__name__,
            error_message=str(exc) or type(exc).__name__,
        )

    def validate(self, job: Job) -> None:
        if not job.url:
            raise ConfigurationError(f"job {job.job_id}: url is required")
        if not job.url.startswith(("http://", "https://")):
            raise ConfigurationError(f"job {job.job_id}: invalid url {job.url!r}")

    @abstractmethod
    def fetch(self, job: Job) -> Any:
        ...

    @abstractmethod
    def parse(self, response: Any) -> Any:
        ...

    @staticmethod
    def _now_ms() -> int:
        return int(time.time() * 1000)
