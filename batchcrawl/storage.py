from __future__ import annotations

import json
import logging
import queue
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple

from .models import FetchResult

logger = logging.getLogger(__name__)


class StorageBase(ABC):
    """Sink for the results of successful jobs in one batch."""

    @abstractmethod
    def write(self, result: FetchResult, attempts: int = 1) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    @property
    @abstractmethod
    def written(self) -> int:
        """Number of results persisted so far."""


class JsonlStorage(StorageBase):
    """Appends one JSON line per result to ``<output_dir>/<progress_id>.jsonl``.

    Lines are written by a single background thread so worker threads never
    block on disk I/O. A resumed batch appends to the same file.
    """

    def __init__(self, output_dir: str, progress_id: str) -> None:
        self._progress_id = progress_id
        self._path = Path(output_dir) / f"{progress_id}.jsonl"
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._queue: "queue.Queue[Optional[Tuple[FetchResult, int]]]" = queue.Queue()
        self._written = 0
        self._closed = False
        self._thread = threading.Thread(target=self._writer, name=f"results-{progress_id}", daemon=True)
        self._thread.start()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def written(self) -> int:
        return self._written

    def write(self, result: FetchResult, attempts: int = 1) -> None:
        if self._closed:
            raise RuntimeError(f"result file {self._path} is closed")
        self._queue.put((result, attempts))

    def close(self) -> None:
        """Drain queued results and stop the writer; a second call is a no-op."""
        if self._closed:
            return
        self._closed = True
        self._queue.put(None)
        self._thread.join(timeout=10)

    def _record(self, result: FetchResult, attempts: int) -> dict:
        return {
            "progress_id": self._progress_id,
            "job_id": result.job_id,
            "url": result.url,
            "attempts": attempts,
            "status_code": result.status_code,
            "latency_ms": result.latency_ms,
            "written_at": datetime.now(timezone.utc).isoformat(),
            "data": result.data,
        }

    def _writer(self) -> None:
        with open(self._path, "a", encoding="utf-8") as f:
            while True:
                item = self._queue.get()
                if item is None:
                    break
                result, attempts = item
                try:
                    f.write(json.dumps(self._record(result, attempts), ensure_ascii=False, default=str) + "\n")
                    f.flush()
                except (OSError, ValueError):
                    logger.exception("failed to write result for %s", result.job_id)
                    continue
                self._written += 1
