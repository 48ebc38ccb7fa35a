from __future__ import annotations

import json
from typing import Iterable, List, Optional

from .errors import ConfigurationError
from .models import Job


def parse_job_line(line: str, lineno: int = 0) -> Optional[Job]:
    """Parse one job line: a JSON object or ``job_id url [delay_ms]``."""
    line = line.strip()
    if not line or line.startswith("#"):
        return None

    if line.startswith("{"):
        try:
            raw = json.loads(line)
            return Job(
                job_id=str(raw["job_id"]),
                url=str(raw["url"]),
                delay_ms=int(raw["delay_ms"]) if raw.get("delay_ms") is not None else None,
                fetcher=str(raw.get("fetcher") or "http"),
                params=dict(raw.get("params") or {}),
                meta=dict(raw.get("meta") or {}),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigurationError(f"line {lineno}: invalid job object: {exc}") from exc

    parts = line.split()
    if len(parts) < 2:
        raise ConfigurationError(f"line {lineno}: expected 'job_id url [delay_ms]'")
    delay_ms = None
    if len(parts) > 2:
        try:
            delay_ms = int(parts[2])
        except ValueError as exc:
            raise ConfigurationError(f"line {lineno}: delay_ms must be an integer") from exc
    return Job(job_id=parts[0], url=parts[1], delay_ms=delay_ms)


def load_jobs(path: str) -> List[Job]:
    jobs: List[Job] = []
    seen = set()
    with open(path, "r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            job = parse_job_line(line, lineno)
            if job is None:
                continue
            if job.job_id in seen:
                raise ConfigurationError(f"line {lineno}: duplicate job id {job.job_id!r}")
            seen.add(job.job_id)
            jobs.append(job)
    return jobs


def select_jobs(
    jobs: Iterable[Job],
    name_filter: Optional[str] = None,
    start_from: int = 0,
    limit: Optional[int] = None,
) -> List[Job]:
    """Apply the substring filter, then the start offset and the limit."""
    selected = [job for job in jobs if not name_filter or name_filter in job.job_id]
    start_from = max(0, start_from)
    if limit is not None:
        return selected[start_from:start_from + max(0, limit)]
    return selected[start_from:]
