from __future__ import annotations

import time as _time
from typing import Any, Optional

import requests
from curl_cffi import requests as curl_requests

from .base import BaseFetcher
from .models import Job

DEFAULT_TIMEOUT = 30
DEFAULT_IMPERSONATE = "chrome120"
MAX_TEXT_CHARS = 200_000


def _payload(response: Any) -> Any:
    content_type = (getattr(response, "headers", None) or {}).get("content-type", "")
    body: Any
    if "json" in content_type.lower():
        body = response.json()
    else:
        body = (getattr(response, "text", "") or "")[:MAX_TEXT_CHARS]
    return {
        "status_code": getattr(response, "status_code", None),
        "content_type": content_type,
        "latency_ms": getattr(response, "latency_ms", None),
        "body": body,
    }


class HttpFetcher(BaseFetcher):
    """Plain HTTP fetcher backed by a shared requests.Session.

    Retries are left to the batch layer; a transport error surfaces once."""

    def __init__(self, timeout: int = DEFAULT_TIMEOUT, session: Optional[requests.Session] = None) -> None:
        self._timeout = timeout
        self._session = session or requests.Session()

    def fetch(self, job: Job) -> Any:
        start = _time.time()
        resp = self._session.request(
            job.meta.get("method", "GET"),
            job.url,
            params=job.params or None,
            headers=job.meta.get("headers"),
            cookies=job.meta.get("cookies"),
            json=job.meta.get("json"),
            timeout=job.meta.get("timeout", self._timeout),
        )
        resp.latency_ms = int((_time.time() - start) * 1000)
        return resp

    def parse(self, response: Any) -> Any:
        return _payload(response)

    def close(self) -> None:
        self._session.close()


class ImpersonatingFetcher(BaseFetcher):
    """Fetcher that presents a browser TLS fingerprint through curl_cffi.

    A session is opened per call; curl sessions are not shared across
    worker threads."""

    def __init__(self, timeout: int = DEFAULT_TIMEOUT, impersonate: str = DEFAULT_IMPERSONATE) -> None:
        self._timeout = timeout
        self._impersonate = impersonate

    def fetch(self, job: Job) -> Any:
        start = _time.time()
        session = curl_requests.Session()
        try:
            json_data = job.meta.get("json")
            resp = session.request(
                method=job.meta.get("method", "GET"),
                url=job.url,
                params=job.params or None,
                json=json_data,
                data=None if json_data is not None else job.meta.get("data"),
                headers=job.meta.get("headers"),
                cookies=job.meta.get("cookies"),
                impersonate=job.meta.get("impersonate", self._impersonate),
                timeout=job.meta.get("timeout", self._timeout),
            )
        finally:
            session.close()
        resp.latency_ms = int((_time.time() - start) * 1000)
        return resp

    def parse(self, response: Any) -> Any:
        return _payload(response)
