from __future__ import annotations

import logging
import threading
import time
from typing import Dict, List, Optional

from .logging_utils import log_event
from .models import extract_domain

logger = logging.getLogger(__name__)

DEFAULT_DOMAIN_DELAY_MS = 2000


class DomainRateLimiter:
    """Thread-safe per-hostname dispatch clock.

    Calling wait_for_domain() blocks the current thread until the domain of
    the given url may be hit again. Each caller reserves its dispatch slot
    under the lock and sleeps outside it, so requests to one domain are
    spaced by at least the configured delay while other domains proceed in
    parallel."""

    def __init__(self, default_delay_ms: int = DEFAULT_DOMAIN_DELAY_MS) -> None:
        self._default_delay = max(0, default_delay_ms) / 1000.0
        self._lock = threading.Lock()
        self._clock: Dict[str, float] = {}

    def wait_for_domain(self, url: str, override_delay_ms: Optional[int] = None) -> float:
        """Block until the url's domain is free; return the seconds spent waiting."""
        domain = extract_domain(url)
        if override_delay_ms is not None:
            delay = max(0, override_delay_ms) / 1000.0
        else:
            delay = self._default_delay

        with self._lock:
            now = time.monotonic()
            last = self._clock.get(domain)
            slot = now if last is None else max(now, last + delay)
            self._clock[domain] = slot

        wait = slot - now
        if wait > 0:
            log_event(logger, "domain_wait", domain=domain, wait_ms=int(wait * 1000), level=logging.DEBUG)
            time.sleep(wait)
        return wait

    def get_last_request_time(self, url: str) -> Optional[float]:
        with self._lock:
            return self._clock.get(extract_domain(url))

    def reset_domain(self, url: str) -> None:
        with self._lock:
            self._clock.pop(extract_domain(url), None)

    @property
    def tracked_domains(self) -> List[str]:
        with self._lock:
            return list(self._clock)

    def cleanup(self) -> None:
        """Forget every domain clock; safe to call repeatedly."""
        with self._lock:
            self._clock.clear()
