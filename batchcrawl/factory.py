from __future__ import annotations

import threading
from typing import Callable, Dict, Mapping, Optional

from .base import BaseFetcher
from .errors import ConfigurationError
from .fetchers import HttpFetcher, ImpersonatingFetcher
from .models import Job

FetcherBuilder = Callable[[], BaseFetcher]

# Static registry of fetch engines, keyed by the name a job asks for.
DEFAULT_BUILDERS: Mapping[str, FetcherBuilder] = {
    "http": HttpFetcher,
    "impersonate": ImpersonatingFetcher,
}


class FetcherFactory:
    """Factory returning the fetcher a job's ``fetcher`` name refers to.

    Instances are cached per name, except for names listed in
    ``per_call``, which get a fresh fetcher every time.
    """

    def __init__(
        self,
        builders: Optional[Mapping[str, FetcherBuilder]] = None,
        per_call: tuple = (),
    ) -> None:
        self._builders: Dict[str, FetcherBuilder] = dict(builders or DEFAULT_BUILDERS)
        self._per_call = set(per_call)
        self._cache: Dict[str, BaseFetcher] = {}
        self._lock = threading.Lock()

    def register(self, name: str, builder: FetcherBuilder) -> None:
        with self._lock:
            self._builders[name] = builder
            self._cache.pop(name, None)

    def create_fetcher(self, job: Job) -> BaseFetcher:
        name = job.fetcher
        with self._lock:
            builder = self._builders.get(name)
            if builder is None:
                raise ConfigurationError(f"Unknown fetcher: {name}")
            if name in self._per_call:
                return builder()
            fetcher = self._cache.get(name)
            if fetcher is None:
                fetcher = self._cache[name] = builder()
            return fetcher

    @property
    def names(self) -> list:
        return sorted(self._builders)
