"""Resumable batch crawler package.

Runs a set of fetch jobs under a concurrency cap with per-domain spacing,
classified error recovery and a durable progress snapshot.

Key modules:
    manager         -- BatchCrawlerManager: start, resume, retry_failed, pause, stop
    progress        -- ProgressTracker: task state machine and JSON snapshots
    recovery        -- ErrorRecovery: error classification and retry policy
    domain_limiter  -- DomainRateLimiter for per-hostname request spacing
    controller      -- ThreadPoolController for slot-bounded concurrency
    backoff         -- BackoffStrategy for exponential retry delays
    base            -- BaseFetcher abstract class
    fetchers        -- HttpFetcher, ImpersonatingFetcher
    factory         -- FetcherFactory for resolving a job's fetcher
    jobs            -- job file parsing and selection
    storage         -- StorageBase and JsonlStorage for results
    models          -- Job, TaskState, ProgressSnapshot and friends
    errors          -- exception hierarchy
"""
