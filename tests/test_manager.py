"""Tests for the BatchCrawlerManager class."""

import json
import os
import shutil
import tempfile
import threading
import time
import unittest
from unittest import mock

from batchcrawl.backoff import BackoffStrategy
from batchcrawl.base import BaseFetcher
from batchcrawl.errors import ConfigurationError, ManagerStateError, ProgressNotFoundError
from batchcrawl.manager import BatchCrawlerManager
from batchcrawl.models import BatchOptions, FetchResult, Job, TaskStatus
from batchcrawl.progress import ProgressTracker
from batchcrawl.recovery import ErrorRecovery
from batchcrawl.storage import JsonlStorage

OK = "ok"


class FakeFetcher:
    """Scripted fetcher: ``outcomes[job_id]`` lists the result of each attempt.

    An outcome is OK or an ``(error_type, message, status_code)`` tuple; the
    last one repeats once the list is exhausted."""

    def __init__(self, outcomes=None, hook=None, latency=0.0):
        self.outcomes = outcomes or {}
        self.hook = hook
        self.latency = latency
        self.calls = []
        self.stamps = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def run(self, job):
        with self._lock:
            self.calls.append(job.job_id)
            self.stamps.append((job.job_id, time.monotonic()))
            n = self.calls.count(job.job_id)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.hook is not None:
                self.hook(job, n)
            if self.latency:
                time.sleep(self.latency)
        finally:
            with self._lock:
                self.active -= 1

        plan = self.outcomes.get(job.job_id) or [OK]
        outcome = plan[min(n, len(plan)) - 1]
        if outcome == OK:
            return FetchResult(job.job_id, job.url, True, 200, 1, {"job": job.job_id}, None)
        error_type, message, status_code = outcome
        return FetchResult(job.job_id, job.url, False, status_code, 1, None, error_type, message)


def make_jobs(n, prefix="job", domain="example.com"):
    return [Job(job_id=f"{prefix}-{i}", url=f"https://{domain}/item/{i}") for i in range(n)]


class ManagerTestCase(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.progress_dir = os.path.join(self.tmpdir, "progress")
        self.output_dir = os.path.join(self.tmpdir, "output")

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def options(self, **kwargs):
        kwargs.setdefault("progress_dir", self.progress_dir)
        kwargs.setdefault("output_dir", self.output_dir)
        kwargs.setdefault("domain_delay_ms", 0)
        kwargs.setdefault("stop_timeout", 5.0)
        return BatchOptions(**kwargs)

    def make_manager(self, fetcher, **recovery_kwargs):
        recovery_kwargs.setdefault("backoff", BackoffStrategy(base_seconds=0.01, max_seconds=0.1))
        return BatchCrawlerManager(
            fetcher=fetcher,
            recovery=ErrorRecovery(**recovery_kwargs),
            autosave_interval=None,
        )

    def load(self, progress_id):
        return ProgressTracker.load(ProgressTracker.find_progress_file(self.progress_dir, progress_id))


class TestStart(ManagerTestCase):
    def test_all_jobs_succeed(self):
        fetcher = FakeFetcher()
        manager = self.make_manager(fetcher)
        snapshots = []
        manager.on_progress(snapshots.append)

        result = manager.start(make_jobs(5), self.options(concurrency=2))

        self.assertTrue(result.success)
        self.assertEqual((result.total, result.completed, result.failed, result.skipped), (5, 5, 0, 0))
        self.assertEqual(result.errors, [])
        self.assertEqual(sorted(fetcher.calls), [f"job-{i}" for i in range(5)])
        self.assertFalse(manager.is_running)
        for snap in snapshots:
            self.assertEqual(snap.pending + snap.running + snap.completed + snap.failed + snap.skipped, snap.total)

        # Snapshot file survives completion and agrees with the result.
        tracker = self.load(result.progress_id)
        self.assertEqual(tracker.get_progress().completed, 5)

        self.assertEqual(len(result.output_files), 1)
        with open(result.output_files[0], encoding="utf-8") as f:
            records = [json.loads(line) for line in f]
        self.assertEqual(len(records), 5)

    def test_concurrency_cap_is_respected(self):
        fetcher = FakeFetcher(latency=0.02)
        manager = self.make_manager(fetcher)
        result = manager.start(make_jobs(12), self.options(concurrency=3))
        self.assertEqual(result.completed, 12)
        self.assertLessEqual(fetcher.max_active, 3)
        self.assertGreaterEqual(fetcher.max_active, 1)

    def test_selection_options(self):
        jobs = make_jobs(4, prefix="fund") + make_jobs(4, prefix="stock")
        fetcher = FakeFetcher()
        manager = self.make_manager(fetcher)
        result = manager.start(jobs, self.options(filter="stock", start_from=1, limit=2))
        self.assertEqual(result.total, 2)
        self.assertEqual(sorted(fetcher.calls), ["stock-1", "stock-2"])
        self.assertEqual(dict(self.load(result.progress_id).get_progress().metadata), {"filter": "stock"})

    def test_empty_selection_is_rejected(self):
        manager = self.make_manager(FakeFetcher())
        with self.assertRaises(ConfigurationError):
            manager.start([], self.options())
        with self.assertRaises(ConfigurationError):
            manager.start(make_jobs(3), self.options(filter="nothing-matches"))

    def test_inter_task_delay(self):
        fetcher = FakeFetcher()
        manager = self.make_manager(fetcher)
        started = time.monotonic()
        manager.start(make_jobs(3), self.options(concurrency=1, delay_ms=100))
        self.assertGreaterEqual(time.monotonic() - started, 0.2)


class TestRetries(ManagerTestCase):
    def test_retryable_failure_exhausts_budget(self):
        network_error = ("ConnectionError", "connection reset by peer", None)
        fetcher = FakeFetcher(outcomes={"X": [network_error]})
        manager = self.make_manager(fetcher)
        jobs = [Job(job_id="X", url="https://example.com/x")] + make_jobs(2)

        result = manager.start(jobs, self.options(max_retry_attempts=3))

        self.assertEqual(fetcher.calls.count("X"), 3)
        task = self.load(result.progress_id).get_task("X")
        self.assertEqual(task.attempts, 3)
        self.assertIs(task.status, TaskStatus.SKIPPED)
        self.assertEqual(task.last_error, "connection reset by peer")
        self.assertEqual(result.completed, 2)
        self.assertEqual(result.skipped, 1)
        self.assertIn("X: connection reset by peer", result.errors)

    def test_transient_failure_then_success(self):
        fetcher = FakeFetcher(outcomes={"job-0": [("HTTP_503", "HTTP 503", 503), OK]})
        manager = self.make_manager(fetcher)
        result = manager.start(make_jobs(2), self.options())
        self.assertEqual(result.completed, 2)
        self.assertEqual(fetcher.calls.count("job-0"), 2)
        self.assertEqual(result.errors, [])

    def test_structural_failure_is_not_retried(self):
        fetcher = FakeFetcher(outcomes={"job-0": [("HTTP_404", "HTTP 404", 404)]})
        manager = self.make_manager(fetcher)
        result = manager.start(make_jobs(2), self.options())
        self.assertEqual(fetcher.calls.count("job-0"), 1)
        self.assertEqual(result.skipped, 1)
        self.assertTrue(result.success)

    def test_configuration_failure_marks_job_failed(self):
        class UrlCheckingFetcher(BaseFetcher):
            def fetch(self, job):
                return None

            def parse(self, response):
                return {}

        manager = self.make_manager(UrlCheckingFetcher())
        jobs = [Job(job_id="bad", url="ftp://example.com/"), Job(job_id="good", url="https://example.com/")]
        result = manager.start(jobs, self.options())
        self.assertFalse(result.success)
        self.assertEqual((result.completed, result.failed), (1, 1))
        self.assertIs(self.load(result.progress_id).get_task("bad").status, TaskStatus.FAILED)


class TestDomainSpacing(ManagerTestCase):
    def test_same_domain_dispatches_are_spaced(self):
        fetcher = FakeFetcher()
        manager = self.make_manager(fetcher)
        manager.start(make_jobs(4), self.options(concurrency=4, domain_delay_ms=400))

        stamps = sorted(stamp for _, stamp in fetcher.stamps)
        for earlier, later in zip(stamps, stamps[1:]):
            self.assertGreaterEqual(later - earlier, 0.35)

    def test_other_domains_run_in_parallel(self):
        fetcher = FakeFetcher()
        manager = self.make_manager(fetcher)
        jobs = [Job(job_id=f"d{i}", url=f"https://host{i}.example/") for i in range(4)]
        started = time.monotonic()
        manager.start(jobs, self.options(concurrency=4, domain_delay_ms=2000))
        self.assertLess(time.monotonic() - started, 1.5)


class TestRateLimitStorm(ManagerTestCase):
    def test_cap_shrinks_and_stays_reduced(self):
        throttled = ("HTTP_429", "HTTP 429", 429)
        jobs = make_jobs(5)
        fetcher = FakeFetcher(outcomes={job.job_id: [throttled, OK] for job in jobs})
        manager = self.make_manager(fetcher)

        result = manager.start(jobs, self.options(concurrency=5))

        self.assertEqual(result.completed, 5)
        self.assertEqual(manager.concurrency_limit, 4)


class TestAbort(ManagerTestCase):
    def test_systemic_unknown_failures_abort_batch(self):
        weird = ("RuntimeError", "weird glitch", None)
        jobs = make_jobs(6)
        fetcher = FakeFetcher(outcomes={job.job_id: [weird] for job in jobs})
        manager = self.make_manager(fetcher, unknown_abort_threshold=3)

        result = manager.start(jobs, self.options(concurrency=1))

        self.assertFalse(result.success)
        self.assertEqual(result.completed, 0)
        self.assertEqual(result.failed, 1)
        self.assertEqual(result.skipped, 5)
        self.assertEqual(result.failed + result.skipped, result.total)


class TestStopAndResume(ManagerTestCase):
    def test_stop_then_resume_never_reruns_completed(self):
        jobs = make_jobs(5)
        holder = {}

        def stop_on_second(job, n):
            if job.job_id == "job-1":
                holder["manager"].stop(wait=False)

        first = FakeFetcher(hook=stop_on_second)
        manager = self.make_manager(first)
        holder["manager"] = manager
        result = manager.start(jobs, self.options(concurrency=1))

        self.assertEqual(result.completed, 2)
        tracker = self.load(result.progress_id)
        self.assertEqual(tracker.get_progress().pending, 3)

        second = FakeFetcher()
        resumed = self.make_manager(second).resume(result.progress_id, jobs, self.options(concurrency=2))

        self.assertEqual(sorted(second.calls), ["job-2", "job-3", "job-4"])
        self.assertEqual(resumed.completed, 5)
        self.assertEqual(resumed.progress_id, result.progress_id)

    def test_resume_after_crash(self):
        jobs = make_jobs(5)
        tracker = ProgressTracker.create([j.job_id for j in jobs], progress_dir=self.progress_dir)
        tracker.update_progress("job-0", TaskStatus.RUNNING)
        tracker.update_progress("job-0", TaskStatus.COMPLETED)
        tracker.update_progress("job-1", TaskStatus.RUNNING)  # left Running by the crash
        tracker.update_progress("job-2", TaskStatus.RUNNING)
        tracker.update_progress("job-2", TaskStatus.FAILED, "bad config")
        tracker.update_progress("job-3", TaskStatus.RUNNING)
        tracker.update_progress("job-3", TaskStatus.SKIPPED, "gone")
        tracker.save()

        fetcher = FakeFetcher()
        result = self.make_manager(fetcher).resume(tracker.progress_id, jobs, self.options())

        self.assertEqual(sorted(fetcher.calls), ["job-1", "job-2", "job-4"])
        self.assertEqual(result.completed, 4)
        self.assertEqual(result.skipped, 1)
        self.assertEqual(self.load(tracker.progress_id).get_task("job-1").attempts, 2)

    def test_resume_with_nothing_left(self):
        fetcher = FakeFetcher()
        manager = self.make_manager(fetcher)
        result = manager.start(make_jobs(2), self.options())
        again = manager.resume(result.progress_id, make_jobs(2), self.options())
        self.assertEqual(again.completed, 2)
        self.assertEqual(again.duration, 0.0)
        self.assertEqual(len(fetcher.calls), 2)

    def test_resume_unknown_id(self):
        manager = self.make_manager(FakeFetcher())
        with self.assertRaises(ProgressNotFoundError):
            manager.resume("batch-does-not-exist", make_jobs(1), self.options())


class TestRetryFailed(ManagerTestCase):
    def test_only_retryable_failures_run(self):
        jobs = make_jobs(3)
        tracker = ProgressTracker.create([j.job_id for j in jobs], progress_dir=self.progress_dir)
        tracker.update_progress("job-0", TaskStatus.RUNNING)
        tracker.update_progress("job-0", TaskStatus.COMPLETED)
        tracker.update_progress("job-1", TaskStatus.RUNNING)
        tracker.update_progress("job-1", TaskStatus.FAILED, "bad config")
        tracker.save()

        fetcher = FakeFetcher()
        result = self.make_manager(fetcher).retry_failed(tracker.progress_id, jobs, self.options())

        self.assertEqual(fetcher.calls, ["job-1"])
        task = self.load(tracker.progress_id).get_task("job-1")
        self.assertIs(task.status, TaskStatus.COMPLETED)
        self.assertEqual(task.attempts, 1)
        self.assertEqual(result.failed, 0)
        # job-2 was never started and stays Pending.
        self.assertEqual(self.load(tracker.progress_id).get_task("job-2").status, TaskStatus.PENDING)


class TestLifecycle(ManagerTestCase):
    def test_pause_and_stop_when_idle(self):
        manager = self.make_manager(FakeFetcher())
        with self.assertRaises(ManagerStateError):
            manager.pause()
        with self.assertRaises(ManagerStateError):
            manager.unpause()
        self.assertTrue(manager.stop())
        self.assertIsNone(manager.get_progress())

    def test_pause_holds_back_dispatch(self):
        gate = threading.Event()
        first_started = threading.Event()

        def block_first(job, n):
            if job.job_id == "job-0":
                first_started.set()
                gate.wait(5)

        fetcher = FakeFetcher(hook=block_first)
        manager = self.make_manager(fetcher)
        results = []
        runner = threading.Thread(
            target=lambda: results.append(manager.start(make_jobs(3), self.options(concurrency=1)))
        )
        runner.start()

        self.assertTrue(first_started.wait(5))
        manager.pause()
        gate.set()
        time.sleep(0.2)
        self.assertEqual(fetcher.calls, ["job-0"])
        self.assertEqual(manager.get_progress().completed, 1)
        with self.assertRaises(ManagerStateError):
            manager.start(make_jobs(1), self.options())

        manager.unpause()
        runner.join(timeout=5)
        self.assertFalse(runner.is_alive())
        self.assertEqual(results[0].completed, 3)

    def test_stop_from_another_thread_waits_for_finish(self):
        first_started = threading.Event()

        def signal(job, n):
            first_started.set()

        manager = self.make_manager(FakeFetcher(hook=signal, latency=0.05))
        results = []
        runner = threading.Thread(
            target=lambda: results.append(manager.start(make_jobs(20), self.options(concurrency=1)))
        )
        runner.start()
        self.assertTrue(first_started.wait(5))
        self.assertTrue(manager.stop(timeout=5))
        runner.join(timeout=5)

        result = results[0]
        self.assertLess(result.completed, 20)
        self.assertEqual(result.failed, 0)
        tracker = self.load(result.progress_id)
        snap = tracker.get_progress()
        self.assertEqual(snap.running, 0)
        self.assertEqual(snap.pending, 20 - result.completed)


class TestBookkeepingFailure(ManagerTestCase):
    def test_lost_result_write_marks_job_failed(self):
        real_write = JsonlStorage.write

        def write(storage, result, attempts=1):
            if result.job_id == "job-1":
                raise RuntimeError("result file is closed")
            real_write(storage, result, attempts)

        manager = self.make_manager(FakeFetcher())
        with mock.patch.object(JsonlStorage, "write", write):
            result = manager.start(make_jobs(3), self.options(concurrency=1))

        self.assertFalse(result.success)
        self.assertEqual((result.completed, result.failed), (2, 1))
        tracker = self.load(result.progress_id)
        self.assertEqual(tracker.get_progress().running, 0)
        task = tracker.get_task("job-1")
        self.assertIs(task.status, TaskStatus.FAILED)
        self.assertIn("result file is closed", task.last_error)


if __name__ == "__main__":
    unittest.main()
