"""Tests for data model classes."""

import unittest

from batchcrawl.models import ErrorType, Job, TaskState, TaskStatus, extract_domain


class TestJob(unittest.TestCase):
    """Verify Job dataclass creation and immutability."""

    def test_create_job_with_defaults(self):
        """Job should be creatable with just required fields."""
        job = Job(job_id="j1", url="https://example.com/quote")
        self.assertEqual(job.job_id, "j1")
        self.assertIsNone(job.delay_ms)
        self.assertEqual(job.fetcher, "http")
        self.assertEqual(job.params, {})
        self.assertEqual(job.meta, {})

    def test_job_is_immutable(self):
        """Frozen dataclass should raise on attribute assignment."""
        job = Job(job_id="j1", url="https://example.com")
        with self.assertRaises(AttributeError):
            job.url = "https://other.com"

    def test_domain_is_hostname(self):
        job = Job(job_id="j1", url="https://Finance.Example.com:8443/a?b=1")
        self.assertEqual(job.domain, "finance.example.com")


class TestExtractDomain(unittest.TestCase):
    def test_unparsable_url_falls_back_to_url(self):
        self.assertEqual(extract_domain("not a url"), "not a url")


class TestTaskState(unittest.TestCase):
    def test_defaults_to_pending(self):
        state = TaskState(job_id="j1")
        self.assertIs(state.status, TaskStatus.PENDING)
        self.assertEqual(state.attempts, 0)
        self.assertIsNone(state.last_error)

    def test_terminal_statuses(self):
        self.assertTrue(TaskStatus.COMPLETED.is_terminal)
        self.assertTrue(TaskStatus.FAILED.is_terminal)
        self.assertTrue(TaskStatus.SKIPPED.is_terminal)
        self.assertFalse(TaskStatus.PENDING.is_terminal)
        self.assertFalse(TaskStatus.RUNNING.is_terminal)


class TestErrorType(unittest.TestCase):
    def test_retryable_classes(self):
        self.assertTrue(ErrorType.NETWORK.retryable)
        self.assertTrue(ErrorType.RATE_LIMITED.retryable)
        self.assertTrue(ErrorType.UNKNOWN.retryable)
        self.assertFalse(ErrorType.STRUCTURAL.retryable)
        self.assertFalse(ErrorType.CONFIGURATION.retryable)


if __name__ == "__main__":
    unittest.main()
