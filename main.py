from __future__ import annotations

import argparse
import json
import signal
import sys
from typing import List, Optional

from batchcrawl.backoff import BackoffStrategy
from batchcrawl.domain_limiter import DEFAULT_DOMAIN_DELAY_MS
from batchcrawl.errors import BatchCrawlError, CorruptStateError
from batchcrawl.factory import FetcherFactory
from batchcrawl.jobs import load_jobs
from batchcrawl.logging_utils import configure_logging
from batchcrawl.manager import BatchCrawlerManager
from batchcrawl.models import BatchOptions, BatchResult
from batchcrawl.progress import DEFAULT_PROGRESS_DIR, ProgressTracker
from batchcrawl.recovery import ErrorRecovery

DEFAULT_JOBS_PATH = "jobs.txt"
DEFAULT_OUTPUT_DIR = "output"


def _build_manager(args: argparse.Namespace) -> BatchCrawlerManager:
    recovery = ErrorRecovery(
        max_retry_attempts=args.retries,
        backoff=BackoffStrategy(base_seconds=args.backoff_base, max_seconds=args.backoff_max),
        error_log_path=args.error_log or f"{args.output_dir}/errors.log",
    )
    return BatchCrawlerManager(
        factory=FetcherFactory(per_call=("impersonate",)),
        recovery=recovery,
    )


def _build_options(args: argparse.Namespace) -> BatchOptions:
    return BatchOptions(
        concurrency=args.concurrency,
        delay_ms=args.delay,
        domain_delay_ms=args.domain_delay,
        max_retry_attempts=args.retries,
        start_from=getattr(args, "start_from", 0),
        limit=getattr(args, "limit", None),
        filter=getattr(args, "filter", None),
        progress_dir=args.progress_dir,
        output_dir=args.output_dir,
        stop_timeout=args.stop_timeout,
    )


def _install_signal_handlers(manager: BatchCrawlerManager) -> None:
    def _handle(signum, _frame) -> None:
        print(f"received signal {signum}, stopping after in-flight jobs...", file=sys.stderr)
        manager.stop(wait=False)

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def _print_result(result: BatchResult) -> None:
    print(
        f"\nDONE: progress_id={result.progress_id} total={result.total} completed={result.completed} "
        f"failed={result.failed} skipped={result.skipped} duration={result.duration:.1f}s"
    )
    for error in result.errors[:20]:
        print(f"  error: {error}")
    if len(result.errors) > 20:
        print(f"  ... and {len(result.errors) - 20} more")
    for path in result.output_files:
        print(f"  output: {path}")


def cmd_run(args: argparse.Namespace) -> int:
    manager = _build_manager(args)
    _install_signal_handlers(manager)
    result = manager.start(load_jobs(args.jobs), _build_options(args))
    _print_result(result)
    return 0 if result.success else 1


def cmd_resume(args: argparse.Namespace) -> int:
    manager = _build_manager(args)
    _install_signal_handlers(manager)
    result = manager.resume(args.progress_id, load_jobs(args.jobs), _build_options(args))
    _print_result(result)
    return 0 if result.success else 1


def cmd_retry_failed(args: argparse.Namespace) -> int:
    manager = _build_manager(args)
    _install_signal_handlers(manager)
    result = manager.retry_failed(args.progress_id, load_jobs(args.jobs), _build_options(args))
    _print_result(result)
    return 0 if result.success else 1


def cmd_list(args: argparse.Namespace) -> int:
    files = ProgressTracker.list_progress_files(args.progress_dir)
    if not files:
        print(f"No progress files in {args.progress_dir}")
        return 0
    unreadable = 0
    for path in files:
        try:
            snap = ProgressTracker.load(path).get_progress()
        except CorruptStateError as exc:
            unreadable += 1
            print(f"{path.stem}  unreadable: {exc}", file=sys.stderr)
            continue
        print(
            f"{snap.progress_id}  {snap.percentage:5.1f}%  completed={snap.completed} failed={snap.failed} "
            f"skipped={snap.skipped} pending={snap.pending} total={snap.total}"
        )
    return 1 if unreadable else 0


def cmd_report(args: argparse.Namespace) -> int:
    path = ProgressTracker.find_progress_file(args.progress_dir, args.progress_id)
    if path is None:
        print(f"No progress file for {args.progress_id}", file=sys.stderr)
        return 1
    tracker = ProgressTracker.load(path)
    if args.json:
        print(json.dumps(tracker.to_dict(), ensure_ascii=False, indent=2))
    else:
        print(tracker.generate_report())
    return 0


def _add_run_options(p: argparse.ArgumentParser) -> None:
    p.add_argument("--jobs", default=DEFAULT_JOBS_PATH, help="Job file: 'job_id url [delay_ms]' or JSON per line")
    p.add_argument("--concurrency", type=int, default=3, help="Max jobs in flight")
    p.add_argument("--delay", type=int, default=0, help="Delay (ms) a worker waits after each finished job")
    p.add_argument("--domain-delay", type=int, default=DEFAULT_DOMAIN_DELAY_MS, help="Min gap (ms) per domain")
    p.add_argument("--retries", type=int, default=3, help="Max attempts per job")
    p.add_argument("--backoff-base", type=float, default=5.0, help="Backoff base seconds")
    p.add_argument("--backoff-max", type=float, default=300.0, help="Backoff cap seconds")
    p.add_argument("--output-dir", default=DEFAULT_OUTPUT_DIR, help="Directory for results and the error log")
    p.add_argument("--error-log", default=None, help="Error log path (default: <output-dir>/errors.log)")
    p.add_argument("--stop-timeout", type=float, default=30.0, help="Seconds to wait for in-flight jobs on stop")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="batchcrawl")
    parser.add_argument("--progress-dir", default=DEFAULT_PROGRESS_DIR, help="Snapshot directory")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    sub = parser.add_subparsers(dest="command", required=True)

    p_run = sub.add_parser("run", help="Start a new batch")
    _add_run_options(p_run)
    p_run.add_argument("--filter", default=None, help="Only jobs whose id contains this text")
    p_run.add_argument("--start-from", type=int, default=0, help="Skip the first N selected jobs")
    p_run.add_argument("--limit", type=int, default=None, help="Run at most N jobs")
    p_run.set_defaults(func=cmd_run)

    p_resume = sub.add_parser("resume", help="Resume an interrupted batch")
    p_resume.add_argument("progress_id")
    _add_run_options(p_resume)
    p_resume.set_defaults(func=cmd_resume)

    p_retry = sub.add_parser("retry-failed", help="Retry failed jobs of a batch")
    p_retry.add_argument("progress_id")
    _add_run_options(p_retry)
    p_retry.set_defaults(func=cmd_retry_failed)

    p_list = sub.add_parser("list", help="List saved batches")
    p_list.set_defaults(func=cmd_list)

    p_report = sub.add_parser("report", help="Show the progress report of a batch")
    p_report.add_argument("progress_id")
    p_report.add_argument("--json", action="store_true", help="Dump the raw snapshot")
    p_report.set_defaults(func=cmd_report)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    try:
        return args.func(args)
    except BatchCrawlError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
