from __future__ import annotations

import argparse
import queue
import sys
import threading
from pathlib import Path
from typing import List, Optional

import structlog

from .core.errors import IxyCiError, PerformTestError
from .core.models import Job, Ping, Pong, Report, Repository, TestBranch, TestPullRequest, TestResult
from .logging import setup_logging
from .services.job_queue import JobQueue
from .services.openstack import CloudLifecycleManager
from .services.worker import Worker
from .settings import load_settings

log = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="ixy-ci", description="Test ixy drivers on OpenStack VMs")
    p.add_argument("-c", "--config", type=Path, default=None,
                   help="YAML config file (default: $IXY_CI_CONF or conf/ixy-ci.yaml)")
    p.add_argument("--log-level", default="INFO")
    p.add_argument("--console", action="store_true", help="human readable logs instead of JSON")
    sub = p.add_subparsers(dest="command", required=True)

    tb = sub.add_parser("test-branch", help="test a branch of a repository")
    tb.add_argument("repository", type=Repository.parse, help="OWNER/REPO")
    tb.add_argument("branch")

    tp = sub.add_parser("test-pr", help="test the fork branch of a pull request")
    tp.add_argument("repository", type=Repository.parse, help="OWNER/REPO")
    tp.add_argument("fork_user")
    tp.add_argument("fork_branch")
    tp.add_argument("pull_request_id", type=int)

    pg = sub.add_parser("ping", help="round trip through the worker")
    pg.add_argument("repository", type=Repository.parse, help="OWNER/REPO")
    pg.add_argument("issue_id", type=int)

    sub.add_parser("clean", help="delete the test VMs and orphaned volumes/floating IPs")
    return p


def job_from_args(args: argparse.Namespace) -> Job:
    if args.command == "test-branch":
        return TestBranch(repository=args.repository, branch=args.branch)
    if args.command == "test-pr":
        return TestPullRequest(
            repository=args.repository,
            fork_user=args.fork_user,
            fork_branch=args.fork_branch,
            pull_request_id=args.pull_request_id,
        )
    return Ping(repository=args.repository, issue_id=args.issue_id)


def log_report(report: Report) -> bool:
    """Log one report; return False if it carries a failed test."""
    content = report.content
    if isinstance(content, Pong):
        log.info("pong", repository=str(report.repository), issue_id=content.issue_id)
        return True
    if isinstance(content, TestResult):
        output = content.output
        if isinstance(content.error, PerformTestError):
            output = content.error.output
        log.info(
            "test_result",
            repository=str(report.repository),
            target=repr(content.test_target),
            passed=content.passed,
            error=str(content.error) if content.error else None,
            log_file=output.log_file if output else None,
            pcap_file=output.pcap_file if output else None,
        )
        return content.passed
    raise TypeError(f"unknown report content: {type(content).__name__}")


def run_jobs(worker: Worker, jobs: List[Job]) -> bool:
    thread = threading.Thread(target=worker.run, name="worker", daemon=True)
    thread.start()
    for job in jobs:
        worker.jobs.submit(job)
    worker.jobs.close()
    thread.join()

    ok = True
    received = 0
    while True:
        try:
            report = worker.reports.get_nowait()
        except queue.Empty:
            break
        received += 1
        ok = log_report(report) and ok
    if received < len(jobs):
        log.error("missing_reports", jobs=len(jobs), reports=received)
        return False
    return ok


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, json=not args.console)
    settings = load_settings(args.config)

    try:
        if args.command == "clean":
            CloudLifecycleManager(settings.openstack).clean_environment()
            return 0
        worker = Worker(settings, JobQueue(settings.job_queue_size))
        return 0 if run_jobs(worker, [job_from_args(args)]) else 1
    except IxyCiError as e:
        log.error("ixy_ci_failed", error=str(e))
        return 2


if __name__ == "__main__":
    sys.exit(main())
