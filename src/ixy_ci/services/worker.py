from __future__ import annotations

import queue
import shlex
import time
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import structlog

from ..core.errors import (
    CaptureError,
    CloudError,
    ConnectVm,
    OpenStackError,
    PcapTestError,
    PerformTestError,
    PerformTestFailure,
    PrepareVmError,
    RemoteCommandError,
    RemoteError,
    SaveTestOutput,
    TestError,
)
from ..core.models import (
    ROLES,
    BranchTarget,
    Job,
    Ping,
    Pong,
    PullRequestTarget,
    Report,
    Repository,
    RepositoryConfig,
    TestBranch,
    TestContext,
    TestOutput,
    TestPullRequest,
    TestResult,
)
from ..core.utils import retry
from ..remote import runner
from ..remote.session import CancellableCommand, RemoteSession
from ..settings import Settings
from ..validation.pcap import validate_capture
from .artifact_store import ArtifactStore
from .job_queue import JobQueue
from .openstack import CloudLifecycleManager
from .repo_config import fetch_repository_config

log = structlog.get_logger(__name__)

PCAP_FILE = "capture.pcap"
PCAP_TIMEOUT_S = 15.0
PCAP_POLL_INTERVAL_S = 0.2

SSH_CONNECT_RETRIES = 10
SSH_CONNECT_DELAY_S = 5.0

RUNNER_SOURCE = Path(runner.__file__)


class Worker:
    """
    Runs jobs from the job queue one at a time and puts one Report per job on
    ``reports``. Running jobs sequentially is what keeps two runs from fighting
    over the three fixed-name VMs.
    """

    def __init__(
        self,
        settings: Settings,
        jobs: JobQueue,
        reports: Optional["queue.Queue[Report]"] = None,
        *,
        cloud_factory: Optional[Callable[[], CloudLifecycleManager]] = None,
        connect: Optional[Callable[[str], RemoteSession]] = None,
        fetch_config: Callable[[Repository, str], RepositoryConfig] = fetch_repository_config,
        store: Optional[ArtifactStore] = None,
    ):
        self.settings = settings
        self.jobs = jobs
        self.reports: "queue.Queue[Report]" = reports if reports is not None else queue.Queue()
        self._cloud_factory = cloud_factory or (lambda: CloudLifecycleManager(settings.openstack))
        self._connect = connect or self._ssh_connect
        self._fetch_config = fetch_config
        self.store = store or ArtifactStore(settings.log_directory)
        self.cloud: Optional[CloudLifecycleManager] = None

    # ------------ job loop ------------

    def run(self) -> None:
        """Consume jobs until the queue is closed and drained."""
        try:
            while True:
                job = self.jobs.get()
                if job is None:
                    break
                self.reports.put(self.process(job))
        finally:
            # Producers must see the queue as disconnected once we're gone.
            self.jobs.close()
        log.info("worker_stopped")

    def process(self, job: Job) -> Report:
        if isinstance(job, Ping):
            return Report(repository=job.repository, content=Pong(issue_id=job.issue_id))

        if isinstance(job, TestBranch):
            log.info("testing_branch", repository=str(job.repository), branch=job.branch)
            target = BranchTarget(job.branch)
            test_repo, branch = job.repository, job.branch
        elif isinstance(job, TestPullRequest):
            log.info("testing_pull_request", repository=str(job.repository),
                     fork_user=job.fork_user, fork_branch=job.fork_branch)
            target = PullRequestTarget(job.pull_request_id)
            test_repo = Repository(user=job.fork_user, name=job.repository.name)
            branch = job.fork_branch
        else:
            raise TypeError(f"unknown job type: {type(job).__name__}")

        try:
            output = self.test_repository(test_repo, branch)
            result = TestResult(test_target=target, output=output)
        except TestError as e:
            log.error("test_failed", repository=str(test_repo), branch=branch, error=str(e))
            result = TestResult(test_target=target, error=e)
        return Report(repository=job.repository, content=result)

    # ------------ pipeline ------------

    def _cloud(self) -> CloudLifecycleManager:
        # Created lazily on the worker thread, which then owns it.
        if self.cloud is None:
            try:
                self.cloud = self._cloud_factory()
            except CloudError as e:
                raise OpenStackError(e) from e
        return self.cloud

    def test_repository(self, repository: Repository, branch: str) -> TestOutput:
        repo_config = self._fetch_config(repository, branch)

        cloud = self._cloud()
        error: Optional[TestError] = None
        output: Optional[TestOutput] = None
        try:
            try:
                ips = cloud.spawn_vms()
            except CloudError as e:
                raise OpenStackError(e) from e
            output = self._test_on_vms(repo_config, repository, branch, ips)
        except TestError as e:
            error = e
            raise
        finally:
            # Runs whatever happened above, before the report is emitted.
            try:
                cloud.clean_environment()
            except CloudError as e:
                if output is not None:
                    raise OpenStackError(e) from e
                log.error("teardown_failed", error=str(e))
                if error is not None:
                    error.teardown_error = e
        return output

    def _ssh_connect(self, address: str) -> RemoteSession:
        cfg = self.settings.openstack
        return RemoteSession.connect(address, cfg.ssh_login, cfg.private_key_path)

    def _connect_all(self, ips: Sequence[str]) -> TestContext:
        sessions: List[RemoteSession] = []
        try:
            for vm, ip in zip(ROLES, ips):
                log.debug("connecting_to_vm", vm=vm, ip=ip)
                try:
                    sessions.append(retry(SSH_CONNECT_RETRIES, SSH_CONNECT_DELAY_S,
                                          lambda: self._connect(ip), exceptions=(RemoteError,)))
                except RemoteError as e:
                    raise ConnectVm(vm, e) from e
        except ConnectVm:
            for s in sessions:
                s.into_log()
            raise
        return TestContext(*sessions)

    def _test_on_vms(
        self,
        repo_config: RepositoryConfig,
        repository: Repository,
        branch: str,
        ips: Tuple[str, str, str],
    ) -> TestOutput:
        log.info("using_vms", pktgen=ips[0], fwd=ips[1], pcap=ips[2])
        ctx = self._connect_all(ips)

        failure: Optional[PerformTestFailure] = None
        try:
            self.perform_test(ctx, repository, branch, repo_config)
        except PerformTestFailure as e:
            failure = e
        finally:
            logs = ctx.into_logs()

        try:
            output = self.store.save(repository, branch, logs, ctx.capture)
        except OSError as e:
            raise SaveTestOutput(e) from e

        if failure is not None:
            raise PerformTestError(failure, output) from failure
        return output

    def test_environment(self, repository: Repository) -> str:
        test = self.settings.test
        pci = test.pci_addresses
        assignments = [
            ("PCI_ADDR_PKTGEN", pci.pktgen),
            ("PCI_ADDR_FWD_SRC", pci.fwd_src),
            ("PCI_ADDR_FWD_DST", pci.fwd_dst),
            ("PCI_ADDR_PCAP", pci.pcap),
            ("PCAP_OUT", PCAP_FILE),
            ("PCAP_N", str(test.packets)),
        ]
        env = "; ".join(f"{k}={shlex.quote(v)}" for k, v in assignments)
        return f"{env}; cd {shlex.quote(repository.name)}"

    def perform_test(
        self,
        ctx: TestContext,
        repository: Repository,
        branch: str,
        repo_config: RepositoryConfig,
    ) -> None:
        log.info("preparing_vms")
        try:
            prepare_vms(ctx.sessions(), repo_config.build, repository, branch)
        except RemoteError as e:
            raise PrepareVmError(e) from e

        env = self.test_environment(repository)
        # pcap first, then fwd, pktgen last so no packet is missed
        started: List[CancellableCommand] = []
        try:
            for session, cmd in (
                (ctx.pcap, repo_config.pcap),
                (ctx.fwd, repo_config.fwd),
                (ctx.pktgen, repo_config.pktgen),
            ):
                started.append(session.execute_cancellable_command(f"sudo {cmd}", env))
        except RemoteError as e:
            cancel_all(started)
            raise RemoteCommandError(e) from e

        pcap_cmd = started[0]
        start = time.monotonic()
        while pcap_cmd.is_running():
            if time.monotonic() - start >= PCAP_TIMEOUT_S:
                log.error("pcap_timeout", timeout_s=PCAP_TIMEOUT_S)
                break
            time.sleep(PCAP_POLL_INTERVAL_S)
        log.info("pcap_finished", elapsed_s=round(time.monotonic() - start, 3))

        error = cancel_all(started)
        if error is not None:
            raise RemoteCommandError(error) from error

        remote_pcap = f"/home/{self.settings.openstack.ssh_login}/{repository.name}/{PCAP_FILE}"
        try:
            ctx.capture = ctx.pcap.download_file(remote_pcap)
        except RemoteError as e:
            raise RemoteCommandError(e) from e

        try:
            validate_capture(ctx.capture, self.settings.test.packets)
        except CaptureError as e:
            raise PcapTestError(e, ctx.capture) from e
        log.info("pcap_test_succeeded")


def cancel_all(commands: Sequence[CancellableCommand]) -> Optional[RemoteError]:
    """Cancel every command in order; return the first error, if any."""
    first: Optional[RemoteError] = None
    for cmd in commands:
        try:
            cmd.cancel()
        except RemoteError as e:
            log.error("cancel_failed", error=str(e))
            if first is None:
                first = e
    return first


def prepare_host(session: RemoteSession, build: Sequence[str], repository: Repository, branch: str) -> None:
    session.execute_command("sudo apt update")
    session.execute_command("sudo apt install -y git")
    session.execute_command(
        f"git clone https://github.com/{repository} --branch {shlex.quote(branch)} "
        "--single-branch --recurse-submodules"
    )
    for step in build:
        session.execute_command(f"cd {shlex.quote(repository.name)} && {step}")
    # Needed by execute_cancellable_command
    session.upload_file(RUNNER_SOURCE, "runner", 0o777)
    session.execute_command("sudo mv runner /usr/bin/runner")


def prepare_vms(
    sessions: Sequence[RemoteSession],
    build: Sequence[str],
    repository: Repository,
    branch: str,
) -> None:
    """Prepare all hosts concurrently; the first failure is raised."""
    with ThreadPoolExecutor(max_workers=len(sessions), thread_name_prefix="prepare") as pool:
        futures = [pool.submit(prepare_host, s, build, repository, branch) for s in sessions]
        done, _ = wait(futures, return_when=FIRST_EXCEPTION)
        for f in futures:
            if f in done and f.exception() is not None:
                raise f.exception()
