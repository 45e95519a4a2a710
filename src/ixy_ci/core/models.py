from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict

if TYPE_CHECKING:
    from ..remote.session import RemoteSession
    from .errors import TestError

# Fixed VM role names; they double as the OpenStack server/volume names.
VM_PKTGEN = "pktgen"
VM_FWD = "fwd"
VM_PCAP = "pcap"
ROLES = (VM_PKTGEN, VM_FWD, VM_PCAP)

# One (command, combined output) pair per executed command, in issue order.
Log = List[Tuple[str, str]]


@dataclass(frozen=True)
class Repository:
    user: str
    name: str

    @classmethod
    def parse(cls, value: str) -> "Repository":
        parts = value.split("/")
        if not parts[0]:
            raise ValueError("missing user")
        if len(parts) < 2 or not parts[1]:
            raise ValueError("missing repository name")
        if len(parts) > 2:
            raise ValueError("too many '/' in repository")
        return cls(user=parts[0], name=parts[1])

    def __str__(self) -> str:
        return f"{self.user}/{self.name}"


class RepositoryConfig(BaseModel):
    """Contents of ``ixy-ci.toml`` at the root of the tested branch."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    build: List[str]
    pktgen: str
    fwd: str
    pcap: str


# ---- jobs ----

@dataclass(frozen=True)
class TestBranch:
    __test__ = False

    repository: Repository
    branch: str


@dataclass(frozen=True)
class TestPullRequest:
    __test__ = False

    repository: Repository
    fork_user: str
    fork_branch: str
    pull_request_id: int


@dataclass(frozen=True)
class Ping:
    repository: Repository
    issue_id: int


Job = Union[TestBranch, TestPullRequest, Ping]


# ---- results ----

@dataclass(frozen=True)
class TestOutput:
    __test__ = False

    pktgen_log: Log
    fwd_log: Log
    pcap_log: Log
    log_file: str
    pcap_file: Optional[str] = None


@dataclass
class TestContext:
    """Live state of one test run: the three sessions and the capture, if any."""

    __test__ = False

    pktgen: "RemoteSession"
    fwd: "RemoteSession"
    pcap: "RemoteSession"
    capture: Optional[bytes] = None

    def sessions(self) -> Tuple["RemoteSession", "RemoteSession", "RemoteSession"]:
        return (self.pktgen, self.fwd, self.pcap)

    def into_logs(self) -> Tuple[Log, Log, Log]:
        # Closes every connection; must run whatever the outcome of the test.
        return (self.pktgen.into_log(), self.fwd.into_log(), self.pcap.into_log())


@dataclass(frozen=True)
class BranchTarget:
    name: str


@dataclass(frozen=True)
class PullRequestTarget:
    id: int


TestTarget = Union[BranchTarget, PullRequestTarget]


@dataclass(frozen=True)
class Pong:
    issue_id: int


@dataclass(frozen=True)
class TestResult:
    __test__ = False

    test_target: TestTarget
    output: Optional[TestOutput] = None
    error: Optional["TestError"] = field(default=None, compare=False)

    @property
    def passed(self) -> bool:
        return self.error is None


ReportContent = Union[Pong, TestResult]


@dataclass(frozen=True)
class Report:
    repository: Repository
    content: ReportContent
