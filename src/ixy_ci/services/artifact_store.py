from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple

import structlog

from ..core.models import ROLES, Log, Repository, TestOutput
from ..core.utils import artifact_prefix

log = structlog.get_logger(__name__)


def format_log(name: str, entries: Log) -> str:
    lines = [f"=== {name} ==="]
    for command, output in entries:
        lines.append(f"$ {command}")
        if output:
            lines.append(output.rstrip("\n"))
        lines.append("")
    return "\n".join(lines)


class ArtifactStore:
    """
    Stores the outcome of each test run in the log directory:
      <owner>__<repo>__<branch>__<timestamp>.log   (transcripts of all three VMs)
      <owner>__<repo>__<branch>__<timestamp>.pcap  (capture, only if one was downloaded)
    Files are written under a temporary name and renamed into place, so a
    visible file is always complete.
    """

    def __init__(self, log_directory: Path):
        self.log_directory = log_directory if log_directory.is_absolute() else log_directory.resolve()
        self.log_directory.mkdir(parents=True, exist_ok=True)

    def _write_atomic(self, name: str, data: bytes) -> None:
        final = self.log_directory / name
        tmp = self.log_directory / f".{name}.tmp"
        with open(tmp, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, final)

    def save(
        self,
        repository: Repository,
        branch: str,
        logs: Tuple[Log, Log, Log],
        capture: Optional[bytes],
        now: Optional[datetime] = None,
    ) -> TestOutput:
        prefix = artifact_prefix(repository, branch, now)
        log_file = prefix + ".log"
        text = "\n".join(format_log(name, entries) for name, entries in zip(ROLES, logs))
        self._write_atomic(log_file, text.encode("utf-8"))

        pcap_file = None
        if capture is not None:
            pcap_file = prefix + ".pcap"
            self._write_atomic(pcap_file, capture)

        log.info("saved_test_output", log_file=log_file, pcap_file=pcap_file)
        pktgen_log, fwd_log, pcap_log = logs
        return TestOutput(
            pktgen_log=pktgen_log,
            fwd_log=fwd_log,
            pcap_log=pcap_log,
            log_file=log_file,
            pcap_file=pcap_file,
        )
