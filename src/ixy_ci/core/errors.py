from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import TestOutput


class IxyCiError(Exception):
    """Base class of every error raised by ixy-ci."""


class QueueDisconnected(IxyCiError):
    """The job queue was closed; its consumer is gone."""


# ---- remote hosts ----

class RemoteError(IxyCiError):
    pass


class NonZeroReturn(RemoteError):
    def __init__(self, command: str, exit_status: int):
        super().__init__(f"command returned {exit_status}: {command}")
        self.command = command
        self.exit_status = exit_status


# ---- cloud control plane ----

class CloudError(IxyCiError):
    pass


class CloudNotFoundError(CloudError):
    pass


class CloudQueryError(CloudError):
    pass


class CloudTimeoutError(CloudError):
    pass


class CliError(CloudError):
    """The ``openstack`` command line client failed."""


# ---- capture validation ----

class CaptureError(IxyCiError):
    pass


class PcapError(CaptureError):
    def __init__(self, reason: str):
        super().__init__(f"Failed to parse pcap file: {reason}")


class EtherParse(CaptureError):
    def __init__(self, reason: str, packet: bytes):
        super().__init__(f"Failed to parse ethernet frame: {reason}; packet: {packet.hex()}")
        self.reason = reason
        self.packet = packet


class MalformedUdpPacket(CaptureError):
    def __init__(self, packet: bytes):
        super().__init__(
            f'Malformed UDP packet (invalid length or missing "ixy"): {packet.hex()}'
        )
        self.packet = packet


class IncorrectPacketCount(CaptureError):
    def __init__(self, expected: int, actual: int):
        super().__init__(f"Incorrect packet count: expected: {expected} actual: {actual}")
        self.expected = expected
        self.actual = actual


class BadSequenceNumber(CaptureError):
    def __init__(self, packets: int, max_seq_num: int):
        super().__init__(
            f"Bad sequence number: expected {packets} packets "
            f"but max sequence number was {max_seq_num}"
        )
        self.packets = packets
        self.max_seq_num = max_seq_num


class DuplicateSequenceNumber(CaptureError):
    def __init__(self):
        super().__init__("Some sequence number occurred more than once")


# ---- failures while the three VMs are in use ----

class PerformTestFailure(IxyCiError):
    def __init__(self, message: str, source: Exception):
        super().__init__(f"{message}: {source}")
        self.source = source


class PrepareVmError(PerformTestFailure):
    def __init__(self, source: Exception):
        super().__init__("Failed to prepare a VM", source)


class RemoteCommandError(PerformTestFailure):
    def __init__(self, source: Exception):
        super().__init__("An error occurred on a VM", source)


class PcapTestError(PerformTestFailure):
    def __init__(self, source: CaptureError, capture: bytes):
        super().__init__("pcap test error", source)
        self.capture = capture


# ---- job-terminal errors, stored in the report ----

class TestError(IxyCiError):
    __test__ = False

    def __init__(self, message: str):
        super().__init__(message)
        self.teardown_error: Optional[CloudError] = None


class FetchRepositoryConfig(TestError):
    def __init__(self, source: Exception):
        super().__init__(f"Failed to fetch CI config: {source}")


class ConfigError(TestError):
    def __init__(self, source: Exception):
        super().__init__(f"Failed to parse CI config: {source}")


class OpenStackError(TestError):
    def __init__(self, source: CloudError):
        super().__init__(f"An OpenStack error occurred: {source}")
        self.source = source


class ConnectVm(TestError):
    def __init__(self, vm: str, source: Exception):
        super().__init__(f"Failed to connect to VM {vm} ({source})")
        self.vm = vm


class SaveTestOutput(TestError):
    def __init__(self, source: Exception):
        super().__init__(f"Failed to save logs: {source}")


class PerformTestError(TestError):
    """The run failed on the VMs; transcripts and artifacts were still saved."""

    def __init__(self, cause: PerformTestFailure, output: "TestOutput"):
        super().__init__(f"An error occurred while performing tests: {cause}")
        self.cause = cause
        self.output = output
