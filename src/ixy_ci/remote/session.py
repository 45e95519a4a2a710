from __future__ import annotations

import io
import socket
from pathlib import Path
from typing import List, Optional

import paramiko
import structlog

from ..core.errors import NonZeroReturn, RemoteError
from ..core.models import Log

log = structlog.get_logger(__name__)

SSH_PORT = 22
CONNECT_TIMEOUT_S = 10.0
RECV_BUFSIZE = 32 * 1024

# Errors the transport raises that we report as RemoteError.
TRANSPORT_ERRORS = (paramiko.SSHException, socket.error, EOFError)


class _LogEntry:
    __slots__ = ("command", "output")

    def __init__(self, command: str):
        self.command = command
        self.output = ""


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def _read_to_end(channel: paramiko.Channel, buf: bytearray) -> None:
    while True:
        data = channel.recv(RECV_BUFSIZE)
        if not data:
            return
        buf += data


class RemoteSession:
    """One authenticated SSH connection to a test host.

    Every command is recorded with its combined stdout/stderr; the transcript
    is handed out once by :meth:`into_log`, which also closes the connection.
    """

    def __init__(self, client: paramiko.SSHClient, address: str):
        self.address = address
        self._client: Optional[paramiko.SSHClient] = client
        self._log: List[_LogEntry] = []

    @classmethod
    def connect(cls, address: str, user: str, private_key_path: Path) -> "RemoteSession":
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=address,
                port=SSH_PORT,
                username=user,
                key_filename=str(private_key_path),
                timeout=CONNECT_TIMEOUT_S,
                allow_agent=False,
                look_for_keys=False,
            )
        except TRANSPORT_ERRORS as e:
            client.close()
            raise RemoteError(f"failed to connect to {address}: {e}") from e
        log.debug("ssh_connected", address=address, user=user)
        return cls(client, address)

    # ------------ commands ------------

    def _open_channel(self) -> paramiko.Channel:
        if self._client is None:
            raise RemoteError(f"session to {self.address} is closed")
        transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            raise RemoteError(f"connection to {self.address} is not active")
        channel = transport.open_session()
        # stderr goes into the same stream as stdout
        channel.set_combine_stderr(True)
        return channel

    def execute_command(self, command: str) -> None:
        """Run ``command`` through the remote login shell and wait for it to exit.

        Shell syntax such as ``cd foo && make`` is allowed. There is no timeout.
        Raises ``NonZeroReturn`` if the command fails.
        """
        entry = _LogEntry(command)
        self._log.append(entry)

        output = bytearray()
        try:
            channel = self._open_channel()
            log.debug("executing_command", address=self.address, command=command)
            channel.exec_command(command)
            _read_to_end(channel, output)
            exit_status = channel.recv_exit_status()
            channel.close()
        except TRANSPORT_ERRORS as e:
            raise RemoteError(f"{self.address}: {e}") from e
        finally:
            entry.output = _decode(bytes(output))

        if exit_status != 0:
            raise NonZeroReturn(command, exit_status)

    def execute_cancellable_command(self, command: str, env: str) -> "CancellableCommand":
        """Start ``command`` under the remote helper and return without waiting.

        ``env`` is a shell snippet (variable assignments, ``cd``) evaluated before
        the helper starts. The helper runs with sudo so it can interrupt
        commands that were themselves started with sudo.
        """
        entry = _LogEntry(command)
        self._log.append(entry)

        full_command = f"{env}; sudo runner {command}"
        try:
            channel = self._open_channel()
            log.debug("executing_cancellable_command", address=self.address, command=full_command)
            channel.exec_command(full_command)
        except TRANSPORT_ERRORS as e:
            raise RemoteError(f"{self.address}: {e}") from e
        return CancellableCommand(channel, entry, self.address)

    # ------------ files ------------

    def upload_file(self, local_path: Path, remote_path: str, mode: int) -> None:
        log.debug("uploading_file", address=self.address, local=str(local_path), remote=remote_path)
        if self._client is None:
            raise RemoteError(f"session to {self.address} is closed")
        try:
            with self._client.open_sftp() as sftp:
                sftp.put(str(local_path), remote_path)
                sftp.chmod(remote_path, mode)
        except (OSError, *TRANSPORT_ERRORS) as e:
            raise RemoteError(f"{self.address}: upload of {local_path} failed: {e}") from e

    def download_file(self, remote_path: str) -> bytes:
        log.debug("downloading_file", address=self.address, remote=remote_path)
        if self._client is None:
            raise RemoteError(f"session to {self.address} is closed")
        buf = io.BytesIO()
        try:
            with self._client.open_sftp() as sftp:
                sftp.getfo(remote_path, buf)
        except (OSError, *TRANSPORT_ERRORS) as e:
            raise RemoteError(f"{self.address}: download of {remote_path} failed: {e}") from e
        return buf.getvalue()

    # ------------ lifecycle ------------

    def into_log(self) -> Log:
        """Close the connection and return the transcript. Only callable once."""
        if self._client is None:
            raise RemoteError(f"session to {self.address} is already closed")
        client, self._client = self._client, None
        client.close()
        return [(e.command, e.output) for e in self._log]


class CancellableCommand:
    """A command started by :meth:`RemoteSession.execute_cancellable_command`."""

    def __init__(self, channel: paramiko.Channel, entry: _LogEntry, address: str):
        self._channel = channel
        self._entry = entry
        self._address = address
        self._output = bytearray()

    def _drain_ready(self) -> None:
        # Keep the SSH window open for chatty commands; the bytes are kept for
        # the transcript.
        while self._channel.recv_ready():
            data = self._channel.recv(RECV_BUFSIZE)
            if not data:
                break
            self._output += data

    def is_running(self) -> bool:
        """Non-blocking probe. Transport errors count as "not running"."""
        try:
            self._drain_ready()
            return not self._channel.exit_status_ready()
        except TRANSPORT_ERRORS:
            return False

    def cancel(self) -> None:
        """Close the command's stdin, then wait for it to exit and record its output."""
        try:
            self._channel.shutdown_write()
            _read_to_end(self._channel, self._output)
            exit_status = self._channel.recv_exit_status()
            self._channel.close()
        except TRANSPORT_ERRORS as e:
            raise RemoteError(f"{self._address}: {e}") from e
        finally:
            self._entry.output = _decode(bytes(self._output))
        log.debug("cancelled_command", address=self._address, command=self._entry.command,
                  exit_status=exit_status)
