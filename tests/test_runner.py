import subprocess
import sys
import time

import pytest

from ixy_ci.remote import runner

RUNNER = [sys.executable, runner.__file__]


def start(*argv):
    return subprocess.Popen(RUNNER + list(argv), stdin=subprocess.PIPE,
                            stdout=subprocess.PIPE, stderr=subprocess.STDOUT)


def test_closing_stdin_interrupts_program():
    proc = start("sleep", "30")
    time.sleep(0.5)
    assert proc.poll() is None

    started = time.monotonic()
    proc.stdin.close()
    rc = proc.wait(timeout=10)
    assert rc != 0
    assert time.monotonic() - started < 5


def test_interrupted_program_reports_signal_status():
    proc = start("sleep", "30")
    time.sleep(0.5)
    proc.stdin.close()
    # SIGINT is signal 2
    assert proc.wait(timeout=10) == 130


def test_natural_exit_status_is_propagated():
    proc = start("sh", "-c", "echo out; exit 3")
    rc = proc.wait(timeout=10)
    out = proc.stdout.read()
    proc.stdin.close()
    assert rc == 3
    assert b"out" in out


def test_successful_program_exits_zero():
    proc = start("true")
    assert proc.wait(timeout=10) == 0
    proc.stdin.close()


def test_missing_program_argument():
    proc = subprocess.run(RUNNER, stdin=subprocess.DEVNULL, capture_output=True, timeout=10)
    assert proc.returncode == 255
    assert b"missing program to start" in proc.stdout


def test_main_without_arguments(monkeypatch, capsys):
    monkeypatch.setattr(sys, "argv", ["runner"])
    with pytest.raises(SystemExit) as exc:
        runner.main()
    assert exc.value.code == 255
    assert "missing program to start" in capsys.readouterr().out


SPAWN_GRANDCHILD = (
    "import subprocess, sys\n"
    "p = subprocess.Popen(['sleep', '30'])\n"
    "with open(sys.argv[1], 'w') as f:\n"
    "    f.write(str(p.pid))\n"
    "p.wait()\n"
)


def gone(pid: int) -> bool:
    # reaped, or a zombie waiting for its new parent
    try:
        with open(f"/proc/{pid}/stat") as f:
            return f.read().rsplit(")", 1)[1].split()[0] == "Z"
    except FileNotFoundError:
        return True


def wait_until(predicate, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


@pytest.mark.skipif(not sys.platform.startswith("linux"), reason="reads /proc")
def test_interrupt_reaches_grandchildren(tmp_path):
    pidfile = tmp_path / "grandchild.pid"
    proc = start(sys.executable, "-c", SPAWN_GRANDCHILD, str(pidfile))
    assert wait_until(lambda: pidfile.exists() and pidfile.read_text() != "")
    grandchild = int(pidfile.read_text())
    assert not gone(grandchild)

    proc.stdin.close()
    assert proc.wait(timeout=10) != 0
    assert wait_until(lambda: gone(grandchild))


def test_interrupt_stops_shell_command_sequence():
    proc = start("sh", "-c", "sleep 30; echo after")
    time.sleep(0.5)
    proc.stdin.close()
    assert proc.wait(timeout=10) != 0
    assert b"after" not in proc.stdout.read()
