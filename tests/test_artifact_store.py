from datetime import datetime, timezone
from pathlib import Path

from ixy_ci.core.models import Repository
from ixy_ci.services.artifact_store import ArtifactStore, format_log

REPO = Repository("ixy-languages", "ixy")
NOW = datetime(2019, 10, 1, 12, 0, 0, tzinfo=timezone.utc)
LOGS = (
    [("sudo apt update", "Reading package lists...\n")],
    [("sudo ./ixy-fwd", "")],
    [("sudo ./ixy-pcap", "captured 1000 packets\n")],
)


def test_save_writes_log_and_capture(tmp_path):
    store = ArtifactStore(tmp_path / "logs")
    output = store.save(REPO, "master", LOGS, b"\xd4\xc3\xb2\xa1", now=NOW)

    assert output.log_file == "ixy-languages__ixy__master__2019-10-01T12:00:00Z.log"
    assert output.pcap_file == "ixy-languages__ixy__master__2019-10-01T12:00:00Z.pcap"
    assert (tmp_path / "logs" / output.pcap_file).read_bytes() == b"\xd4\xc3\xb2\xa1"
    assert output.pktgen_log == LOGS[0]
    assert output.pcap_log == LOGS[2]

    text = (tmp_path / "logs" / output.log_file).read_text(encoding="utf-8")
    assert text.index("=== pktgen ===") < text.index("=== fwd ===") < text.index("=== pcap ===")
    assert "$ sudo ./ixy-pcap\ncaptured 1000 packets\n" in text


def test_no_capture_no_pcap_file(tmp_path):
    store = ArtifactStore(tmp_path)
    output = store.save(REPO, "master", LOGS, None, now=NOW)
    assert output.pcap_file is None
    assert [p.name for p in tmp_path.iterdir()] == [output.log_file]


def test_branch_with_slash_stays_in_directory(tmp_path):
    store = ArtifactStore(tmp_path)
    output = store.save(REPO, "feature/rx", LOGS, None, now=NOW)
    assert output.log_file == "ixy-languages__ixy__feature_rx__2019-10-01T12:00:00Z.log"
    assert (tmp_path / output.log_file).is_file()


def test_relative_directory_is_resolved(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    store = ArtifactStore(Path("logs"))
    assert store.log_directory == tmp_path.resolve() / "logs"
    assert store.log_directory.is_dir()


def test_format_log():
    assert format_log("fwd", [("make", "ok\n"), ("true", "")]) == "=== fwd ===\n$ make\nok\n\n$ true\n"
