from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from ixy_ci.core.models import Repository
from ixy_ci.settings import load_settings

EXAMPLE = Path(__file__).resolve().parent.parent / "conf" / "ixy-ci.example.yaml"


def write_config(tmp_path, data):
    path = tmp_path / "ixy-ci.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


@pytest.fixture
def example():
    return yaml.safe_load(EXAMPLE.read_text(encoding="utf-8"))


def test_example_config_loads():
    s = load_settings(EXAMPLE)
    assert s.job_queue_size == 10
    assert s.openstack.floating_ip_pool == "internet_pool"
    assert s.openstack.private_key_path == Path("/config/id_ed25519")
    assert s.test.packets == 1000
    assert s.test.pci_addresses.fwd_dst == "0000:00:05.0"


def test_defaults(tmp_path, example):
    del example["job_queue_size"]
    del example["openstack"]["volume_size_gb"]
    del example["openstack"]["user_domain"]
    s = load_settings(write_config(tmp_path, example))
    assert s.job_queue_size == 10
    assert s.openstack.volume_size_gb == 20
    assert s.openstack.user_domain == "Default"


def test_env_fills_missing_values(tmp_path, example, monkeypatch):
    del example["openstack"]["password"]
    del example["job_queue_size"]
    monkeypatch.setenv("IXY_CI_OPENSTACK__PASSWORD", "from-env")
    monkeypatch.setenv("IXY_CI_JOB_QUEUE_SIZE", "3")
    s = load_settings(write_config(tmp_path, example))
    assert s.openstack.password == "from-env"
    assert s.openstack.flavor == "m1.small"
    assert s.job_queue_size == 3


def test_file_overrides_env(tmp_path, example, monkeypatch):
    monkeypatch.setenv("IXY_CI_JOB_QUEUE_SIZE", "3")
    s = load_settings(write_config(tmp_path, example))
    assert s.job_queue_size == 10


def test_config_path_from_env(tmp_path, example, monkeypatch):
    example["log_directory"] = "/var/log/ixy-ci"
    monkeypatch.setenv("IXY_CI_CONF", str(write_config(tmp_path, example)))
    assert load_settings().log_directory == Path("/var/log/ixy-ci")


def test_unknown_section_key_is_rejected(tmp_path, example):
    example["openstack"]["flavour"] = "m1.small"
    with pytest.raises(ValidationError):
        load_settings(write_config(tmp_path, example))


def test_missing_required_value(tmp_path, example):
    del example["test"]["packets"]
    with pytest.raises(ValidationError):
        load_settings(write_config(tmp_path, example))


def test_top_level_must_be_mapping(tmp_path):
    path = tmp_path / "ixy-ci.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_settings(path)


@pytest.mark.parametrize("value, expected", [
    ("ixy-languages/ixy", Repository("ixy-languages", "ixy")),
    ("user/ixy.rs", Repository("user", "ixy.rs")),
])
def test_repository_parse(value, expected):
    assert Repository.parse(value) == expected
    assert str(Repository.parse(value)) == value


@pytest.mark.parametrize("value, message", [
    ("ixy", "missing repository name"),
    ("/ixy", "missing user"),
    ("user/", "missing repository name"),
    ("a/b/c", "too many"),
])
def test_repository_parse_errors(value, message):
    with pytest.raises(ValueError, match=message):
        Repository.parse(value)
