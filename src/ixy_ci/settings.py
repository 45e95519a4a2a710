from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings, SettingsConfigDict


class OpenStackSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # ---- VM shape ----
    flavor: str
    image: str
    keypair: str
    volume_size_gb: int = 20
    public_network: str = "internet"
    floating_ip_pool: str = "internet_pool"

    # ---- SSH access to the VMs ----
    private_key_path: Path
    ssh_login: str

    # ---- OpenStack API (shared with the CLI fallback) ----
    auth_url: str
    user_name: str
    user_domain: str = "Default"
    password: str
    project_name: str
    project_domain: str = "Default"


class PciAddresses(BaseModel):
    model_config = ConfigDict(extra="forbid")

    pktgen: str
    fwd_src: str
    fwd_dst: str
    pcap: str


class TestSettings(BaseModel):
    __test__ = False
    model_config = ConfigDict(extra="forbid")

    packets: int
    pci_addresses: PciAddresses


class Settings(BaseSettings):
    job_queue_size: int = 10
    log_directory: Path = Path("logs")

    openstack: OpenStackSettings
    test: TestSettings

    # env prefix IXY_CI_*, nested sections via IXY_CI_OPENSTACK__FLAVOR etc.
    model_config = SettingsConfigDict(
        env_prefix="IXY_CI_", env_nested_delimiter="__", extra="ignore"
    )


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return data


def load_settings(path: Optional[Path] = None) -> Settings:
    """Build the process settings.

    Values come from ``IXY_CI_*`` environment variables, overridden by the YAML
    file at ``path`` (or ``$IXY_CI_CONF``, or ``conf/ixy-ci.yaml``).
    """
    if path is None:
        path = Path(os.environ.get("IXY_CI_CONF", "conf/ixy-ci.yaml"))
    data = _read_yaml(path)
    return Settings(**data)
