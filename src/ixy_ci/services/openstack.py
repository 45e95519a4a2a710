"""Provisioning and teardown of the three test VMs on OpenStack.

Resources are found by their fixed role names (pktgen, fwd, pcap) on every
call; at most one resource per name may exist, so anything with a role name is
destroyed before it is created again. Runs are assumed to be sequential and
nothing guards against a second orchestrator using the same project.
"""
from __future__ import annotations

import os
import subprocess
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import openstack
import structlog
from keystoneauth1 import exceptions as ks_exc
from openstack import exceptions as os_exc

from ..core.errors import (
    CliError,
    CloudError,
    CloudNotFoundError,
    CloudQueryError,
    CloudTimeoutError,
)
from ..core.models import ROLES, VM_FWD, VM_PCAP, VM_PKTGEN
from ..core.utils import retry
from ..settings import OpenStackSettings

log = structlog.get_logger(__name__)

RETRY_DELAY_S = 0.5
MAX_RETRIES = 10
SERVER_WAIT_S = 600

# (server, port) pairs of the test network: pktgen <-> fwd <-> pcap. The ports
# are pre-created with port security disabled.
TEST_PORTS = (
    (VM_PKTGEN, "pktgen"),
    (VM_FWD, "fwd-in"),
    (VM_FWD, "fwd-out"),
    (VM_PCAP, "pcap"),
)


def cli_environment(config: OpenStackSettings) -> Dict[str, str]:
    """Credentials for the ``openstack`` CLI, same scope as the API connection."""
    return {
        "OS_IDENTITY_API_VERSION": "3",
        "OS_AUTH_URL": config.auth_url,
        "OS_USERNAME": config.user_name,
        "OS_USER_DOMAIN_NAME": config.user_domain,
        "OS_PASSWORD": config.password,
        "OS_PROJECT_NAME": config.project_name,
        "OS_PROJECT_DOMAIN_NAME": config.project_domain,
    }


def openstack_cli(config: OpenStackSettings, *args: str) -> str:
    """Run the ``openstack`` CLI for operations the SDK path can't do; return stdout."""
    cmd = ["openstack", *args]
    log.debug("openstack_cli", args=list(args))
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            env={**os.environ, **cli_environment(config)},
        )
    except OSError as e:
        raise CliError(f"failed to execute openstack cli: {e}") from e
    if result.returncode != 0:
        error_msg = result.stderr.strip() or result.stdout.strip()
        raise CliError(f"openstack {' '.join(args)} failed ({result.returncode}): {error_msg}")
    return result.stdout


def connect(config: OpenStackSettings):
    try:
        return openstack.connect(
            auth_url=config.auth_url,
            username=config.user_name,
            password=config.password,
            user_domain_name=config.user_domain,
            project_name=config.project_name,
            project_domain_name=config.project_domain,
            identity_api_version="3",
            app_name="ixy-ci",
        )
    except (os_exc.SDKException, ks_exc.ClientException) as e:
        raise CloudError(f"failed to connect to OpenStack: {e}") from e


def floating_ip_of(server) -> Optional[str]:
    for addresses in (server.addresses or {}).values():
        for address in addresses:
            if address.get("OS-EXT-IPS:type") == "floating":
                return address.get("addr")
    return None


class CloudLifecycleManager:
    """
    Owns one OpenStack connection. The connection is not shared between
    threads: create the manager on the thread that uses it.
    """

    def __init__(
        self,
        config: OpenStackSettings,
        connection=None,
        cli: Optional[Callable[..., str]] = None,
    ):
        self.config = config
        self.conn = connection if connection is not None else connect(config)
        self._cli = cli or (lambda *args: openstack_cli(config, *args))

    # ------------ public API ------------

    def spawn_vms(self) -> Tuple[str, str, str]:
        """Create fresh pktgen, fwd and pcap VMs; return their floating IPs."""
        self.clean_environment()

        ip_pktgen = self.create_server(VM_PKTGEN)
        ip_fwd = self.create_server(VM_FWD)
        ip_pcap = self.create_server(VM_PCAP)

        for server, port in TEST_PORTS:
            self.add_port_to_vm(server, port)

        return ip_pktgen, ip_fwd, ip_pcap

    def clean_environment(self) -> None:
        """Remove the role VMs plus every unattached volume and unassociated floating IP.

        Deliberately broader than one run: anything left over is from an
        earlier, failed run.
        """
        for name in ROLES:
            self.delete_servers(name)

        log.info("deleting_unused_volumes")
        for volume in self._query(lambda: self.conn.block_storage.volumes(status="available")):
            self._delete_volume(volume)

        log.info("deleting_unused_floating_ips")
        for ip in self._query(lambda: self.conn.network.ips()):
            if ip.port_id:
                continue
            log.debug("deleting_floating_ip", ip=ip.floating_ip_address)
            self._call(lambda: self.conn.network.delete_ip(ip, ignore_missing=True))

    # ------------ servers ------------

    def find_servers(self, name: str) -> List[Any]:
        # Nova filters by regex, so keep exact matches only.
        return [
            s for s in self._query(lambda: self.conn.compute.servers(name=name))
            if s.name == name
        ]

    def delete_servers(self, name: str) -> None:
        servers = self.find_servers(name)
        if not servers:
            log.info("server_does_not_exist", vm=name)
            return
        for server in servers:
            log.info("deleting_server", vm=name, id=server.id)
            self._call(lambda: self.conn.compute.delete_server(server))
            self._call(lambda: self.conn.compute.wait_for_delete(server, wait=SERVER_WAIT_S))

    def create_server(self, name: str) -> str:
        """Boot ``name`` from a new volume on the public network; return its floating IP."""
        self.delete_servers(name)
        for volume in self._query(lambda: self.conn.block_storage.volumes(name=name)):
            if volume.name == name:
                self._delete_volume(volume)

        flavor = self._find(lambda: self.conn.compute.find_flavor(self.config.flavor), "flavor", self.config.flavor)
        image = self._find(lambda: self.conn.image.find_image(self.config.image), "image", self.config.image)
        network = self._find(
            lambda: self.conn.network.find_network(self.config.public_network),
            "network", self.config.public_network,
        )

        log.info("creating_boot_volume", vm=name, size_gb=self.config.volume_size_gb)
        volume = self._call(lambda: self.conn.block_storage.create_volume(
            name=name, size=self.config.volume_size_gb, image_id=image.id,
        ))
        volume = self._call(lambda: self.conn.block_storage.wait_for_status(
            volume, status="available", failures=["error"], wait=SERVER_WAIT_S,
        ))

        # The test-network port is attached later (see spawn_vms): it needs
        # port security disabled, which can't be requested here.
        log.info("creating_server", vm=name)
        server = self._call(lambda: self.conn.compute.create_server(
            name=name,
            flavor_id=flavor.id,
            networks=[{"uuid": network.id}],
            key_name=self.config.keypair,
            block_device_mapping=[{
                "boot_index": 0,
                "uuid": volume.id,
                "source_type": "volume",
                "destination_type": "volume",
                "delete_on_termination": True,
            }],
        ))
        server = self._call(lambda: self.conn.compute.wait_for_server(server, wait=SERVER_WAIT_S))

        port = next(iter(self._query(lambda: self.conn.network.ports(device_id=server.id))), None)
        if port is None:
            raise CloudNotFoundError(f"server {name} has no port on {self.config.public_network}")

        pool = self._find(
            lambda: self.conn.network.find_network(self.config.floating_ip_pool),
            "network", self.config.floating_ip_pool,
        )
        floating_ip = self._call(lambda: self.conn.network.create_ip(floating_network_id=pool.id))
        log.info("associating_floating_ip", vm=name, ip=floating_ip.floating_ip_address)
        self._call(lambda: self.conn.network.update_ip(floating_ip, port_id=port.id))

        time.sleep(RETRY_DELAY_S)
        ip = retry(MAX_RETRIES, RETRY_DELAY_S, lambda: self._attached_floating_ip(server.id, name),
                   exceptions=(CloudTimeoutError,))
        log.info("server_ready", vm=name, ip=ip)
        return ip

    def _attached_floating_ip(self, server_id: str, name: str) -> str:
        server = self._call(lambda: self.conn.compute.get_server(server_id))
        ip = floating_ip_of(server)
        if ip is None:
            raise CloudTimeoutError(f"floating ip association of {name} timed out")
        return ip

    def add_port_to_vm(self, server: str, port: str) -> None:
        log.info("adding_port", vm=server, port=port)
        self._cli("server", "add", "port", server, port)

    # ------------ volumes ------------

    def _delete_volume(self, volume) -> None:
        log.debug("deleting_volume", id=volume.id, name=volume.name)
        self._call(lambda: self.conn.block_storage.delete_volume(volume, ignore_missing=True))
        self._call(lambda: self.conn.block_storage.wait_for_delete(volume, wait=SERVER_WAIT_S))

    # ------------ SDK error mapping ------------

    @staticmethod
    def _call(fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except os_exc.ResourceTimeout as e:
            raise CloudTimeoutError(str(e)) from e
        except os_exc.ResourceNotFound as e:
            raise CloudNotFoundError(str(e)) from e
        except os_exc.SDKException as e:
            raise CloudError(str(e)) from e
        except ks_exc.ClientException as e:
            # auth and transport failures from keystoneauth
            raise CloudError(str(e)) from e

    @staticmethod
    def _query(fn: Callable[[], Iterable[Any]]) -> Sequence[Any]:
        # An empty result means "absent"; a failed query is an error.
        try:
            return list(fn())
        except (os_exc.SDKException, ks_exc.ClientException) as e:
            raise CloudQueryError(str(e)) from e

    def _find(self, fn: Callable[[], Any], kind: str, name: str) -> Any:
        found = self._call(fn)
        if found is None:
            raise CloudNotFoundError(f"{kind} {name!r} not found")
        return found
