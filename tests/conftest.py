import struct
from pathlib import Path

import pytest
from scapy.layers.inet import ICMP, IP, UDP
from scapy.layers.l2 import ARP, Ether
from scapy.packet import Raw
from scapy.utils import wrpcap

from ixy_ci.settings import OpenStackSettings, PciAddresses, Settings, TestSettings


def ixy_packet(seq_num: int, magic: bytes = b"ixy", pad: int = 11):
    payload = magic + bytes(pad) + struct.pack("<I", seq_num)
    return (
        Ether(src="52:54:00:00:00:01", dst="52:54:00:00:00:02")
        / IP(src="10.0.0.1", dst="10.0.0.2")
        / UDP(sport=42, dport=1337)
        / Raw(payload)
    )


def icmp_packet():
    return (
        Ether(src="52:54:00:00:00:01", dst="52:54:00:00:00:02")
        / IP(src="10.0.0.1", dst="10.0.0.2")
        / ICMP()
    )


def arp_packet():
    return Ether(src="52:54:00:00:00:01", dst="ff:ff:ff:ff:ff:ff") / ARP(pdst="10.0.0.2")


@pytest.fixture
def write_capture(tmp_path):
    """Return a function turning a list of scapy packets into pcap bytes."""
    counter = iter(range(1_000_000))

    def _write(packets) -> bytes:
        path = tmp_path / f"capture-{next(counter)}.pcap"
        wrpcap(str(path), packets)
        return path.read_bytes()

    return _write


@pytest.fixture
def make_capture(write_capture):
    def _make(seq_nums):
        return write_capture([ixy_packet(n) for n in seq_nums])

    return _make


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        job_queue_size=2,
        log_directory=tmp_path / "logs",
        openstack=OpenStackSettings(
            flavor="m1.small",
            image="debian-10",
            keypair="ixy-ci",
            private_key_path=Path("/nonexistent/id_ed25519"),
            ssh_login="debian",
            auth_url="https://keystone.example.org/v3",
            user_name="ci",
            password="secret",
            project_name="ixy",
        ),
        test=TestSettings(
            packets=10,
            pci_addresses=PciAddresses(
                pktgen="0000:00:04.0",
                fwd_src="0000:00:04.0",
                fwd_dst="0000:00:05.0",
                pcap="0000:00:04.0",
            ),
        ),
    )
