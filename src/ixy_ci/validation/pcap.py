"""Turn a raw packet capture into a pass/fail verdict.

Test packets are UDP datagrams with a UDP length of exactly 26 bytes whose
payload starts with ``ixy`` and ends in a 4 byte little-endian sequence number.
"""
from __future__ import annotations

import io
import struct
from typing import Iterator, List

import structlog
from scapy.data import MTU
from scapy.error import Scapy_Exception
from scapy.layers.inet import IP, UDP
from scapy.layers.l2 import Ether
from scapy.utils import RawPcapNgReader, RawPcapReader

from ..core.errors import (
    BadSequenceNumber,
    DuplicateSequenceNumber,
    EtherParse,
    IncorrectPacketCount,
    MalformedUdpPacket,
    PcapError,
)

log = structlog.get_logger(__name__)

ETHER_HEADER_LEN = 14
ETHER_TYPE_IPV4 = 0x0800
IPV4_MIN_HEADER_LEN = 20
IP_PROTO_UDP = 17
UDP_HEADER_LEN = 8
TEST_PACKET_UDP_LEN = 26
MAGIC = b"ixy"


def _read_records(capture: bytes) -> Iterator[bytes]:
    """Yield the frame bytes of every record; a cut or damaged container is a PcapError."""
    buf = io.BytesIO(capture)
    try:
        reader = RawPcapReader(buf)
    except (Scapy_Exception, EOFError, ValueError, struct.error) as e:
        raise PcapError(str(e) or "not a supported capture file") from e
    with reader:
        end = buf.tell()
        try:
            for data, meta in reader:
                caplen = getattr(meta, "caplen", len(data))
                if len(data) != min(caplen, MTU):
                    raise PcapError(f"record truncated: expected {caplen} bytes, got {len(data)}")
                end = buf.tell()
                yield data
        except (Scapy_Exception, struct.error) as e:
            raise PcapError(str(e)) from e
        # pcapng may carry trailing non-packet blocks
        if not isinstance(reader, RawPcapNgReader) and end != len(capture):
            raise PcapError(f"{len(capture) - end} bytes after the last complete record")


def _parse_frame(data: bytes) -> Ether:
    if len(data) < ETHER_HEADER_LEN:
        raise EtherParse("frame shorter than an Ethernet header", data)
    packet = Ether(data)
    if packet.type == ETHER_TYPE_IPV4:
        ip = packet.getlayer(IP)
        # scapy fills missing header bytes with defaults instead of failing
        if ip is None or len(ip.original) < max(IPV4_MIN_HEADER_LEN, (ip.ihl or 0) * 4):
            raise EtherParse("truncated IPv4 header", data)
        if ip.proto == IP_PROTO_UDP:
            udp = ip.getlayer(UDP)
            if udp is None or len(udp.original) < UDP_HEADER_LEN:
                raise EtherParse("truncated UDP header", data)
    return packet


def _sequence_number(packet: Ether, data: bytes) -> int:
    udp = packet[UDP]
    if udp.len != TEST_PACKET_UDP_LEN:
        raise MalformedUdpPacket(data)
    payload = bytes(udp)[UDP_HEADER_LEN:TEST_PACKET_UDP_LEN]
    if len(payload) != TEST_PACKET_UDP_LEN - UDP_HEADER_LEN or not payload.startswith(MAGIC):
        raise MalformedUdpPacket(data)
    return struct.unpack("<I", payload[-4:])[0]


def validate_capture(capture: bytes, packets: int) -> None:
    """Raise a ``CaptureError`` unless ``capture`` holds exactly ``packets`` test packets.

    The highest sequence number must lie within ``[packets - 1, 2 * packets]``
    and no sequence number may occur twice. Packets are not required to be in
    order.
    """
    count = 0
    max_seq_num = 0
    seq_nums: List[int] = []
    for data in _read_records(capture):
        packet = _parse_frame(data)
        if not packet.haslayer(UDP):
            log.debug("ignoring_non_udp_packet")
            continue
        seq_num = _sequence_number(packet, data)
        max_seq_num = max(max_seq_num, seq_num)
        seq_nums.append(seq_num)
        count += 1

    if count != packets:
        raise IncorrectPacketCount(expected=packets, actual=count)
    if not packets - 1 <= max_seq_num <= packets * 2:
        raise BadSequenceNumber(packets=packets, max_seq_num=max_seq_num)
    if len(set(seq_nums)) != len(seq_nums):
        raise DuplicateSequenceNumber()
    log.info("capture_valid", packets=count, max_seq_num=max_seq_num)
