"""
Best effort L2 to L4 dissector for dropped packets.

Layer chain, seeded at Ethernet:
  Ethernet -> 802.1Q / 802.1ad tags -> IPv4 | IPv6 -> TCP | UDP -> payload

Each layer only runs when the previous one named it as the next layer.
Running out of bytes or meeting an unknown next layer ends the chain quietly.
A layer whose own length fields contradict each other ends the chain with a
DissectError. Either way the summary keeps every layer decoded before that.

Pure functions, no I/O. Must not raise on arbitrary input.
"""

from __future__ import annotations

import ipaddress
import struct
from typing import Optional, Tuple

from dropwatch_mcp.core.errors import DissectError
from dropwatch_mcp.core.models import EthernetInfo, IPInfo, PacketSummary, TransportInfo

ETH_HDR_LEN = 14
VLAN_TAG_LEN = 4
IPV4_MIN_HDR_LEN = 20
IPV6_HDR_LEN = 40
TCP_MIN_HDR_LEN = 20
UDP_HDR_LEN = 8

ETH_P_IPV4 = 0x0800
ETH_P_IPV6 = 0x86DD
ETH_P_8021Q = 0x8100
ETH_P_8021AD = 0x88A8
VLAN_ETHER_TYPES = (ETH_P_8021Q, ETH_P_8021AD)

IPPROTO_TCP = 6
IPPROTO_UDP = 17

# IPv6 extension headers we step over to reach the transport header.
IPV6_EXT_HOPOPTS = 0
IPV6_EXT_ROUTING = 43
IPV6_EXT_FRAGMENT = 44
IPV6_EXT_DSTOPTS = 60
IPV6_SKIPPABLE_EXT = (IPV6_EXT_HOPOPTS, IPV6_EXT_ROUTING, IPV6_EXT_DSTOPTS)

# Upper bound on stacked tags and extension headers, keeps hostile input linear.
MAX_VLAN_TAGS = 8
MAX_IPV6_EXT = 8


def _mac(raw: bytes) -> str:
    return ":".join(f"{b:02x}" for b in raw)


def _decode_ethernet(data: bytes) -> Optional[Tuple[EthernetInfo, int, int]]:
    """
    Returns (info, next_ether_type, l3_offset) or None when too short.
    """
    if len(data) < ETH_HDR_LEN:
        return None

    ether_type = struct.unpack_from("!H", data, 12)[0]
    off = ETH_HDR_LEN
    next_type = ether_type
    vlan_id: Optional[int] = None
    pcp: Optional[int] = None

    for _ in range(MAX_VLAN_TAGS):
        if next_type not in VLAN_ETHER_TYPES or len(data) < off + VLAN_TAG_LEN:
            break
        tci, next_type = struct.unpack_from("!HH", data, off)
        # Innermost tag wins, it is the one the drop applies to.
        pcp = tci >> 13
        vlan_id = tci & 0x0FFF
        off += VLAN_TAG_LEN

    info = EthernetInfo(
        src_mac=_mac(data[6:12]),
        dst_mac=_mac(data[0:6]),
        ether_type=ether_type,
        pcp=pcp,
        vlan_id=vlan_id,
    )
    return info, next_type, off


def _decode_ipv4(data: bytes, off: int) -> Tuple[Optional[IPInfo], Optional[int], int]:
    """
    Returns (info, transport_protocol_or_None, l4_offset).

    transport_protocol is None for non first fragments, they carry no L4 header.
    """
    if len(data) - off < IPV4_MIN_HDR_LEN:
        return None, None, off

    ver_ihl, tos, total_len, _ident, frag, ttl, proto = struct.unpack_from("!BBHHHBB", data, off)
    version = ver_ihl >> 4
    ihl = (ver_ihl & 0x0F) * 4

    if version != 4:
        raise DissectError("IPv4", off, f"version field is {version}")
    if ihl < IPV4_MIN_HDR_LEN:
        raise DissectError("IPv4", off, f"header length {ihl} below minimum")
    # Total length 0 is seen on segmentation offload, treat it as unknown.
    if total_len and total_len < ihl:
        raise DissectError("IPv4", off, f"total length {total_len} smaller than header {ihl}")
    if len(data) - off < ihl:
        # Options cut off by truncation. Not malformed, just nothing more to read.
        return None, None, off

    info = IPInfo(
        src_ip=str(ipaddress.IPv4Address(data[off + 12 : off + 16])),
        dst_ip=str(ipaddress.IPv4Address(data[off + 16 : off + 20])),
        protocol=proto,
        tos=tos,
        ttl=ttl,
    )

    if frag & 0x1FFF:
        return info, None, off + ihl
    return info, proto, off + ihl


def _decode_ipv6(data: bytes, off: int) -> Tuple[Optional[IPInfo], Optional[int], int]:
    if len(data) - off < IPV6_HDR_LEN:
        return None, None, off

    vtf, _payload_len, next_header, hop_limit = struct.unpack_from("!IHBB", data, off)
    version = vtf >> 28
    if version != 6:
        raise DissectError("IPv6", off, f"version field is {version}")

    info = IPInfo(
        src_ip=str(ipaddress.IPv6Address(data[off + 8 : off + 24])),
        dst_ip=str(ipaddress.IPv6Address(data[off + 24 : off + 40])),
        protocol=next_header,
        tos=(vtf >> 20) & 0xFF,
        ttl=hop_limit,
    )

    nh = next_header
    l4 = off + IPV6_HDR_LEN
    for _ in range(MAX_IPV6_EXT):
        if nh in IPV6_SKIPPABLE_EXT:
            if len(data) - l4 < 8:
                return info, None, l4
            nh, ext_len = struct.unpack_from("!BB", data, l4)
            l4 += (ext_len + 1) * 8
        elif nh == IPV6_EXT_FRAGMENT:
            if len(data) - l4 < 8:
                return info, None, l4
            frag_nh, _res, frag = struct.unpack_from("!BBH", data, l4)
            l4 += 8
            if frag >> 3:
                return info, None, l4
            nh = frag_nh
        else:
            break

    return info, nh, l4


def _decode_transport(data: bytes, off: int, proto: int) -> Optional[TransportInfo]:
    remaining = len(data) - off

    if proto == IPPROTO_TCP:
        if remaining < TCP_MIN_HDR_LEN:
            return None
        src_port, dst_port = struct.unpack_from("!HH", data, off)
        data_offset = (data[off + 12] >> 4) * 4
        if data_offset < TCP_MIN_HDR_LEN:
            raise DissectError("TCP", off, f"data offset {data_offset} below minimum")
        return TransportInfo(src_port=src_port, dst_port=dst_port)

    if proto == IPPROTO_UDP:
        if remaining < UDP_HDR_LEN:
            return None
        src_port, dst_port = struct.unpack_from("!HH", data, off)
        return TransportInfo(src_port=src_port, dst_port=dst_port)

    return None


def dissect_packet(data: bytes) -> Tuple[PacketSummary, Optional[DissectError]]:
    """
    Dissect raw bytes into a PacketSummary.

    Returns the summary and the structural error that stopped the chain, if
    any. The summary is always usable; on error it is capped at the deepest
    layer decoded before the fault.
    """
    data = bytes(data or b"")

    ethernet: Optional[EthernetInfo] = None
    ip: Optional[IPInfo] = None
    transport: Optional[TransportInfo] = None
    error: Optional[DissectError] = None

    try:
        eth = _decode_ethernet(data)
        if eth is not None:
            ethernet, next_type, l3_off = eth

            l4_proto: Optional[int] = None
            l4_off = l3_off
            if next_type == ETH_P_IPV4:
                ip, l4_proto, l4_off = _decode_ipv4(data, l3_off)
            elif next_type == ETH_P_IPV6:
                ip, l4_proto, l4_off = _decode_ipv6(data, l3_off)

            if ip is not None and l4_proto is not None:
                transport = _decode_transport(data, l4_off, l4_proto)
    except DissectError as e:
        error = e
    except (struct.error, ValueError, IndexError) as e:
        # Bounds are checked before every read, reaching here is a bug in a
        # length check. Report it like any other structural fault.
        error = DissectError("packet", 0, f"unexpected decode failure: {e}")

    return PacketSummary.build(ethernet=ethernet, ip=ip, transport=transport), error


def dissect(data: bytes) -> PacketSummary:
    summary, _ = dissect_packet(data)
    return summary
