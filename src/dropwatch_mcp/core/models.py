from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


class Origin(str, Enum):
    """
    Where the kernel detected the drop.
    """

    SOFTWARE = "software"
    HARDWARE = "hardware"
    UNKNOWN = "unknown"

    @classmethod
    def from_code(cls, code: int) -> "Origin":
        if code == 0:
            return cls.SOFTWARE
        if code == 1:
            return cls.HARDWARE
        return cls.UNKNOWN


@dataclass(frozen=True)
class AlertPort:
    """
    Ingress port of the dropped packet.

    Both fields are optional because the kernel may omit either nested attribute.
    """

    ifindex: Optional[int] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class AlertPacket:
    """
    Packet carried inside a drop alert.

    Fields:
      protocol
        skb protocol (ethertype), None if not reported.

      length
        Captured length, the number of payload bytes actually received.
        Can be smaller than orig_length when truncation is configured.

      orig_length
        Length of the packet before truncation, None if not reported.
        The kernel only sends it when the packet was truncated.

      payload
        Raw captured bytes, starting at the Ethernet header.
    """

    protocol: Optional[int] = None
    length: int = 0
    orig_length: Optional[int] = None
    payload: bytes = b""

    @property
    def wire_length(self) -> int:
        if self.orig_length is None:
            return self.length
        return max(self.orig_length, self.length)


@dataclass(frozen=True)
class AlertEvent:
    """
    One decoded NET_DM packet alert.
    """

    timestamp_ns: Optional[int] = None
    origin: Origin = Origin.UNKNOWN
    trap: str = ""
    group: str = ""
    port: Optional[AlertPort] = None
    packet: AlertPacket = field(default_factory=AlertPacket)

    @property
    def timestamp(self) -> Optional[datetime]:
        if self.timestamp_ns is None:
            return None
        sec, nsec = divmod(self.timestamp_ns, 1_000_000_000)
        return datetime.fromtimestamp(sec, tz=timezone.utc) + timedelta(microseconds=nsec // 1000)

    def timestamp_parts(self) -> tuple:
        """
        Split the timestamp into (seconds, nanoseconds). (0, 0) when unknown.
        """
        if self.timestamp_ns is None:
            return 0, 0
        return divmod(self.timestamp_ns, 1_000_000_000)


class PacketType(str, Enum):
    UNKNOWN = "Unknown"
    ETHERNET = "Ethernet"
    IP = "IP"
    TRANSPORT = "Transport"


def _compact(d: Dict[str, Any]) -> Dict[str, Any]:
    # None means "layer did not carry it". Zero is a real value and stays.
    return {k: v for k, v in d.items() if v is not None}


@dataclass(frozen=True)
class EthernetInfo:
    src_mac: Optional[str] = None
    dst_mac: Optional[str] = None
    ether_type: Optional[int] = None
    pcp: Optional[int] = None
    vlan_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return _compact(
            {
                "srcMac": self.src_mac,
                "dstMac": self.dst_mac,
                "etherType": self.ether_type,
                "pcp": self.pcp,
                "vlanId": self.vlan_id,
            }
        )


@dataclass(frozen=True)
class IPInfo:
    src_ip: Optional[str] = None
    dst_ip: Optional[str] = None
    protocol: Optional[int] = None
    tos: Optional[int] = None
    ttl: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return _compact(
            {
                "srcIp": self.src_ip,
                "dstIp": self.dst_ip,
                "protocol": self.protocol,
                "tos": self.tos,
                "ttl": self.ttl,
            }
        )


@dataclass(frozen=True)
class TransportInfo:
    src_port: Optional[int] = None
    dst_port: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return _compact({"srcPort": self.src_port, "dstPort": self.dst_port})


@dataclass(frozen=True)
class PacketSummary:
    """
    Partial header summary of a dropped packet.

    packet_type is always the deepest layer present:
      Transport > IP > Ethernet > Unknown
    Use PacketSummary.build so the tag cannot disagree with the sub-records.
    """

    packet_type: PacketType = PacketType.UNKNOWN
    ethernet: Optional[EthernetInfo] = None
    ip: Optional[IPInfo] = None
    transport: Optional[TransportInfo] = None

    @classmethod
    def build(
        cls,
        ethernet: Optional[EthernetInfo] = None,
        ip: Optional[IPInfo] = None,
        transport: Optional[TransportInfo] = None,
    ) -> "PacketSummary":
        if transport is not None:
            packet_type = PacketType.TRANSPORT
        elif ip is not None:
            packet_type = PacketType.IP
        elif ethernet is not None:
            packet_type = PacketType.ETHERNET
        else:
            packet_type = PacketType.UNKNOWN
        return cls(packet_type=packet_type, ethernet=ethernet, ip=ip, transport=transport)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"packetType": self.packet_type.value}
        if self.ethernet is not None:
            out["ETHERNET"] = self.ethernet.to_dict()
        if self.ip is not None:
            out["IP"] = self.ip.to_dict()
        if self.transport is not None:
            out["Transport"] = self.transport.to_dict()
        return out


@dataclass(frozen=True)
class WriteMsg:
    """
    Unit of work handed to every exporter.

    The same instance is shared by all exporters at once, so exporters must
    treat it as read only.
    """

    alert: AlertEvent
    summary: Optional[PacketSummary] = None
