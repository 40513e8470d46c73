import asyncio
import ipaddress
import struct

import pytest

from dropwatch_mcp.core.errors import CommandError, FamilyUnavailable
from dropwatch_mcp.core.exporter_base import BaseExporter
from dropwatch_mcp.core.models import AlertEvent, AlertPacket, AlertPort, Origin, WriteMsg
from dropwatch_mcp.dissector import dissect
from dropwatch_mcp.netlink.attributes import AttributeDecoder, AttributeEncoder
from dropwatch_mcp.netlink.dropmon import NET_DM_GRP_ALERT, Attr, Command, PortAttr
from dropwatch_mcp.netlink.genl import GENLMSG_HDR, GenlFamily, NetlinkMessage

NET_DM_ID = 0x1C
TS = 1_700_000_000_123_456_789


class Wire:
    """
    Raw byte builders for frames and NET_DM messages.
    """

    @staticmethod
    def eth(ether_type=0x0800, dst="02:00:00:00:00:02", src="02:00:00:00:00:01", vlans=()):
        out = bytes.fromhex(dst.replace(":", "")) + bytes.fromhex(src.replace(":", ""))
        next_types = [tpid for tpid, _ in vlans[1:]] + [ether_type]
        if vlans:
            out += struct.pack("!H", vlans[0][0])
            for (_, tci), nt in zip(vlans, next_types):
                out += struct.pack("!HH", tci, nt)
        else:
            out += struct.pack("!H", ether_type)
        return out

    @staticmethod
    def ipv4(src="10.0.0.1", dst="10.0.0.2", proto=6, payload=b"", ttl=64, tos=0, ihl=5, total_len=None, frag=0, version=4):
        hdr_len = ihl * 4
        if total_len is None:
            total_len = max(hdr_len, 20) + len(payload)
        hdr = struct.pack(
            "!BBHHHBBH4s4s",
            (version << 4) | ihl,
            tos,
            total_len,
            1,
            frag,
            ttl,
            proto,
            0,
            ipaddress.IPv4Address(src).packed,
            ipaddress.IPv4Address(dst).packed,
        )
        options = b"\x00" * max(0, hdr_len - 20)
        return hdr + options + payload

    @staticmethod
    def ipv6(src="2001:db8::1", dst="2001:db8::2", next_header=17, payload=b"", hop_limit=64, version=6):
        vtf = (version << 28) | (0x12 << 20)
        return (
            struct.pack("!IHBB", vtf, len(payload), next_header, hop_limit)
            + ipaddress.IPv6Address(src).packed
            + ipaddress.IPv6Address(dst).packed
            + payload
        )

    @staticmethod
    def tcp(sport=51514, dport=443, data_offset=5):
        return struct.pack("!HHIIBBHHH", sport, dport, 1, 0, data_offset << 4, 0x02, 65535, 0, 0)

    @staticmethod
    def udp(sport=5353, dport=53, payload=b""):
        return struct.pack("!HHHH", sport, dport, 8 + len(payload), 0) + payload

    @staticmethod
    def alert_attrs(
        origin=None,
        trap=None,
        group=None,
        symbol=None,
        ifindex=None,
        ifname=None,
        timestamp_ns=None,
        proto=None,
        payload=None,
        orig_len=None,
    ):
        enc = AttributeEncoder()
        if origin is not None:
            enc.uint16(Attr.ORIGIN, origin)
        if group is not None:
            enc.string(Attr.HW_TRAP_GROUP_NAME, group)
        if trap is not None:
            enc.string(Attr.HW_TRAP_NAME, trap)
        if symbol is not None:
            enc.string(Attr.SYMBOL, symbol)
        if ifindex is not None or ifname is not None:

            def port(inner):
                if ifindex is not None:
                    inner.uint32(PortAttr.NETDEV_IFINDEX, ifindex)
                if ifname is not None:
                    inner.string(PortAttr.NETDEV_NAME, ifname)

            enc.nested(Attr.IN_PORT, port)
        if timestamp_ns is not None:
            enc.uint64(Attr.TIMESTAMP, timestamp_ns)
        if proto is not None:
            enc.uint16(Attr.PROTO, proto)
        if orig_len is not None:
            enc.uint32(Attr.ORIG_LEN, orig_len)
        if payload is not None:
            enc.bytes(Attr.PAYLOAD, payload)
        return enc.encode()

    @staticmethod
    def write_msg(
        trap="ingress_vlan_filter",
        group="l2_drops",
        origin=Origin.HARDWARE,
        payload=None,
        timestamp_ns=TS,
        ifindex=7,
        ifname="swp1",
        orig_length=None,
        with_summary=True,
    ):
        if payload is None:
            payload = Wire.eth() + Wire.ipv4(payload=Wire.tcp())
        alert = AlertEvent(
            timestamp_ns=timestamp_ns,
            origin=origin,
            trap=trap,
            group=group,
            port=AlertPort(ifindex=ifindex, name=ifname),
            packet=AlertPacket(protocol=0x0800, length=len(payload), orig_length=orig_length, payload=payload),
        )
        return WriteMsg(alert=alert, summary=dissect(payload) if with_summary else None)

    @staticmethod
    def message(data, family_id=NET_DM_ID, command=Command.PACKET_ALERT, seq=0):
        return NetlinkMessage(
            msg_type=family_id,
            flags=0,
            seq=seq,
            pid=0,
            payload=GENLMSG_HDR.pack(int(command), 2, 0) + data,
        )


class FakeConnection:
    """
    Stands in for GenlConnection, backed by a FakeKernel.
    """

    def __init__(self, kernel):
        self.kernel = kernel
        self.groups = set()
        self.inbox = asyncio.Queue()
        self.closed = False

    def get_family(self, name):
        if not self.kernel.available:
            raise FamilyUnavailable(name)
        return self.kernel.family

    def execute(self, family_id, command, version, data=b"", name=""):
        return self.kernel.execute(family_id, command, data, name)

    def join_group(self, group):
        if self.kernel.join_errno:
            raise OSError(self.kernel.join_errno, "join refused")
        self.groups.add(group)

    def leave_group(self, group):
        self.groups.discard(group)

    async def receive(self):
        item = await self.inbox.get()
        if isinstance(item, BaseException):
            raise item
        return item

    def close(self):
        self.closed = True


class FakeKernel:
    """
    Just enough NET_DM to drive DropMonitorClient.

    Requests are recorded with their decoded attributes. Drops are delivered
    to subscribed connections only when their origin is being monitored.
    """

    def __init__(self):
        self.family = GenlFamily(id=NET_DM_ID, name="NET_DM", version=2, mcast_groups={"events": NET_DM_GRP_ALERT})
        self.available = True
        self.connections = []
        self.requests = []
        self.failures = {}
        self.join_errno = 0

        self.software = False
        self.hardware = False
        self.alert_mode = None
        self.trunc_len = None

    def connect(self):
        conn = FakeConnection(self)
        self.connections.append(conn)
        return conn

    def execute(self, family_id, command, data, name):
        assert family_id == self.family.id
        command = Command(command)
        attrs = {a.type: a for a in AttributeDecoder(data)}
        self.requests.append((command, attrs))

        code = self.failures.get(command)
        if code:
            raise CommandError(name, code)

        if command == Command.CONFIG:
            if Attr.ALERT_MODE in attrs:
                self.alert_mode = attrs[Attr.ALERT_MODE].uint8()
            if Attr.TRUNC_LEN in attrs:
                self.trunc_len = attrs[Attr.TRUNC_LEN].uint32()
        elif command in (Command.START, Command.STOP):
            enabled = command == Command.START
            if Attr.SW_DROPS in attrs:
                self.software = enabled
            if Attr.HW_DROPS in attrs:
                self.hardware = enabled
        return []

    def subscribers(self):
        return [c for c in self.connections if NET_DM_GRP_ALERT in c.groups and not c.closed]

    def deliver(self, *messages):
        for conn in self.subscribers():
            conn.inbox.put_nowait(list(messages))

    def fail_receive(self, exc):
        for conn in self.subscribers():
            conn.inbox.put_nowait(exc)

    def drop(self, origin, **attrs):
        """
        Emit one packet alert if the origin is monitored. Returns whether it was sent.
        """
        if origin == 0 and not self.software:
            return False
        if origin == 1 and not self.hardware:
            return False
        self.deliver(Wire.message(Wire.alert_attrs(origin=origin, **attrs)))
        return True


@pytest.fixture
def wire():
    return Wire


@pytest.fixture
def kernel():
    return FakeKernel()


class RecordingExporter(BaseExporter):
    """
    Keeps the trap of every processed message.

    gate blocks processing until set. fail_on names a trap that makes
    _process raise.
    """

    name = "recording"

    def __init__(self, config=None, gate=None, fail_on=None, fail_open=None):
        super().__init__(config)
        self.gate = gate
        self.fail_on = fail_on
        self.fail_open = fail_open
        self.seen = []
        self.messages = []
        self.flushes = 0
        self.closed = False

    async def _open(self):
        if self.fail_open is not None:
            raise self.fail_open

    async def _process(self, msg):
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_on is not None and msg.alert.trap == self.fail_on:
            raise RuntimeError("sink refused")
        self.seen.append(msg.alert.trap)
        self.messages.append(msg)

    async def _flush(self):
        self.flushes += 1

    async def _close(self):
        self.closed = True


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def recording():
    return RecordingExporter


@pytest.fixture
def eventually():
    return wait_until
