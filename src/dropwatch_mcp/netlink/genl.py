"""
Minimal generic netlink transport.

Only what the drop monitor needs:
  resolve a family by name through the nlctrl family
  send a request and wait for its ACK
  join and leave multicast groups
  receive and split multicast datagrams

Message layout, host byte order:
  nlmsghdr   len(4) type(2) flags(2) seq(4) pid(4)
  genlmsghdr cmd(1) version(1) reserved(2)
  attributes
"""

from __future__ import annotations

import asyncio
import errno
import itertools
import socket
import struct
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

import structlog

from dropwatch_mcp.core.errors import (
    CommandError,
    FamilyUnavailable,
    NetlinkConnectionError,
    NetlinkError,
)
from .attributes import AttributeDecoder, AttributeEncoder

log = structlog.get_logger(__name__)

NETLINK_GENERIC = 16
SOL_NETLINK = 270
NETLINK_ADD_MEMBERSHIP = 1
NETLINK_DROP_MEMBERSHIP = 2

NLMSG_HDR = struct.Struct("=IHHII")
GENLMSG_HDR = struct.Struct("=BBH")
NLMSG_ALIGNTO = 4

NLMSG_NOOP = 1
NLMSG_ERROR = 2
NLMSG_DONE = 3
NLMSG_OVERRUN = 4

NLM_F_REQUEST = 0x1
NLM_F_MULTI = 0x2
NLM_F_ACK = 0x4

GENL_ID_CTRL = 0x10
CTRL_CMD_GETFAMILY = 3
CTRL_VERSION = 2

CTRL_ATTR_FAMILY_ID = 1
CTRL_ATTR_FAMILY_NAME = 2
CTRL_ATTR_VERSION = 3
CTRL_ATTR_MCAST_GROUPS = 7
CTRL_ATTR_MCAST_GRP_NAME = 1
CTRL_ATTR_MCAST_GRP_ID = 2


def nlmsg_align(length: int) -> int:
    return (length + NLMSG_ALIGNTO - 1) & ~(NLMSG_ALIGNTO - 1)


@dataclass
class NetlinkMessage:
    """
    One netlink message split out of a datagram.

    For generic netlink payloads, command and version come from the
    genlmsghdr and data holds the attribute stream after it.
    """

    msg_type: int
    flags: int
    seq: int
    pid: int
    payload: bytes

    @property
    def is_error(self) -> bool:
        return self.msg_type == NLMSG_ERROR

    def error_code(self) -> int:
        """
        errno of an NLMSG_ERROR message, 0 for an ACK.
        """
        if len(self.payload) < 4:
            raise NetlinkError("truncated NLMSG_ERROR payload")
        return -struct.unpack_from("=i", self.payload, 0)[0]

    @property
    def command(self) -> int:
        return self.payload[0] if self.payload else 0

    @property
    def version(self) -> int:
        return self.payload[1] if len(self.payload) > 1 else 0

    @property
    def data(self) -> bytes:
        return self.payload[GENLMSG_HDR.size :]


@dataclass
class GenlFamily:
    id: int
    name: str
    version: int
    mcast_groups: Dict[str, int] = field(default_factory=dict)


def build_message(msg_type: int, flags: int, seq: int, command: int, version: int, data: bytes = b"") -> bytes:
    payload = GENLMSG_HDR.pack(command, version, 0) + data
    length = NLMSG_HDR.size + len(payload)
    return NLMSG_HDR.pack(length, msg_type, flags, seq, 0) + payload


def parse_messages(data: bytes) -> Iterator[NetlinkMessage]:
    """
    Split a datagram into netlink messages.

    A header claiming more bytes than remain ends parsing with NetlinkError;
    messages before it have already been yielded.
    """
    off = 0
    end = len(data)

    while end - off >= NLMSG_HDR.size:
        length, msg_type, flags, seq, pid = NLMSG_HDR.unpack_from(data, off)
        if length < NLMSG_HDR.size or off + length > end:
            raise NetlinkError(f"malformed netlink header at offset {off}: length {length}, datagram {end}")

        yield NetlinkMessage(
            msg_type=msg_type,
            flags=flags,
            seq=seq,
            pid=pid,
            payload=data[off + NLMSG_HDR.size : off + length],
        )
        off += nlmsg_align(length)


def _parse_family(msg: NetlinkMessage) -> GenlFamily:
    family_id = 0
    name = ""
    version = 0
    groups: Dict[str, int] = {}

    for attr in AttributeDecoder(msg.data):
        if attr.type == CTRL_ATTR_FAMILY_ID:
            family_id = attr.uint16()
        elif attr.type == CTRL_ATTR_FAMILY_NAME:
            name = attr.string()
        elif attr.type == CTRL_ATTR_VERSION:
            version = attr.uint32()
        elif attr.type == CTRL_ATTR_MCAST_GROUPS:
            for entry in attr.nested():
                grp_name = ""
                grp_id = 0
                for grp_attr in entry.nested():
                    if grp_attr.type == CTRL_ATTR_MCAST_GRP_NAME:
                        grp_name = grp_attr.string()
                    elif grp_attr.type == CTRL_ATTR_MCAST_GRP_ID:
                        grp_id = grp_attr.uint32()
                if grp_name:
                    groups[grp_name] = grp_id

    return GenlFamily(id=family_id, name=name, version=version, mcast_groups=groups)


class GenlConnection:
    """
    Owns one NETLINK_GENERIC socket.

    Requests are synchronous and bounded by request_timeout. receive() is the
    asyncio side, used by the drop monitor receive loop on a separate
    connection so multicast traffic never interleaves with request replies.
    """

    def __init__(
        self,
        sock: Optional[socket.socket] = None,
        request_timeout: float = 5.0,
        recv_buffer_size: int = 1 << 20,
    ):
        self.request_timeout = float(request_timeout)
        self.recv_buffer_size = int(recv_buffer_size)
        self._seq = itertools.count(1)
        self._closed = False

        if sock is None:
            try:
                sock = socket.socket(socket.AF_NETLINK, socket.SOCK_RAW, NETLINK_GENERIC)
                sock.bind((0, 0))
            except (AttributeError, OSError) as e:
                raise NetlinkConnectionError(f"cannot open generic netlink socket: {e}") from e
        self._sock = sock

    @property
    def closed(self) -> bool:
        return self._closed

    def next_seq(self) -> int:
        return next(self._seq)

    def send(self, data: bytes) -> None:
        try:
            self._sock.send(data)
        except OSError as e:
            raise NetlinkConnectionError(f"netlink send failed: {e}") from e

    def _recv_blocking(self) -> bytes:
        self._sock.settimeout(self.request_timeout)
        try:
            return self._sock.recv(self.recv_buffer_size)
        except socket.timeout as e:
            raise NetlinkConnectionError(f"no reply within {self.request_timeout:.1f}s") from e
        except OSError as e:
            raise NetlinkConnectionError(f"netlink receive failed: {e}") from e

    def execute(self, family_id: int, command: int, version: int, data: bytes = b"", name: str = "") -> List[NetlinkMessage]:
        """
        Send one request with NLM_F_ACK and collect replies until its ACK.

        Raises CommandError when the kernel answers with a negative errno.
        """
        seq = self.next_seq()
        self.send(build_message(family_id, NLM_F_REQUEST | NLM_F_ACK, seq, command, version, data))

        replies: List[NetlinkMessage] = []
        while True:
            for msg in parse_messages(self._recv_blocking()):
                if msg.seq != seq:
                    continue
                if msg.is_error:
                    code = msg.error_code()
                    if code:
                        raise CommandError(name or f"cmd {command}", code)
                    return replies
                if msg.msg_type == NLMSG_DONE:
                    return replies
                replies.append(msg)

    def get_family(self, name: str) -> GenlFamily:
        data = AttributeEncoder().string(CTRL_ATTR_FAMILY_NAME, name).encode()
        try:
            replies = self.execute(GENL_ID_CTRL, CTRL_CMD_GETFAMILY, CTRL_VERSION, data, name="GETFAMILY")
        except CommandError as e:
            if e.errno == errno.ENOENT:
                raise FamilyUnavailable(name) from e
            raise

        for msg in replies:
            if msg.msg_type == GENL_ID_CTRL:
                family = _parse_family(msg)
                if family.id:
                    log.debug("genl_family_resolved", family=family.name, id=family.id, version=family.version)
                    return family

        raise FamilyUnavailable(name)

    def join_group(self, group: int) -> None:
        self._sock.setsockopt(SOL_NETLINK, NETLINK_ADD_MEMBERSHIP, group)

    def leave_group(self, group: int) -> None:
        self._sock.setsockopt(SOL_NETLINK, NETLINK_DROP_MEMBERSHIP, group)

    async def receive(self) -> List[NetlinkMessage]:
        """
        Wait for one datagram and return the messages inside it.
        """
        loop = asyncio.get_running_loop()
        self._sock.setblocking(False)
        data = await loop.sock_recv(self._sock, self.recv_buffer_size)
        return list(parse_messages(data))

    def close(self) -> None:
        if self.closed:
            return
        self._closed = True
        self._sock.close()
