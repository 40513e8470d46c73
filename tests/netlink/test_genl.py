import errno
import socket
import struct

import pytest

from dropwatch_mcp.core.errors import CommandError, FamilyUnavailable, NetlinkError
from dropwatch_mcp.netlink.attributes import AttributeEncoder
from dropwatch_mcp.netlink.genl import (
    CTRL_ATTR_FAMILY_ID,
    CTRL_ATTR_FAMILY_NAME,
    CTRL_ATTR_MCAST_GROUPS,
    CTRL_ATTR_MCAST_GRP_ID,
    CTRL_ATTR_MCAST_GRP_NAME,
    CTRL_ATTR_VERSION,
    CTRL_CMD_GETFAMILY,
    GENL_ID_CTRL,
    NLM_F_ACK,
    NLM_F_REQUEST,
    NLMSG_ERROR,
    NLMSG_HDR,
    GenlConnection,
    build_message,
    parse_messages,
)


def _ack(seq, code=0):
    payload = struct.pack("=i", -code) + NLMSG_HDR.pack(16, 0, 0, seq, 0)
    return NLMSG_HDR.pack(NLMSG_HDR.size + len(payload), NLMSG_ERROR, 0, seq, 0) + payload


def _family_reply(seq, family_id=0x1C, name="NET_DM"):
    def groups(outer):
        outer.nested(1, lambda g: g.string(CTRL_ATTR_MCAST_GRP_NAME, "events").uint32(CTRL_ATTR_MCAST_GRP_ID, 1))

    data = (
        AttributeEncoder()
        .uint16(CTRL_ATTR_FAMILY_ID, family_id)
        .string(CTRL_ATTR_FAMILY_NAME, name)
        .uint32(CTRL_ATTR_VERSION, 2)
        .nested(CTRL_ATTR_MCAST_GROUPS, groups)
        .encode()
    )
    return build_message(GENL_ID_CTRL, 0, seq, 1, 2, data)


@pytest.fixture
def sockpair():
    ours, theirs = socket.socketpair(socket.AF_UNIX, socket.SOCK_DGRAM)
    yield ours, theirs
    ours.close()
    theirs.close()


def test_build_and_parse_message():
    data = AttributeEncoder().uint8(1, 1).encode()
    raw = build_message(0x1C, NLM_F_REQUEST | NLM_F_ACK, 42, 2, 2, data)

    (msg,) = parse_messages(raw)
    assert msg.msg_type == 0x1C
    assert msg.flags == NLM_F_REQUEST | NLM_F_ACK
    assert msg.seq == 42
    assert msg.command == 2
    assert msg.version == 2
    assert msg.data == data


def test_parse_splits_multiple_messages():
    raw = build_message(0x1C, 0, 1, 5, 2, b"\x00" * 4) + build_message(0x1C, 0, 2, 5, 2)
    assert [m.seq for m in parse_messages(raw)] == [1, 2]


def test_parse_rejects_header_longer_than_datagram():
    raw = build_message(0x1C, 0, 1, 5, 2) + NLMSG_HDR.pack(400, 0x1C, 0, 2, 0)
    seen = []
    with pytest.raises(NetlinkError):
        for msg in parse_messages(raw):
            seen.append(msg.seq)
    assert seen == [1]


def test_error_code_of_ack_and_error():
    (ack,) = parse_messages(_ack(3))
    (err,) = parse_messages(_ack(3, errno.EOPNOTSUPP))
    assert ack.is_error and ack.error_code() == 0
    assert err.error_code() == errno.EOPNOTSUPP


def test_execute_returns_on_ack(sockpair):
    ours, theirs = sockpair
    theirs.send(_ack(1))

    conn = GenlConnection(sock=ours, request_timeout=1.0)
    assert conn.execute(0x1C, 3, 2, name="START") == []

    (sent,) = parse_messages(theirs.recv(4096))
    assert sent.flags & NLM_F_ACK
    assert sent.command == 3


def test_execute_raises_command_error(sockpair):
    ours, theirs = sockpair
    theirs.send(_ack(1, errno.EBUSY))

    conn = GenlConnection(sock=ours, request_timeout=1.0)
    with pytest.raises(CommandError) as exc:
        conn.execute(0x1C, 2, 2, name="CONFIG")
    assert exc.value.errno == errno.EBUSY
    assert exc.value.command == "CONFIG"


def test_execute_ignores_other_sequence_numbers(sockpair):
    ours, theirs = sockpair
    theirs.send(_ack(7, errno.EINVAL) + _ack(1))

    conn = GenlConnection(sock=ours, request_timeout=1.0)
    assert conn.execute(0x1C, 3, 2) == []


def test_get_family_parses_reply(sockpair):
    ours, theirs = sockpair
    theirs.send(_family_reply(1) + _ack(1))

    family = GenlConnection(sock=ours, request_timeout=1.0).get_family("NET_DM")
    assert family.id == 0x1C
    assert family.name == "NET_DM"
    assert family.version == 2
    assert family.mcast_groups == {"events": 1}

    (sent,) = parse_messages(theirs.recv(4096))
    assert sent.msg_type == GENL_ID_CTRL
    assert sent.command == CTRL_CMD_GETFAMILY


def test_get_family_missing_raises_family_unavailable(sockpair):
    ours, theirs = sockpair
    theirs.send(_ack(1, errno.ENOENT))

    with pytest.raises(FamilyUnavailable):
        GenlConnection(sock=ours, request_timeout=1.0).get_family("NET_DM")


def test_close_is_idempotent(sockpair):
    ours, _ = sockpair
    conn = GenlConnection(sock=ours)
    conn.close()
    conn.close()
    assert conn.closed


@pytest.mark.asyncio
async def test_receive_splits_datagram(sockpair):
    ours, theirs = sockpair
    theirs.send(build_message(0x1C, 0, 0, 5, 2) + build_message(0x1C, 0, 0, 5, 2))

    messages = await GenlConnection(sock=ours).receive()
    assert len(messages) == 2
