"""
NET_DM (drop monitor) generic netlink client.

Constants follow include/uapi/linux/net_dropmon.h. Only the packet alert
subset is decoded; summary alerts and stats replies are ignored.
"""

from __future__ import annotations

import asyncio
import errno
from enum import Enum, IntEnum
from typing import Any, Callable, Dict, List, Optional

import structlog

from dropwatch_mcp.core.errors import (
    AlertDecodeError,
    AttributeDecodeError,
    AttributeLengthError,
    ClientStateError,
    CommandError,
    DropwatchError,
    NetlinkConnectionError,
    NetlinkError,
    SubscriptionError,
)
from dropwatch_mcp.core.models import AlertEvent, AlertPacket, AlertPort, Origin
from .attributes import AttributeDecoder, AttributeEncoder
from .genl import GenlConnection, GenlFamily, NetlinkMessage

log = structlog.get_logger(__name__)

NET_DM_FAMILY_NAME = "NET_DM"
NET_DM_GRP_ALERT = 1


class Command(IntEnum):
    UNSPEC = 0
    ALERT = 1
    CONFIG = 2
    START = 3
    STOP = 4
    PACKET_ALERT = 5
    CONFIG_GET = 6
    CONFIG_NEW = 7
    STATS_GET = 8
    STATS_NEW = 9


class Attr(IntEnum):
    UNSPEC = 0
    ALERT_MODE = 1  # u8
    PC = 2  # u64
    SYMBOL = 3  # string
    IN_PORT = 4  # nested
    TIMESTAMP = 5  # u64
    PROTO = 6  # u16
    PAYLOAD = 7  # binary
    PAD = 8
    TRUNC_LEN = 9  # u32
    ORIG_LEN = 10  # u32
    QUEUE_LEN = 11  # u32
    STATS = 12  # nested
    HW_STATS = 13  # nested
    ORIGIN = 14  # u16
    HW_TRAP_GROUP_NAME = 15  # string
    HW_TRAP_NAME = 16  # string
    HW_ENTRIES = 17  # nested
    HW_ENTRY = 18  # nested
    HW_TRAP_COUNT = 19  # u32
    SW_DROPS = 20  # flag
    HW_DROPS = 21  # flag


class PortAttr(IntEnum):
    NETDEV_IFINDEX = 0  # u32
    NETDEV_NAME = 1  # string


class AlertMode(IntEnum):
    SUMMARY = 0
    PACKET = 1

    @classmethod
    def parse(cls, value: Any) -> "AlertMode":
        if isinstance(value, str):
            return cls[value.strip().upper()]
        return cls(int(value))


class ClientState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    RECEIVING = "receiving"
    CLOSED = "closed"


def _decode_port(attr) -> AlertPort:
    ifindex: Optional[int] = None
    name: Optional[str] = None
    for sub in attr.nested():
        if sub.type == PortAttr.NETDEV_IFINDEX:
            ifindex = sub.uint32()
        elif sub.type == PortAttr.NETDEV_NAME:
            name = sub.string()
    return AlertPort(ifindex=ifindex, name=name)


def decode_alert(data: bytes) -> AlertEvent:
    """
    Decode the attribute stream of a PACKET_ALERT message into an AlertEvent.

    Any attribute level failure, structural or a bad value size, is raised
    as AlertDecodeError so the caller can drop this one alert and move on.
    """
    fields: Dict[str, Any] = {}
    protocol: Optional[int] = None
    orig_length: Optional[int] = None
    payload = b""

    try:
        for attr in AttributeDecoder(data):
            t = attr.type
            if t == Attr.HW_TRAP_GROUP_NAME:
                fields["group"] = attr.string()
            elif t == Attr.HW_TRAP_NAME:
                fields["trap"] = attr.string()
            elif t == Attr.ORIGIN:
                fields["origin"] = Origin.from_code(attr.uint16())
            elif t == Attr.IN_PORT:
                fields["port"] = _decode_port(attr)
            elif t == Attr.TIMESTAMP:
                fields["timestamp_ns"] = attr.uint64()
            elif t == Attr.PROTO:
                protocol = attr.uint16()
            elif t == Attr.ORIG_LEN:
                orig_length = attr.uint32()
            elif t == Attr.PAYLOAD:
                payload = attr.bytes()
            elif t == Attr.SYMBOL and "trap" not in fields:
                # Software drops name the kernel function instead of a trap.
                fields["trap"] = attr.string()
    except (AttributeDecodeError, AttributeLengthError) as e:
        raise AlertDecodeError(str(e), raw_length=len(data)) from e

    packet = AlertPacket(protocol=protocol, length=len(payload), orig_length=orig_length, payload=payload)
    return AlertEvent(packet=packet, **fields)


def _flags(software: bool, hardware: bool) -> bytes:
    enc = AttributeEncoder()
    if software:
        enc.flag(Attr.SW_DROPS)
    if hardware:
        enc.flag(Attr.HW_DROPS)
    return enc.encode()


ConnectionFactory = Callable[[], GenlConnection]


class DropMonitorClient:
    """
    Client for the NET_DM family.

    State machine:
      UNINITIALIZED --init--> READY --start--> RECEIVING --stop--> READY
      any state --close--> CLOSED

    Two connections are used:
      control
        synchronous requests (CONFIG, START, STOP), each waits for its ACK

      events
        joined to the alert multicast group, read by the receive loop
    """

    def __init__(
        self,
        connection_factory: Optional[ConnectionFactory] = None,
        request_timeout: float = 5.0,
        recv_buffer_size: int = 1 << 20,
    ):
        if connection_factory is None:

            def connection_factory() -> GenlConnection:
                return GenlConnection(request_timeout=request_timeout, recv_buffer_size=recv_buffer_size)

        self._factory = connection_factory
        self._control: Optional[GenlConnection] = None
        self._events: Optional[GenlConnection] = None
        self._family: Optional[GenlFamily] = None

        self._state = ClientState.UNINITIALIZED
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()

        self._received = 0
        self._decoded = 0
        self._decode_errors = 0
        self._skipped = 0

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def family(self) -> Optional[GenlFamily]:
        return self._family

    def init(self) -> GenlFamily:
        if self._state != ClientState.UNINITIALIZED:
            raise ClientStateError(f"init not allowed in state {self._state.value}")

        try:
            self._control = self._factory()
            self._family = self._control.get_family(NET_DM_FAMILY_NAME)
            self._events = self._factory()
        except NetlinkError as e:
            self.close()
            raise NetlinkConnectionError(f"failed to resolve {NET_DM_FAMILY_NAME}: {e}") from e
        except DropwatchError:
            self.close()
            raise

        self._state = ClientState.READY
        log.info("dropmon_ready", family_id=self._family.id, version=self._family.version)
        return self._family

    def _require_control(self) -> GenlConnection:
        if self._state in (ClientState.UNINITIALIZED, ClientState.CLOSED) or self._control is None:
            raise ClientStateError(f"drop monitor not initialized (state {self._state.value})")
        return self._control

    def _execute(self, command: Command, data: bytes) -> None:
        conn = self._require_control()
        assert self._family is not None
        conn.execute(self._family.id, int(command), self._family.version, data, name=command.name)

    def set_alert_mode(self, mode: AlertMode) -> None:
        mode = AlertMode.parse(mode)
        self._execute(Command.CONFIG, AttributeEncoder().uint8(Attr.ALERT_MODE, int(mode)).encode())
        log.info("dropmon_alert_mode_set", mode=mode.name.lower())

    def set_trunc_len(self, trunc_len: int) -> None:
        if not 0 <= int(trunc_len) <= 0xFFFFFFFF:
            raise ValueError(f"trunc_len {trunc_len} out of range")
        self._execute(Command.CONFIG, AttributeEncoder().uint32(Attr.TRUNC_LEN, int(trunc_len)).encode())
        log.info("dropmon_trunc_len_set", trunc_len=int(trunc_len))

    def configure(self, alert_mode: AlertMode, trunc_len: Optional[int] = None) -> List[CommandError]:
        """
        Send one CONFIG command per setting.

        Each command is acknowledged on its own. Failures are logged and
        returned, they do not change the client state.
        """
        failures: List[CommandError] = []

        try:
            self.set_alert_mode(alert_mode)
        except CommandError as e:
            log.warning("dropmon_config_failed", setting="alert_mode", error=str(e))
            failures.append(e)

        if trunc_len is not None:
            try:
                self.set_trunc_len(trunc_len)
            except CommandError as e:
                log.warning("dropmon_config_failed", setting="trunc_len", error=str(e))
                failures.append(e)

        return failures

    def enable_monitoring(self, software: bool, hardware: bool) -> None:
        """
        START drop monitoring. Flags are only encoded when true.
        """
        self._execute(Command.START, _flags(software, hardware))
        log.info("dropmon_enabled", software=software, hardware=hardware)

    def disable_monitoring(self, software: bool, hardware: bool) -> None:
        self._execute(Command.STOP, _flags(software, hardware))
        log.info("dropmon_disabled", software=software, hardware=hardware)

    async def start(self, out: asyncio.Queue) -> None:
        """
        Join the alert group and run the receive loop as a task.

        Decoded AlertEvent objects are put on out. When the loop ends,
        None is put on out to tell the consumer no more alerts follow.
        """
        if self._state != ClientState.READY or self._events is None:
            raise ClientStateError(f"start not allowed in state {self._state.value}")

        try:
            self._events.join_group(NET_DM_GRP_ALERT)
        except OSError as e:
            raise SubscriptionError(NET_DM_GRP_ALERT, e.errno or 0) from e

        self._stop.clear()
        self._state = ClientState.RECEIVING
        self._task = asyncio.create_task(self._run(self._events, out))
        log.info("dropmon_started", group=NET_DM_GRP_ALERT)

    async def stop(self) -> None:
        """
        Stop the receive loop. No-op unless receiving, safe to call twice.
        """
        if self._state != ClientState.RECEIVING:
            return

        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
        if self._state == ClientState.RECEIVING:
            self._state = ClientState.READY

    async def _run(self, conn: GenlConnection, out: asyncio.Queue) -> None:
        stop_wait = asyncio.ensure_future(self._stop.wait())

        try:
            while True:
                recv = asyncio.ensure_future(conn.receive())
                done, _ = await asyncio.wait({recv, stop_wait}, return_when=asyncio.FIRST_COMPLETED)

                if recv not in done:
                    recv.cancel()
                    await asyncio.gather(recv, return_exceptions=True)
                    break

                try:
                    messages = recv.result()
                except NetlinkError as e:
                    # A malformed datagram only loses that datagram.
                    self._decode_errors += 1
                    log.warning("dropmon_datagram_malformed", error=str(e))
                    continue
                except OSError as e:
                    if e.errno == errno.ENOBUFS:
                        # Kernel dropped alerts because the socket buffer overran.
                        log.warning("dropmon_receive_overrun", error=str(e))
                        continue
                    log.error("dropmon_receive_failed", error=str(e))
                    break

                for msg in messages:
                    event = self._handle(msg)
                    if event is not None:
                        await out.put(event)

                if stop_wait.done():
                    break
        finally:
            stop_wait.cancel()
            await asyncio.gather(stop_wait, return_exceptions=True)
            try:
                conn.leave_group(NET_DM_GRP_ALERT)
            except OSError as e:
                log.warning("dropmon_leave_group_failed", error=str(e))
            try:
                out.put_nowait(None)
            except asyncio.QueueFull:
                await out.put(None)
            if self._state == ClientState.RECEIVING:
                self._state = ClientState.READY
            log.info("dropmon_stopped", received=self._received, decoded=self._decoded)

    def _handle(self, msg: NetlinkMessage) -> Optional[AlertEvent]:
        self._received += 1

        if self._family is None or msg.msg_type != self._family.id:
            self._skipped += 1
            return None
        if msg.command != Command.PACKET_ALERT:
            # Summary mode alerts carry a fixed struct, not attributes.
            self._skipped += 1
            log.debug("dropmon_message_skipped", command=msg.command)
            return None

        try:
            event = decode_alert(msg.data)
        except AlertDecodeError as e:
            self._decode_errors += 1
            log.warning("dropmon_alert_decode_failed", error=str(e), raw_length=e.raw_length, seq=msg.seq)
            return None

        self._decoded += 1
        return event

    def close(self) -> None:
        """
        Release both connections. Valid from any state, idempotent.

        A running receive loop is cancelled; call stop() first for a clean
        exit that leaves the multicast group.
        """
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

        for conn in (self._events, self._control):
            if conn is not None:
                conn.close()
        self._events = None
        self._control = None
        self._state = ClientState.CLOSED

    def status(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "family_id": self._family.id if self._family else None,
            "received": self._received,
            "decoded": self._decoded,
            "decode_errors": self._decode_errors,
            "skipped": self._skipped,
        }
