from __future__ import annotations

import os


class DropwatchError(Exception):
    """
    Root of every error raised by dropwatch_mcp.

    Error classes map to how far the failure reaches:
      fatal
        FamilyUnavailable, NetlinkConnectionError. The agent cannot run.

      per message
        AlertDecodeError and the attribute errors. One alert is dropped.

      per layer
        DissectError. The packet summary stops at the last good layer.

      per exporter
        ExporterConfigError, ExporterStateError. One exporter is skipped
        or refuses the call, the others keep running.
    """


class NetlinkError(DropwatchError):
    """
    Kernel answered a request with a negative errno.
    """

    def __init__(self, message: str, errno: int = 0):
        self.errno = abs(int(errno))
        if self.errno:
            message = f"{message}: {os.strerror(self.errno)} (errno {self.errno})"
        super().__init__(message)


class NetlinkConnectionError(DropwatchError, ConnectionError):
    """
    Netlink socket could not be opened, bound or used.
    """


class FamilyUnavailable(DropwatchError):
    def __init__(self, family: str):
        self.family = family
        super().__init__(f"{family!r} generic netlink family not available")


class CommandError(NetlinkError):
    def __init__(self, command: str, errno: int = 0, detail: str = ""):
        self.command = command
        message = f"{command} command failed"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message, errno)


class SubscriptionError(NetlinkError):
    def __init__(self, group: int, errno: int = 0):
        self.group = group
        super().__init__(f"failed to join multicast group {group}", errno)


class ClientStateError(DropwatchError):
    """
    Operation not valid in the client's current state.
    """


class AttributeDecodeError(DropwatchError):
    """
    Attribute stream is structurally broken. Terminal for the whole buffer.
    """

    def __init__(self, reason: str, offset: int = 0, length: int = 0):
        self.reason = reason
        self.offset = offset
        self.length = length
        super().__init__(f"malformed attribute at offset {offset} of {length} bytes: {reason}")


class AttributeLengthError(DropwatchError):
    """
    A single attribute value has the wrong size for the requested type.

    Local to that attribute, the rest of the buffer is still readable.
    """

    def __init__(self, attr_type: int, expected: int, actual: int):
        self.attr_type = attr_type
        self.expected = expected
        self.actual = actual
        super().__init__(f"attribute {attr_type}: expected {expected} bytes, got {actual}")


class AlertDecodeError(DropwatchError):
    def __init__(self, reason: str, raw_length: int = 0):
        self.reason = reason
        self.raw_length = raw_length
        super().__init__(f"failed to decode alert ({raw_length} bytes): {reason}")


class DissectError(DropwatchError):
    """
    Structural fault inside one protocol layer.

    layer
      Name of the layer that failed to decode, e.g. IPv4.

    offset
      Byte offset of that layer inside the packet.
    """

    def __init__(self, layer: str, offset: int, reason: str):
        self.layer = layer
        self.offset = offset
        self.reason = reason
        super().__init__(f"{layer} at offset {offset}: {reason}")


class ExporterError(DropwatchError):
    pass


class ExporterConfigError(ExporterError):
    def __init__(self, exporter: str, reason: str):
        self.exporter = exporter
        super().__init__(f"invalid configuration for exporter {exporter!r}: {reason}")


class ExporterStateError(ExporterError):
    pass
