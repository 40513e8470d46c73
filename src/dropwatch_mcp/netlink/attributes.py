"""
Netlink attribute (TLV) codec.

Wire layout of one attribute, host byte order:
  nla_len(2)   length of header plus value, without padding
  nla_type(2)  attribute id, top two bits are flags
  value        nla_len - 4 bytes
  padding      up to the next 4 byte boundary

Flags carried in nla_type:
  bit 15 NLA_F_NESTED         value is itself an attribute stream
  bit 14 NLA_F_NET_BYTEORDER  integer value is big endian
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Callable, Iterator, List, Union

from dropwatch_mcp.core.errors import AttributeDecodeError, AttributeLengthError

NLA_HDRLEN = 4
NLA_ALIGNTO = 4

NLA_F_NESTED = 1 << 15
NLA_F_NET_BYTEORDER = 1 << 14
NLA_TYPE_MASK = ~(NLA_F_NESTED | NLA_F_NET_BYTEORDER) & 0xFFFF


def nla_align(length: int) -> int:
    return (length + NLA_ALIGNTO - 1) & ~(NLA_ALIGNTO - 1)


@dataclass(frozen=True)
class Attribute:
    """
    One decoded attribute.

    type is the id with flag bits masked off, so callers can switch on it
    directly. raw_type keeps the id exactly as received.
    """

    raw_type: int
    data: bytes

    @property
    def type(self) -> int:
        return self.raw_type & NLA_TYPE_MASK

    @property
    def is_nested(self) -> bool:
        return bool(self.raw_type & NLA_F_NESTED)

    @property
    def net_byteorder(self) -> bool:
        return bool(self.raw_type & NLA_F_NET_BYTEORDER)

    def _unpack(self, fmt: str) -> int:
        size = struct.calcsize("=" + fmt)
        if len(self.data) != size:
            raise AttributeLengthError(self.type, size, len(self.data))
        order = "!" if self.net_byteorder else "="
        return struct.unpack(order + fmt, self.data)[0]

    def uint8(self) -> int:
        return self._unpack("B")

    def uint16(self) -> int:
        return self._unpack("H")

    def uint32(self) -> int:
        return self._unpack("I")

    def uint64(self) -> int:
        return self._unpack("Q")

    def string(self) -> str:
        # Kernel strings are NUL terminated, anything after the first NUL is padding.
        raw = self.data.split(b"\x00", 1)[0]
        return raw.decode("utf-8", errors="replace")

    def bytes(self) -> bytes:
        return bytes(self.data)

    def flag(self) -> bool:
        if self.data:
            raise AttributeLengthError(self.type, 0, len(self.data))
        return True

    def nested(self) -> "AttributeDecoder":
        return AttributeDecoder(self.data)


class AttributeDecoder:
    """
    Lazy iterator over an attribute stream.

    Iteration yields Attribute objects in wire order. The first structurally
    broken TLV ends iteration with a single AttributeDecodeError, nothing
    past it is yielded and nothing outside the buffer is read.

    Unknown ids are yielded like any other attribute; consumers skip the
    ones they do not understand.
    """

    def __init__(self, data: Union[bytes, bytearray, memoryview]):
        self._data = bytes(data)

    def __len__(self) -> int:
        return len(self._data)

    def __iter__(self) -> Iterator[Attribute]:
        data = self._data
        end = len(data)
        off = 0

        while off < end:
            if end - off < NLA_HDRLEN:
                raise AttributeDecodeError("truncated attribute header", off, end)

            nla_len, nla_type = struct.unpack_from("=HH", data, off)
            if nla_len < NLA_HDRLEN:
                raise AttributeDecodeError(f"invalid attribute length {nla_len}", off, end)
            if off + nla_len > end:
                raise AttributeDecodeError(
                    f"attribute length {nla_len} exceeds remaining {end - off} bytes", off, end
                )

            yield Attribute(raw_type=nla_type, data=data[off + NLA_HDRLEN : off + nla_len])

            # The last attribute may legitimately omit its trailing padding.
            off = min(off + nla_align(nla_len), end)

    def decode_all(self) -> List[Attribute]:
        return list(self)


class AttributeEncoder:
    """
    Builds an attribute stream. Mostly used for outgoing commands and tests.
    """

    def __init__(self) -> None:
        self._chunks: List[bytes] = []

    def _put(self, attr_type: int, value: bytes) -> "AttributeEncoder":
        nla_len = NLA_HDRLEN + len(value)
        if nla_len > 0xFFFF:
            raise ValueError(f"attribute {attr_type} too large: {len(value)} bytes")
        chunk = struct.pack("=HH", nla_len, attr_type & 0xFFFF) + value
        self._chunks.append(chunk.ljust(nla_align(nla_len), b"\x00"))
        return self

    def uint8(self, attr_type: int, value: int) -> "AttributeEncoder":
        return self._put(attr_type, struct.pack("=B", value))

    def uint16(self, attr_type: int, value: int) -> "AttributeEncoder":
        return self._put(attr_type, struct.pack("=H", value))

    def uint32(self, attr_type: int, value: int) -> "AttributeEncoder":
        return self._put(attr_type, struct.pack("=I", value))

    def uint64(self, attr_type: int, value: int) -> "AttributeEncoder":
        return self._put(attr_type, struct.pack("=Q", value))

    def string(self, attr_type: int, value: str) -> "AttributeEncoder":
        return self._put(attr_type, value.encode("utf-8") + b"\x00")

    def bytes(self, attr_type: int, value: bytes) -> "AttributeEncoder":
        return self._put(attr_type, bytes(value))

    def flag(self, attr_type: int) -> "AttributeEncoder":
        return self._put(attr_type, b"")

    def nested(self, attr_type: int, build: Callable[["AttributeEncoder"], None]) -> "AttributeEncoder":
        inner = AttributeEncoder()
        build(inner)
        return self._put(attr_type | NLA_F_NESTED, inner.encode())

    def encode(self) -> bytes:
        return b"".join(self._chunks)
