from __future__ import annotations

import asyncio
import struct
import time
from typing import Any, Dict, Optional

from scapy.data import DLT_EN10MB
from scapy.utils import RawPcapWriter

from dropwatch_mcp.core.config import PcapExporterConfig
from dropwatch_mcp.core.errors import ExporterError
from dropwatch_mcp.core.exporter_base import BaseExporter, Exporter
from dropwatch_mcp.core.models import WriteMsg

PCAP_SNAPLEN = 65536


class PcapExporter(BaseExporter):
    """
    Writes every dropped packet to a classic pcap file.

    Global header is written once on start: link type Ethernet, snaplen 65536.
    Each record carries the drop timestamp, the captured length and the
    original length reported by the kernel. Classic pcap records have no
    interface field, the ingress ifindex only shows up in failure logs.

    The file is truncated on start, one exporter instance owns one file.
    File calls run in a worker thread, off the event loop.
    """

    name = "pcap"

    def __init__(self, config: PcapExporterConfig):
        super().__init__(config)
        self.file_name = config.file_name
        self._writer: Optional[RawPcapWriter] = None
        self._written = 0
        self._write_errors = 0

    def _create(self) -> RawPcapWriter:
        writer = RawPcapWriter(self.file_name, linktype=DLT_EN10MB, snaplen=PCAP_SNAPLEN, sync=True)
        writer.write_header(None)
        return writer

    async def _open(self) -> None:
        try:
            self._writer = await asyncio.to_thread(self._create)
        except OSError as e:
            raise ExporterError(f"error creating pcap file {self.file_name}: {e}") from e
        self.log.info("pcap_file_opened", file_name=self.file_name)

    async def _process(self, msg: WriteMsg) -> None:
        if self._writer is None:
            return

        alert = msg.alert
        packet = alert.packet
        if alert.timestamp_ns is not None:
            sec, nsec = alert.timestamp_parts()
            usec = nsec // 1000
        else:
            now = time.time()
            sec, usec = int(now), int((now % 1) * 1_000_000)

        try:
            await asyncio.to_thread(
                self._writer.write_packet,
                packet.payload,
                sec=sec,
                usec=usec,
                caplen=packet.length,
                wirelen=packet.wire_length,
            )
        except (OSError, ValueError, struct.error) as e:
            # One bad record must not stop the capture.
            self._write_errors += 1
            self.log.warning(
                "pcap_write_failed",
                file_name=self.file_name,
                error=str(e),
                ifindex=alert.port.ifindex if alert.port else None,
            )
            return

        self._written += 1

    async def _close(self) -> None:
        if self._writer is not None:
            writer, self._writer = self._writer, None
            await asyncio.to_thread(writer.close)

    def status(self) -> Dict[str, Any]:
        out = super().status()
        out.update({"file_name": self.file_name, "written": self._written, "write_errors": self._write_errors})
        return out


def build_exporter(section: Optional[Dict[str, Any]] = None) -> Exporter:
    return PcapExporter(PcapExporterConfig.model_validate(section or {}))
