from __future__ import annotations

import asyncio
import json
import sys
from typing import Any, Dict, List, Optional, TextIO

from dropwatch_mcp.core.config import ConsoleExporterConfig
from dropwatch_mcp.core.exporter_base import BaseExporter, Exporter
from dropwatch_mcp.core.models import WriteMsg


def _fmt(value: Any) -> str:
    return "-" if value is None else str(value)


def render_alert(msg: WriteMsg, tabular: bool = False) -> str:
    """
    Render one message as a text block.

    Default layout is one "key: value" line per alert field, followed by the
    packet summary as JSON. tabular puts the alert on a single tab separated
    line instead.
    """
    alert = msg.alert
    packet = alert.packet
    port = alert.port
    ifindex = port.ifindex if port else None
    port_name = port.name if port else None
    ts = alert.timestamp.isoformat() if alert.timestamp else None
    proto = f"{packet.protocol:#06x}" if packet.protocol is not None else None

    if tabular:
        cols = [
            _fmt(ts),
            alert.origin.value,
            f"{alert.trap} ({alert.group})",
            f"{_fmt(port_name)}/{_fmt(ifindex)}",
            _fmt(proto),
            f"{packet.length}/{_fmt(packet.orig_length)}",
        ]
        if msg.summary is not None:
            cols.append(json.dumps(msg.summary.to_dict(), separators=(",", ":")))
        return "\t".join(cols) + "\n"

    lines: List[str] = [
        f"drop at: {alert.trap} ({alert.group})",
        f"origin: {alert.origin.value}",
        f"input port ifindex: {_fmt(ifindex)}",
        f"input port name: {_fmt(port_name)}",
        f"timestamp: {_fmt(ts)}",
        f"protocol: {_fmt(proto)}",
        f"length: {packet.length}",
        f"original length: {_fmt(packet.orig_length)}",
    ]
    if msg.summary is not None:
        lines.append(f"Packet: {json.dumps(msg.summary.to_dict())}")
    return "\n".join(lines) + "\n\n"


class ConsoleExporter(BaseExporter):
    """
    Prints every drop to a text stream, stdout by default.

    Writes run in a worker thread, off the event loop.
    """

    name = "console"

    def __init__(self, config: Optional[ConsoleExporterConfig] = None, stream: Optional[TextIO] = None):
        super().__init__(config or ConsoleExporterConfig())
        self.tabular = bool(self.config.tabular)
        self._stream = stream

    @property
    def stream(self) -> TextIO:
        if self._stream is not None:
            return self._stream
        return sys.stderr if self.config.stream == "stderr" else sys.stdout

    def _emit(self, text: str) -> None:
        stream = self.stream
        stream.write(text)
        stream.flush()

    async def _process(self, msg: WriteMsg) -> None:
        await asyncio.to_thread(self._emit, render_alert(msg, tabular=self.tabular))


def build_exporter(section: Optional[Dict[str, Any]] = None) -> Exporter:
    return ConsoleExporter(ConsoleExporterConfig.model_validate(section or {}))
