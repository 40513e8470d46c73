"""
Core modules shared by the netlink client and the exporters.

Keep netlink wire formats and sink specifics out of this package. The agent
and server modules wire those in and are imported directly.
"""

from .models import AlertEvent, PacketSummary, WriteMsg
from .router import ExportRouter
from .registry import ExporterRegistry

__all__ = ["AlertEvent", "PacketSummary", "WriteMsg", "ExportRouter", "ExporterRegistry"]
