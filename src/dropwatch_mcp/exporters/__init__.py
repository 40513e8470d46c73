"""
Exporters are pluggable sinks loaded at runtime.

Each exporter must expose a build_exporter factory in its exporter module.
"""

__all__ = [
    "console",
    "pcap",
    "telemetry",
]
