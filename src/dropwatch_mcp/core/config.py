"""
Typed configuration.

All configuration is pydantic validated and passed into constructors
explicitly. Nothing in the package reads global configuration state.

Exporter sections stay as raw dicts on DropwatchConfig. Each exporter
factory validates its own section, so one broken section only disables that
exporter instead of failing the whole agent.
"""

from __future__ import annotations

import json
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_ENV = "DROPWATCH_CONFIG"
DEFAULT_CONFIG_FILE_ENV = "DROPWATCH_CONFIG_FILE"


class OverloadPolicy(str, Enum):
    DROP_NEWEST = "drop_newest"
    DROP_OLDEST = "drop_oldest"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: Literal["console", "json"] = "console"


class MonitorConfig(BaseModel):
    """
    Drop monitor settings.

    trunc_len
      Ask the kernel to truncate payloads to this many bytes. None keeps the
      kernel default.

    monitor_software, monitor_hardware
      Origins to enable at start. Both are disabled again on shutdown when
      disable_on_shutdown is set.
    """

    alert_mode: Literal["summary", "packet"] = "packet"
    trunc_len: Optional[int] = Field(default=None, ge=0, le=0xFFFFFFFF)
    monitor_software: bool = True
    monitor_hardware: bool = True
    disable_on_shutdown: bool = True
    request_timeout: float = Field(default=5.0, gt=0)
    recv_buffer_size: int = Field(default=1 << 20, ge=4096)
    alert_queue_size: int = Field(default=4096, ge=1)
    dissect: bool = True


class ExporterQueueConfig(BaseModel):
    """
    Settings every exporter shares.

    queue_size
      Capacity of the exporter's private inbound queue.

    overload_policy
      What to do when the queue is full: reject the new message, or evict the
      oldest queued one. Either way the loss is counted.

    drain_on_stop
      Process queued messages on stop instead of discarding them.
    """

    queue_size: int = Field(default=1024, ge=1)
    overload_policy: OverloadPolicy = OverloadPolicy.DROP_NEWEST
    drain_on_stop: bool = True


class ConsoleExporterConfig(ExporterQueueConfig):
    tabular: bool = False
    stream: Literal["stdout", "stderr"] = "stdout"


class PcapExporterConfig(ExporterQueueConfig):
    file_name: str

    @field_validator("file_name")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("file_name must not be empty")
        return v


class TelemetryExporterConfig(ExporterQueueConfig):
    """
    Batched JSON over TCP.

    conn_addr
      host:port of the collector, for example a telegraf socket_listener.
      IPv6 hosts are written in brackets, [::1]:8094.
    """

    device_ip: str = ""
    conn_addr: str
    conn_timeout: float = Field(default=5.0, gt=0)
    send_interval: float = Field(default=10.0, gt=0)
    flush_on_stop: bool = True

    @field_validator("conn_addr")
    @classmethod
    def _host_port(cls, v: str) -> str:
        split_host_port(v)
        return v

    @property
    def host(self) -> str:
        return split_host_port(self.conn_addr)[0]

    @property
    def port(self) -> int:
        return split_host_port(self.conn_addr)[1]


def split_host_port(addr: str) -> tuple:
    addr = addr.strip()
    host, sep, port = addr.rpartition(":")
    if not sep or not host or not port:
        raise ValueError(f"address {addr!r} is not host:port")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port_num = int(port)
    except ValueError:
        raise ValueError(f"address {addr!r} has a non numeric port") from None
    if not 0 < port_num < 65536:
        raise ValueError(f"address {addr!r} port out of range")
    return host, port_num


class DropwatchConfig(BaseModel):
    """
    Top level configuration.

    exporters maps exporter kind to its raw section, for example:
      {"pcap": {"file_name": "/tmp/drops.pcap"},
       "telemetry": {"conn_addr": "127.0.0.1:8094", "device_ip": "10.0.0.1"}}

    verbose adds a console exporter even when none is configured.

    console_stream, when set, overrides the stream of every console exporter.
    """

    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    verbose: bool = False
    console_stream: Optional[Literal["stdout", "stderr"]] = None
    exporters: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    def exporter_sections(self) -> Dict[str, Dict[str, Any]]:
        sections = {name: dict(section or {}) for name, section in self.exporters.items()}
        if self.verbose and "console" not in sections:
            sections["console"] = {}
        if self.console_stream is not None:
            for name, section in sections.items():
                if "import" not in section and section.get("kind", name) == "console":
                    section["stream"] = self.console_stream
        return sections

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "DropwatchConfig":
        """
        Load from DROPWATCH_CONFIG (inline JSON) or DROPWATCH_CONFIG_FILE (path
        to a JSON file). Inline JSON wins. Defaults when neither is set.
        """
        env = os.environ if environ is None else environ

        raw = env.get(DEFAULT_CONFIG_ENV)
        if raw:
            return cls.model_validate(json.loads(raw))

        path = env.get(DEFAULT_CONFIG_FILE_ENV)
        if path:
            return cls.model_validate_json(Path(path).read_text(encoding="utf-8"))

        return cls()
