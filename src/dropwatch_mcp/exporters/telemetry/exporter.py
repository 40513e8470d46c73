from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional

from dropwatch_mcp.core.config import TelemetryExporterConfig
from dropwatch_mcp.core.exporter_base import BaseExporter, Exporter
from dropwatch_mcp.core.models import WriteMsg

# Trap group -> coarse drop type. Groups follow the devlink trap group names.
DROP_TYPES = {
    "l2_drops": "l2",
    "l3_drops": "l3",
    "l3_exceptions": "l3",
    "buffer_drops": "buffer",
    "acl_drops": "acl",
    "tunnel_drops": "tunnel",
}

SEVERITY = "Notice"
MESSAGE = "fwdDrop"


def drop_type(group: str) -> str:
    return DROP_TYPES.get(group, "unknown")


def build_record(msg: WriteMsg, device_ip: str) -> Dict[str, Any]:
    """
    One batch entry. Field names match what the collector side expects.
    """
    alert = msg.alert
    sec, nsec = alert.timestamp_parts()
    return {
        "dropType": drop_type(alert.group),
        "dropReason": alert.trap,
        "ingressPort": (alert.port.name if alert.port else None) or "",
        "severity": SEVERITY,
        "deviceIP": device_ip,
        "timestamp": f"{sec}.{nsec:09d}",
        "message": MESSAGE,
        "packet": msg.summary.to_dict() if msg.summary is not None else None,
    }


class TelemetryExporter(BaseExporter):
    """
    Batches drops and ships them as one JSON array per send interval.

    Behavior:
      Each message becomes a record in the pending batch.
      Every send_interval seconds, whether or not anything arrived, the whole
      pending batch is sent over a new TCP connection which is closed after
      the write. An empty batch sends nothing.

    Delivery is at most once. A failed send is logged and the batch is gone.
    """

    name = "telemetry"

    def __init__(self, config: TelemetryExporterConfig):
        super().__init__(config)
        self.flush_interval = float(config.send_interval)
        self._pending: List[Dict[str, Any]] = []

        self._batches_sent = 0
        self._records_sent = 0
        self._batches_failed = 0
        self._records_lost = 0

    async def _process(self, msg: WriteMsg) -> None:
        self._pending.append(build_record(msg, self.config.device_ip))

    async def _flush(self) -> None:
        if not self._pending:
            return

        batch = self._pending
        self._pending = []

        try:
            await self._send(json.dumps(batch).encode("utf-8"))
        except (OSError, asyncio.TimeoutError) as e:
            self._batches_failed += 1
            self._records_lost += len(batch)
            self.log.warning(
                "telemetry_send_failed",
                conn_addr=self.config.conn_addr,
                records=len(batch),
                error=str(e) or type(e).__name__,
            )
            return

        self._batches_sent += 1
        self._records_sent += len(batch)
        self.log.debug("telemetry_batch_sent", records=len(batch))

    async def _send(self, payload: bytes) -> None:
        cfg = self.config
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(cfg.host, cfg.port),
            timeout=cfg.conn_timeout,
        )
        try:
            writer.write(payload)
            await asyncio.wait_for(writer.drain(), timeout=cfg.conn_timeout)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    async def _close(self) -> None:
        if self.config.flush_on_stop:
            await self._flush()
        elif self._pending:
            self._records_lost += len(self._pending)
            self._pending = []

    def status(self) -> Dict[str, Any]:
        out = super().status()
        out.update(
            {
                "conn_addr": self.config.conn_addr,
                "send_interval": self.flush_interval,
                "pending": len(self._pending),
                "batches_sent": self._batches_sent,
                "records_sent": self._records_sent,
                "batches_failed": self._batches_failed,
                "records_lost": self._records_lost,
            }
        )
        return out


def build_exporter(section: Optional[Dict[str, Any]] = None) -> Exporter:
    return TelemetryExporter(TelemetryExporterConfig.model_validate(section or {}))
