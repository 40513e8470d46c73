from __future__ import annotations

import asyncio
from collections import Counter
from typing import Any, Dict, Optional

import structlog

from dropwatch_mcp.dissector import dissect_packet

from .models import AlertEvent, WriteMsg
from .router import ExportRouter

log = structlog.get_logger(__name__)


class AlertProcessor:
    """
    Consumes decoded alerts, dissects their payload and routes the result.

    Runs as one task between the drop monitor receive loop and the router.
    It ends when the receive loop closes the alert queue (None sentinel)
    or when stop() is called.

    Dissection is synchronous. It is bounded by the captured packet length
    and only reads headers, so it does not need its own executor.
    """

    def __init__(self, alerts: asyncio.Queue, router: ExportRouter, dissect: bool = True):
        self.alerts = alerts
        self.router = router
        self.dissect = bool(dissect)
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()

        self._processed = 0
        self._dissect_errors = 0
        self._types: Counter = Counter()

    def process(self, alert: AlertEvent) -> WriteMsg:
        summary = None
        if self.dissect:
            summary, error = dissect_packet(alert.packet.payload)
            self._types[summary.packet_type.value] += 1
            if error is not None:
                self._dissect_errors += 1
                log.info(
                    "dissect_stopped",
                    layer=error.layer,
                    offset=error.offset,
                    reason=error.reason,
                    captured=alert.packet.length,
                    trap=alert.trap,
                )

        msg = WriteMsg(alert=alert, summary=summary)
        self.router.route(msg)
        self._processed += 1
        return msg

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop.set()
        await self._task
        self._task = None

    async def wait_closed(self) -> None:
        """
        Wait until the alert queue is closed and everything in it was routed.
        """
        if self._task is not None:
            await asyncio.shield(self._task)

    async def _run(self) -> None:
        stop_wait = asyncio.ensure_future(self._stop.wait())
        try:
            while True:
                get = asyncio.ensure_future(self.alerts.get())
                done, _ = await asyncio.wait({get, stop_wait}, return_when=asyncio.FIRST_COMPLETED)

                if get not in done:
                    get.cancel()
                    await asyncio.gather(get, return_exceptions=True)
                    if not get.cancelled() and get.exception() is None and get.result() is not None:
                        self.process(get.result())
                    break

                alert = get.result()
                if alert is None:
                    break
                self.process(alert)
        finally:
            stop_wait.cancel()
            await asyncio.gather(stop_wait, return_exceptions=True)
            log.info("alert_processor_stopped", processed=self._processed, dissect_errors=self._dissect_errors)

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._task is not None and not self._task.done(),
            "processed": self._processed,
            "dissect_errors": self._dissect_errors,
            "packet_types": dict(self._types),
        }
