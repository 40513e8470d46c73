from __future__ import annotations

import asyncio
import signal
from typing import Any, Dict, List, Optional

import structlog

from dropwatch_mcp.netlink.dropmon import AlertMode, ClientState, DropMonitorClient

from .config import DropwatchConfig
from .errors import CommandError, ExporterError
from .pipeline import AlertProcessor
from .registry import ExporterRegistry
from .router import ExportRouter

log = structlog.get_logger(__name__)


class DropwatchAgent:
    """
    Owns process level wiring.

    Responsibilities:
      Build exporters from configuration and start them
      Initialize and configure the drop monitor
      Run the receive loop, the alert processor and the exporters
      Shut everything down in order on stop

    Startup order:
      exporters, drop monitor init + config + enable, receive loop, processor

    Shutdown order:
      receive loop (leaves the alert group, closes the alert queue),
      processor (routes what is left), exporters (drain and release),
      disable monitoring, close the netlink connections
    """

    def __init__(
        self,
        config: Optional[DropwatchConfig] = None,
        client: Optional[DropMonitorClient] = None,
        registry: Optional[ExporterRegistry] = None,
    ):
        self.config = config or DropwatchConfig()
        mon = self.config.monitor

        self.client = client or DropMonitorClient(
            request_timeout=mon.request_timeout,
            recv_buffer_size=mon.recv_buffer_size,
        )
        self.registry = registry or ExporterRegistry()
        self.router = ExportRouter()
        self.alerts: asyncio.Queue = asyncio.Queue(maxsize=mon.alert_queue_size)
        self.processor = AlertProcessor(self.alerts, self.router, dissect=mon.dissect)

        self.exporter_errors: List[ExporterError] = []
        self.config_errors: List[CommandError] = []
        self._running = False
        self._shutdown = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        mon = self.config.monitor

        self.exporter_errors = self.registry.load_from_config(self.config.exporter_sections())
        for ex in self.registry.instances():
            self.router.add(ex)
        started = await self.router.start_all()
        log.info("exporters_started", exporters=started, skipped=len(self.exporter_errors))

        try:
            self.client.init()
            self.config_errors = self.client.configure(AlertMode.parse(mon.alert_mode), mon.trunc_len)
            if mon.monitor_software or mon.monitor_hardware:
                self.client.enable_monitoring(mon.monitor_software, mon.monitor_hardware)
            await self.client.start(self.alerts)
        except Exception:
            await self.router.stop_all()
            self.client.close()
            raise

        await self.processor.start()
        self._running = True
        log.info("agent_started")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        mon = self.config.monitor

        await self.client.stop()
        # The receive loop closed the queue, let the processor route what is left.
        await self.processor.wait_closed()
        await self.processor.stop()
        await self.router.stop_all()

        if mon.disable_on_shutdown and self.client.state == ClientState.READY:
            try:
                self.client.disable_monitoring(True, True)
            except CommandError as e:
                log.warning("dropmon_disable_failed", error=str(e))
        self.client.close()
        log.info("agent_stopped")

    def request_shutdown(self) -> None:
        self._shutdown.set()

    async def run_until_signalled(self) -> None:
        """
        Start, wait for SIGINT or SIGTERM (or request_shutdown), stop.
        """
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_shutdown)

        try:
            await self.start()
            await self._shutdown.wait()
            log.info("agent_shutdown_requested")
        finally:
            await self.stop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "monitor": self.client.status(),
            "processor": self.processor.status(),
            "router": self.router.status(),
        }
