from __future__ import annotations

from typing import Any, Dict, Iterable, List

import structlog

from .errors import DropwatchError
from .exporter_base import Exporter
from .models import WriteMsg

log = structlog.get_logger(__name__)


class ExportRouter:
    """
    Single fan-out point between the alert processor and the exporters.

    route() hands the same WriteMsg to every started exporter through the
    exporter's own non-blocking write. A full or stuck exporter only loses
    its own messages, according to its overload policy, and never delays
    the others. Routing does not wait for processing.
    """

    def __init__(self, exporters: Iterable[Exporter] = ()):
        self._pending: List[Exporter] = list(exporters)
        self._exporters: List[Exporter] = []
        self._routed = 0
        self._deliveries = 0

    @property
    def exporters(self) -> List[Exporter]:
        return list(self._exporters)

    def add(self, exporter: Exporter) -> None:
        self._pending.append(exporter)

    async def start_all(self) -> List[str]:
        """
        Start every added exporter. One that fails to start is logged and
        left out, the others still start. Returns names of started exporters.
        """
        started: List[str] = []
        pending, self._pending = self._pending, []

        for ex in pending:
            try:
                await ex.start()
            except (DropwatchError, OSError) as e:
                log.error("exporter_start_failed", exporter=ex.name, error=str(e))
                continue
            self._exporters.append(ex)
            started.append(ex.name)

        return started

    def route(self, msg: WriteMsg) -> int:
        """
        Offer msg to every exporter. Returns how many accepted it.
        """
        self._routed += 1
        accepted = 0
        for ex in self._exporters:
            if ex.write(msg):
                accepted += 1
        self._deliveries += accepted
        return accepted

    async def stop_all(self) -> None:
        exporters, self._exporters = self._exporters, []
        for ex in exporters:
            try:
                await ex.stop()
            except (DropwatchError, OSError) as e:
                log.error("exporter_stop_failed", exporter=ex.name, error=str(e))

    def status(self) -> Dict[str, Any]:
        return {
            "routed": self._routed,
            "deliveries": self._deliveries,
            "exporters": {ex.name: ex.status() for ex in self._exporters},
        }
