from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import structlog

from .config import ExporterQueueConfig, OverloadPolicy
from .errors import ExporterStateError
from .models import WriteMsg


class ExporterState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


@runtime_checkable
class Exporter(Protocol):
    """
    Required interface for an exporter plugin.

    An exporter is responsible for
    1. Owning its sink (file, socket, stream) between start and stop
    2. Accepting WriteMsg objects without ever blocking the caller
    3. Reporting counters through status

    The router never imports specific exporters directly.
    They are loaded by the registry using import paths.
    """

    name: str

    async def start(self) -> None:
        """
        Open the sink and start processing. Calling it twice is an error.
        """
        ...

    async def stop(self) -> None:
        """
        Drain or discard queued messages, release the sink. Terminal.
        """
        ...

    def write(self, msg: WriteMsg) -> bool:
        """
        Enqueue without blocking. False means the message was not accepted.
        """
        ...

    def status(self) -> Dict[str, Any]:
        """
        Return quick health and counters. Must be fast and side effect free.
        """
        ...


class BaseExporter:
    """
    Queue, lifecycle and processing loop shared by all exporters.

    Subclasses implement _process and optionally _open, _close and, for
    periodic work, flush_interval plus _flush.

    Lifecycle:
      CREATED --start--> RUNNING --stop--> DRAINING --> STOPPED

    The loop waits on one asyncio.wait point for any of:
      an item in the queue
      the stop event
      the flush timer, when flush_interval is set
    """

    name = "base"

    # Seconds between _flush calls. None disables the timer.
    flush_interval: Optional[float] = None

    def __init__(self, config: Optional[ExporterQueueConfig] = None):
        self.config = config or ExporterQueueConfig()

        self._state = ExporterState.CREATED
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()

        self._accepted = 0
        self._processed = 0
        self._errors = 0
        self._dropped_newest = 0
        self._dropped_oldest = 0
        self._rejected = 0
        self._discarded = 0

    @property
    def log(self):
        return structlog.get_logger(__name__).bind(exporter=self.name)

    @property
    def state(self) -> ExporterState:
        return self._state

    async def _open(self) -> None:
        pass

    async def _close(self) -> None:
        pass

    async def _process(self, msg: WriteMsg) -> None:
        raise NotImplementedError

    async def _flush(self) -> None:
        pass

    async def start(self) -> None:
        if self._state != ExporterState.CREATED:
            raise ExporterStateError(f"exporter {self.name} already started (state {self._state.value})")

        await self._open()
        self._queue = asyncio.Queue(maxsize=self.config.queue_size)
        self._stop.clear()
        self._state = ExporterState.RUNNING
        self._task = asyncio.create_task(self._run())
        self.log.info("exporter_started", queue_size=self.config.queue_size, policy=self.config.overload_policy.value)

    async def stop(self) -> None:
        """
        Idempotent. A never started exporter goes straight to STOPPED.
        """
        if self._state == ExporterState.CREATED:
            self._state = ExporterState.STOPPED
            return
        if self._state != ExporterState.RUNNING:
            if self._task is not None:
                await asyncio.shield(self._task)
            return

        self._state = ExporterState.DRAINING
        self._stop.set()
        if self._task is not None:
            await self._task

    def write(self, msg: WriteMsg) -> bool:
        if self._state != ExporterState.RUNNING or self._queue is None:
            self._rejected += 1
            return False

        try:
            self._queue.put_nowait(msg)
        except asyncio.QueueFull:
            if self.config.overload_policy == OverloadPolicy.DROP_NEWEST:
                self._dropped_newest += 1
                return False
            self._queue.get_nowait()
            self._queue.put_nowait(msg)
            self._dropped_oldest += 1

        self._accepted += 1
        return True

    async def _handle(self, msg: WriteMsg) -> None:
        try:
            await self._process(msg)
            self._processed += 1
        except Exception as e:
            self._errors += 1
            self.log.warning("exporter_process_failed", error=str(e), trap=msg.alert.trap)

    async def _run_flush(self) -> None:
        try:
            await self._flush()
        except Exception as e:
            self._errors += 1
            self.log.warning("exporter_flush_failed", error=str(e))

    async def _run(self) -> None:
        assert self._queue is not None
        loop = asyncio.get_running_loop()
        stop_wait = asyncio.ensure_future(self._stop.wait())
        deadline = loop.time() + self.flush_interval if self.flush_interval else None

        try:
            while True:
                get = asyncio.ensure_future(self._queue.get())
                timeout = max(0.0, deadline - loop.time()) if deadline is not None else None
                done, _ = await asyncio.wait({get, stop_wait}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)

                if get in done:
                    await self._handle(get.result())
                else:
                    get.cancel()
                    await asyncio.gather(get, return_exceptions=True)
                    # get may have won the race against cancel
                    if not get.cancelled() and get.exception() is None:
                        await self._handle(get.result())

                if deadline is not None and loop.time() >= deadline:
                    await self._run_flush()
                    deadline = loop.time() + self.flush_interval

                if stop_wait in done:
                    break

            await self._drain()
        finally:
            stop_wait.cancel()
            await asyncio.gather(stop_wait, return_exceptions=True)
            try:
                await self._close()
            except Exception as e:
                self.log.warning("exporter_close_failed", error=str(e))
            self._state = ExporterState.STOPPED
            self.log.info("exporter_stopped", **self._counters())

    async def _drain(self) -> None:
        assert self._queue is not None
        if self.config.drain_on_stop:
            while not self._queue.empty():
                await self._handle(self._queue.get_nowait())
        else:
            self._discarded += self._queue.qsize()
            while not self._queue.empty():
                self._queue.get_nowait()

    def _counters(self) -> Dict[str, int]:
        return {
            "accepted": self._accepted,
            "processed": self._processed,
            "errors": self._errors,
            "dropped_newest": self._dropped_newest,
            "dropped_oldest": self._dropped_oldest,
            "rejected": self._rejected,
            "discarded": self._discarded,
        }

    def status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "queued": self._queue.qsize() if self._queue is not None else 0,
            "queue_size": self.config.queue_size,
            "overload_policy": self.config.overload_policy.value,
            **self._counters(),
        }
