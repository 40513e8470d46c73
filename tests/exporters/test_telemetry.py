import asyncio
import json

import pytest
import pytest_asyncio

from dropwatch_mcp.core.config import TelemetryExporterConfig
from dropwatch_mcp.exporters.telemetry.exporter import TelemetryExporter, build_exporter, build_record, drop_type


class Sink:
    """
    Local TCP collector, one JSON batch per connection.
    """

    def __init__(self):
        self.batches = []
        self.received = asyncio.Event()
        self.server = None

    async def _handle(self, reader, writer):
        data = await reader.read()
        writer.close()
        self.batches.append(json.loads(data.decode("utf-8")))
        self.received.set()

    async def start(self):
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        return self.server.sockets[0].getsockname()[1]

    async def close(self):
        self.server.close()
        await self.server.wait_closed()


@pytest_asyncio.fixture
async def sink():
    s = Sink()
    await s.start()
    yield s
    await s.close()


def _exporter(sink, **kwargs):
    port = sink.server.sockets[0].getsockname()[1]
    cfg = TelemetryExporterConfig(conn_addr=f"127.0.0.1:{port}", device_ip="10.0.0.5", **kwargs)
    return TelemetryExporter(cfg)


def test_build_record(wire):
    rec = build_record(wire.write_msg(), "10.0.0.5")

    assert rec["dropType"] == "l2"
    assert rec["dropReason"] == "ingress_vlan_filter"
    assert rec["ingressPort"] == "swp1"
    assert rec["severity"] == "Notice"
    assert rec["deviceIP"] == "10.0.0.5"
    assert rec["timestamp"] == "1700000000.123456789"
    assert rec["message"] == "fwdDrop"
    assert rec["packet"]["packetType"] == "Transport"


def test_build_record_without_port_or_summary(wire):
    rec = build_record(wire.write_msg(ifname=None, ifindex=None, with_summary=False, timestamp_ns=None), "")
    assert rec["ingressPort"] == ""
    assert rec["packet"] is None
    assert rec["timestamp"] == "0.000000000"


def test_drop_type_mapping():
    assert drop_type("l3_drops") == "l3"
    assert drop_type("buffer_drops") == "buffer"
    assert drop_type("something_else") == "unknown"


@pytest.mark.asyncio
async def test_one_batch_per_interval(sink, wire):
    ex = _exporter(sink, send_interval=0.2)
    await ex.start()

    for trap in ("a", "b", "c"):
        ex.write(wire.write_msg(trap=trap))

    await asyncio.wait_for(sink.received.wait(), timeout=2.0)
    await asyncio.sleep(0.5)
    await ex.stop()

    assert len(sink.batches) == 1
    assert [r["dropReason"] for r in sink.batches[0]] == ["a", "b", "c"]
    status = ex.status()
    assert status["batches_sent"] == 1
    assert status["records_sent"] == 3
    assert status["pending"] == 0


@pytest.mark.asyncio
async def test_empty_interval_sends_nothing(sink):
    ex = _exporter(sink, send_interval=0.05)
    await ex.start()
    await asyncio.sleep(0.3)
    await ex.stop()

    assert sink.batches == []


@pytest.mark.asyncio
async def test_pending_batch_is_flushed_on_stop(sink, wire):
    ex = _exporter(sink, send_interval=60)
    await ex.start()
    ex.write(wire.write_msg(trap="a"))
    ex.write(wire.write_msg(trap="b"))
    await ex.stop()

    await asyncio.wait_for(sink.received.wait(), timeout=2.0)
    assert len(sink.batches) == 1
    assert len(sink.batches[0]) == 2


@pytest.mark.asyncio
async def test_pending_batch_dropped_when_flush_on_stop_disabled(sink, wire):
    ex = _exporter(sink, send_interval=60, flush_on_stop=False)
    await ex.start()
    ex.write(wire.write_msg())
    await ex.stop()

    assert sink.batches == []
    assert ex.status()["records_lost"] == 1


@pytest.mark.asyncio
async def test_unreachable_collector_loses_batch(wire):
    closed = Sink()
    port = await closed.start()
    await closed.close()

    ex = TelemetryExporter(TelemetryExporterConfig(conn_addr=f"127.0.0.1:{port}", send_interval=60, conn_timeout=1))
    await ex.start()
    ex.write(wire.write_msg())
    ex.write(wire.write_msg())
    await ex.stop()

    status = ex.status()
    assert status["batches_failed"] == 1
    assert status["records_lost"] == 2
    assert status["state"] == "stopped"


def test_build_exporter_rejects_bad_address():
    with pytest.raises(ValueError):
        build_exporter({"conn_addr": "no-port-here"})
