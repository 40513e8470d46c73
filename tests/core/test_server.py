import errno
import sys

import pytest

from dropwatch_mcp.core.agent import DropwatchAgent
from dropwatch_mcp.core.config import DropwatchConfig
from dropwatch_mcp.core.registry import ExporterRegistry
from dropwatch_mcp.core.server import DropwatchMCPServer
from dropwatch_mcp.netlink.dropmon import AlertMode, Command, DropMonitorClient


@pytest.fixture
def server(kernel, recording):
    registry = ExporterRegistry()
    registry.register(recording())
    client = DropMonitorClient(connection_factory=kernel.connect)
    agent = DropwatchAgent(DropwatchConfig(), client=client, registry=registry)
    return DropwatchMCPServer(agent=agent)


@pytest.mark.asyncio
async def test_tools_are_registered(server):
    names = {tool.name for tool in await server.mcp.list_tools()}
    assert names == {
        "list_exporters",
        "exporter_status",
        "monitor_status",
        "enable_monitoring",
        "disable_monitoring",
        "set_alert_mode",
        "set_trunc_len",
    }


@pytest.mark.asyncio
async def test_status_tools(server):
    await server.agent.start()

    assert server.list_exporters() == ["recording"]
    assert server.exporter_status("recording")["state"] == "running"
    assert server.exporter_status("missing")["ok"] is False
    assert server.monitor_status()["monitor"]["state"] == "receiving"

    await server.agent.stop()


@pytest.mark.asyncio
async def test_control_tools_reach_kernel(server, kernel):
    await server.agent.start()

    assert server.disable_monitoring(software=True, hardware=True)["ok"]
    assert not kernel.software and not kernel.hardware

    assert server.enable_monitoring(hardware=True) == {"ok": True, "software": False, "hardware": True}
    assert kernel.hardware and not kernel.software

    assert server.set_alert_mode("summary")["ok"]
    assert kernel.alert_mode == AlertMode.SUMMARY

    assert server.set_trunc_len(256)["ok"]
    assert kernel.trunc_len == 256

    await server.agent.stop()


@pytest.mark.asyncio
async def test_control_errors_are_returned(server, kernel):
    await server.agent.start()
    kernel.failures[Command.START] = errno.EOPNOTSUPP

    result = server.enable_monitoring(software=True)
    assert result["ok"] is False
    assert "START" in result["error"]

    assert server.set_alert_mode("verbose")["ok"] is False
    assert server.set_trunc_len(-1)["ok"] is False

    await server.agent.stop()


def test_control_before_start_reports_state(server):
    result = server.set_trunc_len(64)
    assert result["ok"] is False
    assert "not initialized" in result["error"]


@pytest.mark.asyncio
async def test_console_exporters_are_moved_off_stdout(kernel):
    config = DropwatchConfig(verbose=True, exporters={"alerts": {"kind": "console", "stream": "stdout"}})
    client = DropMonitorClient(connection_factory=kernel.connect)
    server = DropwatchMCPServer(agent=DropwatchAgent(config, client=client))
    await server.agent.start()

    assert server.list_exporters() == ["alerts", "console"]
    for name in ("alerts", "console"):
        ex = server.agent.registry.get(name)
        assert ex.config.stream == "stderr"
        assert ex.stream is sys.stderr

    await server.agent.stop()
