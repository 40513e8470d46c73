from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from dropwatch_mcp.netlink.dropmon import AlertMode

from .agent import DropwatchAgent
from .config import DropwatchConfig
from .errors import DropwatchError


class DropwatchMCPServer:
    """
    MCP control surface for a running drop monitor agent.

    Responsibilities:
      Run the agent alongside the MCP stdio server
      Expose status tools for the monitor and every exporter
      Expose control tools to toggle monitoring and reconfigure NET_DM

    Control tools return {"ok": False, "error": ...} instead of raising.

    stdout carries the JSON-RPC stream, console exporters are moved to stderr.
    """

    def __init__(self, config: Optional[DropwatchConfig] = None, agent: Optional[DropwatchAgent] = None):
        self.agent = agent or DropwatchAgent(config)
        self.agent.config.console_stream = "stderr"
        self.mcp = FastMCP("dropwatch_mcp")
        self._register_tools()

    def _register_tools(self) -> None:
        for tool in (
            self.list_exporters,
            self.exporter_status,
            self.monitor_status,
            self.enable_monitoring,
            self.disable_monitoring,
            self.set_alert_mode,
            self.set_trunc_len,
        ):
            self.mcp.add_tool(tool)

    def _control(self, fn: Callable[[], None], **params: Any) -> Dict[str, Any]:
        try:
            fn()
        except (DropwatchError, KeyError, ValueError) as e:
            return {"ok": False, "error": str(e), **params}
        return {"ok": True, **params}

    def list_exporters(self) -> List[str]:
        """Names of the running exporters."""
        return sorted(self.agent.router.status()["exporters"].keys())

    def exporter_status(self, name: str) -> Dict[str, Any]:
        """Queue state and counters of one exporter."""
        exporters = self.agent.router.status()["exporters"]
        if name not in exporters:
            return {"ok": False, "error": f"exporter not running {name}"}
        return exporters[name]

    def monitor_status(self) -> Dict[str, Any]:
        """Drop monitor, alert processor and router counters."""
        return self.agent.status()

    def enable_monitoring(self, software: bool = False, hardware: bool = False) -> Dict[str, Any]:
        """Start reporting software and/or hardware drops."""
        client = self.agent.client
        return self._control(lambda: client.enable_monitoring(software, hardware), software=software, hardware=hardware)

    def disable_monitoring(self, software: bool = False, hardware: bool = False) -> Dict[str, Any]:
        """Stop reporting software and/or hardware drops."""
        client = self.agent.client
        return self._control(lambda: client.disable_monitoring(software, hardware), software=software, hardware=hardware)

    def set_alert_mode(self, mode: str) -> Dict[str, Any]:
        """Switch NET_DM between summary and packet alerts."""
        client = self.agent.client
        return self._control(lambda: client.set_alert_mode(AlertMode.parse(mode)), mode=mode)

    def set_trunc_len(self, length: int) -> Dict[str, Any]:
        """Truncate reported packets to length bytes."""
        client = self.agent.client
        return self._control(lambda: client.set_trunc_len(length), length=length)

    async def serve(self) -> None:
        await self.agent.start()
        try:
            await self.mcp.run_stdio_async()
        finally:
            await self.agent.stop()

    def run(self) -> None:
        asyncio.run(self.serve())
