from __future__ import annotations

from dropwatch_mcp.core.config import DropwatchConfig
from dropwatch_mcp.core.logging import setup_logging
from dropwatch_mcp.core.server import DropwatchMCPServer


def main() -> None:
    """
    Run the drop monitor behind an MCP stdio server.

    Configuration comes from DROPWATCH_CONFIG (JSON) or DROPWATCH_CONFIG_FILE.
    Logs go to stderr so stdout stays free for the MCP transport.

      python -m dropwatch_mcp.cli.run_server
    """
    config = DropwatchConfig.from_env()
    setup_logging(config.logging)

    server = DropwatchMCPServer(config)
    server.run()


if __name__ == "__main__":
    main()
