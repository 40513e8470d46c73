from __future__ import annotations

import asyncio

from dropwatch_mcp.core.agent import DropwatchAgent
from dropwatch_mcp.core.config import DropwatchConfig
from dropwatch_mcp.core.logging import setup_logging


def main() -> None:
    """
    Run the drop monitor with the exporters from DROPWATCH_CONFIG, without MCP.

    Example:
      export DROPWATCH_CONFIG='{
        "monitor": {"alert_mode": "packet", "trunc_len": 128},
        "exporters": {
          "pcap": {"file_name": "/tmp/drops.pcap"},
          "telemetry": {"device_ip": "10.0.0.5", "conn_addr": "127.0.0.1:5140", "send_interval": 10}
        }
      }'
      python -m dropwatch_mcp.cli.run_agent

    Stops on SIGINT or SIGTERM. Needs CAP_NET_ADMIN to talk to NET_DM.
    """
    config = DropwatchConfig.from_env()
    setup_logging(config.logging)

    agent = DropwatchAgent(config)
    asyncio.run(agent.run_until_signalled())


if __name__ == "__main__":
    main()
