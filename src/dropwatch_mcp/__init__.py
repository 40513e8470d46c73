"""
dropwatch_mcp

Kernel packet drop monitor with pluggable exporters and an MCP control surface.

Core ideas
1. The netlink layer talks generic netlink to the NET_DM family
2. Drop alerts are decoded into AlertEvent and dissected into PacketSummary
3. The router fans every alert out to exporters that never block each other
"""

__all__ = ["core", "netlink", "dissector", "exporters", "cli"]
