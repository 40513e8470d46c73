"""
Packet header dissector.

Turns the raw payload of a drop alert into a PacketSummary.
"""

from .dissector import dissect, dissect_packet

__all__ = ["dissect", "dissect_packet"]
