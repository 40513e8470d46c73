"""
Generic netlink transport and the NET_DM drop monitor client.
"""

from .attributes import Attribute, AttributeDecoder, AttributeEncoder
from .dropmon import AlertMode, DropMonitorClient, decode_alert

__all__ = [
    "Attribute",
    "AttributeDecoder",
    "AttributeEncoder",
    "AlertMode",
    "DropMonitorClient",
    "decode_alert",
]
