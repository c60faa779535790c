"""
RabbitMQ broker session for relay, built on pika's BlockingConnection.
Provides:
- Lazily (re)connected sessions handing out channels
- Publisher confirms routed through the wait loop
- Batch publishing
- Manual acknowledgement consumers
"""

from .helper import connection_parameters, message_properties
from .models import ConnectionSettings
from .session import PikaChannel, PikaSession

__all__ = [
    "ConnectionSettings",
    "PikaChannel",
    "PikaSession",
    "connection_parameters",
    "message_properties",
]
