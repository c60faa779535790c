import ssl
import time
import uuid
from typing import Any, Dict, Optional

import pika

from .models import ConnectionSettings

PERSISTENT_DELIVERY_MODE = 2


def generate_message_id() -> str:
    return str(uuid.uuid4())


def message_properties(
    message_id: Optional[str] = None,
    content_type: Optional[str] = None,
    headers: Optional[Dict[str, Any]] = None,
) -> pika.BasicProperties:
    return pika.BasicProperties(
        message_id=message_id or generate_message_id(),
        content_type=content_type or "application/json",
        delivery_mode=PERSISTENT_DELIVERY_MODE,
        timestamp=int(time.time()),
        headers=headers,
    )


def connection_parameters(settings: ConnectionSettings) -> pika.ConnectionParameters:
    ssl_options = None
    if settings.ssl_enabled:
        context = ssl.create_default_context(cafile=settings.ssl_ca_certs)
        ssl_options = pika.SSLOptions(context, settings.host)

    return pika.ConnectionParameters(
        host=settings.host,
        port=settings.port,
        virtual_host=settings.virtual_host,
        credentials=pika.PlainCredentials(settings.username, settings.password),
        connection_attempts=settings.connection_attempts,
        retry_delay=settings.retry_delay,
        socket_timeout=settings.socket_timeout,
        heartbeat=settings.heartbeat,
        blocked_connection_timeout=settings.blocked_connection_timeout,
        ssl_options=ssl_options,
    )
