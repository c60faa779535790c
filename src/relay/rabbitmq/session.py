import functools
import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Tuple

import pika
import pika.exceptions

from .. import exceptions
from ..broker import BrokerChannel, BrokerSession, ConfirmCallback, DeliveryCallback
from ..confirms import Signal
from .helper import connection_parameters
from .models import ConnectionSettings

logger = logging.getLogger(__name__)

TRANSIENT_PIKA_ERRORS = (
    pika.exceptions.AMQPConnectionError,
    pika.exceptions.ConnectionWrongStateError,
    pika.exceptions.ChannelWrongStateError,
    OSError,
)


def translate_faults(fn):
    """
    Re-raise pika connection failures as TransientConnectionException.
    """

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except TRANSIENT_PIKA_ERRORS as e:
            raise exceptions.TransientConnectionException(f"{e.__class__.__name__}: {e}") from e

    return wrapper


class PikaChannel(BrokerChannel):
    """
    BrokerChannel on top of a pika BlockingChannel.

    pika's blocking channel resolves a publisher confirm inside basic_publish.
    Outcomes are queued here and dispatched to the confirm handlers from the
    wait calls, so handlers always run from the wait loop.
    """

    def __init__(self, connection: pika.BlockingConnection, channel) -> None:
        self._connection = connection
        self._channel = channel
        self._confirm_mode = False
        self._on_ack: Optional[ConfirmCallback] = None
        self._on_nack: Optional[ConfirmCallback] = None
        self._batch: List[Tuple[bytes, Any, str, str]] = []
        self._confirms: Deque[Tuple[Signal, Any, bytes]] = deque()

    # ---------- Topology ----------

    @translate_faults
    def declare_queue(self, name: str, durable: bool = True, arguments: Optional[Dict[str, Any]] = None) -> None:
        self._channel.queue_declare(
            queue=name,
            passive=False,
            durable=durable,
            exclusive=False,
            auto_delete=False,
            arguments=arguments,
        )

    @translate_faults
    def declare_exchange(self, name: str, exchange_type: str = "fanout", durable: bool = True) -> None:
        self._channel.exchange_declare(
            exchange=name,
            exchange_type=exchange_type,
            passive=False,
            durable=durable,
            auto_delete=False,
        )

    @translate_faults
    def bind(self, queue: str, exchange: str, routing_key: str = "") -> None:
        self._channel.queue_bind(queue=queue, exchange=exchange, routing_key=routing_key or None)

    @translate_faults
    def purge_queue(self, name: str) -> None:
        self._channel.queue_purge(queue=name)

    @translate_faults
    def delete_queue(self, name: str) -> None:
        self._channel.queue_delete(queue=name)

    # ---------- Channel settings ----------

    @translate_faults
    def set_qos(self, prefetch_count: int, global_qos: bool = False) -> None:
        # prefetch_size=0 means "no specific byte limit"
        self._channel.basic_qos(prefetch_size=0, prefetch_count=prefetch_count, global_qos=global_qos)

    @translate_faults
    def enable_confirm_mode(self) -> None:
        self._channel.confirm_delivery()
        self._confirm_mode = True

    def set_confirm_handlers(self, on_ack: ConfirmCallback, on_nack: ConfirmCallback) -> None:
        self._on_ack = on_ack
        self._on_nack = on_nack

    # ---------- Publishing ----------

    def publish(self, body: bytes, properties: Any, exchange: str, routing_key: str, batch: bool = False) -> None:
        if batch:
            self._batch.append((body, properties, exchange, routing_key))
            return
        self._publish_now(body, properties, exchange, routing_key)

    def flush_batch(self) -> None:
        while self._batch:
            body, properties, exchange, routing_key = self._batch.pop(0)
            self._publish_now(body, properties, exchange, routing_key)

    def discard_batch(self) -> None:
        self._batch.clear()

    @translate_faults
    def _publish_now(self, body: bytes, properties: Any, exchange: str, routing_key: str) -> None:
        try:
            self._channel.basic_publish(
                exchange=exchange,
                routing_key=routing_key,
                body=body,
                properties=properties,
                mandatory=False,
            )
        except pika.exceptions.NackError:
            self._confirms.append((Signal.NACK, properties, body))
            return

        if self._confirm_mode:
            self._confirms.append((Signal.ACK, properties, body))

    # ---------- Consuming ----------

    @translate_faults
    def consume(self, queue: str, on_delivery: DeliveryCallback) -> str:
        def _internal_callback(ch, method, properties, body):
            on_delivery(method.delivery_tag, properties, body)

        return self._channel.basic_consume(
            queue=queue,
            on_message_callback=_internal_callback,
            auto_ack=False,
        )

    def is_consuming(self) -> bool:
        return self._channel.is_open and bool(self._channel.consumer_tags)

    @translate_faults
    def wait_for_next_frame(self, timeout: Optional[float] = None) -> None:
        self._dispatch_confirms()
        self._connection.process_data_events(time_limit=timeout if timeout and timeout > 0 else None)
        self._dispatch_confirms()

    def wait_for_pending_confirms(self, timeout: Optional[float] = None) -> None:
        # basic_publish already resolved every confirm, nothing left to wait for
        self._dispatch_confirms()

    def _dispatch_confirms(self) -> None:
        while self._confirms:
            signal, properties, body = self._confirms.popleft()
            handler = self._on_ack if signal == Signal.ACK else self._on_nack
            if handler is not None:
                handler(properties, body)

    # ---------- Responses ----------

    @translate_faults
    def ack(self, delivery_tag: int, multiple: bool = False) -> None:
        self._channel.basic_ack(delivery_tag=delivery_tag, multiple=multiple)

    @translate_faults
    def reject(self, delivery_tag: int, multiple: bool = False, requeue: bool = True) -> None:
        self._channel.basic_nack(delivery_tag=delivery_tag, multiple=multiple, requeue=requeue)

    def close(self) -> None:
        if self._channel.is_open:
            self._channel.close()

    @property
    def is_open(self) -> bool:
        return self._channel.is_open


class PikaSession(BrokerSession):
    def __init__(self, settings: ConnectionSettings) -> None:
        self.settings = settings
        self._connection: Optional[pika.BlockingConnection] = None

    # ---------- Connection / Channel ----------

    @translate_faults
    def _connect(self) -> pika.BlockingConnection:
        """
        Ensure an open connection exists.
        """
        if self._connection and self._connection.is_open:
            return self._connection

        logger.info(f"Connecting to RabbitMQ at {self.settings.host}:{self.settings.port}{self.settings.virtual_host}")
        self._connection = pika.BlockingConnection(connection_parameters(self.settings))
        return self._connection

    @translate_faults
    def open_channel(self) -> PikaChannel:
        connection = self._connect()
        return PikaChannel(connection, connection.channel())

    def reconnect_connection(self) -> None:
        logger.info("Reconnecting to RabbitMQ")
        self.close()
        self._connect()

    def close(self) -> None:
        """
        Close the connection if it is open, ignoring failures of an already broken connection.
        """
        try:
            if self._connection and self._connection.is_open:
                self._connection.close()
        except TRANSIENT_PIKA_ERRORS as e:
            logger.debug(f"Ignoring error while closing connection: {e}")
        finally:
            self._connection = None
