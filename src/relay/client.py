import logging
import time
from typing import Any, Callable, Iterable, List, Optional, Tuple, Union

from . import exceptions, metrics, telemetry
from .broker import BrokerChannel, BrokerSession, DeliveryCallback
from .confirms import ConfirmHandler, ConfirmTracker, Signal
from .contracts import Handler
from .destination import Destination, Exchange, Queue
from .message import Message
from .policies import RetryPolicy, SessionPolicy
from .retry import RetryableChannel

logger = logging.getLogger(__name__)
tracer = telemetry.tracing.get_tracer(__name__)

# callback(message, client)
MessageCallback = Callable[[Message, "Client"], Any]
ReconnectHook = Callable[[], Any]
# (body, properties, exchange, routing_key)
BatchEntry = Tuple[bytes, Any, str, str]


class _CallbackFailure(Exception):
    """
    Carries an exception raised by user code (delivery callbacks, confirm handlers)
    out of a broker wait call, so it is neither translated nor retried as a fault
    of the wait itself.
    """

    def __init__(self, error: Exception) -> None:
        super().__init__(str(error))
        self.error = error


def _run_callback(fn: Callable, *args) -> Any:
    try:
        return fn(*args)
    except _CallbackFailure:
        raise
    except Exception as e:
        raise _CallbackFailure(e) from e


class Client:
    """
    Facade over a BrokerSession owning the single active channel.

    The channel is created lazily and is re-created after every reconnect; each new
    channel gets confirm mode and QoS applied again. All channel operations go through
    ``self.channel`` (a RetryableChannel), so they are retried once after a reconnect
    when ``enable_reconnect_on_connection_error`` was called.
    """

    def __init__(
        self,
        session: BrokerSession,
        policy: Optional[SessionPolicy] = None,
        retry: Optional[RetryPolicy] = None,
    ) -> None:
        self.session = session
        self.policy = policy or SessionPolicy()
        self.retry_policy = retry or RetryPolicy()
        self.confirms = ConfirmTracker()
        self.channel = RetryableChannel(self)

        self._channel: Optional[BrokerChannel] = None
        self._subscriptions: List[Tuple[str, MessageCallback]] = []
        self._batch: List[BatchEntry] = []
        self._batch_channel: Optional[BrokerChannel] = None
        self._before_reconnect: List[ReconnectHook] = []
        self._after_reconnect: List[ReconnectHook] = []

    # ---------------------------------------------------------
    # CHANNEL LIFECYCLE
    # ---------------------------------------------------------

    def get_channel(self) -> BrokerChannel:
        """
        Return the active channel, opening and configuring a new one if needed.
        """
        if self._channel is None:
            channel = self.session.open_channel()

            if self.policy.publisher_confirms:
                channel.set_confirm_handlers(self._on_ack, self._on_nack)
                channel.enable_confirm_mode()

            channel.set_qos(self.policy.prefetch_count, self.policy.prefetch_global)

            self._channel = channel
            logger.debug("Opened a new broker channel")

        return self._channel

    def enable_reconnect_on_connection_error(self) -> "Client":
        self.retry_policy = self.retry_policy.model_copy(update={"enabled": True})
        return self

    def before_reconnect(self, hook: ReconnectHook) -> "Client":
        self._before_reconnect.append(hook)
        return self

    def after_reconnect(self, hook: ReconnectHook) -> "Client":
        self._after_reconnect.append(hook)
        return self

    def reconnect(self) -> None:
        with tracer.start_as_current_span("relay.client.reconnect"):
            logger.warning("Reconnecting to the broker")

            for hook in list(self._before_reconnect):
                hook()

            self._discard_channel()

            try:
                self.session.reconnect_connection()
                channel = self.get_channel()

                if self.policy.resubscribe_on_reconnect:
                    for queue, callback in self._subscriptions:
                        logger.info(f"Re-subscribing to queue {queue}")
                        channel.consume(queue, self._bind_delivery(queue, callback)(channel))
            except exceptions.RelayException:
                metrics.record_reconnect("error")
                raise

            metrics.record_reconnect("ok")
            logger.info("Reconnected to the broker")

            for hook in list(self._after_reconnect):
                hook()

    def _discard_channel(self) -> None:
        channel, self._channel = self._channel, None
        if channel is None:
            return

        try:
            channel.close()
        except Exception as e:
            # the channel is abandoned either way
            logger.debug(f"Ignoring error while closing channel: {e}")

    def close(self) -> None:
        self.discard_batch()
        self._discard_channel()
        self.session.close()

    # ---------------------------------------------------------
    # QOS
    # ---------------------------------------------------------

    @property
    def prefetch_count(self) -> int:
        return self.policy.prefetch_count

    def set_prefetch_count(self, count: int, global_qos: Optional[bool] = None) -> "Client":
        update = {"prefetch_count": count}
        if global_qos is not None:
            update["prefetch_global"] = global_qos
        self.policy = self.policy.model_copy(update=update)

        self.channel.set_qos(self.policy.prefetch_count, self.policy.prefetch_global)
        return self

    # ---------------------------------------------------------
    # TOPOLOGY
    # ---------------------------------------------------------

    @staticmethod
    def create_queue(name: str) -> Queue:
        return Queue(name)

    @staticmethod
    def create_exchange(name: str) -> Exchange:
        return Exchange(name)

    def declare_queue(self, queue: Queue) -> Queue:
        arguments = {"x-queue-mode": "lazy"} if self.policy.lazy_queues else None
        self.channel.declare_queue(queue.name, self.policy.durable, arguments)
        return queue

    def declare_exchange(self, exchange: Exchange) -> Exchange:
        self.channel.declare_exchange(exchange.name, "fanout", self.policy.durable)
        return exchange

    def bind(self, exchange: Exchange, queue: Queue) -> "Client":
        self.channel.bind(queue.name, exchange.name)
        return self

    def purge_queue(self, queue: Queue) -> "Client":
        self.channel.purge_queue(queue.name)
        return self

    def delete_queue(self, queue: Queue) -> "Client":
        self.channel.delete_queue(queue.name)
        return self

    # ---------------------------------------------------------
    # PUBLISHER CONFIRMS
    # ---------------------------------------------------------

    def on_publish_ack(self, handler: ConfirmHandler) -> "Client":
        self.confirms.register_global(Signal.ACK, handler)
        return self

    def on_publish_nack(self, handler: ConfirmHandler) -> "Client":
        self.confirms.register_global(Signal.NACK, handler)
        return self

    def on_message_publish_ack(self, message: Message, handler: ConfirmHandler) -> "Client":
        self.confirms.register_for_message(message, Signal.ACK, handler)
        return self

    def on_message_publish_nack(self, message: Message, handler: ConfirmHandler) -> "Client":
        self.confirms.register_for_message(message, Signal.NACK, handler)
        return self

    def _on_ack(self, properties, body: bytes) -> None:
        _run_callback(self._handle_publisher_confirm, Message(body, properties), Signal.ACK)

    def _on_nack(self, properties, body: bytes) -> None:
        _run_callback(self._handle_publisher_confirm, Message(body, properties), Signal.NACK)

    def _handle_publisher_confirm(self, message: Message, signal: Signal) -> None:
        metrics.record_confirm(signal.value)
        self.confirms.dispatch(message, signal, self)

    def await_pending_publish_confirms(self, timeout: Optional[float] = None) -> bool:
        """
        Block until every published message was confirmed. Returns False when
        ``timeout`` expired first; the unresolved confirms are left pending.
        """
        try:
            self.channel.wait_for_pending_confirms(timeout)
        except exceptions.WaitTimeoutException as e:
            logger.warning(f"Timed out after {timeout}s waiting for publisher confirms: {e}")
            return False
        except _CallbackFailure as failure:
            raise failure.error from failure.error.__cause__
        return True

    # ---------------------------------------------------------
    # PUBLISHING
    # ---------------------------------------------------------

    def publish(self, destination: Destination, message: Message) -> Message:
        exchange, routing_key = self._route(destination)
        logger.debug(f"Publishing message {message.id} to {destination}")

        self.channel.publish(message.body, message.properties, exchange, routing_key)
        metrics.record_publish(str(destination), batch=False)
        return message

    def publish_batch(self, destination: Destination, messages: Iterable[Message]) -> List[Message]:
        messages = list(messages)
        for message in messages:
            self.add_batch_message(destination, message)

        self.flush_batch_publishes()
        return messages

    def add_batch_message(self, destination: Destination, message: Message) -> Message:
        exchange, routing_key = self._route(destination)
        logger.debug(f"Adding message {message.id} to the batch for {destination}")

        entry = (message.body, message.properties, exchange, routing_key)
        self.channel.run("publish", lambda ch: self._buffer_batch(ch, [entry]))
        self._batch.append(entry)

        metrics.record_publish(str(destination), batch=True)
        return message

    def flush_batch_publishes(self) -> None:
        """
        Send the buffered batch. A batch survives a reconnect: when the flush is
        retried on a new channel, the whole batch is buffered there again first.
        """
        self.channel.run("flush_batch", self._flush_batch)

    def discard_batch(self) -> int:
        """Drop the buffered batch without sending it. Returns the number of messages dropped."""
        count = len(self._batch)
        if self._channel is not None and self._channel is self._batch_channel:
            self._channel.discard_batch()
        self._batch = []
        self._batch_channel = None
        return count

    def _buffer_batch(self, channel: BrokerChannel, entries: List[BatchEntry]) -> None:
        if channel is not self._batch_channel:
            # whatever was buffered on an earlier channel died with it
            if self._batch:
                logger.warning(f"Re-buffering {len(self._batch)} batched messages on a new channel")
            entries = self._batch + entries

        for body, properties, exchange, routing_key in entries:
            channel.publish(body, properties, exchange, routing_key, batch=True)
        self._batch_channel = channel

    def _flush_batch(self, channel: BrokerChannel) -> None:
        self._buffer_batch(channel, [])
        channel.flush_batch()
        self.discard_batch()

    @staticmethod
    def _route(destination: Destination) -> Tuple[str, str]:
        if isinstance(destination, Queue):
            return "", destination.name
        if isinstance(destination, Exchange):
            return destination.name, ""
        raise exceptions.ValidationException(
            f"Can only publish to a Queue or an Exchange, got {type(destination).__name__}"
        )

    # ---------------------------------------------------------
    # CONSUMING
    # ---------------------------------------------------------

    def subscribe(self, queue: Queue, callback: Union[MessageCallback, Handler]) -> "Client":
        """
        Consume ``queue`` with manual acknowledgement; ``callback(message, client)`` is
        invoked from within ``consume`` for every delivery. A Handler receives the
        message only.
        """
        if isinstance(callback, Handler):
            handler = callback

            def callback(message, client):
                return handler.handle_message(message)

        self.channel.consume(queue.name, self._bind_delivery(queue.name, callback))
        self._subscriptions.append((queue.name, callback))
        logger.info(f"Subscribed to queue {queue.name}")
        return self

    def _bind_delivery(self, queue: str, callback: MessageCallback) -> Callable[[BrokerChannel], DeliveryCallback]:
        def bind(channel: BrokerChannel) -> DeliveryCallback:
            def on_delivery(delivery_tag: int, properties, body: bytes) -> None:
                message = Message(body, properties, delivery_tag).set_channel(channel)
                metrics.record_delivery(queue)
                _run_callback(callback, message, self)

            return on_delivery

        return bind

    def is_consuming(self) -> bool:
        return self.channel.is_consuming()

    def consume(self, timeout: float = 0) -> None:
        """
        Process broker events while there are consumers. A zero ``timeout`` means
        forever; otherwise return once ``timeout`` seconds have passed.
        """
        deadline = time.monotonic() + timeout if timeout > 0 else None

        while self.is_consuming():
            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break

            try:
                self.channel.wait_for_next_frame(remaining)
            except exceptions.WaitTimeoutException:
                break
            except _CallbackFailure as failure:
                raise failure.error from failure.error.__cause__
