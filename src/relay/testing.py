"""
In-memory broker and test helpers.

InMemoryBroker/InMemorySession/InMemoryChannel implement the broker interface
without any network I/O: queues, fanout exchanges, bindings, manual
acknowledgement with ``multiple``, requeue of unacknowledged deliveries when a
channel closes, and publisher confirms. Brokers can be told to NACK every
publish, to withhold confirms, or to fail the next call of an operation with a
TransientConnectionException.

TestClient is a Client over an in-memory session with helpers to fake incoming
messages and publisher confirms and to assert on registered confirm handlers.
"""

import logging
import time
from collections import OrderedDict, deque
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple, Union

from . import exceptions
from .broker import BrokerChannel, BrokerSession, ConfirmCallback, DeliveryCallback
from .client import Client, MessageCallback
from .confirms import Signal
from .contracts import Handler
from .destination import Queue
from .message import Message
from .policies import RetryPolicy, SessionPolicy

logger = logging.getLogger(__name__)

Envelope = Tuple[Any, bytes]  # (properties, body)


# ---------------------------------------------------------
# BROKER
# ---------------------------------------------------------
class InMemoryBroker:
    def __init__(self) -> None:
        self.queues: Dict[str, Deque[Envelope]] = {}
        self.queue_arguments: Dict[str, Optional[Dict[str, Any]]] = {}
        self.exchanges: Dict[str, str] = {}
        self.bindings: Dict[str, Set[str]] = {}
        self.dead_letters: List[Tuple[str, Envelope]] = []
        self.unroutable: List[Envelope] = []

        self.nack_publishes = False
        self.withhold_confirms = False
        self._faults: Dict[str, int] = {}

    # ---------- Fault injection ----------

    def fail_next(self, operation: str, times: int = 1) -> "InMemoryBroker":
        """
        Make the next ``times`` calls of ``operation`` (a BrokerChannel method name,
        ``open_channel`` or ``reconnect_connection``) raise TransientConnectionException.
        """
        self._faults[operation] = self._faults.get(operation, 0) + times
        return self

    def maybe_fail(self, operation: str) -> None:
        if self._faults.get(operation, 0) > 0:
            self._faults[operation] -= 1
            raise exceptions.TransientConnectionException(f"Injected connection fault during {operation}")

    # ---------- Topology ----------

    def declare_queue(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> None:
        self.queues.setdefault(name, deque())
        self.queue_arguments[name] = arguments

    def declare_exchange(self, name: str, exchange_type: str) -> None:
        self.exchanges[name] = exchange_type
        self.bindings.setdefault(name, set())

    def bind(self, queue: str, exchange: str) -> None:
        self.bindings.setdefault(exchange, set()).add(queue)

    def purge_queue(self, name: str) -> None:
        self.queues.get(name, deque()).clear()

    def delete_queue(self, name: str) -> None:
        self.queues.pop(name, None)
        self.queue_arguments.pop(name, None)
        for queues in self.bindings.values():
            queues.discard(name)

    # ---------- Routing ----------

    def route(self, exchange: str, routing_key: str, properties: Any, body: bytes) -> None:
        if exchange == "":
            targets = [routing_key] if routing_key in self.queues else []
        else:
            targets = [q for q in sorted(self.bindings.get(exchange, ())) if q in self.queues]

        if not targets:
            logger.debug(f"Dropping unroutable message for exchange [{exchange}] and routing key [{routing_key}]")
            self.unroutable.append((properties, body))

        for queue in targets:
            self.queues[queue].append((properties, body))

    def messages(self, queue: Union[Queue, str]) -> List[Message]:
        name = queue if isinstance(queue, str) else queue.name
        return [Message(body, properties) for properties, body in self.queues.get(name, ())]

    def message_count(self, queue: Union[Queue, str]) -> int:
        name = queue if isinstance(queue, str) else queue.name
        return len(self.queues.get(name, ()))


# ---------------------------------------------------------
# CHANNEL
# ---------------------------------------------------------
class InMemoryChannel(BrokerChannel):
    def __init__(self, broker: InMemoryBroker) -> None:
        self.broker = broker
        self.prefetch_count: Optional[int] = None
        self.global_qos: Optional[bool] = None
        self.confirm_mode = False

        self._open = True
        self._on_ack: Optional[ConfirmCallback] = None
        self._on_nack: Optional[ConfirmCallback] = None
        self._batch: List[Tuple[bytes, Any, str, str]] = []
        self._confirms: Deque[Tuple[Signal, Envelope]] = deque()
        self._withheld: List[Envelope] = []
        self._consumers: Dict[str, Tuple[str, DeliveryCallback]] = {}
        self._unacked: "OrderedDict[int, Tuple[str, Envelope]]" = OrderedDict()
        self._next_delivery_tag = 1

    def _check(self, operation: str) -> None:
        if not self._open:
            raise exceptions.TransientConnectionException(f"Channel is closed, cannot {operation}")
        self.broker.maybe_fail(operation)

    # ---------- Topology ----------

    def declare_queue(self, name: str, durable: bool = True, arguments: Optional[Dict[str, Any]] = None) -> None:
        self._check("declare_queue")
        self.broker.declare_queue(name, arguments)

    def declare_exchange(self, name: str, exchange_type: str = "fanout", durable: bool = True) -> None:
        self._check("declare_exchange")
        self.broker.declare_exchange(name, exchange_type)

    def bind(self, queue: str, exchange: str, routing_key: str = "") -> None:
        self._check("bind")
        self.broker.bind(queue, exchange)

    def purge_queue(self, name: str) -> None:
        self._check("purge_queue")
        self.broker.purge_queue(name)

    def delete_queue(self, name: str) -> None:
        self._check("delete_queue")
        self.broker.delete_queue(name)

    # ---------- Channel settings ----------

    def set_qos(self, prefetch_count: int, global_qos: bool = False) -> None:
        self._check("set_qos")
        self.prefetch_count = prefetch_count
        self.global_qos = global_qos

    def enable_confirm_mode(self) -> None:
        self._check("enable_confirm_mode")
        self.confirm_mode = True

    def set_confirm_handlers(self, on_ack: ConfirmCallback, on_nack: ConfirmCallback) -> None:
        self._on_ack = on_ack
        self._on_nack = on_nack

    # ---------- Publishing ----------

    def publish(self, body: bytes, properties: Any, exchange: str, routing_key: str, batch: bool = False) -> None:
        self._check("publish")
        if batch:
            self._batch.append((body, properties, exchange, routing_key))
            return
        self._publish_now(body, properties, exchange, routing_key)

    def flush_batch(self) -> None:
        self._check("flush_batch")
        batch, self._batch = self._batch, []
        for body, properties, exchange, routing_key in batch:
            self._publish_now(body, properties, exchange, routing_key)

    def discard_batch(self) -> None:
        self._batch.clear()

    def _publish_now(self, body: bytes, properties: Any, exchange: str, routing_key: str) -> None:
        if self.broker.nack_publishes:
            if self.confirm_mode:
                self._confirms.append((Signal.NACK, (properties, body)))
            return

        self.broker.route(exchange, routing_key, properties, body)

        if not self.confirm_mode:
            return
        if self.broker.withhold_confirms:
            self._withheld.append((properties, body))
        else:
            self._confirms.append((Signal.ACK, (properties, body)))

    def release_withheld_confirms(self) -> None:
        """Queue an ACK for every withheld confirm; dispatched by the next wait."""
        withheld, self._withheld = self._withheld, []
        self._confirms.extend((Signal.ACK, envelope) for envelope in withheld)

    @property
    def batch_size(self) -> int:
        return len(self._batch)

    # ---------- Consuming ----------

    def consume(self, queue: str, on_delivery: DeliveryCallback) -> str:
        self._check("consume")
        if queue not in self.broker.queues:
            raise exceptions.ProtocolStateException(f"NOT_FOUND - no queue '{queue}'")

        consumer_tag = f"ctag-{id(self)}-{len(self._consumers) + 1}"
        self._consumers[consumer_tag] = (queue, on_delivery)
        return consumer_tag

    def is_consuming(self) -> bool:
        return self._open and bool(self._consumers)

    def wait_for_next_frame(self, timeout: Optional[float] = None) -> None:
        """
        Dispatch queued confirms, then deliver at most one message. When there was
        nothing to do, sleep ``timeout`` seconds, or raise WaitTimeoutException when
        no timeout was given (an in-memory broker would otherwise block forever).
        """
        self._check("wait_for_next_frame")
        dispatched = self._dispatch_confirms()
        if self._deliver_one() or dispatched:
            return

        if timeout:
            time.sleep(timeout)
            return
        raise exceptions.WaitTimeoutException("No broker events to wait for")

    def wait_for_pending_confirms(self, timeout: Optional[float] = None) -> None:
        self._check("wait_for_pending_confirms")
        self._dispatch_confirms()
        if self._withheld:
            raise exceptions.WaitTimeoutException(f"{len(self._withheld)} publisher confirms are still outstanding")

    def _dispatch_confirms(self) -> int:
        count = 0
        while self._confirms:
            signal, (properties, body) = self._confirms.popleft()
            handler = self._on_ack if signal == Signal.ACK else self._on_nack
            if handler is not None:
                handler(properties, body)
            count += 1
        return count

    def _deliver_one(self) -> bool:
        for queue, on_delivery in list(self._consumers.values()):
            messages = self.broker.queues.get(queue)
            if not messages:
                continue

            properties, body = messages.popleft()
            delivery_tag = self._next_delivery_tag
            self._next_delivery_tag += 1
            self._unacked[delivery_tag] = (queue, (properties, body))

            on_delivery(delivery_tag, properties, body)
            return True

        return False

    # ---------- Responses ----------

    def _take_unacked(self, delivery_tag: int, multiple: bool) -> List[Tuple[str, Envelope]]:
        if delivery_tag not in self._unacked:
            raise exceptions.ProtocolStateException(f"PRECONDITION_FAILED - unknown delivery tag {delivery_tag}")

        tags = [t for t in self._unacked if t <= delivery_tag] if multiple else [delivery_tag]
        return [self._unacked.pop(t) for t in tags]

    def ack(self, delivery_tag: int, multiple: bool = False) -> None:
        self._check("ack")
        self._take_unacked(delivery_tag, multiple)

    def reject(self, delivery_tag: int, multiple: bool = False, requeue: bool = True) -> None:
        self._check("reject")
        taken = self._take_unacked(delivery_tag, multiple)
        if requeue:
            self._requeue(taken)
        else:
            self.broker.dead_letters.extend(taken)

    def _requeue(self, taken: List[Tuple[str, Envelope]]) -> None:
        for queue, envelope in reversed(taken):
            if queue in self.broker.queues:
                self.broker.queues[queue].appendleft(envelope)

    @property
    def unacked_count(self) -> int:
        return len(self._unacked)

    def close(self) -> None:
        if not self._open:
            return
        self._open = False
        self._consumers.clear()
        self._batch.clear()
        self._requeue(list(self._unacked.values()))
        self._unacked.clear()

    @property
    def is_open(self) -> bool:
        return self._open


# ---------------------------------------------------------
# SESSION
# ---------------------------------------------------------
class InMemorySession(BrokerSession):
    def __init__(self, broker: Optional[InMemoryBroker] = None) -> None:
        self.broker = broker or InMemoryBroker()
        self.channels: List[InMemoryChannel] = []
        self.reconnects = 0

    def open_channel(self) -> InMemoryChannel:
        self.broker.maybe_fail("open_channel")
        channel = InMemoryChannel(self.broker)
        self.channels.append(channel)
        return channel

    def reconnect_connection(self) -> None:
        self.broker.maybe_fail("reconnect_connection")
        self.reconnects += 1
        for channel in self.channels:
            channel.close()

    def close(self) -> None:
        for channel in self.channels:
            channel.close()


# ---------------------------------------------------------
# TEST CLIENT
# ---------------------------------------------------------
class TestClient(Client):
    """
    Client over an in-memory session that remembers subscriptions so messages
    can be delivered to them directly, and can fake publisher confirms.
    """

    __test__ = False

    def __init__(
        self,
        session: Optional[BrokerSession] = None,
        policy: Optional[SessionPolicy] = None,
        retry: Optional[RetryPolicy] = None,
    ) -> None:
        super().__init__(session or InMemorySession(), policy, retry)
        self._queue_subscribers: List[Tuple[str, Callable]] = []

    @property
    def broker(self) -> InMemoryBroker:
        return self.session.broker

    def subscribe(self, queue: Queue, callback: Union[MessageCallback, Handler]) -> "TestClient":
        self._queue_subscribers.append((queue.name, callback))
        super().subscribe(queue, callback)
        return self

    def fake_incoming_message(self, queue: Queue, message: Message) -> None:
        for name, callback in self._queue_subscribers:
            if name != queue.name:
                continue
            if isinstance(callback, Handler):
                callback.handle_message(message)
            else:
                callback(message, self)

    def fake_ack(self, message: Message) -> None:
        self._handle_publisher_confirm(message, Signal.ACK)

    def fake_nack(self, message: Message) -> None:
        self._handle_publisher_confirm(message, Signal.NACK)

    # ---------- Assertions ----------

    def assert_has_message_handler(self, message: Union[Message, str], signal: Signal, count: Optional[int] = None):
        signal = Signal(signal)
        message_id = message if isinstance(message, str) else message.id
        handlers = self.confirms.handlers_for(message_id, signal)

        if count is None:
            assert handlers, f"No {signal.value} handler(s) found for message [{message_id}]."
        else:
            assert len(handlers) == count, (
                f"Expected exactly {count} {signal.value} handler(s) for message [{message_id}], found {len(handlers)}."
            )

    def assert_has_message_ack_handler(self, message: Union[Message, str], count: Optional[int] = None):
        self.assert_has_message_handler(message, Signal.ACK, count)

    def assert_has_no_message_ack_handler(self, message: Union[Message, str]):
        self.assert_has_message_handler(message, Signal.ACK, 0)

    def assert_has_message_nack_handler(self, message: Union[Message, str], count: Optional[int] = None):
        self.assert_has_message_handler(message, Signal.NACK, count)

    def assert_has_no_message_nack_handler(self, message: Union[Message, str]):
        self.assert_has_message_handler(message, Signal.NACK, 0)
