from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

# on_delivery(delivery_tag, properties, body)
DeliveryCallback = Callable[[int, Any, bytes], None]
# on_ack(properties, body) / on_nack(properties, body)
ConfirmCallback = Callable[[Any, bytes], None]


# ---------------------------------------------------------
# BROKER CHANNEL
# ---------------------------------------------------------
class BrokerChannel(ABC):
    """
    The finite set of channel operations relay needs from a broker client.

    Implementations perform the actual network I/O. Every callback (deliveries,
    publisher confirms) must be invoked synchronously from within
    ``wait_for_next_frame`` or ``wait_for_pending_confirms``.
    Connection-level failures must be raised as TransientConnectionException.
    """

    @abstractmethod
    def declare_queue(self, name: str, durable: bool = True, arguments: Optional[Dict[str, Any]] = None) -> None:
        pass

    @abstractmethod
    def declare_exchange(self, name: str, exchange_type: str = "fanout", durable: bool = True) -> None:
        pass

    @abstractmethod
    def bind(self, queue: str, exchange: str, routing_key: str = "") -> None:
        pass

    @abstractmethod
    def purge_queue(self, name: str) -> None:
        pass

    @abstractmethod
    def delete_queue(self, name: str) -> None:
        pass

    @abstractmethod
    def set_qos(self, prefetch_count: int, global_qos: bool = False) -> None:
        pass

    @abstractmethod
    def enable_confirm_mode(self) -> None:
        """Put the channel into publisher-confirm mode."""

    @abstractmethod
    def set_confirm_handlers(self, on_ack: ConfirmCallback, on_nack: ConfirmCallback) -> None:
        pass

    @abstractmethod
    def publish(self, body: bytes, properties: Any, exchange: str, routing_key: str, batch: bool = False) -> None:
        """Publish a message now, or buffer it until ``flush_batch`` when ``batch`` is set."""

    @abstractmethod
    def flush_batch(self) -> None:
        pass

    @abstractmethod
    def discard_batch(self) -> None:
        """Drop buffered batch messages without sending them."""

    @abstractmethod
    def consume(self, queue: str, on_delivery: DeliveryCallback) -> str:
        """Register a consumer (manual acknowledgement) and return its consumer tag."""

    @abstractmethod
    def is_consuming(self) -> bool:
        pass

    @abstractmethod
    def wait_for_next_frame(self, timeout: Optional[float] = None) -> None:
        """Block until the next protocol event or ``timeout`` seconds; None/0 blocks until an event."""

    @abstractmethod
    def wait_for_pending_confirms(self, timeout: Optional[float] = None) -> None:
        """Block until every published message was confirmed; may raise WaitTimeoutException."""

    @abstractmethod
    def ack(self, delivery_tag: int, multiple: bool = False) -> None:
        pass

    @abstractmethod
    def reject(self, delivery_tag: int, multiple: bool = False, requeue: bool = True) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    @property
    @abstractmethod
    def is_open(self) -> bool:
        pass


# ---------------------------------------------------------
# BROKER SESSION
# ---------------------------------------------------------
class BrokerSession(ABC):
    """
    A connection to the broker that hands out channels.
    """

    @abstractmethod
    def open_channel(self) -> BrokerChannel:
        pass

    @abstractmethod
    def reconnect_connection(self) -> None:
        """Drop the current connection (best effort) and establish a new one."""

    @abstractmethod
    def close(self) -> None:
        pass
