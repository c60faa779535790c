import logging
from typing import Any, Callable, Dict, Optional, TypeVar

from . import telemetry, utils
from .broker import BrokerChannel, DeliveryCallback
from .exceptions import TransientConnectionException
from .policies import RetryPolicy

logger = logging.getLogger(__name__)
tracer = telemetry.tracing.get_tracer(__name__)

T = TypeVar("T")


def run_with_reconnect(
    operation: Callable[[], T],
    reconnect: Callable[[], None],
    policy: RetryPolicy,
    name: str = "operation",
    attempt: int = 0,
) -> T:
    """
    Run ``operation``; on a TransientConnectionException and with retry enabled,
    back off, reconnect and run it exactly once more.

    Any other exception, a disabled policy or a second transient failure
    propagates to the caller unchanged. ``attempt`` counts the consecutive faults
    before this one and scales the backoff.
    """
    try:
        return operation()
    except TransientConnectionException as e:
        if not policy.enabled:
            raise

        with tracer.start_as_current_span("relay.retry", attributes={"operation": name}) as span:
            logger.warning(f"{name} failed with a transient connection fault, reconnecting and retrying once: {e}")
            span.add_event("transient_fault", {"error": str(e)})

            utils.sleep_before_reconnect(policy, attempt)
            reconnect()

            result = operation()
            logger.info(f"{name} succeeded after reconnect")
            return result


class RetryableChannel:
    """
    The channel operations of a Client, each routed through ``run_with_reconnect``.

    Every attempt resolves the client's current channel, so a retried operation
    always runs on the channel created by the reconnect. Consecutive faults back
    off longer; the count resets once an operation succeeds without a retry.
    ``run`` also takes compound operations that are retried as one unit, such as
    re-buffering and flushing a batch.
    """

    def __init__(self, client) -> None:
        self._client = client
        self._faults = 0

    def run(self, name: str, fn: Callable[[BrokerChannel], T]) -> T:
        faults = self._faults
        result = run_with_reconnect(
            lambda: fn(self._client.get_channel()),
            self._reconnect,
            self._client.retry_policy,
            name,
            attempt=faults,
        )
        if self._faults == faults:
            self._faults = 0
        return result

    def _reconnect(self) -> None:
        self._faults += 1
        self._client.reconnect()

    # ---------- Topology ----------

    def declare_queue(self, name: str, durable: bool = True, arguments: Optional[Dict[str, Any]] = None) -> None:
        self.run("declare_queue", lambda ch: ch.declare_queue(name, durable, arguments))

    def declare_exchange(self, name: str, exchange_type: str = "fanout", durable: bool = True) -> None:
        self.run("declare_exchange", lambda ch: ch.declare_exchange(name, exchange_type, durable))

    def bind(self, queue: str, exchange: str, routing_key: str = "") -> None:
        self.run("bind", lambda ch: ch.bind(queue, exchange, routing_key))

    def purge_queue(self, name: str) -> None:
        self.run("purge_queue", lambda ch: ch.purge_queue(name))

    def delete_queue(self, name: str) -> None:
        self.run("delete_queue", lambda ch: ch.delete_queue(name))

    # ---------- Channel settings ----------

    def set_qos(self, prefetch_count: int, global_qos: bool = False) -> None:
        self.run("set_qos", lambda ch: ch.set_qos(prefetch_count, global_qos))

    # ---------- Publishing ----------

    def publish(self, body: bytes, properties: Any, exchange: str, routing_key: str, batch: bool = False) -> None:
        self.run("publish", lambda ch: ch.publish(body, properties, exchange, routing_key, batch))

    def wait_for_pending_confirms(self, timeout: Optional[float] = None) -> None:
        self.run("wait_for_pending_confirms", lambda ch: ch.wait_for_pending_confirms(timeout))

    # ---------- Consuming ----------

    def consume(self, queue: str, bind_delivery: Callable[[BrokerChannel], DeliveryCallback]) -> str:
        """
        Register a consumer. ``bind_delivery`` builds the delivery callback for the
        channel the consumer ends up on, so deliveries are answered on that channel.
        """
        return self.run("consume", lambda ch: ch.consume(queue, bind_delivery(ch)))

    def is_consuming(self) -> bool:
        return self.run("is_consuming", lambda ch: ch.is_consuming())

    def wait_for_next_frame(self, timeout: Optional[float] = None) -> None:
        self.run("wait_for_next_frame", lambda ch: ch.wait_for_next_frame(timeout))
