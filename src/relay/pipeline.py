import logging
import time
from typing import Any, Callable, Dict, Optional, Union

from . import metrics, telemetry
from .client import Client
from .contracts import Transformer
from .destination import Destination, Queue
from .message import Message
from .policies import PipelinePolicy, SubscriberPolicy
from .subscriber import IdleCallback, IdleSubscriber

logger = logging.getLogger(__name__)
tracer = telemetry.tracing.get_tracer(__name__)

# callback(count, elapsed_seconds)
FlushCallback = Callable[[int, float], Any]


TransformerLike = Union[Transformer, Callable[[Message], Optional[Message]]]


# ---------------------------------------------------------
# PIPELINE
# ---------------------------------------------------------
class Pipeline:
    """
    Consume from queues, transform every message and forward the result in batches.

    Incoming messages are never answered one by one. Once a batch of outgoing
    messages is fully confirmed by the broker, the most recent incoming message
    (the anchor) is acknowledged with ``multiple``, which acknowledges every
    earlier delivery on the channel as well. When any outgoing message of the
    batch is NACKed or left unconfirmed, the anchor is rejected with ``multiple``
    and without requeue instead.

    A transformer returning None drops the incoming message: it is rejected
    without requeue right away and nothing is forwarded.
    """

    def __init__(self, client: Client, policy: Optional[PipelinePolicy] = None) -> None:
        self.client = client
        self.policy = policy or PipelinePolicy()
        self.subscriber = IdleSubscriber(client, SubscriberPolicy(idle_timeout=self.policy.idle_timeout))
        self.subscriber.use_idle_handler(self._handle_idle)

        self._anchor: Optional[Message] = None
        self._pending: Dict[str, Message] = {}
        self._flush_callback: Optional[FlushCallback] = None
        self._idle_callback: Optional[IdleCallback] = None

        client.on_publish_ack(self._handle_ack)
        client.on_publish_nack(self._handle_nack)
        client.after_reconnect(self._abandon_batch)

    @property
    def anchor(self) -> Optional[Message]:
        return self._anchor

    @property
    def pending(self) -> Dict[str, Message]:
        return dict(self._pending)

    # ---------- Configuration ----------

    def on_flush(self, callback: FlushCallback) -> "Pipeline":
        self._flush_callback = callback
        return self

    def on_idle(self, callback: IdleCallback) -> "Pipeline":
        self._idle_callback = callback
        return self

    def add(self, in_queue: Queue, out_destination: Destination, transformer: TransformerLike) -> "Pipeline":
        transform = transformer.transform_message if isinstance(transformer, Transformer) else transformer

        def on_message(message: Message, client: Client) -> None:
            previous, self._anchor = self._anchor, message

            output = transform(message)
            if output is None:
                # a rejected delivery must never become the anchor of a later batch ack
                self._anchor = previous
                logger.debug(f"Dropping message with delivery tag {message.delivery_tag}")
                message.ignore()
                metrics.record_dropped()
                return

            client.add_batch_message(out_destination, output)
            self._pending[output.id] = output

            if len(self._pending) >= self.policy.buffer_size:
                self.flush()

        self.subscriber.subscribe(in_queue, on_message)
        logger.info(f"Piping {in_queue} to {out_destination}")
        return self

    # ---------- Running ----------

    def consume(self, timeout: float = 0) -> None:
        self.subscriber.consume(timeout)
        self.flush()

    def flush(self) -> None:
        """
        Publish the buffered batch, wait for its confirms and answer the incoming
        messages accordingly. No-op when nothing is buffered.
        """
        count = len(self._pending)
        if count == 0:
            return

        with tracer.start_as_current_span("relay.pipeline.flush", attributes={"count": count}) as span:
            start = time.monotonic()

            self.client.flush_batch_publishes()
            self.client.await_pending_publish_confirms(self.policy.confirm_timeout)

            elapsed = time.monotonic() - start
            if self._flush_callback is not None:
                self._flush_callback(count, elapsed)

            anchor, self._anchor = self._anchor, None

            if self._pending:
                logger.warning(
                    f"{len(self._pending)} of {count} published messages were not confirmed, "
                    f"rejecting the incoming batch without requeue"
                )
                self._pending = {}
                if anchor is not None:
                    anchor.nack(multiple=True, requeue=False)
                outcome = "reject"
            else:
                logger.debug(f"Flushed {count} messages in {elapsed:.3f}s")
                if anchor is not None:
                    anchor.ack(multiple=True)
                outcome = "ack"

            span.set_attribute("outcome", outcome)
            metrics.record_flush(count, elapsed, outcome)

    # ---------- Hooks ----------

    def _handle_idle(self, idle_timeout: float) -> None:
        self.flush()
        if self._idle_callback is not None:
            self._idle_callback(idle_timeout)

    def _handle_ack(self, message: Message, client: Client) -> None:
        self._pending.pop(message.id, None)

    def _handle_nack(self, message: Message, client: Client) -> None:
        # A NACK cannot be traced back to its incoming message; it stays pending
        # and the whole batch is rejected on flush.
        logger.warning(f"Broker NACKed published message {message.id}")

    def _abandon_batch(self) -> None:
        # the incoming messages are redelivered, so their outputs must not be replayed
        self.client.discard_batch()
        if self._pending or self._anchor is not None:
            logger.warning(
                f"Abandoning in-flight batch of {len(self._pending)} messages after reconnect, "
                f"the broker redelivers the incoming messages"
            )
        self._anchor = None
        self._pending = {}
