import logging
import time
from typing import Any, Callable, Optional

from . import metrics
from .client import Client, MessageCallback
from .destination import Queue
from .message import Message
from .policies import SubscriberPolicy

logger = logging.getLogger(__name__)

# callback(idle_timeout)
IdleCallback = Callable[[float], Any]


class IdleSubscriber:
    """
    Subscribes through a Client and calls an idle handler whenever no message
    has been delivered for longer than ``idle_timeout`` seconds.

    The consume loop waits in slices no longer than the idle timeout, so the idle
    check runs at that cadence regardless of the overall timeout. An idle timeout
    of 0 disables idle detection.
    """

    def __init__(self, client: Client, policy: Optional[SubscriberPolicy] = None) -> None:
        self.client = client
        self._idle_timeout = (policy or SubscriberPolicy()).idle_timeout
        self._idle_callback: Optional[IdleCallback] = None
        self._last_message_received_at: Optional[float] = None

    @property
    def idle_timeout(self) -> float:
        return self._idle_timeout

    def with_idle_timeout(self, idle_timeout: float) -> "IdleSubscriber":
        self._idle_timeout = idle_timeout
        return self

    def use_idle_handler(self, callback: IdleCallback) -> "IdleSubscriber":
        self._idle_callback = callback
        return self

    def subscribe(self, queue: Queue, callback: MessageCallback) -> "IdleSubscriber":
        def on_message(message: Message, client: Client):
            self._last_message_received_at = time.monotonic()
            return callback(message, client)

        self.client.subscribe(queue, on_message)
        return self

    def is_idle(self) -> bool:
        if not self._idle_timeout or self._last_message_received_at is None:
            return False
        return time.monotonic() - self._last_message_received_at > self._idle_timeout

    def consume(self, timeout: float = 0) -> None:
        """
        Consume for ``timeout`` seconds (0 = forever), checking for idleness
        after every wait.
        """
        start = time.monotonic()
        if self._last_message_received_at is None:
            self._last_message_received_at = start

        while True:
            remaining = 0.0
            if timeout > 0:
                remaining = timeout - (time.monotonic() - start)
                if remaining <= 0:
                    break

            self.client.consume(self._wait_slice(remaining))

            if self._idle_callback is not None and self.is_idle():
                logger.info(f"No message received for more than {self._idle_timeout}s")
                metrics.record_idle(self._idle_timeout)
                self._idle_callback(self._idle_timeout)

            if not self.client.is_consuming():
                logger.warning("Client has no active consumers, stopping the subscriber")
                break

    def _wait_slice(self, remaining: float) -> float:
        if remaining == 0 or self._idle_timeout == 0:
            return max(remaining, self._idle_timeout)
        return min(remaining, self._idle_timeout)
