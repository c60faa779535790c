import logging
from enum import Enum
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class Signal(str, Enum):
    ACK = "ACK"
    NACK = "NACK"


ConfirmHandler = Callable[..., Any]


class ConfirmTracker:
    """
    Routes broker publisher confirms (ACK/NACK) to interested handlers.

    Two registries are kept:
      - global handlers, invoked for every confirm of a signal for the lifetime of the tracker
      - per-message handlers, keyed by message id, invoked at most once

    A message receives exactly one terminal confirm from the broker, so once a
    confirm for an id is dispatched all of its per-message handlers (ACK and NACK)
    are forgotten.
    """

    def __init__(self) -> None:
        self._global_handlers: Dict[Signal, List[ConfirmHandler]] = {Signal.ACK: [], Signal.NACK: []}
        self._message_handlers: Dict[str, Dict[Signal, List[ConfirmHandler]]] = {}

    def register_global(self, signal: Signal, handler: ConfirmHandler) -> None:
        self._global_handlers[Signal(signal)].append(handler)

    def register_for_message(self, message, signal: Signal, handler: ConfirmHandler) -> None:
        entry = self._message_handlers.setdefault(message.id, {Signal.ACK: [], Signal.NACK: []})
        entry[Signal(signal)].append(handler)

    def dispatch(self, message, signal: Signal, *args) -> None:
        """
        Invoke global handlers, then the message's handlers for ``signal``.
        Extra positional ``args`` are passed to every handler after the message.
        """
        signal = Signal(signal)
        logger.debug(f"Dispatching publish {signal.value} for message {message.id}")
        # Forget the entry before invoking anything so a handler can never fire twice.
        entry = self._message_handlers.pop(message.id, None) or {}

        for handler in list(self._global_handlers[signal]):
            handler(message, *args)

        for handler in entry.get(signal, []):
            handler(message, *args)

    def handlers_for(self, message_or_id, signal: Signal) -> List[ConfirmHandler]:
        message_id = message_or_id if isinstance(message_or_id, str) else message_or_id.id
        return list(self._message_handlers.get(message_id, {}).get(Signal(signal), []))

    @property
    def pending_ids(self) -> List[str]:
        return list(self._message_handlers)

    def __len__(self) -> int:
        return len(self._message_handlers)

    def __contains__(self, message_or_id) -> bool:
        message_id = message_or_id if isinstance(message_or_id, str) else message_or_id.id
        return message_id in self._message_handlers
