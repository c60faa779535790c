from abc import ABC, abstractmethod
from typing import Any, Optional

from .message import Message


class Handler(ABC):
    """
    Handles a single delivered message. The handler is responsible for
    acknowledging or rejecting it.
    """

    @abstractmethod
    def handle_message(self, message: Message) -> Any:
        pass


class Transformer(ABC):
    """
    Turns an incoming message into the outgoing message to forward.

    The incoming message is acknowledged by the pipeline once the outgoing one is
    confirmed, so a transformer must not acknowledge it itself. Returning None
    drops the incoming message.
    """

    @abstractmethod
    def transform_message(self, message: Message) -> Optional[Message]:
        pass
