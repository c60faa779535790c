import copy
import json
from typing import Any, Optional

import pika
from pydantic import BaseModel

from . import exceptions
from .rabbitmq import helper


class Message:
    """
    A payload published or delivered through relay.

    Locally created messages (``Message.make``) carry a generated ``message_id``
    that publisher confirms are tracked by. Delivered messages additionally carry
    a delivery tag and are bound to the channel that delivered them, which is
    the only channel they can be acknowledged or rejected on.
    """

    def __init__(
        self,
        body: bytes = b"",
        properties: Optional[pika.BasicProperties] = None,
        delivery_tag: Optional[int] = None,
    ) -> None:
        self.body = body
        self.properties = properties or pika.BasicProperties()
        self._delivery_tag = delivery_tag
        self._channel = None
        self._responded = False

    # ---------- Construction ----------

    @classmethod
    def make(cls, body: Any = None) -> "Message":
        return cls(cls.encode_body({} if body is None else body), helper.message_properties())

    def clone(self, body: Any) -> "Message":
        properties = copy.copy(self.properties)
        properties.message_id = helper.generate_message_id()
        return self.__class__(self.encode_body(body), properties)

    @staticmethod
    def encode_body(body: Any) -> bytes:
        if isinstance(body, BaseModel):
            body = body.model_dump(mode="json")

        if not isinstance(body, (dict, list)):
            raise exceptions.MalformedMessageBodyException(
                f"Message body must be a dict, a list or a pydantic model, got {type(body).__name__}"
            )

        return json.dumps(body, ensure_ascii=False).encode("utf-8")

    # ---------- Attributes ----------

    @property
    def id(self) -> str:
        message_id = self.properties.message_id
        if not message_id:
            raise exceptions.MissingMessageIdException()
        return message_id

    @property
    def delivery_tag(self) -> Optional[int]:
        return self._delivery_tag

    @property
    def channel(self):
        return self._channel

    @property
    def responded(self) -> bool:
        return self._responded

    def get(self, key: str) -> Any:
        return getattr(self.properties, key, None)

    def get_data(self) -> Any:
        return json.loads(self.body.decode("utf-8"))

    def set_channel(self, channel) -> "Message":
        if self._channel is not None:
            raise exceptions.ChannelAlreadyAssignedException()
        self._channel = channel
        return self

    # ---------- Broker responses ----------

    def ack(self, multiple: bool = False) -> None:
        """
        Acknowledge this delivery. With ``multiple`` the delivery tag is treated as
        "up to and including", acknowledging every earlier unacknowledged delivery
        on the same channel.
        """
        self._assert_unresponded()
        self._channel.ack(self._delivery_tag, multiple)
        self._responded = True

    def nack(self, multiple: bool = False, requeue: bool = True) -> None:
        """Reject (and by default requeue) this delivery."""
        self._assert_unresponded()
        self._channel.reject(self._delivery_tag, multiple, requeue)
        self._responded = True

    def ignore(self, multiple: bool = False) -> None:
        """Reject without requeue."""
        self.nack(multiple=multiple, requeue=False)

    def _assert_unresponded(self) -> None:
        if self._channel is None or self._responded:
            raise exceptions.MessageResponseException()

    def __str__(self):
        return self.body.decode("utf-8")

    def __repr__(self):
        return f"Message(id={self.properties.message_id!r}, delivery_tag={self._delivery_tag!r})"
