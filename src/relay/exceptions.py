from enum import Enum


class FaultType(str, Enum):
    TRANSIENT = "TRANSIENT"
    VALIDATION = "VALIDATION"
    PROTOCOL_STATE = "PROTOCOL_STATE"
    TIMEOUT = "TIMEOUT"


class RelayException(Exception):
    """
    Base class for every error raised by relay.
    """

    message: str = "A relay error occurred."
    category: FaultType = FaultType.PROTOCOL_STATE

    def __init__(self, message: str | None = None):
        self.message = message or self.message
        super().__init__(self.message)

    def __str__(self):
        return f"({self.category.value}) {self.message}"

    def to_dict(self):
        return {
            "message": self.message,
            "category": self.category.value,
            "type": self.__class__.__name__,
        }


# =====================================================================
#   TRANSIENT
# =====================================================================


class TransientConnectionException(RelayException):
    """
    Exception raised when the broker is unreachable or the connection was
    forcibly closed. The only fault that is ever retried (once) by relay.
    """

    message: str = "The broker connection failed."
    category: FaultType = FaultType.TRANSIENT


# =====================================================================
#   VALIDATION
# =====================================================================


class ValidationException(RelayException):
    """
    Exception raised when an argument can never succeed, no matter how often it is retried.
    """

    message: str = "Invalid argument."
    category: FaultType = FaultType.VALIDATION


class InvalidDestinationException(ValidationException):
    message: str = "Destination name contains problematic characters."


class MalformedMessageBodyException(ValidationException):
    message: str = "Message body must be a dict, a list or a pydantic model."


class MissingMessageIdException(ValidationException):
    message: str = "Message does not have a message_id (was not created by relay?)."


# =====================================================================
#   PROTOCOL STATE
# =====================================================================


class ProtocolStateException(RelayException):
    """
    Exception raised on a programming error against the broker protocol,
    e.g. acknowledging the same delivery twice.
    """

    message: str = "Invalid protocol state."
    category: FaultType = FaultType.PROTOCOL_STATE


class ChannelAlreadyAssignedException(ProtocolStateException):
    message: str = "The message is already assigned to a channel."


class MessageResponseException(ProtocolStateException):
    message: str = "Message was not delivered by relay (has no channel set) or response was already sent."


# =====================================================================
#   TIMEOUT
# =====================================================================


class WaitTimeoutException(RelayException):
    """
    Exception raised by a broker channel when a wait exceeded its budget.
    Never escapes the consume loop; surfaces as unresolved confirms instead.
    """

    message: str = "Waiting on the broker timed out."
    category: FaultType = FaultType.TIMEOUT
