"""
relay: at-least-once publish/consume pipelines on top of a message broker.
"""

from .client import Client
from .confirms import ConfirmTracker, Signal
from .contracts import Handler, Transformer
from .destination import Destination, Exchange, Queue
from .exceptions import (
    FaultType,
    ProtocolStateException,
    RelayException,
    TransientConnectionException,
    ValidationException,
    WaitTimeoutException,
)
from .message import Message
from .pipeline import Pipeline
from .policies import PipelinePolicy, RetryPolicy, SessionPolicy, SubscriberPolicy
from .retry import RetryableChannel, run_with_reconnect
from .subscriber import IdleSubscriber

__version__ = "0.1.0"

__all__ = [
    "Client",
    "ConfirmTracker",
    "Destination",
    "Exchange",
    "FaultType",
    "Handler",
    "IdleSubscriber",
    "Message",
    "Pipeline",
    "PipelinePolicy",
    "ProtocolStateException",
    "Queue",
    "RelayException",
    "RetryPolicy",
    "RetryableChannel",
    "SessionPolicy",
    "Signal",
    "SubscriberPolicy",
    "Transformer",
    "TransientConnectionException",
    "ValidationException",
    "WaitTimeoutException",
    "run_with_reconnect",
]
