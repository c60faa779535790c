"""
Built-in metrics instrumentation for relay.

Instruments are lazily created on first use, so recording works both before and
after a MeterProvider has been configured (before, the no-op provider is used).
"""

from typing import Callable

from . import telemetry

# ============================================================
# LAZY METER INITIALIZATION
# ============================================================

_meter = None
_instruments = {}


def _get_meter():
    global _meter
    if _meter is None:
        _meter = telemetry.metrics.get_metric_meter("relay")
    return _meter


def _get_instrument(name: str, factory: Callable):
    if name not in _instruments:
        _instruments[name] = factory(_get_meter())
    return _instruments[name]


# ============================================================
# INSTRUMENTS
# ============================================================


def _publish_total():
    return _get_instrument(
        "relay.publish.total",
        lambda m: m.create_counter(
            name="relay.publish.total",
            description="Total number of messages handed to the broker for publishing",
            unit="1",
        ),
    )


def _delivery_total():
    return _get_instrument(
        "relay.delivery.total",
        lambda m: m.create_counter(
            name="relay.delivery.total",
            description="Total number of messages delivered to subscriptions",
            unit="1",
        ),
    )


def _confirm_total():
    return _get_instrument(
        "relay.confirm.total",
        lambda m: m.create_counter(
            name="relay.confirm.total",
            description="Publisher confirms received, by signal",
            unit="1",
        ),
    )


def _reconnect_total():
    return _get_instrument(
        "relay.reconnect.total",
        lambda m: m.create_counter(
            name="relay.reconnect.total",
            description="Reconnect attempts, by outcome",
            unit="1",
        ),
    )


def _idle_total():
    return _get_instrument(
        "relay.subscriber.idle.total",
        lambda m: m.create_counter(
            name="relay.subscriber.idle.total",
            description="Number of times an idle handler was invoked",
            unit="1",
        ),
    )


def _flush_duration():
    return _get_instrument(
        "relay.pipeline.flush.duration",
        lambda m: m.create_histogram(
            name="relay.pipeline.flush.duration",
            description="Time spent publishing a pipeline batch and awaiting its confirms",
            unit="s",
        ),
    )


def _flush_size():
    return _get_instrument(
        "relay.pipeline.flush.size",
        lambda m: m.create_histogram(
            name="relay.pipeline.flush.size",
            description="Number of messages per pipeline flush",
            unit="1",
        ),
    )


def _dropped_total():
    return _get_instrument(
        "relay.pipeline.dropped.total",
        lambda m: m.create_counter(
            name="relay.pipeline.dropped.total",
            description="Input messages dropped by a transformer",
            unit="1",
        ),
    )


# ============================================================
# RECORDING HELPERS
# ============================================================


def record_publish(destination: str, batch: bool, count: int = 1):
    _publish_total().add(count, {"destination": destination, "batch": str(batch).lower()})


def record_delivery(queue: str):
    _delivery_total().add(1, {"queue": queue})


def record_confirm(signal: str):
    _confirm_total().add(1, {"signal": signal})


def record_reconnect(outcome: str):  # "ok" | "error"
    _reconnect_total().add(1, {"outcome": outcome})


def record_idle(idle_timeout: float):
    _idle_total().add(1, {"idle_timeout": idle_timeout})


def record_flush(size: int, duration: float, outcome: str):  # "ack" | "reject"
    attrs = {"outcome": outcome}
    _flush_size().record(size, attrs)
    _flush_duration().record(duration, attrs)


def record_dropped():
    _dropped_total().add(1)


__all__ = [
    "record_publish",
    "record_delivery",
    "record_confirm",
    "record_reconnect",
    "record_idle",
    "record_flush",
    "record_dropped",
]
