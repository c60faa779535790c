import logging
import math
import time
from datetime import datetime

from . import telemetry
from .policies import RetryPolicy

logger = logging.getLogger(__name__)
tracer = telemetry.tracing.get_tracer(__name__)


def _get_wake_time_iso(delay: float) -> str:
    return datetime.fromtimestamp(time.time() + delay).isoformat()


# ============================================================
#  RECONNECT BACKOFF
# ============================================================


def compute_backoff(backoff: float, multiplier: float, cap: float, attempt: int) -> float:
    """
    ``backoff * multiplier ** attempt``, limited to ``cap`` when it is positive.
    """
    if backoff <= 0:
        return 0.0

    if cap > 0 and multiplier > 1:
        # the exponent never needs to go past the cap
        ceiling = math.floor(math.log(cap / backoff, multiplier)) if cap > backoff else 0
        attempt = min(attempt, ceiling)

    delay = backoff * (multiplier**attempt)
    return min(delay, cap) if cap > 0 else delay


def reconnect_delay(policy: RetryPolicy, attempt: int = 0) -> float:
    return compute_backoff(policy.backoff, policy.backoff_multiplier, policy.backoff_cap, attempt)


def sleep_before_reconnect(policy: RetryPolicy, attempt: int = 0) -> float:
    """Block for the policy's delay for this attempt. Returns the delay slept."""
    delay = reconnect_delay(policy, attempt)
    if delay > 0:
        with tracer.start_as_current_span("relay.retry.backoff", attributes={"delay": delay, "attempt": attempt}):
            logger.info(f"Reconnecting in {delay} seconds (at {_get_wake_time_iso(delay)}), attempt {attempt}")
            time.sleep(delay)
    return delay
