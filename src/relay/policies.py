from typing import Optional

from pydantic import BaseModel, Field, field_validator

# =====================================================================
#   INTERNAL NORMALIZERS (env-driven values)
# =====================================================================


def _normalize_optional(v):
    """
    Normalize optional env-driven values.

    Accepts:
      - None
      - ""
      - "none" / "null"
      - numeric strings

    Lets Pydantic handle final coercion.
    """
    if v is None:
        return None

    if isinstance(v, str):
        v = v.strip()
        if v == "" or v.lower() in {"none", "null"}:
            return None

    return v


def _normalize_bool(v):
    if isinstance(v, str):
        return v.strip().lower() in {"1", "true", "yes", "on"}
    return v


# =====================================================================
#   SESSION POLICY
# =====================================================================


class SessionPolicy(BaseModel):
    """
    Channel-scoped settings, re-applied every time a new channel is opened.
    """

    prefetch_count: int = Field(default=100, ge=0)
    prefetch_global: bool = Field(default=False)
    publisher_confirms: bool = Field(default=True)
    durable: bool = Field(default=True)
    lazy_queues: bool = Field(default=True)
    resubscribe_on_reconnect: bool = Field(default=True)

    @field_validator("prefetch_count", mode="before")
    @classmethod
    def _normalize_ints(cls, v):
        return _normalize_optional(v)

    @field_validator(
        "prefetch_global",
        "publisher_confirms",
        "durable",
        "lazy_queues",
        "resubscribe_on_reconnect",
        mode="before",
    )
    @classmethod
    def _normalize_flags(cls, v):
        return _normalize_bool(v)


# =====================================================================
#   RETRY POLICY
# =====================================================================


class RetryPolicy(BaseModel):
    """
    Reconnect-and-retry-once policy. There is deliberately no attempt count:
    an operation is retried at most one time.
    """

    enabled: bool = Field(default=False)
    backoff: float = Field(default=0.2, ge=0.0)
    backoff_multiplier: float = Field(default=1.0, ge=1.0)
    backoff_cap: float = Field(default=0.0, ge=0.0)

    @field_validator("enabled", mode="before")
    @classmethod
    def _normalize_enabled(cls, v):
        return _normalize_bool(v)

    @field_validator("backoff", "backoff_multiplier", "backoff_cap", mode="before")
    @classmethod
    def _normalize_numbers(cls, v):
        return _normalize_optional(v)


# =====================================================================
#   SUBSCRIBER / PIPELINE POLICIES
# =====================================================================


class SubscriberPolicy(BaseModel):
    idle_timeout: float = Field(default=10.0, ge=0.0)

    @field_validator("idle_timeout", mode="before")
    @classmethod
    def _normalize_numbers(cls, v):
        return _normalize_optional(v)


class PipelinePolicy(BaseModel):
    buffer_size: int = Field(default=100, ge=1)
    idle_timeout: float = Field(default=10.0, ge=0.0)
    confirm_timeout: Optional[float] = Field(default=None, ge=0)

    @field_validator("buffer_size", "idle_timeout", "confirm_timeout", mode="before")
    @classmethod
    def _normalize_numbers(cls, v):
        return _normalize_optional(v)
