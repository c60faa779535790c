from typing import Optional

from pydantic import BaseModel, Field, field_validator

from ..policies import _normalize_bool, _normalize_optional


class ConnectionSettings(BaseModel):
    host: str = Field(default="localhost", description="The RabbitMQ host")
    port: int = Field(default=5672, description="The RabbitMQ port")
    username: str = Field(default="guest", description="The RabbitMQ username")
    password: str = Field(default="guest", description="The RabbitMQ password")
    virtual_host: str = Field(default="/", description="The RabbitMQ vhost")
    connection_attempts: int = Field(default=3, ge=1, description="Connection attempts per (re)connect")
    retry_delay: float = Field(default=2.0, ge=0, description="Seconds between connection attempts")
    socket_timeout: float = Field(default=10.0, gt=0, description="Socket timeout in seconds")
    heartbeat: Optional[int] = Field(default=600, description="Heartbeat interval in seconds")
    blocked_connection_timeout: Optional[float] = Field(
        default=None, description="Timeout when connection is blocked by the broker"
    )
    ssl_enabled: bool = Field(default=False, description="Enable SSL/TLS")
    ssl_ca_certs: Optional[str] = Field(default=None, description="Path to CA certificate when using SSL")

    @field_validator(
        "port",
        "connection_attempts",
        "retry_delay",
        "socket_timeout",
        "heartbeat",
        "blocked_connection_timeout",
        "ssl_ca_certs",
        mode="before",
    )
    @classmethod
    def _normalize_optional_values(cls, v):
        return _normalize_optional(v)

    @field_validator("ssl_enabled", mode="before")
    @classmethod
    def _normalize_ssl(cls, v):
        return _normalize_bool(v)
