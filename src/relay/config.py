import os
import socket
import uuid
from datetime import datetime
from typing import Mapping, Optional, get_args

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .client import Client
from .policies import PipelinePolicy, RetryPolicy, SessionPolicy, SubscriberPolicy
from .rabbitmq import ConnectionSettings, PikaSession
from .telemetry import logging, metrics, tracing
from .telemetry.logging import LoggingConfig
from .telemetry.metrics import MetricsConfig
from .telemetry.tracing import TracingConfig

ENV_LOADED = False


def load_env() -> None:
    """
    Load the dotenv file named by ENV_FILE, if any. Variables that are already
    set in the environment (Docker/K8s) win over the file.
    """
    global ENV_LOADED
    if ENV_LOADED:
        return

    env_file = os.environ.get("ENV_FILE")
    if env_file and os.path.exists(env_file):
        load_dotenv(env_file, encoding="utf-8", override=False)

    ENV_LOADED = True


# =====================================================================
#   RUN METADATA
# =====================================================================


class RunMetadata(BaseModel):
    client_name: str
    execution_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    execution_start_time: str = Field(default_factory=lambda: datetime.now().isoformat())
    pid: int = Field(default_factory=os.getpid)
    host_name: str = Field(default_factory=lambda: RunMetadata._get_host_name())
    host_ip: str = Field(default_factory=lambda: RunMetadata._get_host_ip())

    # ---------- STATIC HELPERS ----------
    @staticmethod
    def _get_host_ip() -> str:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            s.connect(("8.8.8.8", 80))
            return s.getsockname()[0]
        except OSError:
            return "127.0.0.1"
        finally:
            s.close()

    @staticmethod
    def _get_host_name() -> str:
        return socket.gethostname()


# =====================================================================
#   SETTINGS
# =====================================================================


class Settings(BaseModel):
    client_name: str = "relay"
    connection: ConnectionSettings = Field(default_factory=ConnectionSettings)
    session: SessionPolicy = Field(default_factory=SessionPolicy)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    subscriber: SubscriberPolicy = Field(default_factory=SubscriberPolicy)
    pipeline: PipelinePolicy = Field(default_factory=PipelinePolicy)

    logging: Optional[LoggingConfig] = None
    tracing: Optional[TracingConfig] = None
    metrics: Optional[MetricsConfig] = None

    @classmethod
    def from_env(cls, prefix: str = "RELAY_", environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from ``<PREFIX><SECTION>_<FIELD>`` variables, e.g.
        RELAY_CONNECTION_HOST, RELAY_RETRY_ENABLED or RELAY_PIPELINE_BUFFER_SIZE.
        Without an explicit ``environ`` the process environment is used, after
        loading the ENV_FILE dotenv file.
        """
        if environ is None:
            load_env()
            environ = os.environ

        sections = {}
        for section, field in cls.model_fields.items():
            model = field.annotation
            # Optional[...] sections are only built when one of their variables is set
            optional = not isinstance(model, type)
            if optional:
                model = next((arg for arg in get_args(model) if arg is not type(None)), None)
            if not (isinstance(model, type) and issubclass(model, BaseModel)):
                continue

            values = {}
            for name in model.model_fields:
                key = f"{prefix}{section}_{name}".upper()
                if key in environ:
                    values[name] = environ[key]

            if values or not optional:
                sections[section] = model(**values)

        client_name = environ.get(f"{prefix}CLIENT_NAME".upper(), "relay")
        return cls(client_name=client_name, **sections)


# =====================================================================
#   BOOTSTRAP
# =====================================================================


def configure_telemetry(settings: Settings, name: Optional[str] = None) -> RunMetadata:
    """
    Apply the logging, tracing and metrics configuration once per process.
    """
    metadata = RunMetadata(client_name=name or settings.client_name)
    attributes = metadata.model_dump()

    if settings.logging:
        logging._apply_logging_config(cfg=settings.logging, metadata=attributes)

    if settings.tracing:
        tracing._apply_tracing_config(cfg=settings.tracing, metadata=attributes)

    if settings.metrics:
        metrics._apply_metrics_config(cfg=settings.metrics, metadata=attributes)

    return metadata


def connect(settings: Optional[Settings] = None) -> Client:
    settings = settings or Settings.from_env()
    return Client(PikaSession(settings.connection), settings.session, settings.retry)
