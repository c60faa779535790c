import threading
from typing import Any, Dict, List, Optional

from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import set_tracer_provider
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..policies import _normalize_bool, _normalize_optional
from ._resource import _inject_otel_resource_attributes

# ============================================================
# CONFIG
# ============================================================


class TracingConfig(BaseModel):
    """
    Tracing for reconnects, retried channel operations and pipeline flushes.

    Spans go to an OTLP collector when ``otlp_endpoint`` is set and/or to stdout
    when ``console`` is on. Extra exporter instances can be passed in ``exporters``.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    resource: Dict[str, Any] = Field(default_factory=dict)
    otlp_endpoint: Optional[str] = None
    otlp_insecure: bool = True
    console: bool = False
    batch: bool = True
    sample_ratio: float = Field(default=1.0, ge=0.0, le=1.0)
    exporters: List[Any] = Field(default_factory=list)

    @field_validator("otlp_endpoint", mode="before")
    def _normalize_endpoint(cls, v):
        return _normalize_optional(v)

    @field_validator("otlp_insecure", "console", "batch", mode="before")
    def _normalize_flags(cls, v):
        return _normalize_bool(v)

    def build_exporters(self) -> List[Any]:
        exporters = list(self.exporters)
        if self.otlp_endpoint:
            exporters.append(OTLPSpanExporter(endpoint=self.otlp_endpoint, insecure=self.otlp_insecure))
        if self.console:
            exporters.append(ConsoleSpanExporter())
        return exporters


# ============================================================
# APPLY
# ============================================================

_TRACING_CONFIGURED = False
_TRACING_LOCK = threading.Lock()


def _apply_tracing_config(cfg: TracingConfig, metadata: dict):
    """
    Install the global TracerProvider once per process.
    """
    global _TRACING_CONFIGURED

    with _TRACING_LOCK:
        if _TRACING_CONFIGURED:
            return

        resource = Resource(attributes=_inject_otel_resource_attributes(resource=cfg.resource, metadata=metadata))
        provider = TracerProvider(resource=resource, sampler=ParentBased(TraceIdRatioBased(cfg.sample_ratio)))

        processor_cls = BatchSpanProcessor if cfg.batch else SimpleSpanProcessor
        for exporter in cfg.build_exporters():
            provider.add_span_processor(processor_cls(exporter))

        set_tracer_provider(provider)
        _TRACING_CONFIGURED = True


def get_tracer(name: str = "relay"):
    from opentelemetry.trace import get_tracer

    return get_tracer(name)


__all__ = [
    "TracingConfig",
    "get_tracer",
]
