from typing import Any, Dict, List, Optional

from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.metrics import get_meter_provider, set_meter_provider
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import (
    ConsoleMetricExporter,
    PeriodicExportingMetricReader,
)
from opentelemetry.sdk.resources import Resource
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..policies import _normalize_bool, _normalize_optional
from ._resource import _inject_otel_resource_attributes

# ============================================================
# CONFIG
# ============================================================


class MetricsConfig(BaseModel):
    """
    Push-based export of the relay.* instruments. Every exporter is wrapped in a
    PeriodicExportingMetricReader running every ``export_interval`` seconds.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    resource: Dict[str, Any] = Field(default_factory=dict)
    otlp_endpoint: Optional[str] = None
    otlp_insecure: bool = True
    console: bool = False
    export_interval: float = Field(default=60.0, gt=0)
    exporters: List[Any] = Field(default_factory=list)

    @field_validator("otlp_endpoint", mode="before")
    def _normalize_endpoint(cls, v):
        return _normalize_optional(v)

    @field_validator("otlp_insecure", "console", mode="before")
    def _normalize_flags(cls, v):
        return _normalize_bool(v)

    def build_readers(self) -> List[PeriodicExportingMetricReader]:
        exporters = list(self.exporters)
        if self.otlp_endpoint:
            exporters.append(OTLPMetricExporter(endpoint=self.otlp_endpoint, insecure=self.otlp_insecure))
        if self.console:
            exporters.append(ConsoleMetricExporter())

        interval_ms = self.export_interval * 1000
        return [PeriodicExportingMetricReader(exporter, export_interval_millis=interval_ms) for exporter in exporters]


_CONFIGURED_METRICS = False


def _apply_metrics_config(cfg: MetricsConfig, metadata: dict):
    global _CONFIGURED_METRICS
    if _CONFIGURED_METRICS:
        return

    resource = Resource(attributes=_inject_otel_resource_attributes(resource=cfg.resource, metadata=metadata))
    set_meter_provider(MeterProvider(resource=resource, metric_readers=cfg.build_readers()))

    _CONFIGURED_METRICS = True


def get_metric_meter(name: str):
    return get_meter_provider().get_meter(name)


__all__ = [
    "MetricsConfig",
    "get_metric_meter",
]
