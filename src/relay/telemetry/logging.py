import logging
import logging.config
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional, Union

from opentelemetry._logs import set_logger_provider
from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
from opentelemetry.sdk._logs import LoggerProvider
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor, SimpleLogRecordProcessor
from opentelemetry.sdk.resources import Resource
from pydantic import BaseModel, Field

from ._resource import _inject_otel_resource_attributes

Level = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

DEFAULT_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"
JSON_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# ============================================================
# CONFIG OBJECTS
# ============================================================


class LogFormatter(BaseModel):
    name: str
    fmt: str = DEFAULT_FORMAT
    datefmt: str = "%Y-%m-%d %H:%M:%S"


class LogFilter(BaseModel):
    name: str
    filter: Any  # logging.Filter subclass
    config: Dict[str, Any] = Field(default_factory=dict)


class _LogHandler(BaseModel):
    level: Level = "INFO"
    json_format: bool = False
    # named formatter, overrides json_format
    formatter: Optional[str] = None
    filters: List[str] = Field(default_factory=list)

    @property
    def formatter_name(self) -> str:
        if self.formatter:
            return self.formatter
        return "json" if self.json_format else "default"


class ConsoleLogHandler(_LogHandler):
    type: Literal["console"] = "console"
    stream: Literal["stdout", "stderr"] = "stderr"


class FileLogHandler(_LogHandler):
    """
    Log file; ``filename`` may contain ``{pid}``, ``{client}`` and ``{timestamp}``.
    ``rotate`` picks plain, size based or time based rotation.
    """

    type: Literal["file"] = "file"
    filename: str
    mode: Literal["a", "w"] = "a"
    rotate: Literal["none", "size", "time"] = "none"
    max_bytes: int = 10_000_000
    when: Literal["S", "M", "H", "D", "midnight"] = "midnight"
    interval: int = 1
    backup_count: int = 5
    callback: Optional[Callable[..., str]] = None


class OTLPLogHandler(_LogHandler):
    """Ships log records to an OTLP collector through the OpenTelemetry log pipeline."""

    type: Literal["otlp"] = "otlp"
    endpoint: str
    insecure: bool = True
    batch: bool = True
    resource: Dict[str, Any] = Field(default_factory=dict)


LogHandlers = Union[ConsoleLogHandler, FileLogHandler, OTLPLogHandler]


class LoggingConfig(BaseModel):
    level: Level = "INFO"
    handlers: List[LogHandlers] = Field(default_factory=lambda: [ConsoleLogHandler()])
    filters: List[LogFilter] = Field(default_factory=list)
    formatters: List[LogFormatter] = Field(default_factory=list)
    # per-logger levels
    loggers: Dict[str, Level] = Field(default_factory=lambda: {"pika": "WARNING"})


# ============================================================
# HANDLER BUILDERS
# ============================================================


def _resolve_filename(cfg: FileLogHandler, metadata: dict) -> str:
    final = cfg.filename.format(
        pid=metadata["pid"],
        client=metadata["client_name"],
        timestamp=datetime.now().strftime("%Y-%m-%d_%H-%M-%S"),
    )

    if cfg.callback:
        final = cfg.callback(filename=final, metadata=metadata)

    Path(final).parent.mkdir(parents=True, exist_ok=True)
    return final


def _build_console_handler(cfg: ConsoleLogHandler, metadata: dict) -> dict:
    return {
        "class": "logging.StreamHandler",
        "stream": f"ext://sys.{cfg.stream}",
    }


def _build_file_handler(cfg: FileLogHandler, metadata: dict) -> dict:
    handler = {"filename": _resolve_filename(cfg, metadata), "encoding": "utf-8"}

    if cfg.rotate == "size":
        handler.update(
            {
                "class": "logging.handlers.RotatingFileHandler",
                "maxBytes": cfg.max_bytes,
                "backupCount": cfg.backup_count,
            }
        )
    elif cfg.rotate == "time":
        handler.update(
            {
                "class": "logging.handlers.TimedRotatingFileHandler",
                "when": cfg.when,
                "interval": cfg.interval,
                "backupCount": cfg.backup_count,
            }
        )
    else:
        handler.update({"class": "logging.FileHandler", "mode": cfg.mode})

    return handler


def _build_otlp_handler(cfg: OTLPLogHandler, metadata: dict) -> dict:
    resource = Resource(attributes=_inject_otel_resource_attributes(resource=cfg.resource, metadata=metadata))
    provider = LoggerProvider(resource=resource)

    exporter = OTLPLogExporter(endpoint=cfg.endpoint, insecure=cfg.insecure)
    processor_cls = BatchLogRecordProcessor if cfg.batch else SimpleLogRecordProcessor
    provider.add_log_record_processor(processor_cls(exporter))
    set_logger_provider(provider)

    return {"class": "opentelemetry.sdk._logs.LoggingHandler"}


_HANDLER_BUILDERS = {
    "console": _build_console_handler,
    "file": _build_file_handler,
    "otlp": _build_otlp_handler,
}

# ============================================================
# APPLY
# ============================================================

_LOGGING_CONFIGURED = False


def build_dict_config(cfg: LoggingConfig, metadata: dict) -> dict:
    """Translate a LoggingConfig into a ``logging.config.dictConfig`` dictionary."""
    formatters = {
        "default": {"format": DEFAULT_FORMAT, "datefmt": "%Y-%m-%d %H:%M:%S"},
        "json": {"()": "pythonjsonlogger.jsonlogger.JsonFormatter", "fmt": JSON_FORMAT},
    }
    formatters.update({f.name: {"format": f.fmt, "datefmt": f.datefmt} for f in cfg.formatters})

    handlers = {}
    for idx, handler_cfg in enumerate(cfg.handlers):
        handler = _HANDLER_BUILDERS[handler_cfg.type](handler_cfg, metadata)
        handler.update(
            {
                "level": handler_cfg.level,
                "formatter": handler_cfg.formatter_name,
                "filters": handler_cfg.filters,
            }
        )
        handlers[f"handler_{idx}"] = handler

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "filters": {f.name: {"()": f.filter, **f.config} for f in cfg.filters},
        "handlers": handlers,
        "loggers": {name: {"level": level} for name, level in cfg.loggers.items()},
        "root": {"level": cfg.level, "handlers": list(handlers)},
    }


def _apply_logging_config(cfg: LoggingConfig, metadata: dict):
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    logging.config.dictConfig(build_dict_config(cfg, metadata))
    _LOGGING_CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


__all__ = [
    "ConsoleLogHandler",
    "FileLogHandler",
    "OTLPLogHandler",
    "LogFilter",
    "LogFormatter",
    "LoggingConfig",
    "build_dict_config",
    "get_logger",
]
