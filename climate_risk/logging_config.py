"""
Logging setup for the climate risk engine

Two output modes: one JSON object per line for log shippers, or aligned
plain text for local work. Request context (source, coordinates, request
id, latency) travels on records through ``extra``.
"""
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO, Tuple

# Attributes every LogRecord carries; anything else arrived through ``extra``
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

CONTEXT_FIELDS = ('request_id', 'source', 'coordinates', 'latency_ms')

NOISY_LOGGERS = ('httpx', 'httpcore', 'redis', 'asyncio')


class StructuredJSONFormatter(logging.Formatter):
    """One JSON object per record (ELK, Loki, CloudWatch)"""

    def __init__(self, service_name: str = "climate-risk-engine"):
        super().__init__()
        self.service_name = service_name
        self.hostname = os.environ.get('HOSTNAME', 'localhost')

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: Dict[str, Any] = {
            "timestamp": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "service": self.service_name,
            "hostname": self.hostname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(context_of(record))

        extras = {
            key: value for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS and key not in CONTEXT_FIELDS and not key.startswith('_')
        }
        if extras:
            entry["extra"] = extras

        if record.exc_info and record.exc_info[0] is not None:
            error_type, error, _ = record.exc_info
            entry["exception"] = {
                "type": error_type.__name__,
                "message": str(error),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str, separators=(',', ':'))


class DevelopmentFormatter(logging.Formatter):
    """Aligned text lines with the source tag appended when present"""

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s %(levelname)-8s %(name)s: %(message)s',
            datefmt='%H:%M:%S'
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = context_of(record)
        if "source" in context:
            line += f" [{context['source']}]"
        if "latency_ms" in context:
            line += f" ({context['latency_ms']}ms)"
        return line


def context_of(record: logging.LogRecord) -> Dict[str, Any]:
    return {name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)}


def setup_logging(
    level: str = "INFO",
    use_json: Optional[bool] = None,
    service_name: str = "climate-risk-engine",
    stream: TextIO = sys.stdout,
) -> None:
    """Install a single console handler on the root logger.

    ``use_json`` defaults to the LOG_FORMAT environment variable.
    """
    if use_json is None:
        use_json = os.environ.get('LOG_FORMAT', '').lower() == 'json'

    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredJSONFormatter(service_name) if use_json else DevelopmentFormatter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level.upper())
    configure_engine_loggers(level)

    logging.getLogger(__name__).debug(
        f"Logging configured ({'json' if use_json else 'development'}, {level.upper()})",
        extra={"service_name": service_name}
    )


def configure_engine_loggers(level: str) -> None:
    """Engine loggers follow ``level``; chatty client libraries stay at WARNING"""
    logging.getLogger('climate_risk').setLevel(level.upper())
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class SourceContextAdapter(logging.LoggerAdapter):
    """Adds fixed source context to every record; call-site extras win"""

    def process(self, msg, kwargs):
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs


def get_source_logger(source: str, coordinates: Optional[Tuple[float, float]] = None,
                      request_id: Optional[str] = None) -> SourceContextAdapter:
    """Logger bound to one source (and optionally a location and request)"""
    context: Dict[str, Any] = {'source': source}
    if coordinates is not None:
        context['coordinates'] = {'lat': coordinates[0], 'lon': coordinates[1]}
    if request_id is not None:
        context['request_id'] = request_id
    return SourceContextAdapter(logging.getLogger('climate_risk.data_sources'), context)
