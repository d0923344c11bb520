from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
import json
import logging
import sys
from threading import Lock
from typing import Iterator

_task_id_var: ContextVar[str | None] = ContextVar('taskgate_task_id', default=None)
_username_var: ContextVar[str | None] = ContextVar('taskgate_username', default=None)

# Optional structured fields callers may pass through ``extra=``.
_EXTRA_FIELDS = ('app', 'stage')

_ROOT_LOGGER = 'taskgate'


def set_request_context(task_id: str | None = None, username: str | None = None) -> None:
    _task_id_var.set(task_id)
    _username_var.set(username)


@contextmanager
def request_context(*, task_id: str | None = None, username: str | None = None) -> Iterator[None]:
    """Bind task id and acting user for the duration of the block."""
    task_token = _task_id_var.set(task_id)
    user_token = _username_var.set(username)
    try:
        yield
    finally:
        _username_var.reset(user_token)
        _task_id_var.reset(task_token)


def get_task_id() -> str | None:
    return _task_id_var.get()


def get_username() -> str | None:
    return _username_var.get()


class _JsonFormatter(logging.Formatter):
    def __init__(self, *, service_name: str | None = None):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            'ts': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
        }
        if self.service_name:
            payload['service'] = self.service_name
        task_id = getattr(record, 'task_id', None) or get_task_id()
        if task_id:
            payload['task_id'] = task_id
        username = getattr(record, 'username', None) or get_username()
        if username:
            payload['user'] = username
        for key in _EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        if record.exc_info and record.exc_info[1] is not None:
            payload['exc'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


_configured = False
_configured_otlp_endpoint: str | None = None
_configure_lock = Lock()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def _install_json_handler(service_name: str, level: str) -> None:
    root = logging.getLogger(_ROOT_LOGGER)
    if not any(isinstance(getattr(h, 'formatter', None), _JsonFormatter) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(_JsonFormatter(service_name=service_name))
        root.addHandler(handler)
    root.setLevel(logging.getLevelName(str(level or 'INFO').upper()))


def _install_tracing(service_name: str, endpoint: str) -> bool:
    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except Exception:
        get_logger('taskgate.observability').warning('OpenTelemetry unavailable; tracing disabled', exc_info=True)
        return False

    provider = TracerProvider(resource=Resource.create({'service.name': service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    return True


def configure_observability(*, service_name: str, otlp_endpoint: str | None, level: str = 'INFO') -> None:
    """Install JSON logging on the ``taskgate`` logger once; enable OTLP tracing when an endpoint is set."""
    global _configured
    global _configured_otlp_endpoint
    with _configure_lock:
        if not _configured:
            _install_json_handler(service_name, level)
            _configured = True

    endpoint = str(otlp_endpoint or '').strip()
    if not endpoint:
        return
    with _configure_lock:
        if _configured_otlp_endpoint == endpoint:
            return
    if _install_tracing(service_name, endpoint):
        with _configure_lock:
            _configured_otlp_endpoint = endpoint
