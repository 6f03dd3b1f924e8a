"""Structured logging setup with JSON-lines output and redaction support.

One run writes ``<log_dir>/<run_id>/build.jsonl`` through a queue listener so
build workers never block on disk. ``structlog`` loggers used across the
package are routed into the same sink once :func:`setup_structured_logging`
has run; before that they keep structlog's default console output.

Every line carries ``timestamp``, ``level``, ``logger`` and ``message``, the
correlation keys that are bound (``run_id``, ``module``, ``phase``), and any
remaining event fields under ``fields``.
"""

from __future__ import annotations

import atexit
import contextvars
import json
import logging
import logging.handlers
import math
import queue
import re
import threading
import time
from collections.abc import Callable, Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

import structlog

from bundle_orchestrator.constants import LOG_DIR

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

CORRELATION_KEYS: Final[tuple[str, ...]] = ("run_id", "module", "phase")

REDACTED: Final[str] = "***REDACTED***"
_ROOT_LOGGER: Final[str] = "bundle_orchestrator"
_EVENT_ATTR: Final[str] = "structured"
_CORRELATION_ATTR: Final[str] = "correlation"

# Attributes every LogRecord has; anything else arrived through ``extra``.
_RECORD_ATTRS: Final[frozenset[str]] = frozenset(vars(logging.makeLogRecord({}))) | {
    "message",
    "asctime",
    "taskName",
}

_SECRET_KEY_FRAGMENTS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passwd",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
    "private_key",
)
_SECRET_ASSIGNMENT: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b([A-Z0-9_]*(?:api[_-]?key|token|password|secret|authorization)[A-Z0-9_]*)"
    r"\s*([:=])\s*([^\s,;]+)"
)
_BEARER: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_URL_USERINFO: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b([a-z][a-z0-9+.-]*://)[^/\s:@]+:[^/\s@]+@"
)

_correlation: contextvars.ContextVar[Mapping[str, str]] = contextvars.ContextVar(
    "bundle_log_correlation", default={}
)

_active_lock = threading.Lock()
_active: StructuredLoggingHandle | None = None
_atexit_hooked = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    run_id: str
    base_log_dir: Path | str = Path(LOG_DIR)
    logger_name: str = _ROOT_LOGGER
    level: int | str = "INFO"
    queue_size: int = 4096
    log_filename: str = "build.jsonl"
    log_to_stdout: bool = False
    redact_secrets: bool = True


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
) -> StructuredLoggingHandle:
    """Start run logging from an ``[observability]`` config section.

    ``log_dir`` wins over the section's ``log_dir`` when given.
    """

    section = observability_config or {}
    level = section.get("log_level", "INFO")
    base = log_dir if log_dir is not None else section.get("log_dir", str(LOG_DIR))
    return setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=base if isinstance(base, (str, Path)) else str(LOG_DIR),
            level=level if isinstance(level, (int, str)) else "INFO",
            log_to_stdout=bool(section.get("log_to_stdout", False)),
            redact_secrets=bool(section.get("redact_secrets", True)),
        )
    )


class _DroppingQueueHandler(logging.handlers.QueueHandler):
    """Enqueue without blocking; a full queue drops the record and counts it."""

    def __init__(self, log_queue: queue.Queue[Any]) -> None:
        super().__init__(log_queue)
        self._count_lock = threading.Lock()
        self.dropped = 0

    def prepare(self, record: logging.LogRecord) -> Any:
        # The listener thread cannot see this thread's contextvars.
        bound = _correlation.get()
        if bound:
            setattr(record, _CORRELATION_ATTR, dict(bound))
        return super().prepare(record)

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._count_lock:
                self.dropped += 1


class _JsonLinesFormatter(logging.Formatter):
    def __init__(self, run_id: str, redactor: LogRedactor) -> None:
        super().__init__()
        self._run_id = run_id
        self._redact = redactor

    def format(self, record: logging.LogRecord) -> str:
        document: dict[str, JSONValue] = {
            "timestamp": _utc_stamp(record.created),
            "level": record.levelname,
            "logger": record.name,
            "message": _as_text(self._redact(record.getMessage())),
        }
        document.update(self._correlation_for(record))

        fields = self._fields_for(record)
        if fields:
            document["fields"] = self._redact(fields)
        if record.exc_info:
            document["exception"] = _as_text(self._redact(self.formatException(record.exc_info)))
        return json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def _correlation_for(self, record: logging.LogRecord) -> dict[str, str]:
        found = {"run_id": self._run_id}
        bound = getattr(record, _CORRELATION_ATTR, None)
        if isinstance(bound, Mapping):
            found.update((k, v) for k, v in bound.items() if isinstance(v, str) and v)
        event = getattr(record, _EVENT_ATTR, None)
        if isinstance(event, Mapping):
            for key in CORRELATION_KEYS:
                value = event.get(key)
                if isinstance(value, str) and value.strip():
                    found[key] = value.strip()
        return found

    @staticmethod
    def _fields_for(record: logging.LogRecord) -> dict[str, JSONValue]:
        fields: dict[str, JSONValue] = {}
        for key, value in vars(record).items():
            if key in _RECORD_ATTRS or key == _CORRELATION_ATTR or key.startswith("_"):
                continue
            if key == _EVENT_ATTR and isinstance(value, Mapping):
                fields.update(
                    (str(k), _jsonable(v)) for k, v in value.items() if k not in CORRELATION_KEYS
                )
            else:
                fields[key] = _jsonable(value)
        return fields


class StructuredLoggingHandle:
    """An active run log: the queue, its listener thread and the sinks it feeds."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        run_id: str,
        log_path: Path,
        queue_handler: _DroppingQueueHandler,
        listener: logging.handlers.QueueListener,
        sinks: tuple[logging.Handler, ...],
    ) -> None:
        self.logger = logger
        self.run_id = run_id
        self.log_path = log_path
        self._queue_handler = queue_handler
        self._listener = listener
        self._sinks = sinks
        self._lock = threading.Lock()
        self._closed = False

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        """Wait up to ``timeout_seconds`` for the listener to drain the queue."""

        pending: queue.Queue[Any] = self._queue_handler.queue  # type: ignore[assignment]
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        with pending.all_tasks_done:
            while pending.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                pending.all_tasks_done.wait(remaining)
        for sink in self._sinks:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._lock:
            if self._closed:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.close()
            structlog.reset_defaults()
            self._closed = True


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Replace any active run log with a new queue-backed one for ``config.run_id``."""

    global _active
    previous = get_active_logging_handle()
    if previous is not None:
        previous.shutdown()
    with _active_lock:
        _active = None

    run_id = _non_empty(config.run_id, "run_id")
    filename = _non_empty(config.log_filename, "log_filename")
    if Path(filename).name != filename:
        raise ValueError("log_filename must not include path separators")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = _level_number(config.level)

    run_dir = Path(config.base_log_dir) / run_id
    run_dir.mkdir(parents=True, exist_ok=True)
    log_path = run_dir / filename

    formatter = _JsonLinesFormatter(
        run_id, default_log_redactor if config.redact_secrets else _unchanged
    )
    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_stdout:
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(_non_empty(config.logger_name, "logger_name"))
    logger.setLevel(level)
    logger.propagate = False
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()

    queue_handler = _DroppingQueueHandler(queue.Queue(maxsize=config.queue_size))
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(
        queue_handler.queue, *sinks, respect_handler_level=True
    )
    listener.start()
    logger.addHandler(queue_handler)
    configure_structlog(level)

    handle = StructuredLoggingHandle(
        logger=logger,
        run_id=run_id,
        log_path=log_path,
        queue_handler=queue_handler,
        listener=listener,
        sinks=tuple(sinks),
    )
    with _active_lock:
        _active = handle
    _hook_atexit()
    return handle


def configure_structlog(level: int = logging.INFO) -> None:
    """Send ``structlog`` events through the stdlib ``bundle_orchestrator`` logger tree."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.format_exc_info,
            _into_record_extra,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )
    logging.getLogger(_ROOT_LOGGER).setLevel(level)


def _into_record_extra(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> dict[str, Any]:
    # ``module`` and friends clash with LogRecord attributes, so nest the event.
    message = event_dict.pop("event", "")
    return {"msg": str(message), "extra": {_EVENT_ATTR: dict(event_dict)}}


def flush_logging(
    handle: StructuredLoggingHandle | None = None, *, timeout_seconds: float = 2.0
) -> None:
    target = handle or get_active_logging_handle()
    if target is not None:
        target.flush(timeout_seconds=timeout_seconds)


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None, *, timeout_seconds: float = 2.0
) -> None:
    """Stop ``handle`` (the active one by default) after draining its queue."""

    global _active
    target = handle or get_active_logging_handle()
    if target is None:
        return
    target.shutdown(timeout_seconds=timeout_seconds)
    with _active_lock:
        if _active is target:
            _active = None


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _active_lock:
        return _active


def get_correlation_context() -> dict[str, str]:
    return dict(_correlation.get())


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields for log records emitted inside the block.

    A ``None`` value unbinds that key. asyncio tasks copy the context when they
    are created, so a scope entered inside a module's task never leaks into
    its siblings.
    """

    bound = dict(_correlation.get())
    for key, value in fields.items():
        if value is None:
            bound.pop(key, None)
        else:
            bound[_non_empty(key, "correlation key")] = _non_empty(value, "correlation value")
    token = _correlation.set(bound)
    try:
        yield
    finally:
        _correlation.reset(token)


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Mask secret-looking keys, ``key=value`` assignments, bearer tokens and URL userinfo."""

    if isinstance(value, dict):
        return {
            key: REDACTED if _is_secret_key(key) else default_log_redactor(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [default_log_redactor(item) for item in value]
    if isinstance(value, str):
        masked = _SECRET_ASSIGNMENT.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}", value)
        masked = _BEARER.sub(f"Bearer {REDACTED}", masked)
        return _URL_USERINFO.sub(lambda m: f"{m.group(1)}{REDACTED}@", masked)
    return value


def _is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(fragment in lowered for fragment in _SECRET_KEY_FRAGMENTS)


def _unchanged(value: JSONValue) -> JSONValue:
    return value


def _hook_atexit() -> None:
    global _atexit_hooked
    if not _atexit_hooked:
        atexit.register(shutdown_logging)
        _atexit_hooked = True


def _non_empty(value: object, label: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{label} must be a string, got {type(value).__name__}")
    stripped = value.strip()
    if not stripped:
        raise ValueError(f"{label} must not be empty")
    return stripped


def _level_number(level: int | str) -> int:
    if isinstance(level, int):
        return level
    number = logging.getLevelName(str(level).strip().upper())
    if not isinstance(number, int):
        raise ValueError(f"unsupported logging level {level!r}")
    return number


def _utc_stamp(epoch_seconds: float) -> str:
    moment = datetime.fromtimestamp(epoch_seconds, tz=UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _as_text(value: JSONValue) -> str:
    if isinstance(value, str):
        return value
    return "" if value is None else json.dumps(value, sort_keys=True, ensure_ascii=False)


def _jsonable(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return aware.astimezone(UTC).isoformat().replace("+00:00", "Z")
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_jsonable(item) for item in value), key=lambda item: json.dumps(item))
    return repr(value)


__all__ = [
    "CORRELATION_KEYS",
    "JSONScalar",
    "JSONValue",
    "LogRedactor",
    "LoggingConfig",
    "REDACTED",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "flush_logging",
    "get_active_logging_handle",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
