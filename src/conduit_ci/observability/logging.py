"""
Run-scoped JSON-lines logging.

Every run writes ``<log_dir>/<run_id>/conduit.jsonl``. Both plain ``logging``
records and ``structlog.get_logger(__name__)`` events go through one stdlib
logger, a bounded queue and a background listener, so stage supervision never
waits on disk. A full queue drops records and counts them.

Lines are rendered by a ``structlog.stdlib.ProcessorFormatter`` chain:

- ``run_id``, ``pipeline``, ``stage_id`` and ``attempt`` come from the
  correlation scope active where the record was emitted, or from keyword
  arguments of the same name;
- every other keyword or ``extra`` field is nested under ``fields``;
- secret-looking keys and credential-shaped substrings are masked.
"""

from __future__ import annotations

import atexit
import contextvars
import logging
import logging.handlers
import math
import queue
import re
import threading
import time
from collections.abc import Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

import structlog

DEFAULT_LOG_FILENAME: Final[str] = "conduit.jsonl"
DEFAULT_LOGGER_NAME: Final[str] = "conduit_ci"
REDACTED: Final[str] = "***REDACTED***"

_CORRELATION_KEYS: Final[tuple[str, ...]] = ("run_id", "pipeline", "stage_id", "attempt")

_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
    "private_key",
)

# (pattern, replacement) pairs applied in order to every logged string.
_CREDENTIAL_PATTERNS: Final[tuple[tuple[re.Pattern[str], str], ...]] = (
    (
        re.compile(r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)\b\s*([:=])\s*([^\s,;]+)"),
        rf"\1\2{REDACTED}",
    ),
    (re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*"), f"Bearer {REDACTED}"),
    (re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"), REDACTED),
    (re.compile(r"\bAKIA[0-9A-Z]{16}\b"), REDACTED),
    (re.compile(r"(?i)\b([a-z][a-z0-9+.-]*://)[^\s/:@]+:[^\s/@]+@"), rf"\1{REDACTED}@"),
)

# Attributes every LogRecord carries; anything else was passed as an extra.
_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime", "correlation"}

_CORRELATION: contextvars.ContextVar[tuple[tuple[str, str], ...]] = contextvars.ContextVar(
    "conduit_log_correlation", default=()
)

_ACTIVE_LOCK = threading.Lock()
_ACTIVE: RunLogHandle | None = None
_ATEXIT_REGISTERED = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    run_id: str
    base_log_dir: Path | str = Path(".conduit/logs")
    logger_name: str = DEFAULT_LOGGER_NAME
    level: int | str = "INFO"
    queue_size: int = 4096
    log_to_stdout: bool = False
    redact: bool = True


def configure_structlog() -> None:
    """Hand structlog events to stdlib logging; rendering happens in our handlers."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def setup_logging(
    observability: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
    logger_name: str = DEFAULT_LOGGER_NAME,
) -> RunLogHandle:
    """Start run logging from the ``[observability]`` config section."""

    section = dict(observability or {})
    level = section.get("log_level", "INFO")
    base_dir = log_dir if log_dir is not None else section.get("log_dir", ".conduit/logs")
    return setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=base_dir if isinstance(base_dir, (str, Path)) else ".conduit/logs",
            logger_name=logger_name,
            level=level if isinstance(level, (int, str)) else "INFO",
            log_to_stdout=bool(section.get("log_to_stdout", False)),
            redact=bool(section.get("redact_secrets", True)),
        )
    )


def setup_structured_logging(config: LoggingConfig) -> RunLogHandle:
    """Attach a queue-backed JSON-lines sink for one run; replaces any active one."""

    previous = _swap_active(None)
    if previous is not None:
        previous.shutdown()

    if not config.run_id.strip():
        raise ValueError("run_id must not be empty")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = _parse_level(config.level)

    log_path = Path(config.base_log_dir) / config.run_id / DEFAULT_LOG_FILENAME
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = _json_formatter(run_id=config.run_id, redact=config.redact)
    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_stdout:
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(config.logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    log_queue: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=config.queue_size)
    queue_handler = _DroppingQueueHandler(log_queue)
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(log_queue, *sinks, respect_handler_level=True)
    listener.start()
    logger.addHandler(queue_handler)
    configure_structlog()

    handle = RunLogHandle(logger, log_path, log_queue, queue_handler, tuple(sinks), listener)
    _swap_active(handle)
    _register_atexit()
    return handle


def shutdown_logging(handle: RunLogHandle | None = None) -> None:
    """Drain and close ``handle`` (default: the active run's sink)."""

    global _ACTIVE
    with _ACTIVE_LOCK:
        resolved = handle if handle is not None else _ACTIVE
    if resolved is None:
        return
    resolved.shutdown()
    with _ACTIVE_LOCK:
        if _ACTIVE is resolved:
            _ACTIVE = None


class RunLogHandle:
    """An active run sink. ``shutdown`` is idempotent."""

    def __init__(
        self,
        logger: logging.Logger,
        log_path: Path,
        log_queue: queue.Queue[logging.LogRecord],
        queue_handler: _DroppingQueueHandler,
        sinks: tuple[logging.Handler, ...],
        listener: logging.handlers.QueueListener,
    ) -> None:
        self.logger = logger
        self.log_path = log_path
        self._queue = log_queue
        self._queue_handler = queue_handler
        self._sinks = sinks
        self._listener = listener
        self._lock = threading.Lock()
        self._closed = False

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        """Wait for queued records to reach the sinks, up to ``timeout_seconds``."""
        deadline = time.monotonic() + timeout_seconds
        while self._queue.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.01)
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
                sink.flush()
                sink.close()
            self._closed = True


class _DroppingQueueHandler(logging.handlers.QueueHandler):
    def __init__(self, log_queue: queue.Queue[logging.LogRecord]) -> None:
        super().__init__(log_queue)
        self._dropped = 0
        self._dropped_lock = threading.Lock()

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # The listener thread has its own context; capture correlation here.
        context = get_correlation_context()
        if context:
            record.correlation = context
        prepared: logging.LogRecord = super().prepare(record)
        return prepared

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self._dropped += 1


# ---------------------------------------------------------------------------
# Correlation
# ---------------------------------------------------------------------------


def get_correlation_context() -> dict[str, str]:
    return dict(_CORRELATION.get())


@contextmanager
def correlation_scope(**fields: str | int | None) -> Iterator[None]:
    """
    Bind correlation fields (``run_id``, ``pipeline``, ``stage_id``, ``attempt``)
    for the enclosed block.

    Bindings live in a ``ContextVar``, so concurrent stage tasks never see each
    other's fields. ``None`` unbinds a field inside the block.
    """
    state = get_correlation_context()
    for key, value in fields.items():
        if value is None:
            state.pop(key, None)
        else:
            state[key] = str(value)
    token = _CORRELATION.set(tuple(state.items()))
    try:
        yield
    finally:
        _CORRELATION.reset(token)


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------


def redact_text(text: str) -> str:
    for pattern, replacement in _CREDENTIAL_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def _redact(value: object, key: str | None = None) -> object:
    if key is not None and any(term in key.lower() for term in _SENSITIVE_KEY_TERMS):
        return REDACTED
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, list):
        return [_redact(item) for item in value]
    if isinstance(value, dict):
        return {name: _redact(item, name) for name, item in value.items()}
    return value


# ---------------------------------------------------------------------------
# structlog processors
# ---------------------------------------------------------------------------


def _json_formatter(*, run_id: str, redact: bool) -> structlog.stdlib.ProcessorFormatter:
    def bind_record(_: Any, __: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
        record: logging.LogRecord = event_dict["_record"]
        event_dict["timestamp"] = (
            datetime.fromtimestamp(record.created, tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")
        )
        event_dict["run_id"] = run_id
        event_dict.update(getattr(record, "correlation", {}))
        extras: dict[str, object] = {}
        for name, value in record.__dict__.items():
            if name in _RECORD_ATTRIBUTES or name.startswith("_"):
                continue
            if name in _CORRELATION_KEYS and isinstance(value, (str, int)) and not isinstance(value, bool):
                event_dict[name] = str(value)
            else:
                extras[name] = _jsonable(value)
        if extras:
            event_dict["fields"] = extras
        return event_dict

    def mask(_: Any, __: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
        for key in ("message", "fields"):
            if key in event_dict:
                event_dict[key] = _redact(event_dict[key])
        return event_dict

    processors: list[Any] = [structlog.stdlib.ProcessorFormatter.remove_processors_meta]
    if redact:
        processors.append(mask)
    processors.append(structlog.processors.JSONRenderer(sort_keys=True, separators=(",", ":"), ensure_ascii=False))

    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            bind_record,
            structlog.processors.EventRenamer("message"),
        ],
        processors=processors,
    )


def _jsonable(value: object) -> object:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_jsonable(item) for item in value]
        return sorted(items, key=repr) if isinstance(value, (set, frozenset)) else items
    return str(value)


def _parse_level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    parsed = logging.getLevelName(value.strip().upper())
    if not isinstance(parsed, int):
        raise ValueError(f"unsupported logging level {value!r}")
    return parsed


def _swap_active(handle: RunLogHandle | None) -> RunLogHandle | None:
    global _ACTIVE
    with _ACTIVE_LOCK:
        previous, _ACTIVE = _ACTIVE, handle
    return previous


def _register_atexit() -> None:
    global _ATEXIT_REGISTERED
    if not _ATEXIT_REGISTERED:
        atexit.register(shutdown_logging)
        _ATEXIT_REGISTERED = True


__all__ = [
    "DEFAULT_LOGGER_NAME",
    "DEFAULT_LOG_FILENAME",
    "REDACTED",
    "LoggingConfig",
    "RunLogHandle",
    "configure_structlog",
    "correlation_scope",
    "get_correlation_context",
    "redact_text",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
