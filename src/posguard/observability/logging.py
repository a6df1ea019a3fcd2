"""
posguard - structured JSON-lines logging.

File: src/posguard/observability/logging.py

Purpose
- Give every application start and CLI run one log file,
  ``<log_dir>/<session_id>/posguard.jsonl``, that support staff can read after
  a failed startup.
- Keep disk writes off the pipeline's path: records pass through a bounded
  queue to a listener thread, and overflow is counted instead of blocking.

Functional requirements
- One canonical JSON object per line, keys sorted.
- ``session_id``, ``correlation_id`` and ``operation`` are top-level keys;
  every other caller-supplied attribute lands under ``fields``.
- PINs, passwords, tokens and card numbers never reach a sink.
- structlog events routed by ``configure_structlog`` arrive as ordinary
  records whose message is the event name.
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
import sys
import threading
import time
from collections.abc import Callable, Iterable, Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from functools import singledispatch
from pathlib import Path, PurePath
from types import MappingProxyType
from typing import Any, Final

import structlog

JSONValue = str | int | float | bool | None | list["JSONValue"] | dict[str, "JSONValue"]
Redaction = Callable[[JSONValue], JSONValue]

REDACTED: Final[str] = "***REDACTED***"
LOG_FILENAME: Final[str] = "posguard.jsonl"
ROOT_LOGGER_NAME: Final[str] = "posguard"

_TOP_LEVEL_KEYS: Final[frozenset[str]] = frozenset({"session_id", "correlation_id", "operation"})
_CORRELATION_ATTR: Final[str] = "_posguard_correlation"

# Attributes every LogRecord carries; anything else on a record came from the caller.
_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    logging.LogRecord(ROOT_LOGGER_NAME, logging.INFO, __file__, 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}

_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "password",
    "passphrase",
    "secret",
    "token",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "private_key",
    "card_number",
    "cvv",
)
_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset({"pin", "pwd", "pan"})

_ASSIGNMENT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(pin|password|token|secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_CARD_NUMBER_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?<!\d)(?:\d ?){12,18}\d(?!\d)")


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------


def _passes_luhn(digits: str) -> bool:
    total = 0
    for position, char in enumerate(reversed(digits)):
        value = int(char)
        if position % 2:
            value = value * 2 - 9 if value > 4 else value * 2
        total += value
    return total % 10 == 0


def _mask_card_number(match: re.Match[str]) -> str:
    digits = match.group(0).replace(" ", "")
    if not _passes_luhn(digits):
        return match.group(0)
    return f"****{digits[-4:]}"


def redact_text(text: str) -> str:
    """Mask ``pin=...``-style assignments, bearer tokens and card numbers in free text."""

    text = _ASSIGNMENT_PATTERN.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}", text)
    text = _BEARER_PATTERN.sub(f"Bearer {REDACTED}", text)
    return _CARD_NUMBER_PATTERN.sub(_mask_card_number, text)


class Redactor:
    """Deep redaction of credentials in log payloads.

    A key is sensitive when it contains one of ``key_terms`` (``password`` also
    hits ``db_password``) or when one of its underscore-separated parts is in
    ``key_tokens`` (``pin`` hits ``user_pin`` but not ``mapping``). Strings
    under other keys still go through ``redact_text``.
    """

    def __init__(
        self,
        *,
        key_terms: Iterable[str] = _SENSITIVE_KEY_TERMS,
        key_tokens: Iterable[str] = _SENSITIVE_KEY_TOKENS,
    ) -> None:
        self._key_terms = tuple(term.lower() for term in key_terms)
        self._key_tokens = frozenset(token.lower() for token in key_tokens)

    def is_sensitive_key(self, key: str) -> bool:
        lowered = key.lower()
        if any(term in lowered for term in self._key_terms):
            return True
        return not self._key_tokens.isdisjoint(lowered.split("_"))

    def __call__(self, value: JSONValue) -> JSONValue:
        if isinstance(value, dict):
            return {
                key: REDACTED if self.is_sensitive_key(key) else self(item)
                for key, item in value.items()
            }
        if isinstance(value, list):
            return [self(item) for item in value]
        if isinstance(value, str):
            return redact_text(value)
        return value


default_log_redactor: Final[Redactor] = Redactor()


def _keep(value: JSONValue) -> JSONValue:
    return value


# ---------------------------------------------------------------------------
# JSON normalization
# ---------------------------------------------------------------------------


@singledispatch
def to_json(value: object) -> JSONValue:
    """Convert a log attribute into something ``json.dumps`` accepts."""

    return repr(value)


@to_json.register(type(None))
@to_json.register(bool)
@to_json.register(int)
@to_json.register(str)
def _json_scalar(value: object) -> JSONValue:
    return value  # type: ignore[return-value]


@to_json.register(float)
def _json_float(value: float) -> JSONValue:
    return value if math.isfinite(value) else str(value)


@to_json.register(datetime)
def _json_datetime(value: datetime) -> JSONValue:
    moment = value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)
    return moment.isoformat(timespec="microseconds").replace("+00:00", "Z")


@to_json.register(PurePath)
def _json_path(value: PurePath) -> JSONValue:
    return str(value)


@to_json.register(bytes)
def _json_bytes(value: bytes) -> JSONValue:
    return value.decode("utf-8", errors="replace")


@to_json.register(Mapping)
def _json_mapping(value: Mapping[Any, Any]) -> JSONValue:
    return {str(key): to_json(item) for key, item in value.items()}


@to_json.register(list)
@to_json.register(tuple)
def _json_sequence(value: Iterable[Any]) -> JSONValue:
    return [to_json(item) for item in value]


@to_json.register(set)
@to_json.register(frozenset)
def _json_set(value: Iterable[Any]) -> JSONValue:
    return sorted((to_json(item) for item in value), key=lambda item: json.dumps(item))


# ---------------------------------------------------------------------------
# Correlation
# ---------------------------------------------------------------------------

_correlation: contextvars.ContextVar[Mapping[str, str]] = contextvars.ContextVar(
    "posguard_log_correlation", default=MappingProxyType({})
)


def current_correlation() -> dict[str, str]:
    return dict(_correlation.get())


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields to every record logged inside the block.

    A ``None`` value unbinds that key until the block exits.
    """

    bound = current_correlation()
    for key, value in fields.items():
        if value is None:
            bound.pop(key, None)
            continue
        if not value.strip():
            raise ValueError(f"correlation field {key!r} must not be blank")
        bound[key] = value.strip()
    token = _correlation.set(MappingProxyType(bound))
    try:
        yield
    finally:
        _correlation.reset(token)


# ---------------------------------------------------------------------------
# Handlers and formatter
# ---------------------------------------------------------------------------


class _BoundedQueueHandler(logging.handlers.QueueHandler):
    """Never blocks the caller; records that do not fit are counted and dropped."""

    def __init__(self, log_queue: queue.Queue[Any]) -> None:
        super().__init__(log_queue)
        self._dropped = 0
        self._dropped_lock = threading.Lock()

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def prepare(self, record: logging.LogRecord) -> Any:
        prepared = super().prepare(record)
        # Captured here, in the logging thread, before the listener picks it up.
        prepared.__dict__[_CORRELATION_ATTR] = current_correlation()
        return prepared

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self._dropped += 1


def _utc_timestamp(record: logging.LogRecord) -> str:
    moment = datetime.fromtimestamp(record.created, tz=UTC)
    return f"{moment:%Y-%m-%dT%H:%M:%S}.{int(record.msecs):03d}Z"


def _top_level_fields(record: logging.LogRecord, session_id: str) -> dict[str, str]:
    merged = {"session_id": session_id}
    merged.update(getattr(record, _CORRELATION_ATTR, {}))
    for key in _TOP_LEVEL_KEYS:
        value = getattr(record, key, None)
        if isinstance(value, str) and value.strip():
            merged[key] = value.strip()
    return merged


class _JsonLinesFormatter(logging.Formatter):
    def __init__(self, *, session_id: str, redact: Redaction) -> None:
        super().__init__()
        self._session_id = session_id
        self._redact = redact

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, JSONValue] = {
            "timestamp": _utc_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": str(self._redact(record.getMessage())),
        }
        line.update(_top_level_fields(record, self._session_id))

        extras = {
            key: to_json(value)
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRIBUTES
            and key not in _TOP_LEVEL_KEYS
            and not key.startswith("_")
        }
        if extras:
            line["fields"] = self._redact(extras)
        if record.exc_info:
            line["exception"] = str(self._redact(self.formatException(record.exc_info)))
        return json.dumps(line, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class LogSessionConfig:
    session_id: str
    base_log_dir: Path | str = Path("logs")
    logger_name: str = ROOT_LOGGER_NAME
    level: int | str = "INFO"
    queue_size: int = 4096
    log_filename: str = LOG_FILENAME
    log_to_stdout: bool = False
    redactor: Redaction | None = None


class LogSession:
    """A live sink: the queue handler on ``logger``, its listener thread, the file."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        session_id: str,
        log_path: Path,
        log_queue: queue.Queue[Any],
        queue_handler: _BoundedQueueHandler,
        sinks: tuple[logging.Handler, ...],
        listener: logging.handlers.QueueListener,
    ) -> None:
        self.logger = logger
        self.session_id = session_id
        self.log_path = log_path
        self._queue = log_queue
        self._queue_handler = queue_handler
        self._sinks = sinks
        self._listener = listener
        self._close_lock = threading.Lock()
        self._closed = False

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def closed(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        """Wait until the listener has handled every queued record, then flush sinks."""

        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._queue.all_tasks_done.wait(remaining)
        for sink in self._sinks:
            sink.flush()

    def close(self, *, timeout_seconds: float = 2.0) -> None:
        with self._close_lock:
            if self._closed:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.close()
            self._closed = True


class _ActiveSession:
    """The one session this process currently writes to."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._session: LogSession | None = None
        self._exit_hook_installed = False

    def get(self) -> LogSession | None:
        with self._lock:
            return self._session

    def swap(self, session: LogSession | None) -> LogSession | None:
        with self._lock:
            previous, self._session = self._session, session
            if session is not None and not self._exit_hook_installed:
                atexit.register(shutdown_logging)
                self._exit_hook_installed = True
        return previous

    def discard(self, session: LogSession) -> None:
        with self._lock:
            if self._session is session:
                self._session = None


_active = _ActiveSession()


def _required_text(value: object, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{label} must be a non-empty string")
    return value.strip()


def _level_number(level: int | str) -> int:
    if isinstance(level, int):
        return level
    try:
        return logging.getLevelNamesMapping()[level.strip().upper()]
    except KeyError:
        raise ValueError(f"unknown log level {level!r}") from None


def start_log_session(config: LogSessionConfig) -> LogSession:
    """Open ``<base_log_dir>/<session_id>/<log_filename>`` and attach it to the logger.

    A session that is still active is closed first.
    """

    session_id = _required_text(config.session_id, "session_id")
    logger_name = _required_text(config.logger_name, "logger_name")
    filename = _required_text(config.log_filename, "log_filename")
    if Path(filename).name != filename:
        raise ValueError("log_filename must be a bare file name")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = _level_number(config.level)

    previous = _active.swap(None)
    if previous is not None:
        previous.close()

    log_path = Path(config.base_log_dir) / session_id / filename
    log_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = _JsonLinesFormatter(
        session_id=session_id,
        redact=config.redactor if config.redactor is not None else default_log_redactor,
    )
    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_stdout:
        sinks.append(logging.StreamHandler(sys.stdout))
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(logger_name)
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    logger.setLevel(level)
    logger.propagate = False

    log_queue: queue.Queue[Any] = queue.Queue(maxsize=config.queue_size)
    queue_handler = _BoundedQueueHandler(log_queue)
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(log_queue, *sinks, respect_handler_level=True)
    listener.start()
    logger.addHandler(queue_handler)

    session = LogSession(
        logger=logger,
        session_id=session_id,
        log_path=log_path,
        log_queue=log_queue,
        queue_handler=queue_handler,
        sinks=tuple(sinks),
        listener=listener,
    )
    _active.swap(session)
    return session


def active_log_session() -> LogSession | None:
    return _active.get()


def flush_logging(session: LogSession | None = None, *, timeout_seconds: float = 2.0) -> None:
    target = session if session is not None else _active.get()
    if target is not None:
        target.flush(timeout_seconds=timeout_seconds)


def shutdown_logging(session: LogSession | None = None, *, timeout_seconds: float = 2.0) -> None:
    """Drain the queue, stop the listener and close every sink; safe to repeat."""

    target = session if session is not None else _active.get()
    if target is None:
        return
    target.close(timeout_seconds=timeout_seconds)
    _active.discard(target)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def configure_structlog() -> None:
    """Route structlog events into stdlib logging: event name as message, keywords as extras."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _rename_record_attribute_clashes,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def _rename_record_attribute_clashes(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """``logging`` rejects extras named like LogRecord attributes (``name``, ``msg``)."""

    del logger, method_name
    clashing = [key for key in event_dict if key != "event" and key in _RECORD_ATTRIBUTES]
    for key in clashing:
        event_dict[f"field_{key}"] = event_dict.pop(key)
    return event_dict


def setup_logging(
    observability: Mapping[str, object] | None = None,
    *,
    session_id: str,
    log_dir: Path | str | None = None,
    logger_name: str = ROOT_LOGGER_NAME,
) -> logging.Logger:
    """Start a session from an ``[observability]`` config table and route structlog into it."""

    settings = dict(observability or {})
    level = settings.get("log_level", "INFO")
    directory = log_dir if log_dir is not None else settings.get("log_dir")
    session = start_log_session(
        LogSessionConfig(
            session_id=session_id,
            base_log_dir=directory if isinstance(directory, (str, Path)) else Path("logs"),
            logger_name=logger_name,
            level=level if isinstance(level, (int, str)) else "INFO",
            log_to_stdout=bool(settings.get("log_to_stdout", False)),
            redactor=None if settings.get("redact_secrets", True) else _keep,
        )
    )
    configure_structlog()
    return session.logger


__all__ = [
    "JSONValue",
    "LOG_FILENAME",
    "LogSession",
    "LogSessionConfig",
    "REDACTED",
    "Redaction",
    "Redactor",
    "active_log_session",
    "configure_structlog",
    "correlation_scope",
    "current_correlation",
    "default_log_redactor",
    "flush_logging",
    "redact_text",
    "setup_logging",
    "shutdown_logging",
    "start_log_session",
    "to_json",
]
