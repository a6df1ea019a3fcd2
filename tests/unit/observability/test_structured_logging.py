"""
posguard - unit tests for observability logging

Purpose
- Validate structured JSON logging with redaction, correlation metadata, and
  queue-backed reliability.

What this test file should cover
- JSON line validity and redaction of passwords, PINs and tokens.
- Correlation field propagation.
- structlog events routed into the JSON-lines sink.
- Multi-threaded logging stability and queue drain on shutdown.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import threading
from datetime import UTC, datetime
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest
import structlog

from posguard.observability.logging import (
    LogSessionConfig,
    Redactor,
    active_log_session,
    correlation_scope,
    current_correlation,
    default_log_redactor,
    flush_logging,
    setup_logging,
    shutdown_logging,
    start_log_session,
    to_json,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture(autouse=True)
def _cleanup_logging() -> Iterator[None]:
    yield
    shutdown_logging()
    structlog.reset_defaults()


def _logger_name() -> str:
    return f"posguard.tests.logging.{uuid4().hex}"


def _read_json_lines(path: Path) -> list[dict[str, object]]:
    lines = path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_json_logging_redacts_secrets_and_preserves_correlation_fields(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = start_log_session(
        LogSessionConfig(
            session_id="session-redaction",
            base_log_dir=tmp_path,
            logger_name=logger_name,
        )
    )
    logger = logging.getLogger(logger_name)

    with correlation_scope(correlation_id="corr-9", operation="repair"):
        logger.info(
            "login attempt pin=4321 with token=tok-FAKE",
            extra={"user": {"password": "hunter2", "user_pin": "1111", "role": "cashier"}},
        )

    shutdown_logging(handle)

    assert handle.log_path == tmp_path / "session-redaction" / "posguard.jsonl"
    parsed = _read_json_lines(handle.log_path)
    assert len(parsed) == 1
    first = parsed[0]
    assert first["session_id"] == "session-redaction"
    assert first["correlation_id"] == "corr-9"
    assert first["operation"] == "repair"
    assert first["level"] == "INFO"
    assert first["logger"] == logger_name
    assert str(first["timestamp"]).endswith("Z")
    assert first["fields"] == {
        "user": {"password": "***REDACTED***", "user_pin": "***REDACTED***", "role": "cashier"}
    }

    line = handle.log_path.read_text(encoding="utf-8")
    assert "4321" not in line
    assert "tok-FAKE" not in line
    assert "hunter2" not in line


def test_default_redactor_matches_whole_tokens_only() -> None:
    redacted = default_log_redactor(
        {
            "pin": "1234",
            "mapping": "kept",
            "Authorization": "Bearer abc.def",
            "note": "pin: 9999, shift open",
            "header": "bearer xyz123==",
            "items": [{"api_key": "k"}, "password=pw1"],
        }
    )

    assert redacted == {
        "pin": "***REDACTED***",
        "mapping": "kept",
        "Authorization": "***REDACTED***",
        "note": "pin:***REDACTED***, shift open",
        "header": "Bearer ***REDACTED***",
        "items": [{"api_key": "***REDACTED***"}, "password=***REDACTED***"],
    }


def test_card_numbers_are_masked_only_when_luhn_valid() -> None:
    redacted = default_log_redactor(
        {
            "receipt": "card 4111 1111 1111 1111 approved",
            "order": "order 1234567812345678 queued",
            "card_number": "4111111111111111",
            "cvv": "123",
        }
    )

    assert redacted == {
        "receipt": "card ****1111 approved",
        "order": "order 1234567812345678 queued",
        "card_number": "***REDACTED***",
        "cvv": "***REDACTED***",
    }


def test_custom_redactor_key_tokens() -> None:
    redactor = Redactor(key_terms=(), key_tokens=("badge",))

    assert redactor.is_sensitive_key("manager_badge")
    assert not redactor.is_sensitive_key("badges")
    assert redactor({"password": "kept-now"}) == {"password": "kept-now"}


def test_correlation_scope_nests_and_unbinds() -> None:
    with correlation_scope(correlation_id="outer", operation="startup"):
        with correlation_scope(operation=None, correlation_id=" inner "):
            assert current_correlation() == {"correlation_id": "inner"}
        assert current_correlation() == {"correlation_id": "outer", "operation": "startup"}
    assert current_correlation() == {}

    with pytest.raises(ValueError):
        with correlation_scope(operation="   "):
            pass


def test_to_json_normalizes_log_attributes(tmp_path: Path) -> None:
    moment = datetime(2026, 3, 14, 9, 26, 53, tzinfo=UTC)

    assert to_json(tmp_path / "pos.db") == str(tmp_path / "pos.db")
    assert to_json(moment) == "2026-03-14T09:26:53.000000Z"
    assert to_json(float("nan")) == "nan"
    assert to_json((1, b"ok", {"b", "a"})) == [1, "ok", ["a", "b"]]
    assert to_json({3: None}) == {"3": None}


def test_setup_logging_wrapper_uses_observability_config(tmp_path: Path) -> None:
    logger_name = _logger_name()
    logger = setup_logging(
        {"log_level": "INFO", "log_dir": str(tmp_path), "redact_secrets": True},
        session_id="session-wrapper",
        logger_name=logger_name,
    )

    logger.info("hello", extra={"token": "t-123"})
    logger.debug("below threshold")
    shutdown_logging()

    files = list((tmp_path / "session-wrapper").glob("*.jsonl"))
    assert len(files) == 1
    content = files[0].read_text(encoding="utf-8")
    assert "t-123" not in content
    assert "below threshold" not in content


def test_redaction_can_be_disabled(tmp_path: Path) -> None:
    logger_name = _logger_name()
    logger = setup_logging(
        {"log_level": "DEBUG", "redact_secrets": False},
        session_id="session-plain",
        log_dir=tmp_path,
        logger_name=logger_name,
    )

    logger.debug("pin=1234")
    shutdown_logging()

    parsed = _read_json_lines(tmp_path / "session-plain" / "posguard.jsonl")
    assert parsed[0]["message"] == "pin=1234"


def test_structlog_events_are_routed_to_json_lines(tmp_path: Path) -> None:
    setup_logging({"log_level": "INFO"}, session_id="session-structlog", log_dir=tmp_path)
    log = structlog.get_logger("posguard.health.backups")

    log.info(
        "db_backup_created",
        size_bytes=8192,
        backup_path=tmp_path / "b.db",
        name="shadowed",
        operation="migration",
    )
    log.debug("db_pipeline_transition", from_state="start")
    shutdown_logging()

    parsed = _read_json_lines(tmp_path / "session-structlog" / "posguard.jsonl")
    assert len(parsed) == 1
    event = parsed[0]
    assert event["message"] == "db_backup_created"
    assert event["logger"] == "posguard.health.backups"
    assert event["operation"] == "migration"
    assert event["fields"] == {
        "size_bytes": 8192,
        "backup_path": str(tmp_path / "b.db"),
        "field_name": "shadowed",
    }


def test_setup_replaces_the_previous_session(tmp_path: Path) -> None:
    first = start_log_session(
        LogSessionConfig(session_id="one", base_log_dir=tmp_path, logger_name=_logger_name())
    )
    second = start_log_session(
        LogSessionConfig(session_id="two", base_log_dir=tmp_path, logger_name=_logger_name())
    )

    assert first.closed
    assert active_log_session() is second
    flush_logging()
    shutdown_logging()
    assert second.closed
    assert active_log_session() is None


@pytest.mark.parametrize(
    "overrides",
    [
        {"session_id": "  "},
        {"queue_size": 0},
        {"log_filename": "nested/posguard.jsonl"},
        {"level": "LOUD"},
    ],
)
def test_invalid_logging_config_is_rejected(tmp_path: Path, overrides: dict[str, object]) -> None:
    settings: dict[str, object] = {
        "session_id": "session-invalid",
        "base_log_dir": tmp_path,
        "logger_name": _logger_name(),
    }
    settings.update(overrides)

    with pytest.raises(ValueError):
        start_log_session(LogSessionConfig(**settings))  # type: ignore[arg-type]


def test_multithreaded_logging_produces_valid_json_lines(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = start_log_session(
        LogSessionConfig(
            session_id="session-threaded",
            base_log_dir=tmp_path,
            logger_name=logger_name,
            queue_size=4096,
        )
    )
    logger = logging.getLogger(logger_name)

    total_threads = 8
    per_thread = 40

    def worker(thread_idx: int) -> None:
        with correlation_scope(correlation_id=f"worker-{thread_idx}"):
            for i in range(per_thread):
                logger.info(
                    f"thread={thread_idx} index={i} password=pw-{thread_idx}-{i}",
                    extra={"pin": f"{thread_idx}{i}"},
                )

    threads = [threading.Thread(target=worker, args=(idx,)) for idx in range(total_threads)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    shutdown_logging(handle)

    lines = handle.log_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == total_threads * per_thread
    for line in lines:
        parsed = json.loads(line)
        thread_idx = str(parsed["message"]).split()[0].split("=")[1]
        assert parsed["correlation_id"] == f"worker-{thread_idx}"
        assert "pw-" not in line
        assert parsed["fields"] == {"pin": "***REDACTED***"}


def test_queue_handler_non_blocking_and_shutdown_flushes(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = start_log_session(
        LogSessionConfig(
            session_id="session-flush",
            base_log_dir=tmp_path,
            logger_name=logger_name,
            queue_size=10_000,
        )
    )
    logger = logging.getLogger(logger_name)

    queue_handlers = [h for h in logger.handlers if isinstance(h, logging.handlers.QueueHandler)]
    assert queue_handlers, "expected queue-backed non-blocking logging"

    expected = 300
    for i in range(expected):
        logger.info("message %s", i)

    shutdown_logging(handle)
    shutdown_logging(handle)

    lines = handle.log_path.read_text(encoding="utf-8").splitlines()
    assert handle.dropped_records == 0
    assert len(lines) == expected
    assert logger.handlers == []
