"""
posguard - configuration schema and validation.

File: src/posguard/config/schema.py

Purpose
- Define authoritative configuration defaults and strict validation rules.

What should be included in this file
- Typed section shapes and built-in defaults.
- Validation rules for types, enums, and numeric constraints, reported as
  field path + message.
- Deterministic deep-merge helper used by the loader's precedence chain.

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, TypedDict

from posguard import __version__
from posguard.constants import (
    DEFAULT_APP_DIR_NAME,
    DEFAULT_APP_NAME,
    DEFAULT_BUSY_TIMEOUT_MS,
    DEFAULT_MAX_BACKUPS,
    DEFAULT_MAX_DECISIONS,
    LOCK_STALE_AFTER_SECONDS,
    PATH_MIGRATION_RECENT_WINDOW_SECONDS,
)

LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")


class AppConfig(TypedDict):
    name: str
    version: str
    dir_name: str


class DatabaseConfig(TypedDict):
    path: str | None
    busy_timeout_ms: int


class BackupsConfig(TypedDict):
    max_backups: int


class LocksConfig(TypedDict):
    stale_after_seconds: int


class PathMigrationConfig(TypedDict):
    enabled: bool
    recent_window_seconds: int
    remove_legacy: bool


class RecoveryConfig(TypedDict):
    headless: bool
    max_decisions: int


class ObservabilityConfig(TypedDict):
    log_level: str
    log_dir: str | None
    log_to_stdout: bool
    redact_secrets: bool


class PosGuardConfig(TypedDict):
    app: AppConfig
    database: DatabaseConfig
    backups: BackupsConfig
    locks: LocksConfig
    path_migration: PathMigrationConfig
    recovery: RecoveryConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[PosGuardConfig] = {
    "app": {
        "name": DEFAULT_APP_NAME,
        "version": __version__,
        "dir_name": DEFAULT_APP_DIR_NAME,
    },
    "database": {
        "path": None,
        "busy_timeout_ms": DEFAULT_BUSY_TIMEOUT_MS,
    },
    "backups": {
        "max_backups": DEFAULT_MAX_BACKUPS,
    },
    "locks": {
        "stale_after_seconds": LOCK_STALE_AFTER_SECONDS,
    },
    "path_migration": {
        "enabled": True,
        "recent_window_seconds": PATH_MIGRATION_RECENT_WINDOW_SECONDS,
        "remove_legacy": False,
    },
    "recovery": {
        "headless": False,
        "max_decisions": DEFAULT_MAX_DECISIONS,
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": None,
        "log_to_stdout": False,
        "redact_secrets": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


_FieldParser = Callable[[object, str, _IssueCollector], Any]


def default_config() -> PosGuardConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = copy.deepcopy(dict(base))
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate a fully merged config and return structured issues."""

    issues = _IssueCollector()
    if not isinstance(config, Mapping):
        issues.add("<root>", f"expected object, got {type(config).__name__}")
        return ConfigValidationResult(config=None, issues=issues.items())

    for key in sorted(config):
        if key not in _SECTIONS:
            issues.add(str(key), "unknown section")

    normalized: dict[str, Any] = {}
    for section, fields in _SECTIONS.items():
        payload = config.get(section)
        if not isinstance(payload, Mapping):
            message = "missing required section" if payload is None else "expected object"
            issues.add(section, message)
            continue
        for key in sorted(payload):
            if key not in fields:
                issues.add(f"{section}.{key}", "unknown field")
        out: dict[str, Any] = {}
        for name, parser in fields.items():
            field_path = f"{section}.{name}"
            if name not in payload:
                issues.add(field_path, "missing required field")
                continue
            out[name] = parser(payload[name], field_path, issues)
        normalized[section] = out

    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> PosGuardConfig:
    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config  # type: ignore[return-value]


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_optional_path(value: object, path: str, issues: _IssueCollector) -> str | None:
    if value is None:
        return None
    parsed = _as_str(value, path, issues)
    if parsed is not None and "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _int_parser(minimum: int) -> _FieldParser:
    def parse(value: object, path: str, issues: _IssueCollector) -> int | None:
        if isinstance(value, bool) or not isinstance(value, int):
            issues.add(path, f"expected integer, got {type(value).__name__}")
            return None
        if value < minimum:
            issues.add(path, f"must be >= {minimum}")
            return None
        return value

    return parse


def _as_log_level(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    upper = parsed.upper()
    if upper not in LOG_LEVELS:
        issues.add(path, f"invalid value {parsed!r}; expected one of: {', '.join(LOG_LEVELS)}")
        return None
    return upper


_SECTIONS: Final[dict[str, dict[str, _FieldParser]]] = {
    "app": {"name": _as_str, "version": _as_str, "dir_name": _as_str},
    "database": {"path": _as_optional_path, "busy_timeout_ms": _int_parser(0)},
    "backups": {"max_backups": _int_parser(1)},
    "locks": {"stale_after_seconds": _int_parser(0)},
    "path_migration": {
        "enabled": _as_bool,
        "recent_window_seconds": _int_parser(0),
        "remove_legacy": _as_bool,
    },
    "recovery": {"headless": _as_bool, "max_decisions": _int_parser(1)},
    "observability": {
        "log_level": _as_log_level,
        "log_dir": _as_optional_path,
        "log_to_stdout": _as_bool,
        "redact_secrets": _as_bool,
    },
}


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        existing = target.get(key)
        if isinstance(value, Mapping) and isinstance(existing, dict):
            _merge_into(existing, value)
        else:
            target[key] = copy.deepcopy(value)


__all__ = [
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "PosGuardConfig",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "validate_config",
]
