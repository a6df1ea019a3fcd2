"""
posguard - runtime config loader.

File: src/posguard/config/loader.py

Purpose
- Produce the effective configuration for one run of the startup pipeline.

Precedence, highest first
- explicit CLI overrides (dotted keys, ``None`` means "not given")
- ``POSGUARD_<SECTION>_<KEY>`` environment variables, plus the
  ``POSGUARD_DB_PATH`` shorthand for ``database.path``
- ``posguard.toml`` (read with ``tomllib``)
- built-in defaults

Relative paths in the file are resolved against the file's directory; values
from the environment and the command line are taken as given.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from functools import reduce
from pathlib import Path
from typing import Any, Final, NamedTuple

from posguard.config.schema import (
    PosGuardConfig,
    assert_valid_config,
    default_config,
    merge_config,
)
from posguard.constants import CONFIG_FILENAME

DEFAULT_CONFIG_FILE: Final[str] = CONFIG_FILENAME
ENV_PREFIX: Final[str] = "POSGUARD_"
DB_PATH_ENV: Final[str] = f"{ENV_PREFIX}DB_PATH"

# (section, key) pairs holding filesystem paths; both default to None.
PATH_FIELDS: Final[tuple[tuple[str, str], ...]] = (
    ("database", "path"),
    ("observability", "log_dir"),
)

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


class EnvBinding(NamedTuple):
    """One environment variable and the config field it feeds."""

    name: str
    path: tuple[str, ...]
    coerce: Callable[[str], object]

    def read(self, raw: str) -> object:
        try:
            return self.coerce(raw.strip())
        except ValueError as exc:
            raise ConfigLoadError(f"{self.name} -> {'.'.join(self.path)} {exc}") from None


def _as_text(raw: str) -> str:
    return raw


def _as_int(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ValueError("must be an integer") from None


def _as_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError("must be a boolean (true/false/1/0/yes/no/on/off)")


def _coercer_for(default: object) -> Callable[[str], object] | None:
    # bool before int: True is an int too.
    if isinstance(default, bool):
        return _as_bool
    if isinstance(default, int):
        return _as_int
    if isinstance(default, str):
        return _as_text
    return None


def _walk_fields(
    node: Mapping[str, object], prefix: tuple[str, ...] = ()
) -> Iterator[tuple[tuple[str, ...], object]]:
    for key in sorted(node):
        value = node[key]
        if isinstance(value, Mapping):
            yield from _walk_fields(value, (*prefix, key))
        else:
            yield (*prefix, key), value


def env_name_for(path: tuple[str, ...]) -> str:
    return ENV_PREFIX + "_".join(part.upper() for part in path)


def env_bindings() -> tuple[EnvBinding, ...]:
    """Every environment variable the loader reads, derived from the defaults."""

    found: dict[str, EnvBinding] = {}
    for path, default in _walk_fields(default_config()):
        coerce = _coercer_for(default)
        if coerce is not None:
            found[env_name_for(path)] = EnvBinding(env_name_for(path), path, coerce)
    for path in PATH_FIELDS:
        found.setdefault(env_name_for(path), EnvBinding(env_name_for(path), path, _as_text))
    return tuple(found[name] for name in sorted(found))


def _nested(path: tuple[str, ...], value: object) -> dict[str, Any]:
    return reduce(lambda inner, part: {part: inner}, reversed(path[:-1]), {path[-1]: value})


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> PosGuardConfig:
    """Load effective config with deterministic precedence: CLI > env > file > defaults.

    A missing file is only an error when ``config_path`` was given explicitly.
    """

    if config_path is None:
        source = (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    else:
        source = Path(config_path).expanduser().resolve()

    from_file = merge_config(default_config(), _read_toml(source, required=config_path is not None))
    assert_valid_config(from_file)

    layers = (
        normalize_paths(from_file, base_dir=source.parent),
        _env_layer(os.environ if environ is None else environ),
        _cli_layer(cli_overrides or {}),
    )
    return assert_valid_config(reduce(merge_config, layers))


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Copy of ``config`` with relative path fields anchored at ``base_dir``."""

    resolved = merge_config({}, config)
    for section_name, key in PATH_FIELDS:
        section = resolved.get(section_name)
        if isinstance(section, dict) and isinstance(section.get(key), str):
            section[key] = _anchor(section[key], base_dir)
    return resolved


def dump_effective_config(config: Mapping[str, object]) -> str:
    return json.dumps(config, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    try:
        with path.open("rb") as stream:
            return tomllib.load(stream)
    except FileNotFoundError:
        if required:
            raise ConfigLoadError(f"config file not found: {path}") from None
        return {}
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _env_layer(environ: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for binding in env_bindings():
        raw = environ.get(binding.name)
        if raw is not None:
            layer = merge_config(layer, _nested(binding.path, binding.read(raw)))

    shorthand = (environ.get(DB_PATH_ENV) or "").strip()
    if shorthand:
        layer = merge_config(layer, _nested(("database", "path"), shorthand))
    return layer


def _cli_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for dotted, value in sorted(overrides.items()):
        if value is None:
            continue
        path = tuple(part for part in dotted.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {dotted!r}")
        layer = merge_config(layer, _nested(path, value))
    return layer


def _anchor(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLoadError",
    "DB_PATH_ENV",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "EnvBinding",
    "PATH_FIELDS",
    "dump_effective_config",
    "env_bindings",
    "env_name_for",
    "load_config",
    "normalize_paths",
]
