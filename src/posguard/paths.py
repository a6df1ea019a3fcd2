"""Platform-specific locations of the point-of-sale database."""

from __future__ import annotations

import os
import sys
from collections.abc import Mapping
from pathlib import Path
from typing import Protocol, runtime_checkable

from posguard.constants import DATABASE_FILENAME, DEFAULT_APP_DIR_NAME


@runtime_checkable
class PathProvider(Protocol):
    """Source of the canonical database path and an optional legacy one."""

    def legacy_path(self) -> Path | None: ...

    def canonical_path(self) -> Path: ...


def user_data_dir(
    *,
    platform: str | None = None,
    environ: Mapping[str, str] | None = None,
    home: Path | None = None,
) -> Path:
    """Per-user application data root for ``platform`` (defaults to this host)."""

    platform_name = sys.platform if platform is None else platform
    env = os.environ if environ is None else environ
    home_dir = Path.home() if home is None else home

    if platform_name.startswith("win"):
        appdata = env.get("APPDATA")
        return Path(appdata) if appdata else home_dir / "AppData" / "Roaming"
    if platform_name == "darwin":
        return home_dir / "Library" / "Application Support"
    xdg = env.get("XDG_CONFIG_HOME")
    return Path(xdg) if xdg else home_dir / ".config"


class PlatformPathProvider:
    """Canonical ``<user_data>/pos_system.db`` with a legacy per-app subdirectory.

    An explicit ``override`` replaces the canonical path and disables the
    legacy location entirely.
    """

    def __init__(
        self,
        *,
        app_dir_name: str = DEFAULT_APP_DIR_NAME,
        override: str | Path | None = None,
        data_dir: str | Path | None = None,
        platform: str | None = None,
        environ: Mapping[str, str] | None = None,
        home: Path | None = None,
    ) -> None:
        self._app_dir_name = app_dir_name
        self._override = Path(override).expanduser() if override is not None else None
        if data_dir is not None:
            self._data_dir = Path(data_dir).expanduser()
        else:
            self._data_dir = user_data_dir(platform=platform, environ=environ, home=home)

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    def canonical_path(self) -> Path:
        if self._override is not None:
            return self._override
        return self._data_dir / DATABASE_FILENAME

    def legacy_path(self) -> Path | None:
        if self._override is not None:
            return None
        return self._data_dir / self._app_dir_name / DATABASE_FILENAME


class FixedPathProvider:
    """Single known path, no legacy location."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    def canonical_path(self) -> Path:
        return self._path

    def legacy_path(self) -> Path | None:
        return None


__all__ = ["FixedPathProvider", "PathProvider", "PlatformPathProvider", "user_data_dir"]
