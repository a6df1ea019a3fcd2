"""Executable CLI entrypoint for ``posguard``.

Everything that escapes ``run_cli`` is turned into one of the ``ExitCode``
values here, so launcher scripts can branch on the process status alone.
"""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    SUCCESS = 0
    PIPELINE_FAILED = 1
    CONFIG_ERROR = 2
    INTERNAL_ERROR = 4


_KNOWN_STATUSES = frozenset(code.value for code in ExitCode)


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Entrypoint used by ``python -m posguard`` and the console script."""

    try:
        from posguard.ui.cli import run_cli

        return _coerce_status(run_cli(argv))
    except SystemExit as exc:
        return _coerce_status(exc.code)
    except BaseException as exc:  # noqa: BLE001 - last line before the interpreter
        code = exit_code_for(exc)
        if code is ExitCode.INTERNAL_ERROR:
            traceback.print_exception(exc, file=sys.stderr)
        else:
            print(str(exc).strip() or type(exc).__name__, file=sys.stderr)
        return int(code)


def exit_code_for(exc: BaseException) -> ExitCode:
    """Exit code for the first recognised error in ``exc``'s cause chain."""

    from posguard.config.loader import ConfigLoadError
    from posguard.config.schema import ConfigValidationError
    from posguard.health.errors import HealthError

    routes: tuple[tuple[tuple[type[BaseException], ...], ExitCode], ...] = (
        ((ConfigLoadError, ConfigValidationError), ExitCode.CONFIG_ERROR),
        ((HealthError,), ExitCode.PIPELINE_FAILED),
    )
    for link in _cause_chain(exc):
        for kinds, code in routes:
            if isinstance(link, kinds):
                return code
    return ExitCode.INTERNAL_ERROR


def _cause_chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    link: BaseException | None = exc
    while link is not None and id(link) not in seen:
        seen.add(id(link))
        yield link
        if link.__cause__ is not None:
            link = link.__cause__
        elif not link.__suppress_context__:
            link = link.__context__
        else:
            link = None


def _coerce_status(status: object) -> int:
    if status is None:
        return ExitCode.SUCCESS
    if isinstance(status, int) and status in _KNOWN_STATUSES:
        return status
    if isinstance(status, str) and status.strip():
        print(status.strip(), file=sys.stderr)
    return ExitCode.INTERNAL_ERROR


__all__ = ["ExitCode", "cli_entrypoint", "exit_code_for"]
