"""Plain-text output for the posguard CLI and maintenance scripts.

Status marks are colored only when writing to a terminal, and never when
``NO_COLOR`` is set or ``--no-color`` was passed.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, Final, TextIO

if TYPE_CHECKING:
    from collections.abc import Sequence

_ANSI: Final[dict[str, str]] = {"OK": "32", "FAIL": "31", "Warning:": "33"}


def wants_color(stream: TextIO, *, no_color: bool = False) -> bool:
    if no_color or os.environ.get("NO_COLOR"):
        return False
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


class CLIRenderer:
    def __init__(
        self,
        *,
        no_color: bool = False,
        verbose: bool = False,
        stream: TextIO | None = None,
    ) -> None:
        self.verbose = verbose
        self._out = stream if stream is not None else sys.stdout
        self._color = wants_color(self._out, no_color=no_color)

    def _line(self, text: str = "") -> None:
        self._out.write(text + "\n")

    def _mark(self, mark: str) -> str:
        if not self._color:
            return mark
        return f"\x1b[{_ANSI[mark]}m{mark}\x1b[0m"

    def heading(self, text: str) -> None:
        self._line(text)

    def text(self, line: str) -> None:
        self._line(line)

    def kv(self, key: str, value: object) -> None:
        self._line(f"{key}: {value}")

    def ok(self, label: str) -> None:
        self._line(f"  {self._mark('OK')}  {label}")

    def fail(self, label: str) -> None:
        self._line(f"  {self._mark('FAIL')}  {label}")

    def warning(self, text: str) -> None:
        self._line(f"  {self._mark('Warning:')} {text}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[object]],
        *,
        title: str | None = None,
    ) -> None:
        """Left-aligned columns sized to their widest cell; nothing at all for no rows."""

        if not rows:
            return
        columns = len(headers)
        grid = [[str(cell) for cell in headers]]
        for row in rows:
            cells = [str(cell) for cell in row[:columns]]
            grid.append(cells + [""] * (columns - len(cells)))
        widths = [max(len(line[i]) for line in grid) for i in range(columns)]
        grid.insert(1, ["-" * width for width in widths])

        if title:
            self._line()
            self._line(title)
        for line in grid:
            padded = "  ".join(cell.ljust(width) for cell, width in zip(line, widths, strict=True))
            self._line(f"  {padded.rstrip()}")


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer", "wants_color"]
