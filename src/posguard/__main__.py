"""Module entrypoint for ``python -m posguard``."""

from __future__ import annotations

from posguard.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
