"""
posguard - CLI subprocess smoke contracts

Purpose
- Exercise `python -m posguard` as a real process: exit codes, JSON payloads,
  and the files the pipeline leaves behind.
"""

from __future__ import annotations

import json
import os
import subprocess
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SRC_PATH = PROJECT_ROOT / "src"


def _run_cli(cwd: Path, *args: str) -> subprocess.CompletedProcess[str]:
    env = {key: value for key, value in os.environ.items() if not key.startswith("POSGUARD_")}
    existing_pythonpath = env.get("PYTHONPATH")
    src_pythonpath = str(SRC_PATH)
    env["PYTHONPATH"] = (
        src_pythonpath if not existing_pythonpath else f"{src_pythonpath}:{existing_pythonpath}"
    )
    return subprocess.run(
        [sys.executable, "-m", "posguard", *args],
        cwd=cwd,
        text=True,
        capture_output=True,
        check=False,
        env=env,
    )


def _render_failure(label: str, completed: subprocess.CompletedProcess[str]) -> str:
    return (
        f"{label} failed with exit code {completed.returncode}\n"
        f"stdout:\n{completed.stdout}\n"
        f"stderr:\n{completed.stderr}\n"
    )


@pytest.mark.integration
def test_open_then_check_round_trip(tmp_path: Path, db_path: Path) -> None:
    opened = _run_cli(tmp_path, "open", "--headless", "--db", str(db_path), "--json")

    assert opened.returncode == 0, _render_failure("posguard open", opened)
    payload = json.loads(opened.stdout)
    assert payload["state"] == "ready"
    assert db_path.exists()

    checked = _run_cli(tmp_path, "check", "--db", str(db_path), "--json")

    assert checked.returncode == 0, _render_failure("posguard check", checked)
    report = json.loads(checked.stdout)
    assert report["healthy"] is True
    assert report["pending_migrations"] == []
    log_files = list((db_path.parent / "logs").glob("*/posguard.jsonl"))
    assert log_files
    events = [
        json.loads(line)["message"]
        for path in log_files
        for line in path.read_text(encoding="utf-8").splitlines()
    ]
    assert "db_pipeline_ready" in events


@pytest.mark.integration
def test_headless_open_replaces_untracked_database(
    tmp_path: Path, db_path: Path, make_baseline_database: Callable[[Path], Path]
) -> None:
    make_baseline_database(db_path)

    opened = _run_cli(tmp_path, "open", "--headless", "--db", str(db_path), "--json")
    listed = _run_cli(tmp_path, "backups", "--db", str(db_path), "--json")

    assert opened.returncode == 0, _render_failure("posguard open", opened)
    payload = json.loads(opened.stdout)
    assert payload["decisions"] == ["backup-and-fresh"]
    assert listed.returncode == 0, _render_failure("posguard backups", listed)
    names = [entry["name"] for entry in json.loads(listed.stdout)["backups"]]
    assert len(names) == 1
    assert names[0].startswith("posguard-fresh-start-backup-")


@pytest.mark.integration
def test_invalid_file_fails_check_and_unknown_command_is_a_usage_error(
    tmp_path: Path, db_path: Path, write_file: Callable[[Path, bytes], Path]
) -> None:
    write_file(db_path, b"")

    checked = _run_cli(tmp_path, "check", "--db", str(db_path), "--json")
    unknown = _run_cli(tmp_path, "defragment")

    assert checked.returncode == 1
    assert json.loads(checked.stdout)["healthy"] is False
    assert unknown.returncode == 2
    assert "usage: posguard" in unknown.stderr
