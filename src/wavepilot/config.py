"""Configuration defaults, env vars, and runtime options for WAVEPILOT."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


VERSION = "1.0.0"

PROJECT_MARKER = ".wavepilot"

DEFAULT_POLL_INTERVAL_MS = 120_000
DEFAULT_MAX_POLL_DURATION_MS = 1_800_000
DEFAULT_REVIEWER_PATTERN = "claude"


@dataclass
class Config:
    """Runtime configuration: defaults, then ``WAVEPILOT_*`` env vars, then CLI flags."""

    # Layout
    project_dir: str = ""
    state_dir: str = ""
    specs_dir: str = ""

    # Git
    trunk: str = ""
    remote: str = "origin"
    cleanup_merged: bool = True

    # Review polling
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    max_poll_duration_ms: int = DEFAULT_MAX_POLL_DURATION_MS
    reviewer_pattern: str = ""
    manual_mode: bool = False

    # Execution
    task_command: str = ""
    max_parallel: int = 3
    task_timeout: int = 0
    stale_lock_seconds: int = 3600

    # Misc
    notify: bool = False
    verbose: bool = False

    def __post_init__(self) -> None:
        if not self.project_dir:
            self.project_dir = str(detect_project_dir())
        if not self.state_dir:
            self.state_dir = os.environ.get("WAVEPILOT_STATE_DIR") or str(
                Path(self.project_dir) / PROJECT_MARKER / "state"
            )
        if not self.specs_dir:
            self.specs_dir = os.environ.get("WAVEPILOT_SPECS_DIR") or str(
                Path(self.project_dir) / PROJECT_MARKER / "specs"
            )
        if not self.trunk:
            self.trunk = os.environ.get("WAVEPILOT_TRUNK", "")
        self.remote = os.environ.get("WAVEPILOT_REMOTE") or self.remote
        if not self.task_command:
            self.task_command = os.environ.get("WAVEPILOT_TASK_COMMAND", "")
        if not self.reviewer_pattern:
            self.reviewer_pattern = (
                os.environ.get("WAVEPILOT_REVIEWER_PATTERN") or DEFAULT_REVIEWER_PATTERN
            )
        if self.max_parallel < 1:
            self.max_parallel = 1

    def spec_dir(self, spec_name: str) -> Path:
        """Return the directory holding the task file for *spec_name*.

        Accepts both the exact folder name and a date-prefixed folder
        (``2025-01-29-auth-system`` for ``auth-system``).
        """
        base = Path(self.specs_dir)
        exact = base / spec_name
        if exact.is_dir():
            return exact
        if base.is_dir():
            for match in sorted(base.glob(f"*-{spec_name}")):
                if match.is_dir():
                    return match
        return exact


def detect_project_dir(start: Path | None = None) -> Path:
    """Locate the project root.

    Priority: ``WAVEPILOT_PROJECT_DIR`` (if it holds a ``.wavepilot`` dir),
    *start*/cwd, then the nearest parent containing ``.wavepilot``.
    Falls back to *start*/cwd.
    """
    env_dir = os.environ.get("WAVEPILOT_PROJECT_DIR")
    if env_dir and (Path(env_dir) / PROJECT_MARKER).is_dir():
        return Path(env_dir)

    here = (start or Path.cwd()).resolve()
    for candidate in (here, *here.parents):
        if (candidate / PROJECT_MARKER).is_dir():
            return candidate
    return here
