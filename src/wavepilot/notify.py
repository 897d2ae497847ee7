"""Desktop notifications for pipeline milestones (sound + toast), best-effort."""

from __future__ import annotations

import subprocess
import sys
from dataclasses import dataclass
from enum import Enum

from wavepilot.state import Phase, PipelineState


class Milestone(str, Enum):
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    WAVE_MERGED = "wave_merged"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Notice:
    title: str
    message: str
    critical: bool = False


def milestone_for(before: Phase, state: PipelineState) -> Milestone | None:
    """The milestone a ``before -> state.phase`` move represents, if it is worth a toast."""
    after = state.phase
    if after == Phase.COMPLETED:
        return Milestone.COMPLETED
    if after == Phase.FAILED:
        return Milestone.FAILED
    if after == Phase.READY_TO_MERGE:
        return Milestone.APPROVED
    if before == Phase.READY_TO_MERGE and after == Phase.EXECUTE:
        return Milestone.WAVE_MERGED
    if before == Phase.REVIEW_PROCESSING and after == Phase.EXECUTE:
        return Milestone.CHANGES_REQUESTED
    return None


def compose(milestone: Milestone, state: PipelineState) -> Notice:
    title = f"wavepilot - {state.pipeline_id}"
    wave = f"Wave {state.current_wave}/{state.total_waves}"
    ref = state.pull_request_ref or "?"

    if milestone == Milestone.COMPLETED:
        return Notice(title, f"All {state.total_waves} wave(s) merged into {state.integration_branch}")
    if milestone == Milestone.FAILED:
        error = state.execution_status.last_error or "unknown error"
        return Notice(f"{title} - Error", f"{wave} failed: {error}", critical=True)
    if milestone == Milestone.APPROVED:
        return Notice(title, f"{wave}: PR {ref} approved, ready to merge")
    if milestone == Milestone.WAVE_MERGED:
        merged = state.history[-1].wave if state.history else state.current_wave - 1
        return Notice(title, f"Wave {merged} merged into {state.integration_branch}; starting {wave}")
    rs = state.review_status
    return Notice(
        title,
        f"{wave}: {rs.blocking_count} blocking issue(s) on PR {ref} (review cycle {rs.review_cycles})",
    )


def _run_quiet(*cmd: str) -> None:
    """Fire-and-forget subprocess, ignore failures."""
    try:
        subprocess.Popen(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
    except (FileNotFoundError, OSError):
        pass


def show(notice: Notice) -> None:
    """Play a sound and show *notice* as a toast on the current platform."""
    title = notice.title.replace('"', "'")
    message = notice.message.replace('"', "'")
    if sys.platform == "darwin":
        if not notice.critical:
            _run_quiet("afplay", "/System/Library/Sounds/Glass.aiff")
        _run_quiet(
            "osascript", "-e",
            f'display notification "{message}" with title "{title}"',
        )
    elif sys.platform.startswith("linux"):
        if notice.critical:
            _run_quiet("notify-send", "-u", "critical", title, message)
        else:
            _run_quiet("notify-send", title, message)
            _run_quiet("paplay", "/usr/share/sounds/freedesktop/stereo/complete.oga")
    elif sys.platform == "win32":
        sound = "Hand" if notice.critical else "Asterisk"
        _run_quiet(
            "powershell.exe", "-Command",
            f"[System.Media.SystemSounds]::{sound}.Play()",
        )


def announce(before: Phase, state: PipelineState) -> Milestone | None:
    """Notify about the milestone reached by a phase change; returns it, or ``None`` when quiet."""
    milestone = milestone_for(before, state)
    if milestone is not None:
        show(compose(milestone, state))
    return milestone
