"""Pipeline state document: model, invariants and the atomic on-disk store."""

from __future__ import annotations

import json
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterator

from wavepilot import log
from wavepilot.config import DEFAULT_MAX_POLL_DURATION_MS, DEFAULT_POLL_INTERVAL_MS
from wavepilot.errors import (
    PipelineLockedError,
    StateNotFoundError,
    StateValidationError,
)
from wavepilot.io_utils import atomic_write_text, dump_json, read_text, write_text
from wavepilot.services import ReviewDecision

STATE_VERSION = 1
STATE_PREFIX = "pipeline-"


class Phase(str, Enum):
    INIT = "INIT"
    EXECUTE = "EXECUTE"
    AWAITING_REVIEW = "AWAITING_REVIEW"
    REVIEW_PROCESSING = "REVIEW_PROCESSING"
    READY_TO_MERGE = "READY_TO_MERGE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# Phases that only make sense once a change-set exists.
PUBLISHED_PHASES = (Phase.AWAITING_REVIEW, Phase.REVIEW_PROCESSING, Phase.READY_TO_MERGE)


@dataclass
class ReviewStatus:
    poll_count: int = 0
    last_check: str | None = None
    decision: ReviewDecision | None = None
    blocking_count: int = 0
    review_cycles: int = 0
    # Set when the change-set is (re)published; reviews older than these are stale.
    published_at: str | None = None
    published_head: str | None = None
    # Commit the last changes-requested review was about; set on loop-back.
    reviewed_head: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pollCount": self.poll_count,
            "lastCheck": self.last_check,
            "decision": self.decision.value if self.decision else None,
            "blockingCount": self.blocking_count,
            "reviewCycles": self.review_cycles,
            "publishedAt": self.published_at,
            "publishedHead": self.published_head,
            "reviewedHead": self.reviewed_head,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReviewStatus:
        raw = data.get("decision")
        return cls(
            poll_count=int(data.get("pollCount", 0)),
            last_check=data.get("lastCheck"),
            decision=ReviewDecision(raw) if raw else None,
            blocking_count=int(data.get("blockingCount", 0)),
            review_cycles=int(data.get("reviewCycles", 0)),
            published_at=data.get("publishedAt"),
            published_head=data.get("publishedHead"),
            reviewed_head=data.get("reviewedHead"),
        )


@dataclass
class ExecutionStatus:
    tasks_total: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tasksTotal": self.tasks_total,
            "tasksCompleted": self.tasks_completed,
            "tasksFailed": self.tasks_failed,
            "lastError": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionStatus:
        return cls(
            tasks_total=int(data.get("tasksTotal", 0)),
            tasks_completed=int(data.get("tasksCompleted", 0)),
            tasks_failed=int(data.get("tasksFailed", 0)),
            last_error=data.get("lastError"),
        )


@dataclass
class HistoryEntry:
    wave: int
    pull_request_ref: str | None = None
    pull_request_url: str | None = None
    merged_at: str | None = None
    review_cycles: int = 0
    branch_cleaned: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "wave": self.wave,
            "pullRequestRef": self.pull_request_ref,
            "pullRequestUrl": self.pull_request_url,
            "mergedAt": self.merged_at,
            "reviewCycles": self.review_cycles,
            "branchCleaned": self.branch_cleaned,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryEntry:
        return cls(
            wave=int(data["wave"]),
            pull_request_ref=data.get("pullRequestRef"),
            pull_request_url=data.get("pullRequestUrl"),
            merged_at=data.get("mergedAt"),
            review_cycles=int(data.get("reviewCycles", 0)),
            branch_cleaned=bool(data.get("branchCleaned", False)),
        )


@dataclass
class Flags:
    manual_mode: bool = False
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    max_poll_duration_ms: int = DEFAULT_MAX_POLL_DURATION_MS

    def to_dict(self) -> dict[str, Any]:
        return {
            "manualMode": self.manual_mode,
            "pollIntervalMs": self.poll_interval_ms,
            "maxPollDurationMs": self.max_poll_duration_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Flags:
        return cls(
            manual_mode=bool(data.get("manualMode", False)),
            poll_interval_ms=int(data.get("pollIntervalMs", DEFAULT_POLL_INTERVAL_MS)),
            max_poll_duration_ms=int(data.get("maxPollDurationMs", DEFAULT_MAX_POLL_DURATION_MS)),
        )


@dataclass
class PipelineState:
    pipeline_id: str
    spec_name: str
    tasks_file: str
    total_waves: int
    current_wave: int = 1
    phase: Phase = Phase.INIT
    integration_branch: str = ""
    wave_branch: str = ""
    is_final_wave: bool = False
    pull_request_ref: str | None = None
    pull_request_url: str | None = None
    review_status: ReviewStatus = field(default_factory=ReviewStatus)
    execution_status: ExecutionStatus = field(default_factory=ExecutionStatus)
    history: list[HistoryEntry] = field(default_factory=list)
    flags: Flags = field(default_factory=Flags)
    created_at: str = ""
    updated_at: str = ""
    version: int = STATE_VERSION

    @property
    def is_terminal(self) -> bool:
        return self.phase == Phase.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "pipelineId": self.pipeline_id,
            "specName": self.spec_name,
            "tasksFile": self.tasks_file,
            "currentWave": self.current_wave,
            "totalWaves": self.total_waves,
            "phase": self.phase.value,
            "integrationBranch": self.integration_branch,
            "waveBranch": self.wave_branch,
            "isFinalWave": self.is_final_wave,
            "pullRequestRef": self.pull_request_ref,
            "pullRequestUrl": self.pull_request_url,
            "reviewStatus": self.review_status.to_dict(),
            "executionStatus": self.execution_status.to_dict(),
            "history": [h.to_dict() for h in self.history],
            "flags": self.flags.to_dict(),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineState:
        """Build from decoded JSON. Raises ``KeyError``/``ValueError``/``TypeError`` on bad input."""
        ref = data.get("pullRequestRef")
        return cls(
            version=int(data.get("version", STATE_VERSION)),
            pipeline_id=str(data["pipelineId"]),
            spec_name=str(data.get("specName", data["pipelineId"])),
            tasks_file=str(data.get("tasksFile", "")),
            current_wave=int(data["currentWave"]),
            total_waves=int(data["totalWaves"]),
            phase=Phase(data["phase"]),
            integration_branch=str(data.get("integrationBranch") or ""),
            wave_branch=str(data.get("waveBranch") or ""),
            is_final_wave=bool(data.get("isFinalWave", False)),
            pull_request_ref=str(ref) if ref is not None else None,
            pull_request_url=data.get("pullRequestUrl"),
            review_status=ReviewStatus.from_dict(data.get("reviewStatus") or {}),
            execution_status=ExecutionStatus.from_dict(data.get("executionStatus") or {}),
            history=[HistoryEntry.from_dict(h) for h in data.get("history") or []],
            flags=Flags.from_dict(data.get("flags") or {}),
            created_at=str(data.get("createdAt", "")),
            updated_at=str(data.get("updatedAt", "")),
        )


def validate_state(state: PipelineState) -> list[str]:
    """Return every violated invariant; empty means the document may be persisted."""
    problems: list[str] = []

    if not state.pipeline_id:
        problems.append("pipelineId is empty")
    if state.total_waves < 1:
        problems.append(f"totalWaves must be >= 1, got {state.total_waves}")
    if not 1 <= state.current_wave <= state.total_waves + 1:
        problems.append(
            f"currentWave {state.current_wave} outside 1..{state.total_waves + 1}"
        )

    done = state.current_wave == state.total_waves + 1
    if done and state.phase != Phase.COMPLETED:
        problems.append(f"currentWave {state.current_wave} is past the last wave but phase is {state.phase.value}")
    if state.phase == Phase.COMPLETED and not done:
        problems.append(f"phase COMPLETED requires currentWave {state.total_waves + 1}, got {state.current_wave}")

    rs = state.review_status
    es = state.execution_status
    for label, value in (
        ("reviewStatus.pollCount", rs.poll_count),
        ("reviewStatus.blockingCount", rs.blocking_count),
        ("reviewStatus.reviewCycles", rs.review_cycles),
        ("executionStatus.tasksTotal", es.tasks_total),
        ("executionStatus.tasksCompleted", es.tasks_completed),
        ("executionStatus.tasksFailed", es.tasks_failed),
    ):
        if value < 0:
            problems.append(f"{label} must be >= 0, got {value}")

    if state.phase in PUBLISHED_PHASES and not state.pull_request_ref:
        problems.append(f"phase {state.phase.value} requires pullRequestRef")

    if state.phase != Phase.INIT:
        if not state.integration_branch:
            problems.append("integrationBranch is empty")
        if not state.wave_branch and state.phase != Phase.COMPLETED:
            problems.append("waveBranch is empty")

    last = 0
    for entry in state.history:
        if entry.wave <= last:
            problems.append(f"history waves not strictly increasing at wave {entry.wave}")
        if entry.wave >= state.current_wave:
            problems.append(f"history entry for wave {entry.wave} is not before currentWave {state.current_wave}")
        last = entry.wave

    if state.flags.poll_interval_ms <= 0:
        problems.append("flags.pollIntervalMs must be > 0")
    if state.flags.max_poll_duration_ms <= 0:
        problems.append("flags.maxPollDurationMs must be > 0")

    return problems


def serialize_state(state: PipelineState) -> str:
    return dump_json(state.to_dict())


def parse_state(text: str, pipeline_id: str) -> PipelineState:
    """Decode and validate a state document. Never repairs."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise StateValidationError(pipeline_id, [f"malformed JSON: {e}"]) from e
    if not isinstance(data, dict):
        raise StateValidationError(pipeline_id, ["document is not a JSON object"])
    try:
        state = PipelineState.from_dict(data)
    except KeyError as e:
        raise StateValidationError(pipeline_id, [f"missing field {e}"]) from e
    except (TypeError, ValueError) as e:
        raise StateValidationError(pipeline_id, [str(e)]) from e
    problems = validate_state(state)
    if problems:
        raise StateValidationError(pipeline_id, problems)
    return state


class StateStore:
    """One JSON document per pipeline under *state_dir*, rewritten atomically."""

    def __init__(self, state_dir: Path | str, stale_lock_seconds: int = 3600) -> None:
        self.state_dir = Path(state_dir)
        self.stale_lock_seconds = stale_lock_seconds

    def path_for(self, pipeline_id: str) -> Path:
        return self.state_dir / f"{STATE_PREFIX}{pipeline_id}.json"

    def lock_path(self, pipeline_id: str) -> Path:
        return self.state_dir / f"{STATE_PREFIX}{pipeline_id}.lock"

    def exists(self, pipeline_id: str) -> bool:
        return self.path_for(pipeline_id).is_file()

    def load_raw(self, pipeline_id: str) -> dict[str, Any]:
        """Decoded document without validation, for operator recovery."""
        path = self.path_for(pipeline_id)
        if not path.is_file():
            raise StateNotFoundError(pipeline_id)
        try:
            data = json.loads(read_text(path))
        except json.JSONDecodeError as e:
            raise StateValidationError(pipeline_id, [f"malformed JSON: {e}"]) from e
        if not isinstance(data, dict):
            raise StateValidationError(pipeline_id, ["document is not a JSON object"])
        return data

    def load(self, pipeline_id: str) -> PipelineState:
        path = self.path_for(pipeline_id)
        if not path.is_file():
            raise StateNotFoundError(pipeline_id)
        return parse_state(read_text(path), pipeline_id)

    def save(self, state: PipelineState) -> Path:
        """Validate, then replace the canonical file atomically.

        An invalid document is rejected with :class:`StateValidationError`
        and the file on disk is left as it was.
        """
        problems = validate_state(state)
        if problems:
            raise StateValidationError(state.pipeline_id, problems)
        path = self.path_for(state.pipeline_id)
        atomic_write_text(path, serialize_state(state))
        log.debug(f"Saved {path.name} (phase {state.phase.value}, wave {state.current_wave})")
        return path

    def delete(self, pipeline_id: str) -> bool:
        path = self.path_for(pipeline_id)
        if not path.is_file():
            return False
        path.unlink()
        return True

    def list_states(self) -> list[dict[str, Any]]:
        """Summaries of every state document; unreadable ones carry an ``error`` key."""
        if not self.state_dir.is_dir():
            return []
        summaries: list[dict[str, Any]] = []
        for path in sorted(self.state_dir.glob(f"{STATE_PREFIX}*.json")):
            pipeline_id = path.stem[len(STATE_PREFIX):]
            try:
                state = self.load(pipeline_id)
            except StateValidationError as e:
                summaries.append({"pipelineId": pipeline_id, "error": "; ".join(e.problems)})
                continue
            summaries.append(
                {
                    "pipelineId": state.pipeline_id,
                    "specName": state.spec_name,
                    "phase": state.phase.value,
                    "currentWave": state.current_wave,
                    "totalWaves": state.total_waves,
                    "pullRequestRef": state.pull_request_ref,
                    "updatedAt": state.updated_at,
                }
            )
        return summaries

    # ── advisory lock ────────────────────────────────────────────

    def _try_acquire(self, path: Path) -> bool:
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(f"{os.getpid()} {int(time.time())}\n")
        return True

    @contextmanager
    def lock(self, pipeline_id: str) -> Iterator[None]:
        """Hold the pipeline's sidecar lock file for the duration of the block.

        A lock older than ``stale_lock_seconds`` is assumed abandoned and broken.
        """
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self.lock_path(pipeline_id)
        if not self._try_acquire(path):
            try:
                holder = read_text(path).strip()
                age = time.time() - path.stat().st_mtime
            except FileNotFoundError:
                holder, age = "", 0.0
            if age > self.stale_lock_seconds:
                log.warn(f"Breaking stale lock on '{pipeline_id}' ({int(age)}s old)")
                path.unlink(missing_ok=True)
            if not self._try_acquire(path):
                raise PipelineLockedError(pipeline_id, holder)
        try:
            yield
        finally:
            path.unlink(missing_ok=True)

    def refresh_lock(self, pipeline_id: str) -> None:
        """Re-stamp a lock held by this process so a long wait is not taken for an abandoned one."""
        path = self.lock_path(pipeline_id)
        if path.is_file():
            write_text(path, f"{os.getpid()} {int(time.time())}\n")
