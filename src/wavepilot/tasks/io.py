"""Task file I/O: load/save tasks.json or tasks.yaml and task status bookkeeping."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from wavepilot import log
from wavepilot.errors import TaskGraphError
from wavepilot.io_utils import atomic_write_text, dump_json, read_text
from wavepilot.tasks.model import Task, TaskArtifacts, TaskGraph, TaskStatus, Wave, str_list

TASK_FILE_NAMES = ("tasks.json", "tasks.yaml", "tasks.yml")


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def find_task_file(spec_dir: Path) -> Path | None:
    """Return the first task file present in *spec_dir*."""
    for name in TASK_FILE_NAMES:
        candidate = spec_dir / name
        if candidate.is_file():
            return candidate
    return None


def _is_yaml(path: Path) -> bool:
    return path.suffix.lower() in (".yaml", ".yml")


# ── parsing ──────────────────────────────────────────────────────────


def _parse_status(raw: Any, task_id: str) -> TaskStatus:
    if raw is None or raw == "":
        return TaskStatus.PENDING
    try:
        return TaskStatus(str(raw))
    except ValueError:
        raise TaskGraphError(f"Task {task_id}: unknown status '{raw}'") from None


def _parse_task(raw: Any) -> Task:
    if not isinstance(raw, dict):
        raise TaskGraphError(f"Task entry must be a mapping, got {type(raw).__name__}")
    if raw.get("id") in (None, ""):
        raise TaskGraphError("Task entry is missing 'id'")
    task_id = str(raw["id"])
    return Task(
        id=task_id,
        title=str(raw.get("title", "")),
        description=str(raw.get("description", "")),
        status=_parse_status(raw.get("status"), task_id),
        depends_on=str_list(raw.get("dependsOn")),
        touches=str_list(raw.get("touches")),
        artifacts=TaskArtifacts.from_dict(raw.get("artifacts")),
        started_at=raw.get("startedAt"),
        completed_at=raw.get("completedAt"),
        attempts=int(raw.get("attempts") or 0),
        last_error=raw.get("lastError"),
    )


def parse_task_graph(data: Any) -> TaskGraph:
    """Build a :class:`TaskGraph` from decoded JSON/YAML data."""
    if not isinstance(data, dict):
        raise TaskGraphError("Task file must contain a mapping at the top level")
    tasks = [_parse_task(raw) for raw in data.get("tasks") or []]
    waves = [Wave.from_dict(raw) for raw in data.get("waves") or [] if isinstance(raw, dict)]
    return TaskGraph(
        spec=str(data.get("spec", "")),
        tasks=tasks,
        waves=sorted(waves, key=lambda w: w.wave),
        version=int(data.get("version") or 1),
    )


def load_task_graph(path: Path) -> TaskGraph:
    """Load a task file (JSON or YAML by suffix)."""
    if not path.is_file():
        raise TaskGraphError(f"Task file not found: {path}")
    text = read_text(path)
    try:
        data = yaml.safe_load(text) if _is_yaml(path) else json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise TaskGraphError(f"Could not parse {path}: {e}") from e
    tf = parse_task_graph(data)
    log.debug(f"Loaded {len(tf.tasks)} task(s), {len(tf.waves)} wave(s) from {path}")
    return tf


# ── serialization ────────────────────────────────────────────────────


def _task_to_dict(task: Task) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": task.id,
        "title": task.title,
        "status": task.status.value,
        "dependsOn": list(task.depends_on),
        "touches": list(task.touches),
    }
    if task.description:
        data["description"] = task.description
    if not task.artifacts.is_empty():
        data["artifacts"] = task.artifacts.to_dict()
    if task.started_at:
        data["startedAt"] = task.started_at
    if task.completed_at:
        data["completedAt"] = task.completed_at
    if task.attempts:
        data["attempts"] = task.attempts
    if task.last_error:
        data["lastError"] = task.last_error
    return data


def summarize(tf: TaskGraph) -> dict[str, int]:
    """Progress counters over all tasks."""
    total = len(tf.tasks)
    counts = {s: 0 for s in TaskStatus}
    for t in tf.tasks:
        counts[t.status] += 1
    completed = counts[TaskStatus.PASS]
    return {
        "totalTasks": total,
        "completed": completed,
        "inProgress": counts[TaskStatus.IN_PROGRESS],
        "blocked": counts[TaskStatus.BLOCKED],
        "pending": counts[TaskStatus.PENDING],
        "overallPercent": (completed * 100 // total) if total else 0,
    }


def task_graph_to_dict(tf: TaskGraph) -> dict[str, Any]:
    return {
        "version": tf.version,
        "spec": tf.spec,
        "summary": summarize(tf),
        "waves": [w.to_dict() for w in tf.waves],
        "tasks": [_task_to_dict(t) for t in tf.tasks],
        "updatedAt": utc_now(),
    }


def save_task_graph(tf: TaskGraph, path: Path) -> None:
    """Atomically rewrite the task file in its own format."""
    data = task_graph_to_dict(tf)
    if _is_yaml(path):
        text = yaml.safe_dump(data, sort_keys=False, allow_unicode=True)
    else:
        text = dump_json(data)
    atomic_write_text(path, text)


# ── status bookkeeping ───────────────────────────────────────────────


def set_task_status(tf: TaskGraph, task_id: str, status: TaskStatus, *, error: str | None = None) -> Task:
    """Apply a status change in memory, stamping timestamps and attempts."""
    task = tf.get_task(task_id)
    if task is None:
        raise TaskGraphError(f"Unknown task: {task_id}")

    ts = utc_now()
    if status == TaskStatus.IN_PROGRESS and task.status != TaskStatus.IN_PROGRESS:
        task.started_at = ts
        task.attempts += 1
        task.last_error = None
    elif status == TaskStatus.PASS and task.completed_at is None:
        task.completed_at = ts
        task.last_error = None
    elif status == TaskStatus.BLOCKED:
        task.last_error = error or task.last_error

    task.status = status
    log.debug(f"Task {task_id}: -> {status.value}")
    return task


def update_task_status(path: Path, task_id: str, status: TaskStatus, *, error: str | None = None) -> Task:
    """Read-modify-write a single task status change on disk."""
    tf = load_task_graph(path)
    task = set_task_status(tf, task_id, status, error=error)
    save_task_graph(tf, path)
    return task
