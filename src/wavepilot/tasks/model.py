"""Task, Wave and TaskGraph data models used across planning, ledger and execution."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PASS = "pass"
    BLOCKED = "blocked"


def natural_key(task_id: str) -> tuple:
    """Sort key comparing digit runs numerically (``"2" < "10"``, ``"1.2" < "1.10"``)."""
    parts = re.split(r"(\d+)", task_id)
    return tuple((0, int(p), "") if p.isdigit() else (1, 0, p) for p in parts if p)


@dataclass
class TaskArtifacts:
    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    exports_added: list[str] = field(default_factory=list)
    test_files: list[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.files_created or self.files_modified or self.exports_added or self.test_files)

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "filesCreated": list(self.files_created),
            "filesModified": list(self.files_modified),
            "exportsAdded": list(self.exports_added),
            "testFiles": list(self.test_files),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> TaskArtifacts:
        data = data or {}
        return cls(
            files_created=str_list(data.get("filesCreated")),
            files_modified=str_list(data.get("filesModified")),
            exports_added=str_list(data.get("exportsAdded")),
            test_files=str_list(data.get("testFiles")),
        )


@dataclass
class Task:
    id: str
    title: str = ""
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    depends_on: list[str] = field(default_factory=list)
    touches: list[str] = field(default_factory=list)
    artifacts: TaskArtifacts = field(default_factory=TaskArtifacts)
    started_at: str | None = None
    completed_at: str | None = None
    attempts: int = 0
    last_error: str | None = None

    @property
    def passed(self) -> bool:
        return self.status == TaskStatus.PASS


@dataclass
class Wave:
    wave: int
    tasks: list[str] = field(default_factory=list)
    rationale: str = ""
    conflicts: list[dict[str, list[str]]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "wave": self.wave,
            "tasks": list(self.tasks),
            "rationale": self.rationale,
        }
        if self.conflicts:
            data["conflicts"] = [dict(c) for c in self.conflicts]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Wave:
        return cls(
            wave=int(data.get("wave", 0)),
            tasks=str_list(data.get("tasks")),
            rationale=str(data.get("rationale", "")),
            conflicts=[
                {"tasks": str_list(c.get("tasks")), "resources": str_list(c.get("resources"))}
                for c in data.get("conflicts") or []
                if isinstance(c, dict)
            ],
        )


@dataclass
class TaskGraph:
    spec: str = ""
    tasks: list[Task] = field(default_factory=list)
    waves: list[Wave] = field(default_factory=list)
    version: int = 1

    def get_task(self, task_id: str) -> Task | None:
        for t in self.tasks:
            if t.id == task_id:
                return t
        return None

    def task_ids(self) -> list[str]:
        return [t.id for t in self.tasks]

    def pending_ids(self) -> list[str]:
        return [t.id for t in self.tasks if not t.passed]

    def get_wave(self, number: int) -> Wave | None:
        for w in self.waves:
            if w.wave == number:
                return w
        return None

    def wave_tasks(self, number: int) -> list[Task]:
        wave = self.get_wave(number)
        if wave is None:
            return []
        return [t for t in (self.get_task(tid) for tid in wave.tasks) if t is not None]


def str_list(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value if v is not None and str(v) != ""]
