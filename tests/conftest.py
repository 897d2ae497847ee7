"""Shared fixtures for wavepilot tests.

File handling in tests:
- Use tmp_path for any directory or file creation so tests are isolated and cleaned up.
- Use wavepilot.io_utils read_text/write_text for consistent UTF-8 I/O.
- Version control, pull requests and reviews are faked in memory; only
  git_ops / GitService tests touch a real repository.
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Any

import pytest

from wavepilot import log
from wavepilot.config import Config
from wavepilot.errors import ServiceError
from wavepilot.executor import TaskOutcome
from wavepilot.io_utils import dump_json, write_text
from wavepilot.machine import PipelineContext
from wavepilot.services import (
    BranchScope,
    ChangeSet,
    ChangeSetPublisher,
    ReviewDecision,
    ReviewService,
    ReviewStatusReport,
    VersionControlService,
)
from wavepilot.state import StateStore
from wavepilot.tasks.model import Task, TaskGraph


def pytest_addoption(parser: pytest.Parser) -> None:
    """Register opt-in switch for expensive end-to-end tests."""
    parser.addoption(
        "--run-e2e",
        action="store_true",
        default=False,
        help="Run end-to-end tests marked with 'e2e'.",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip e2e tests unless explicitly enabled."""
    if config.getoption("--run-e2e"):
        return

    skip_e2e = pytest.mark.skip(
        reason="E2E tests are skipped by default. Use --run-e2e to include them.",
    )
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch):
    """Keep WAVEPILOT_* variables from the developer's shell out of tests."""
    for name in (
        "WAVEPILOT_PROJECT_DIR",
        "WAVEPILOT_STATE_DIR",
        "WAVEPILOT_SPECS_DIR",
        "WAVEPILOT_TRUNK",
        "WAVEPILOT_REMOTE",
        "WAVEPILOT_TASK_COMMAND",
        "WAVEPILOT_REVIEWER_PATTERN",
    ):
        monkeypatch.delenv(name, raising=False)
    yield
    log.set_verbose(False)


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create a minimal git repo for testing, with trunk named ``main``."""
    subprocess.run(["git", "init"], cwd=tmp_path, capture_output=True, check=True)
    subprocess.run(
        ["git", "config", "user.name", "Test"], cwd=tmp_path, capture_output=True
    )
    subprocess.run(
        ["git", "config", "user.email", "test@test"], cwd=tmp_path, capture_output=True
    )
    write_text(tmp_path / "README.md", "# Test")
    subprocess.run(["git", "add", "README.md"], cwd=tmp_path, capture_output=True)
    subprocess.run(
        ["git", "commit", "-m", "Initial"], cwd=tmp_path, capture_output=True
    )
    subprocess.run(["git", "branch", "-M", "main"], cwd=tmp_path, capture_output=True)
    return tmp_path


@pytest.fixture
def repo_with_remote(git_repo: Path, tmp_path_factory: pytest.TempPathFactory) -> Path:
    """git_repo with a bare ``origin`` that already has ``main``."""
    remote = tmp_path_factory.mktemp("remote") / "origin.git"
    subprocess.run(["git", "init", "--bare", str(remote)], capture_output=True, check=True)
    subprocess.run(["git", "remote", "add", "origin", str(remote)], cwd=git_repo, capture_output=True, check=True)
    subprocess.run(["git", "push", "-u", "origin", "main"], cwd=git_repo, capture_output=True, check=True)
    return git_repo


# ── task graphs ──────────────────────────────────────────────────────


def _make_task(
    id: str,
    title: str = "",
    depends_on: list[str] | None = None,
    touches: list[str] | None = None,
) -> Task:
    return Task(
        id=id,
        title=title or f"Task {id}",
        depends_on=depends_on or [],
        touches=touches or [],
    )


def _make_task_graph(tasks: list[Task], spec: str = "test") -> TaskGraph:
    return TaskGraph(spec=spec, tasks=tasks)


@pytest.fixture
def make_task():
    """Factory fixture that creates Task instances."""
    return _make_task


@pytest.fixture
def make_task_graph():
    """Factory fixture that creates TaskGraph instances."""
    return _make_task_graph


# Waves: [1, 2, 3] then [4, 5]
TWO_WAVE_TASKS: list[dict[str, Any]] = [
    {"id": "1", "title": "User model", "dependsOn": []},
    {"id": "2", "title": "Password hashing", "dependsOn": []},
    {"id": "3", "title": "Session store", "dependsOn": []},
    {"id": "4", "title": "Login endpoint", "dependsOn": ["1", "2"]},
    {"id": "5", "title": "Logout endpoint", "dependsOn": ["3"]},
]


@pytest.fixture
def write_spec(tmp_path: Path):
    """Write ``.wavepilot/specs/<name>/tasks.json`` under tmp_path and return its path."""

    def _write(name: str = "demo", tasks: list[dict[str, Any]] | None = None, **extra: Any) -> Path:
        spec_dir = tmp_path / ".wavepilot" / "specs" / name
        spec_dir.mkdir(parents=True, exist_ok=True)
        path = spec_dir / "tasks.json"
        data = {"version": 1, "spec": name, "tasks": TWO_WAVE_TASKS if tasks is None else tasks, **extra}
        write_text(path, dump_json(data))
        return path

    return _write


# ── fake services ────────────────────────────────────────────────────


class FakeVCS(VersionControlService):
    """In-memory branches: local and remote name sets, the checked-out branch and branch heads."""

    def __init__(self, trunk: str = "main") -> None:
        self.local: set[str] = {trunk}
        self.heads: dict[str, str] = {trunk: "c0"}
        self._commits = 0
        self.remote: set[str] = {trunk}
        self.current = trunk
        self.parents: dict[str, str] = {}
        self.pushed: list[str] = []
        self.deleted: list[tuple[str, str]] = []
        self.push_ok = True
        self.delete_ok = True

    def create_branch(self, name: str, base: str) -> None:
        if name in self.local:
            raise ServiceError(f"branch {name} already exists")
        self.local.add(name)
        self.parents[name] = base
        self.heads[name] = self.heads.get(base, "c0")
        self.current = name

    def branch_exists(self, name: str, scope: BranchScope = BranchScope.ANY) -> bool:
        if scope == BranchScope.LOCAL:
            return name in self.local
        if scope == BranchScope.REMOTE:
            return name in self.remote
        return name in self.local or name in self.remote

    def push(self, branch: str) -> bool:
        if not self.push_ok:
            return False
        self.pushed.append(branch)
        self.remote.add(branch)
        return True

    def delete_branch(self, name: str, scope: BranchScope) -> bool:
        if not self.delete_ok:
            return False
        self.deleted.append((name, scope.value))
        (self.local if scope == BranchScope.LOCAL else self.remote).discard(name)
        return True

    def current_branch(self) -> str:
        return self.current

    def checkout(self, name: str) -> None:
        if name not in self.local:
            if name not in self.remote:
                raise ServiceError(f"Failed to checkout {name}")
            self.local.add(name)
        self.current = name

    def fetch(self, name: str) -> bool:
        return name in self.remote

    def pull(self, name: str) -> bool:
        return name in self.remote

    def head(self, name: str) -> str:
        return self.heads.get(name, "")

    def commit(self, branch: str) -> str:
        """Advance *branch* by one commit and return the new head."""
        self._commits += 1
        self.heads[branch] = f"c{self._commits}"
        return self.heads[branch]


class FakePublisher(ChangeSetPublisher):
    def __init__(self) -> None:
        self.published: list[tuple[str, str, str]] = []
        self.merged: list[str] = []
        self.merge_ok = True

    def publish(self, branch: str, target: str, title: str, body: str = "") -> ChangeSet:
        self.published.append((branch, target, title))
        number = str(100 + len(self.published))
        return ChangeSet(ref=number, url=f"https://github.com/acme/app/pull/{number}")

    def merge(self, ref: str) -> bool:
        if self.merge_ok:
            self.merged.append(ref)
        return self.merge_ok


class FakeReview(ReviewService):
    """Replays scripted reports; the last one repeats. Defaults to an approval."""

    def __init__(self, *reports: ReviewStatusReport) -> None:
        self.reports = list(reports) or [ReviewStatusReport(ReviewDecision.APPROVED, 0, "claude[bot]")]
        self.calls: list[str] = []
        self.markers: list[tuple[str | None, str | None]] = []

    def get_review_status(self, ref: str, *, since: str | None = None,
                          head: str | None = None) -> ReviewStatusReport:
        self.calls.append(ref)
        self.markers.append((since, head))
        if len(self.reports) > 1:
            return self.reports.pop(0)
        return self.reports[0]


class FakeRunner:
    """Task runner that passes every task except those listed in *fail*."""

    def __init__(self, fail: dict[str, str] | None = None) -> None:
        self.fail = fail or {}
        self.ran: list[str] = []

    def __call__(self, task: Task) -> TaskOutcome:
        self.ran.append(task.id)
        if task.id in self.fail:
            return TaskOutcome(task.id, False, self.fail[task.id])
        return TaskOutcome(task.id, True)


@pytest.fixture
def fake_vcs() -> FakeVCS:
    return FakeVCS()


@pytest.fixture
def cfg(tmp_path: Path) -> Config:
    """Config rooted at tmp_path with a short poll budget (3 polls)."""
    return Config(
        project_dir=str(tmp_path),
        trunk="main",
        poll_interval_ms=1000,
        max_poll_duration_ms=3000,
    )


@pytest.fixture
def make_ctx(cfg: Config):
    """Factory for a PipelineContext over tmp_path with fake services by default."""

    def _make(**services: Any) -> PipelineContext:
        services.setdefault("vcs", FakeVCS())
        services.setdefault("publisher", FakePublisher())
        services.setdefault("review", FakeReview())
        services.setdefault("runner", FakeRunner())
        return PipelineContext(cfg=cfg, store=StateStore(cfg.state_dir), **services)

    return _make


@pytest.fixture
def make_review():
    """Factory for a FakeReview replaying the given reports."""
    return FakeReview


@pytest.fixture
def make_runner():
    """Factory for a FakeRunner failing the given ``{task_id: error}`` tasks."""
    return FakeRunner
