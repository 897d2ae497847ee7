"""Tests for wavepilot.executor: predecessor verification and concurrent wave execution."""

from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from wavepilot.executor import ShellTaskRunner, TaskOutcome, WaveExecutor
from wavepilot.io_utils import write_text
from wavepilot.ledger import ArtifactLedger
from wavepilot.scheduler import plan_waves
from wavepilot.tasks.io import load_task_graph, save_task_graph, update_task_status
from wavepilot.tasks.model import Task, TaskArtifacts, TaskStatus


@pytest.fixture
def planned(write_spec) -> Path:
    path = write_spec()
    tf = load_task_graph(path)
    plan_waves(tf)
    save_task_graph(tf, path)
    return path


def _executor(path: Path, root: Path, runner, max_parallel: int = 3) -> WaveExecutor:
    return WaveExecutor(path, ArtifactLedger(path, root), runner, max_parallel)


def _statuses(path: Path) -> dict[str, str]:
    return {t.id: t.status.value for t in load_task_graph(path).tasks}


# ── TestRunWave ──────────────────────────────────────────────────────


class TestRunWave:
    def test_all_pass(self, planned: Path, tmp_path: Path, make_runner) -> None:
        runner = make_runner()
        report = _executor(planned, tmp_path, runner).run_wave(1)
        assert sorted(report.passed) == ["1", "2", "3"]
        assert report.blocked == {}
        assert sorted(runner.ran) == ["1", "2", "3"]
        assert _statuses(planned) == {"1": "pass", "2": "pass", "3": "pass", "4": "pending", "5": "pending"}

    def test_failure_blocks_task(self, planned: Path, tmp_path: Path, make_runner) -> None:
        report = _executor(planned, tmp_path, make_runner({"2": "tests failed"})).run_wave(1)
        assert report.blocked == {"2": "tests failed"}
        task = load_task_graph(planned).get_task("2")
        assert task.status == TaskStatus.BLOCKED
        assert task.last_error == "tests failed"
        assert task.attempts == 1

    def test_runner_exception_blocks_task(self, planned: Path, tmp_path: Path) -> None:
        def explode(task: Task) -> TaskOutcome:
            raise RuntimeError("runner crashed")

        report = _executor(planned, tmp_path, explode).run_wave(1)
        assert set(report.blocked) == {"1", "2", "3"}
        assert "runner crashed" in report.blocked["1"]

    def test_passed_tasks_not_rerun(self, planned: Path, tmp_path: Path, make_runner) -> None:
        update_task_status(planned, "1", TaskStatus.PASS)
        runner = make_runner()
        _executor(planned, tmp_path, runner).run_wave(1)
        assert sorted(runner.ran) == ["2", "3"]

    def test_blocked_tasks_rerun(self, planned: Path, tmp_path: Path, make_runner) -> None:
        update_task_status(planned, "3", TaskStatus.BLOCKED, error="earlier")
        runner = make_runner()
        report = _executor(planned, tmp_path, runner).run_wave(1)
        assert "3" in report.passed
        assert load_task_graph(planned).get_task("3").last_error is None

    def test_finished_wave_is_noop(self, planned: Path, tmp_path: Path, make_runner) -> None:
        for tid in ("1", "2", "3"):
            update_task_status(planned, tid, TaskStatus.PASS)
        runner = make_runner()
        report = _executor(planned, tmp_path, runner).run_wave(1)
        assert runner.ran == []
        assert report.dispatched == []

    def test_tasks_run_concurrently(self, planned: Path, tmp_path: Path) -> None:
        active = 0
        peak = 0
        lock = threading.Lock()

        def slow(task: Task) -> TaskOutcome:
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.2)
            with lock:
                active -= 1
            return TaskOutcome(task.id, True)

        _executor(planned, tmp_path, slow, max_parallel=3).run_wave(1)
        assert peak > 1

    def test_max_parallel_one_is_sequential(self, planned: Path, tmp_path: Path) -> None:
        active = 0
        peak = 0
        lock = threading.Lock()

        def slow(task: Task) -> TaskOutcome:
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.05)
            with lock:
                active -= 1
            return TaskOutcome(task.id, True)

        _executor(planned, tmp_path, slow, max_parallel=1).run_wave(1)
        assert peak == 1


# ── TestArtifactsAndVerification ─────────────────────────────────────


class TestArtifactsAndVerification:
    def test_artifacts_recorded_on_pass(self, planned: Path, tmp_path: Path) -> None:
        def with_artifacts(task: Task) -> TaskOutcome:
            return TaskOutcome(task.id, True, artifacts=TaskArtifacts(exports_added=[f"sym_{task.id}"]))

        _executor(planned, tmp_path, with_artifacts).run_wave(1)
        assert load_task_graph(planned).get_task("2").artifacts.exports_added == ["sym_2"]

    def test_predecessor_verification_failure_blocks_dependent(
        self, planned: Path, tmp_path: Path, make_runner
    ) -> None:
        """Task 4 depends on 1, whose recorded export no longer exists in the codebase."""
        for tid in ("1", "2", "3"):
            update_task_status(planned, tid, TaskStatus.PASS)
        ArtifactLedger(planned, tmp_path).record("1", TaskArtifacts(exports_added=["User"]))

        runner = make_runner()
        report = _executor(planned, tmp_path, runner).run_wave(2)

        assert "4" in report.blocked
        assert "Predecessor 1" in report.blocked["4"]
        assert "User" in report.blocked["4"]
        assert runner.ran == ["5"]
        assert load_task_graph(planned).get_task("1").artifacts.exports_added == ["User"]

    def test_predecessor_verified_live(self, planned: Path, tmp_path: Path, make_runner) -> None:
        for tid in ("1", "2", "3"):
            update_task_status(planned, tid, TaskStatus.PASS)
        write_text(tmp_path / "users.py", "class User:\n    pass\n")
        ArtifactLedger(planned, tmp_path).record("1", TaskArtifacts(exports_added=["User"]))

        report = _executor(planned, tmp_path, make_runner()).run_wave(2)
        assert sorted(report.passed) == ["4", "5"]

    def test_conflicting_artifacts_become_warning(self, planned: Path, tmp_path: Path) -> None:
        update_task_status(planned, "1", TaskStatus.PASS)
        ArtifactLedger(planned, tmp_path).record("1", TaskArtifacts(exports_added=["A"]))
        update_task_status(planned, "1", TaskStatus.PENDING)

        def different(task: Task) -> TaskOutcome:
            return TaskOutcome(task.id, True, artifacts=TaskArtifacts(exports_added=["B"]))

        report = _executor(planned, tmp_path, different).run_wave(1)
        assert "1" in report.passed
        assert report.warnings
        assert load_task_graph(planned).get_task("1").artifacts.exports_added == ["A"]


# ── TestShellTaskRunner ──────────────────────────────────────────────


class TestShellTaskRunner:
    def test_success(self, tmp_path: Path) -> None:
        outcome = ShellTaskRunner('test "$WAVEPILOT_TASK_ID" = T1', tmp_path)(Task(id="T1", title="x"))
        assert outcome.passed is True
        assert outcome.artifacts is None

    def test_failure_uses_last_stderr_line(self, tmp_path: Path) -> None:
        outcome = ShellTaskRunner("echo starting; echo first >&2; echo 'lint failed' >&2; exit 3", tmp_path)(
            Task(id="T1")
        )
        assert outcome.passed is False
        assert outcome.error == "lint failed"

    def test_failure_without_output(self, tmp_path: Path) -> None:
        outcome = ShellTaskRunner("exit 2", tmp_path)(Task(id="T1"))
        assert outcome.error == "exit code 2"

    def test_reads_artifact_file(self, tmp_path: Path) -> None:
        cmd = 'printf \'{"filesCreated": ["a.py"], "exportsAdded": ["run"]}\' > "$WAVEPILOT_ARTIFACTS_FILE"'
        outcome = ShellTaskRunner(cmd, tmp_path)(Task(id="T1"))
        assert outcome.passed is True
        assert outcome.artifacts == TaskArtifacts(files_created=["a.py"], exports_added=["run"])

    def test_unreadable_artifact_file_ignored(self, tmp_path: Path) -> None:
        outcome = ShellTaskRunner('echo "not json" > "$WAVEPILOT_ARTIFACTS_FILE"', tmp_path)(Task(id="T1"))
        assert outcome.passed is True
        assert outcome.artifacts is None

    def test_timeout(self, tmp_path: Path) -> None:
        outcome = ShellTaskRunner("sleep 3", tmp_path, timeout=1)(Task(id="T1"))
        assert outcome.passed is False
        assert "Timed out" in outcome.error

    def test_runs_in_cwd(self, tmp_path: Path) -> None:
        ShellTaskRunner("touch marker", tmp_path)(Task(id="T1"))
        assert (tmp_path / "marker").is_file()
