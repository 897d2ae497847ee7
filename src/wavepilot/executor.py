"""Wave executor: verifies predecessor artifacts, then runs a wave's tasks concurrently."""

from __future__ import annotations

import json
import os
import subprocess
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from wavepilot import log
from wavepilot.errors import LedgerError
from wavepilot.io_utils import read_text
from wavepilot.ledger import ArtifactLedger
from wavepilot.tasks.io import load_task_graph, save_task_graph, set_task_status, update_task_status
from wavepilot.tasks.model import Task, TaskArtifacts, TaskStatus


@dataclass
class TaskOutcome:
    task_id: str
    passed: bool
    error: str = ""
    artifacts: TaskArtifacts | None = None
    duration: float = 0.0


TaskRunner = Callable[[Task], TaskOutcome]


def _last_error_line(text: str) -> str:
    lines = [l for l in text.splitlines() if l.strip()]
    return lines[-1].strip() if lines else ""


class ShellTaskRunner:
    """Runs a shell command per task.

    The command sees ``WAVEPILOT_TASK_ID``, ``WAVEPILOT_TASK_TITLE`` and
    ``WAVEPILOT_ARTIFACTS_FILE``; if it writes a JSON artifact record to the
    latter, that record is handed to the ledger when the task passes.
    """

    def __init__(self, command: str, cwd: Path | None = None, timeout: int = 0) -> None:
        self.command = command
        self.cwd = cwd
        self.timeout = timeout

    def __call__(self, task: Task) -> TaskOutcome:
        fd, artifacts_path = tempfile.mkstemp(prefix=f"wavepilot-artifacts-{task.id}-", suffix=".json")
        os.close(fd)
        artifacts_file = Path(artifacts_path)
        env = {
            **os.environ,
            "WAVEPILOT_TASK_ID": task.id,
            "WAVEPILOT_TASK_TITLE": task.title,
            "WAVEPILOT_ARTIFACTS_FILE": str(artifacts_file),
        }
        started = time.monotonic()
        try:
            try:
                r = subprocess.run(
                    self.command,
                    shell=True,
                    cwd=self.cwd,
                    env=env,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout or None,
                )
            except subprocess.TimeoutExpired:
                return TaskOutcome(task.id, False, f"Timed out after {self.timeout}s",
                                   duration=time.monotonic() - started)

            duration = time.monotonic() - started
            if r.returncode != 0:
                err = _last_error_line(r.stderr) or _last_error_line(r.stdout) or f"exit code {r.returncode}"
                return TaskOutcome(task.id, False, err, duration=duration)

            return TaskOutcome(task.id, True, artifacts=self._read_artifacts(artifacts_file, task.id),
                               duration=duration)
        finally:
            artifacts_file.unlink(missing_ok=True)

    @staticmethod
    def _read_artifacts(path: Path, task_id: str) -> TaskArtifacts | None:
        text = read_text(path, errors="replace").strip() if path.is_file() else ""
        if not text:
            return None
        try:
            return TaskArtifacts.from_dict(json.loads(text))
        except (json.JSONDecodeError, AttributeError):
            log.warn(f"Task {task_id}: ignoring unreadable artifact record")
            return None


@dataclass
class WaveReport:
    wave: int
    dispatched: list[str] = field(default_factory=list)
    passed: list[str] = field(default_factory=list)
    blocked: dict[str, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "wave": self.wave,
            "dispatched": list(self.dispatched),
            "passed": list(self.passed),
            "blocked": dict(self.blocked),
            "warnings": list(self.warnings),
        }


class WaveExecutor:
    """Dispatches every unfinished task of one wave and waits for all of them.

    Task status writes happen on the calling thread as results arrive, so
    the task file has a single writer.
    """

    def __init__(
        self,
        task_file: Path,
        ledger: ArtifactLedger,
        runner: TaskRunner,
        max_parallel: int = 3,
    ) -> None:
        self.task_file = task_file
        self.ledger = ledger
        self.runner = runner
        self.max_parallel = max(1, max_parallel)

    def verify_predecessors(self, task: Task) -> str:
        """Return an error message if any dependency's recorded artifacts fail live verification."""
        for dep in task.depends_on:
            result = self.ledger.verify(dep)
            if not result.verified:
                parts = []
                if result.missing:
                    parts.append(f"missing exports {', '.join(result.missing)}")
                if result.missing_files:
                    parts.append(f"missing files {', '.join(result.missing_files)}")
                return f"Predecessor {dep} failed verification: {'; '.join(parts)}"
        return ""

    def run_wave(self, wave: int) -> WaveReport:
        report = WaveReport(wave=wave)
        tf = load_task_graph(self.task_file)
        todo = [t for t in tf.wave_tasks(wave) if t.status != TaskStatus.PASS]
        if not todo:
            return report

        runnable: list[Task] = []
        for task in todo:
            err = self.verify_predecessors(task)
            if err:
                log.error(f"Task {task.id}: {err}")
                set_task_status(tf, task.id, TaskStatus.BLOCKED, error=err)
                report.blocked[task.id] = err
                continue
            set_task_status(tf, task.id, TaskStatus.IN_PROGRESS)
            runnable.append(task)
        save_task_graph(tf, self.task_file)

        if not runnable:
            return report

        log.info(f"Wave {wave}: running {len(runnable)} task(s) (max {self.max_parallel} parallel)")
        with ThreadPoolExecutor(max_workers=self.max_parallel) as pool:
            futures = {pool.submit(self.runner, task): task for task in runnable}
            report.dispatched = [t.id for t in runnable]
            for future in as_completed(futures):
                task = futures[future]
                try:
                    outcome = future.result()
                except Exception as e:
                    outcome = TaskOutcome(task.id, False, f"{type(e).__name__}: {e}")
                self._finish(task, outcome, report)

        return report

    def _finish(self, task: Task, outcome: TaskOutcome, report: WaveReport) -> None:
        label = task.title[:45] or task.id
        if not outcome.passed:
            update_task_status(self.task_file, task.id, TaskStatus.BLOCKED, error=outcome.error)
            report.blocked[task.id] = outcome.error
            log.error(f"{label} ({task.id}): {outcome.error}")
            return

        update_task_status(self.task_file, task.id, TaskStatus.PASS)
        report.passed.append(task.id)
        log.success(f"{label} ({task.id})")
        if outcome.artifacts is not None:
            try:
                self.ledger.record(task.id, outcome.artifacts)
            except LedgerError as e:
                log.warn(str(e))
                report.warnings.append(str(e))
