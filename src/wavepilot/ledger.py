"""Artifact ledger: what each completed task produced, cross-checked against the live codebase."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from wavepilot import log
from wavepilot.errors import ArtifactNotFoundError, DuplicateArtifactError, LedgerError
from wavepilot.git_ops import diff_name_status
from wavepilot.io_utils import read_text
from wavepilot.tasks.io import load_task_graph, save_task_graph
from wavepilot.tasks.model import TaskArtifacts, TaskGraph, TaskStatus

SOURCE_SUFFIXES = (".py", ".js", ".jsx", ".mjs", ".cjs", ".ts", ".tsx")
SOURCE_ROOTS = ("src", "lib", "app")
SKIP_DIRS = {
    ".git", ".hg", ".svn", ".venv", "venv", "env", "node_modules",
    "__pycache__", ".mypy_cache", ".pytest_cache", ".tox", "dist", "build",
    ".wavepilot",
}

_TEST_FILE = re.compile(r"(^|/)(test_[^/]+\.py|[^/]+_test\.py|[^/]+\.(test|spec)\.[^/]+)$")

_PY_EXPORT = re.compile(r"^(?:async\s+def|def|class)\s+([A-Za-z_]\w*)", re.MULTILINE)
_JS_EXPORT = re.compile(
    r"^\s*export\s+(?:default\s+)?(?:declare\s+)?(?:async\s+)?"
    r"(?:function\*?|class|const|let|var|type|interface|enum)\s+([A-Za-z_$][\w$]*)",
    re.MULTILINE,
)
_JS_EXPORT_LIST = re.compile(r"^\s*export\s*\{([^}]*)\}", re.MULTILINE)


def _symbol_patterns(name: str) -> list[re.Pattern[str]]:
    n = re.escape(name)
    return [
        re.compile(rf"^\s*(?:async\s+)?def\s+{n}\b", re.MULTILINE),
        re.compile(rf"^\s*class\s+{n}\b", re.MULTILINE),
        re.compile(rf"^{n}\s*(?::[^=\n]+)?=", re.MULTILINE),
        re.compile(
            rf"^\s*export\s+(?:default\s+)?(?:declare\s+)?(?:async\s+)?"
            rf"(?:function\*?|class|const|let|var|type|interface|enum)\s+{n}\b",
            re.MULTILINE,
        ),
        re.compile(rf"^\s*export\s*\{{[^}}]*\b{n}\b[^}}]*\}}", re.MULTILINE),
    ]


def is_test_file(path: str) -> bool:
    return bool(_TEST_FILE.search(path.replace("\\", "/")))


def iter_source_files(root: Path):
    """Yield source files under *root*, skipping VCS, virtualenv and cache dirs."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
        for name in sorted(filenames):
            if name.endswith(SOURCE_SUFFIXES):
                yield Path(dirpath) / name


def _search_roots(root: Path) -> list[Path]:
    roots = [root / d for d in SOURCE_ROOTS if (root / d).is_dir()]
    roots.append(root)
    return roots


def find_symbol(name: str, root: Path) -> str | None:
    """Locate a definition or export of *name* under *root*.

    Checks ``src``, ``lib`` and ``app`` before the whole tree. Returns
    ``"relative/path:line"`` for the first hit, or ``None``.
    """
    if not name:
        return None
    patterns = _symbol_patterns(name)
    seen: set[Path] = set()
    for base in _search_roots(root):
        for path in iter_source_files(base):
            if path in seen:
                continue
            seen.add(path)
            try:
                text = read_text(path, errors="replace")
            except OSError:
                continue
            if name not in text:
                continue
            for pat in patterns:
                m = pat.search(text)
                if m:
                    line = text.count("\n", 0, m.start()) + 1
                    return f"{path.relative_to(root).as_posix()}:{line}"
    return None


def extract_exports(path: Path) -> list[str]:
    """Public names declared by a Python or JS/TS source file."""
    try:
        text = read_text(path, errors="replace")
    except OSError:
        return []
    names: list[str] = []
    if path.suffix == ".py":
        names = [n for n in _PY_EXPORT.findall(text) if not n.startswith("_")]
    else:
        names = _JS_EXPORT.findall(text)
        for group in _JS_EXPORT_LIST.findall(text):
            for item in group.split(","):
                item = item.strip()
                if not item:
                    continue
                # `a as b` exports b
                names.append(item.split(" as ")[-1].strip())
    return list(dict.fromkeys(names))


def collect_artifacts(since: str = "HEAD~1", cwd: Path | None = None) -> TaskArtifacts:
    """Derive an artifact record from ``git diff --name-status <since> HEAD``."""
    root = cwd or Path.cwd()
    created: list[str] = []
    modified: list[str] = []
    for status, path in diff_name_status(since, cwd=root):
        if status in ("A", "C", "R"):
            created.append(path)
        elif status == "M":
            modified.append(path)

    exports: list[str] = []
    for rel in created:
        p = root / rel
        if p.suffix in SOURCE_SUFFIXES and p.is_file() and not is_test_file(rel):
            exports.extend(extract_exports(p))

    return TaskArtifacts(
        files_created=created,
        files_modified=modified,
        exports_added=sorted(set(exports)),
        test_files=[f for f in created + modified if is_test_file(f)],
    )


@dataclass
class VerificationResult:
    task_id: str
    verified: bool
    missing: list[str] = field(default_factory=list)
    missing_files: list[str] = field(default_factory=list)
    results: dict[str, dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "verified": self.verified,
            "missing": list(self.missing),
            "missingFiles": list(self.missing_files),
            "results": self.results,
        }


class ArtifactLedger:
    """Write-once artifact records stored on the tasks of a task file.

    A symbol counts as verified only when the ledger recorded it *and* a
    live search of the codebase still finds it.
    """

    def __init__(self, task_file: Path, search_root: Path | None = None) -> None:
        self.task_file = task_file
        self.search_root = search_root or Path.cwd()

    def _load(self) -> TaskGraph:
        return load_task_graph(self.task_file)

    def record(self, task_id: str, artifacts: TaskArtifacts) -> bool:
        """Attach *artifacts* to a passed task. Returns ``True`` when written.

        Re-recording an identical set is a no-op; a different set raises
        :class:`DuplicateArtifactError`.
        """
        tf = self._load()
        task = tf.get_task(task_id)
        if task is None:
            raise LedgerError(f"Unknown task: {task_id}")
        if task.status != TaskStatus.PASS:
            raise LedgerError(f"Task {task_id} is {task.status.value}; artifacts are recorded on pass only")
        if artifacts.is_empty():
            log.debug(f"Task {task_id}: no artifacts to record")
            return False
        if not task.artifacts.is_empty():
            if task.artifacts.to_dict() == artifacts.to_dict():
                log.debug(f"Task {task_id}: artifacts already recorded")
                return False
            raise DuplicateArtifactError(task_id)

        task.artifacts = artifacts
        save_task_graph(tf, self.task_file)
        log.debug(
            f"Task {task_id}: recorded {len(artifacts.files_created)} created, "
            f"{len(artifacts.exports_added)} export(s)"
        )
        return True

    def query(self, task_id: str) -> TaskArtifacts:
        tf = self._load()
        task = tf.get_task(task_id)
        if task is None or task.artifacts.is_empty():
            raise ArtifactNotFoundError(task_id)
        return task.artifacts

    def verify(self, task_id: str, expected_symbols: list[str] | None = None) -> VerificationResult:
        """Cross-check *expected_symbols* (default: every recorded export) against the codebase.

        Files the task created must also still exist. A task without a record
        verifies only when nothing is expected of it.
        """
        try:
            artifacts = self.query(task_id)
        except ArtifactNotFoundError:
            artifacts = TaskArtifacts()

        symbols = list(expected_symbols) if expected_symbols is not None else list(artifacts.exports_added)
        recorded = set(artifacts.exports_added)

        results: dict[str, dict[str, Any]] = {}
        missing: list[str] = []
        for sym in symbols:
            location = find_symbol(sym, self.search_root)
            in_ledger = sym in recorded
            results[sym] = {"inLedger": in_ledger, "liveLocation": location}
            if not (in_ledger and location):
                missing.append(sym)

        missing_files = [f for f in artifacts.files_created if not (self.search_root / f).exists()]
        verified = not missing and not missing_files
        if not verified:
            log.debug(f"Task {task_id}: missing symbols {missing}, missing files {missing_files}")
        return VerificationResult(task_id, verified, missing, missing_files, results)

    def validate_names(self, names: list[str]) -> dict[str, Any]:
        """Check that each name exists in the codebase or in some task's recorded exports."""
        tf = self._load()
        results: dict[str, dict[str, Any]] = {}
        missing: list[str] = []
        for name in names:
            if find_symbol(name, self.search_root):
                results[name] = {"found": True, "source": "codebase"}
                continue
            owner = next((t.id for t in tf.tasks if name in t.artifacts.exports_added), None)
            if owner:
                results[name] = {"found": True, "source": f"task:{owner}"}
            else:
                results[name] = {"found": False, "source": None}
                missing.append(name)
        return {"valid": not missing, "results": results, "missing": missing}
