"""Tests for wavepilot.ledger: recording, querying and live verification of task artifacts."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from wavepilot.errors import ArtifactNotFoundError, DuplicateArtifactError, LedgerError
from wavepilot.io_utils import write_text
from wavepilot.ledger import (
    ArtifactLedger,
    collect_artifacts,
    extract_exports,
    find_symbol,
    is_test_file,
)
from wavepilot.tasks.io import load_task_graph, update_task_status
from wavepilot.tasks.model import TaskArtifacts, TaskStatus


# ── helpers ──────────────────────────────────────────────────────────


def _source(root: Path, rel: str, text: str) -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    write_text(path, text)
    return path


def _commit_all(repo: Path, msg: str) -> None:
    subprocess.run(["git", "add", "-A"], cwd=repo, capture_output=True, check=True)
    subprocess.run(["git", "commit", "-m", msg], cwd=repo, capture_output=True, check=True)


USER_ARTIFACTS = TaskArtifacts(
    files_created=["src/users.py"],
    exports_added=["User", "create_user"],
)


@pytest.fixture
def ledger(tmp_path: Path, write_spec) -> ArtifactLedger:
    """Ledger over the two-wave demo spec with task 1 passed and its source on disk."""
    path = write_spec()
    update_task_status(path, "1", TaskStatus.PASS)
    _source(tmp_path, "src/users.py", "class User:\n    pass\n\n\ndef create_user(name):\n    return User()\n")
    return ArtifactLedger(path, tmp_path)


# ═══════════════════════════════════════════════════════════════════
#  Symbol search
# ═══════════════════════════════════════════════════════════════════


class TestFindSymbol:
    def test_python_function(self, tmp_path: Path) -> None:
        _source(tmp_path, "src/auth.py", "import os\n\n\ndef login(user):\n    pass\n")
        assert find_symbol("login", tmp_path) == "src/auth.py:4"

    def test_python_class_and_constant(self, tmp_path: Path) -> None:
        _source(tmp_path, "pkg/models.py", "MAX_USERS = 10\n\nclass Account:\n    pass\n")
        assert find_symbol("Account", tmp_path) == "pkg/models.py:3"
        assert find_symbol("MAX_USERS", tmp_path) == "pkg/models.py:1"

    def test_async_def(self, tmp_path: Path) -> None:
        _source(tmp_path, "src/io.py", "async def fetch_all():\n    pass\n")
        assert find_symbol("fetch_all", tmp_path) == "src/io.py:1"

    def test_typescript_exports(self, tmp_path: Path) -> None:
        _source(tmp_path, "src/api.ts", "export const client = 1;\nexport interface Session {}\n")
        assert find_symbol("client", tmp_path) == "src/api.ts:1"
        assert find_symbol("Session", tmp_path) == "src/api.ts:2"

    def test_export_list(self, tmp_path: Path) -> None:
        _source(tmp_path, "lib/index.js", "function a() {}\nexport { a, helper };\n")
        assert find_symbol("helper", tmp_path) == "lib/index.js:2"

    def test_mere_usage_not_a_definition(self, tmp_path: Path) -> None:
        _source(tmp_path, "src/app.py", "from auth import login\n\nlogin('x')\n")
        assert find_symbol("login", tmp_path) is None

    def test_prefix_is_not_a_match(self, tmp_path: Path) -> None:
        _source(tmp_path, "src/auth.py", "def login_user():\n    pass\n")
        assert find_symbol("login", tmp_path) is None

    def test_skips_vendored_dirs(self, tmp_path: Path) -> None:
        _source(tmp_path, "node_modules/pkg/index.js", "export function hidden() {}\n")
        assert find_symbol("hidden", tmp_path) is None

    def test_empty_name(self, tmp_path: Path) -> None:
        assert find_symbol("", tmp_path) is None


class TestExtractExports:
    def test_python_public_names(self, tmp_path: Path) -> None:
        path = _source(tmp_path, "m.py", "def public():\n    pass\n\ndef _private():\n    pass\n\nclass Thing:\n    def method(self):\n        pass\n")
        assert extract_exports(path) == ["public", "Thing"]

    def test_js_exports_with_alias(self, tmp_path: Path) -> None:
        path = _source(tmp_path, "m.ts", "export function run() {}\nexport default class App {}\nexport { a as b, c };\n")
        assert extract_exports(path) == ["run", "App", "b", "c"]

    def test_missing_file(self, tmp_path: Path) -> None:
        assert extract_exports(tmp_path / "gone.py") == []


class TestIsTestFile:
    @pytest.mark.parametrize(
        "path, expected",
        [
            ("tests/test_auth.py", True),
            ("auth_test.py", True),
            ("src/auth.test.ts", True),
            ("src/auth.spec.js", True),
            ("src/auth.py", False),
            ("src/testing.py", False),
        ],
    )
    def test_patterns(self, path: str, expected: bool) -> None:
        assert is_test_file(path) is expected


# ═══════════════════════════════════════════════════════════════════
#  Ledger
# ═══════════════════════════════════════════════════════════════════


class TestRecord:
    def test_record_on_passed_task(self, ledger: ArtifactLedger) -> None:
        assert ledger.record("1", USER_ARTIFACTS) is True
        assert load_task_graph(ledger.task_file).get_task("1").artifacts == USER_ARTIFACTS

    def test_identical_record_is_noop(self, ledger: ArtifactLedger) -> None:
        ledger.record("1", USER_ARTIFACTS)
        assert ledger.record("1", USER_ARTIFACTS) is False

    def test_different_record_rejected(self, ledger: ArtifactLedger) -> None:
        ledger.record("1", USER_ARTIFACTS)
        with pytest.raises(DuplicateArtifactError):
            ledger.record("1", TaskArtifacts(exports_added=["Other"]))
        assert ledger.query("1") == USER_ARTIFACTS

    def test_pending_task_rejected(self, ledger: ArtifactLedger) -> None:
        with pytest.raises(LedgerError, match="pending"):
            ledger.record("2", USER_ARTIFACTS)

    def test_unknown_task_rejected(self, ledger: ArtifactLedger) -> None:
        with pytest.raises(LedgerError, match="Unknown task"):
            ledger.record("99", USER_ARTIFACTS)

    def test_empty_record_not_written(self, ledger: ArtifactLedger) -> None:
        assert ledger.record("1", TaskArtifacts()) is False
        with pytest.raises(ArtifactNotFoundError):
            ledger.query("1")


class TestVerify:
    def test_recorded_and_live(self, ledger: ArtifactLedger) -> None:
        ledger.record("1", USER_ARTIFACTS)
        result = ledger.verify("1")
        assert result.verified is True
        assert result.results["User"] == {"inLedger": True, "liveLocation": "src/users.py:1"}

    def test_recorded_but_gone(self, ledger: ArtifactLedger, tmp_path: Path) -> None:
        ledger.record("1", USER_ARTIFACTS)
        (tmp_path / "src" / "users.py").unlink()
        result = ledger.verify("1")
        assert result.verified is False
        assert result.missing == ["User", "create_user"]
        assert result.missing_files == ["src/users.py"]

    def test_live_but_not_recorded(self, ledger: ArtifactLedger) -> None:
        """The ledger alone is not enough, and neither is the codebase alone."""
        ledger.record("1", TaskArtifacts(files_created=["src/users.py"], exports_added=["User"]))
        result = ledger.verify("1", ["User", "create_user"])
        assert result.verified is False
        assert result.missing == ["create_user"]
        assert result.results["create_user"]["inLedger"] is False

    def test_task_without_record(self, ledger: ArtifactLedger) -> None:
        assert ledger.verify("3").verified is True
        assert ledger.verify("3", ["User"]).verified is False

    def test_to_dict(self, ledger: ArtifactLedger) -> None:
        ledger.record("1", USER_ARTIFACTS)
        data = ledger.verify("1").to_dict()
        assert data["taskId"] == "1"
        assert data["missingFiles"] == []


class TestValidateNames:
    def test_sources(self, ledger: ArtifactLedger, tmp_path: Path) -> None:
        ledger.record("1", TaskArtifacts(exports_added=["User", "planned_helper"]))
        result = ledger.validate_names(["create_user", "planned_helper", "nowhere"])
        assert result["valid"] is False
        assert result["results"]["create_user"]["source"] == "codebase"
        assert result["results"]["planned_helper"]["source"] == "task:1"
        assert result["missing"] == ["nowhere"]

    def test_all_found(self, ledger: ArtifactLedger) -> None:
        assert ledger.validate_names(["User"])["valid"] is True


# ═══════════════════════════════════════════════════════════════════
#  Collecting from git
# ═══════════════════════════════════════════════════════════════════


class TestCollectArtifacts:
    def test_from_last_commit(self, git_repo: Path) -> None:
        _source(git_repo, "src/auth.py", "def login():\n    pass\n\ndef _helper():\n    pass\n")
        _source(git_repo, "tests/test_auth.py", "def test_login():\n    pass\n")
        write_text(git_repo / "README.md", "# Test\n\nAuth added.\n")
        _commit_all(git_repo, "Add auth")

        artifacts = collect_artifacts("HEAD~1", git_repo)
        assert artifacts.files_created == ["src/auth.py", "tests/test_auth.py"]
        assert artifacts.files_modified == ["README.md"]
        assert artifacts.exports_added == ["login"]
        assert artifacts.test_files == ["tests/test_auth.py"]

    def test_bad_revision_is_empty(self, git_repo: Path) -> None:
        assert collect_artifacts("no-such-rev", git_repo).is_empty()
