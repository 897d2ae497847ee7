"""Git operations: branches, remotes, diffs."""

from __future__ import annotations

import subprocess
from pathlib import Path

from wavepilot import log
from wavepilot.errors import ServiceError
from wavepilot.services import BranchScope, VersionControlService


def _git(*args: str, cwd: Path | None = None, check: bool = False) -> subprocess.CompletedProcess[str]:
    """Run a git command, capturing output."""
    return subprocess.run(
        ["git", *args],
        capture_output=True,
        text=True,
        cwd=cwd,
        check=check,
    )


def current_branch(cwd: Path | None = None) -> str:
    r = _git("branch", "--show-current", cwd=cwd)
    return r.stdout.strip() if r.returncode == 0 else ""


def branch_exists(name: str, cwd: Path | None = None) -> bool:
    r = _git("show-ref", "--verify", "--quiet", f"refs/heads/{name}", cwd=cwd)
    return r.returncode == 0


def remote_branch_exists(name: str, remote: str = "origin", cwd: Path | None = None) -> bool:
    r = _git("ls-remote", "--heads", remote, name, cwd=cwd)
    return r.returncode == 0 and bool(r.stdout.strip())


def checkout(branch: str, cwd: Path | None = None) -> bool:
    r = _git("checkout", branch, cwd=cwd)
    return r.returncode == 0


def create_branch(name: str, base: str, cwd: Path | None = None) -> bool:
    r = _git("checkout", "-b", name, base, cwd=cwd)
    return r.returncode == 0


def fetch(branch: str, remote: str = "origin", cwd: Path | None = None) -> bool:
    r = _git("fetch", remote, branch, cwd=cwd)
    return r.returncode == 0


def pull_ff_only(branch: str, remote: str = "origin", cwd: Path | None = None) -> bool:
    r = _git("pull", remote, branch, "--ff-only", cwd=cwd)
    return r.returncode == 0


def push(branch: str, remote: str = "origin", cwd: Path | None = None) -> bool:
    r = _git("push", "-u", remote, branch, cwd=cwd)
    return r.returncode == 0


def delete_branch(name: str, force: bool = False, cwd: Path | None = None) -> bool:
    flag = "-D" if force else "-d"
    r = _git("branch", flag, name, cwd=cwd)
    return r.returncode == 0


def delete_remote_branch(name: str, remote: str = "origin", cwd: Path | None = None) -> bool:
    r = _git("push", remote, "--delete", name, cwd=cwd)
    return r.returncode == 0


def has_remote(remote: str = "origin", cwd: Path | None = None) -> bool:
    r = _git("remote", "get-url", remote, cwd=cwd)
    return r.returncode == 0


def diff_name_status(since: str, cwd: Path | None = None) -> list[tuple[str, str]]:
    """Return ``(status, path)`` pairs for ``git diff --name-status <since> HEAD``.

    Renames/copies are reported with their destination path.
    """
    r = _git("diff", "--name-status", since, "HEAD", cwd=cwd)
    if r.returncode != 0 or not r.stdout.strip():
        return []
    entries: list[tuple[str, str]] = []
    for line in r.stdout.splitlines():
        parts = line.split("\t")
        if len(parts) < 2:
            continue
        entries.append((parts[0][:1], parts[-1]))
    return entries


def head_sha(cwd: Path | None = None) -> str:
    r = _git("rev-parse", "HEAD", cwd=cwd)
    return r.stdout.strip() if r.returncode == 0 else ""


def rev_parse(ref: str, cwd: Path | None = None) -> str:
    r = _git("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", cwd=cwd)
    return r.stdout.strip() if r.returncode == 0 else ""


class GitService(VersionControlService):
    """:class:`VersionControlService` backed by the ``git`` CLI."""

    def __init__(self, cwd: Path | None = None, remote: str = "origin") -> None:
        self.cwd = cwd
        self.remote = remote

    def _remote_available(self) -> bool:
        return has_remote(self.remote, cwd=self.cwd)

    def create_branch(self, name: str, base: str) -> None:
        if not create_branch(name, base, cwd=self.cwd):
            raise ServiceError(f"Failed to create branch {name} from {base}")
        log.debug(f"Created branch {name} from {base}")

    def branch_exists(self, name: str, scope: BranchScope = BranchScope.ANY) -> bool:
        if scope in (BranchScope.LOCAL, BranchScope.ANY) and branch_exists(name, cwd=self.cwd):
            return True
        if scope in (BranchScope.REMOTE, BranchScope.ANY) and self._remote_available():
            return remote_branch_exists(name, self.remote, cwd=self.cwd)
        return False

    def push(self, branch: str) -> bool:
        if not self._remote_available():
            log.debug(f"No remote '{self.remote}'; skipping push of {branch}")
            return False
        return push(branch, self.remote, cwd=self.cwd)

    def delete_branch(self, name: str, scope: BranchScope) -> bool:
        if scope == BranchScope.REMOTE:
            return self._remote_available() and delete_remote_branch(name, self.remote, cwd=self.cwd)
        # Merged branches go with -d; squash-merged ones need -D.
        return delete_branch(name, cwd=self.cwd) or delete_branch(name, force=True, cwd=self.cwd)

    def current_branch(self) -> str:
        return current_branch(cwd=self.cwd)

    def checkout(self, name: str) -> None:
        if branch_exists(name, cwd=self.cwd):
            ok = checkout(name, cwd=self.cwd)
        else:
            ok = _git("checkout", "-b", name, f"{self.remote}/{name}", cwd=self.cwd).returncode == 0
        if not ok:
            raise ServiceError(f"Failed to checkout {name}")

    def fetch(self, name: str) -> bool:
        return self._remote_available() and fetch(name, self.remote, cwd=self.cwd)

    def pull(self, name: str) -> bool:
        return self._remote_available() and pull_ff_only(name, self.remote, cwd=self.cwd)

    def head(self, name: str) -> str:
        return rev_parse(name, cwd=self.cwd)
