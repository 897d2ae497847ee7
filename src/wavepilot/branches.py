"""Branch coordinator: one integration branch per pipeline, one wave branch per wave.

Layout::

    trunk
      └── feature/<spec>                 (integration, shared across waves)
            ├── feature/<spec>-wave-1
            ├── feature/<spec>-wave-2
            └── feature/<spec>-wave-3

Wave branches merge into the integration branch; the integration branch
merges into trunk once every wave is in.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from wavepilot import log
from wavepilot.errors import BranchSafetyError
from wavepilot.services import BranchScope, VersionControlService

_DATE_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}-")
_WAVE_BRANCH = re.compile(r"^feature/(.+)-wave-(\d+)$")
_INTEGRATION_BRANCH = re.compile(r"^feature/(.+)$")

TRUNK_NAMES = ("main", "master")


def normalize_spec_name(spec_folder: str) -> str:
    """Strip a leading ``YYYY-MM-DD-`` date prefix (``2025-01-29-auth`` -> ``auth``)."""
    return _DATE_PREFIX.sub("", spec_folder.strip())


def integration_branch_name(spec: str) -> str:
    return f"feature/{normalize_spec_name(spec)}"


def wave_branch_name(spec: str, wave: int) -> str:
    return f"feature/{normalize_spec_name(spec)}-wave-{wave}"


@dataclass
class BranchInfo:
    branch: str
    branch_type: str  # "wave" | "integration" | "other"
    spec: str | None = None
    wave: int | None = None
    integration_branch: str | None = None


def branch_info(branch: str) -> BranchInfo:
    """Classify *branch* by name."""
    m = _WAVE_BRANCH.match(branch)
    if m:
        spec = m.group(1)
        return BranchInfo(branch, "wave", spec, int(m.group(2)), f"feature/{spec}")
    m = _INTEGRATION_BRANCH.match(branch)
    if m:
        return BranchInfo(branch, "integration", m.group(1), None, branch)
    return BranchInfo(branch, "other")


@dataclass
class BranchSetup:
    integration_branch: str
    wave_branch: str
    merge_target: str
    wave_number: int
    is_final_wave: bool = False
    actions_taken: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "branches": {"integration": self.integration_branch, "wave": self.wave_branch},
            "waveNumber": self.wave_number,
            "mergeTarget": self.merge_target,
            "isFinalWave": self.is_final_wave,
            "actionsTaken": list(self.actions_taken),
            "warnings": list(self.warnings),
        }


@dataclass
class CleanupResult:
    branch: str
    deleted_local: bool = False
    deleted_remote: bool = False
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "branch": self.branch,
            "deletedLocal": self.deleted_local,
            "deletedRemote": self.deleted_remote,
            "warnings": list(self.warnings),
            "errors": list(self.errors),
        }


class BranchCoordinator:
    """Enforces the integration/wave branching discipline over a VCS service."""

    def __init__(self, vcs: VersionControlService, trunk: str = "") -> None:
        self.vcs = vcs
        self._trunk = trunk

    @property
    def trunk(self) -> str:
        if not self._trunk:
            self._trunk = "main" if self.vcs.branch_exists("main", BranchScope.LOCAL) else "master"
        return self._trunk

    def is_trunk(self, branch: str) -> bool:
        return branch == self.trunk or branch in TRUNK_NAMES

    # ── setup ────────────────────────────────────────────────────

    def setup(self, pipeline_id: str, wave_number: int, total_waves: int | None = None) -> BranchSetup:
        """Ensure the integration and wave branches exist; leave the wave branch checked out.

        Idempotent: existing branches are fetched/switched to, missing ones
        are created (integration from trunk, wave from integration).
        """
        if wave_number < 1:
            raise ValueError(f"Wave number must be >= 1, got {wave_number}")

        integration = integration_branch_name(pipeline_id)
        wave = wave_branch_name(pipeline_id, wave_number)
        result = BranchSetup(
            integration_branch=integration,
            wave_branch=wave,
            merge_target=integration,
            wave_number=wave_number,
            is_final_wave=total_waves is not None and wave_number >= total_waves,
        )

        self._ensure_integration(integration, result)
        self._ensure_wave(wave, integration, result)
        return result

    def _ensure_integration(self, integration: str, result: BranchSetup) -> None:
        if not self.vcs.branch_exists(integration, BranchScope.ANY):
            trunk = self.trunk
            log.info(f"Creating integration branch {integration} from {trunk}")
            self.vcs.checkout(trunk)
            self.vcs.pull(trunk)
            self.vcs.create_branch(integration, trunk)
            result.actions_taken.append("created_integration_branch")
            if self.vcs.push(integration):
                result.actions_taken.append("pushed_integration_branch")
            else:
                result.warnings.append("failed_to_push_integration_branch")
        elif not self.vcs.branch_exists(integration, BranchScope.LOCAL):
            self.vcs.fetch(integration)
            self.vcs.checkout(integration)
            result.actions_taken.append("fetched_integration_branch")

    def _ensure_wave(self, wave: str, integration: str, result: BranchSetup) -> None:
        if not self.vcs.branch_exists(wave, BranchScope.ANY):
            self.create_wave_branch(wave, integration)
            result.actions_taken.append("created_wave_branch")
            if self.vcs.push(wave):
                result.actions_taken.append("pushed_wave_branch")
            else:
                result.warnings.append("failed_to_push_wave_branch")
            return

        if self.vcs.current_branch() == wave:
            result.actions_taken.append("already_on_wave_branch")
            return

        self.vcs.fetch(wave)
        self.vcs.checkout(wave)
        self.vcs.pull(wave)
        result.actions_taken.append("switched_to_wave_branch")

    def create_wave_branch(self, wave: str, parent: str) -> None:
        """Create *wave* from *parent*, which must be an integration branch and never trunk."""
        if self.is_trunk(parent):
            raise BranchSafetyError(
                f"Refusing to create wave branch {wave} from trunk '{parent}'; "
                "wave branches must start from the integration branch"
            )
        log.info(f"Creating wave branch {wave} from {parent}")
        self.vcs.checkout(parent)
        self.vcs.pull(parent)
        self.vcs.create_branch(wave, parent)

    # ── targets / validation ─────────────────────────────────────

    def resolve_merge_target(self, branch: str) -> str:
        """Wave branch -> its integration branch; anything else -> trunk."""
        info = branch_info(branch)
        if info.branch_type == "wave" and info.integration_branch:
            return info.integration_branch
        return self.trunk

    def validate(self, pipeline_id: str, wave_number: int) -> dict:
        """Check that the checked-out branch is the expected wave branch."""
        expected = wave_branch_name(pipeline_id, wave_number)
        integration = integration_branch_name(pipeline_id)
        current = self.vcs.current_branch()
        return {
            "valid": current == expected,
            "currentBranch": current,
            "expectedBranch": expected,
            "integrationBranch": integration,
            "integrationExists": self.vcs.branch_exists(integration, BranchScope.ANY),
        }

    # ── cleanup ──────────────────────────────────────────────────

    def cleanup(self, branch: str) -> CleanupResult:
        """Delete a merged wave branch locally and on the remote.

        Refuses the checked-out branch and trunk. Integration branches are
        deleted with a warning.
        """
        if not branch:
            raise ValueError("Branch name is required")
        if self.vcs.current_branch() == branch:
            raise BranchSafetyError(f"Cannot delete the current branch {branch}; switch to another branch first")
        if self.is_trunk(branch):
            raise BranchSafetyError(f"Cannot delete trunk branch {branch}")

        result = CleanupResult(branch=branch)
        if branch_info(branch).branch_type != "wave":
            msg = f"{branch} does not look like a wave branch; deleting anyway"
            log.warn(msg)
            result.warnings.append(msg)

        if self.vcs.branch_exists(branch, BranchScope.LOCAL):
            if self.vcs.delete_branch(branch, BranchScope.LOCAL):
                result.deleted_local = True
            else:
                result.errors.append("failed_to_delete_local")

        if self.vcs.branch_exists(branch, BranchScope.REMOTE):
            if self.vcs.delete_branch(branch, BranchScope.REMOTE):
                result.deleted_remote = True
            else:
                result.errors.append("failed_to_delete_remote")

        return result
