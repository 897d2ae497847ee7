"""Error taxonomy shared by the planner, ledger, state store and state machine."""

from __future__ import annotations


class WavepilotError(Exception):
    """Base class for every error the orchestrator raises on purpose."""


# ── Planning ─────────────────────────────────────────────────────────


class TaskGraphError(WavepilotError):
    """Task file is missing, unreadable or structurally invalid."""


class PlanningError(WavepilotError):
    """The task graph cannot be partitioned into waves."""


class CyclicDependencyError(PlanningError):
    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")


# ── Artifact ledger ──────────────────────────────────────────────────


class LedgerError(WavepilotError):
    """Invalid artifact ledger operation."""


class DuplicateArtifactError(LedgerError):
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task {task_id} already has a different artifact record")


class ArtifactNotFoundError(LedgerError):
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"No artifact record for task {task_id}")


# ── State document ───────────────────────────────────────────────────


class StateError(WavepilotError):
    """State document store failure."""


class StateNotFoundError(StateError):
    def __init__(self, pipeline_id: str) -> None:
        self.pipeline_id = pipeline_id
        super().__init__(f"No pipeline state found for '{pipeline_id}'. Run init first.")


class StateValidationError(StateError):
    def __init__(self, pipeline_id: str, problems: list[str]) -> None:
        self.pipeline_id = pipeline_id
        self.problems = problems
        super().__init__(f"Invalid state for '{pipeline_id}': {'; '.join(problems)}")


class PipelineLockedError(StateError):
    def __init__(self, pipeline_id: str, holder: str = "") -> None:
        self.pipeline_id = pipeline_id
        detail = f" (held by {holder})" if holder else ""
        super().__init__(f"Pipeline '{pipeline_id}' is locked by another invocation{detail}")


class InvalidTransitionError(WavepilotError):
    def __init__(self, current: str, target: str, reason: str = "") -> None:
        self.current = current
        self.target = target
        msg = f"Invalid transition {current} -> {target}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


# ── Branches / services ──────────────────────────────────────────────


class BranchError(WavepilotError):
    """Branch setup or cleanup failed."""


class BranchSafetyError(BranchError):
    """Operation would violate the integration/wave branching discipline."""


class ServiceError(WavepilotError):
    """An external command (git, gh) failed."""
