"""Tests for the wavepilot error taxonomy and its messages."""

from __future__ import annotations

import pytest

from wavepilot.errors import (
    ArtifactNotFoundError,
    BranchError,
    BranchSafetyError,
    CyclicDependencyError,
    DuplicateArtifactError,
    InvalidTransitionError,
    LedgerError,
    PipelineLockedError,
    PlanningError,
    ServiceError,
    StateError,
    StateNotFoundError,
    StateValidationError,
    TaskGraphError,
    WavepilotError,
)


class TestHierarchy:
    @pytest.mark.parametrize(
        "exc, parent",
        [
            (CyclicDependencyError(["a", "b", "a"]), PlanningError),
            (DuplicateArtifactError("1"), LedgerError),
            (ArtifactNotFoundError("1"), LedgerError),
            (StateNotFoundError("x"), StateError),
            (StateValidationError("x", ["bad"]), StateError),
            (PipelineLockedError("x"), StateError),
            (BranchSafetyError("no"), BranchError),
        ],
    )
    def test_parent(self, exc: Exception, parent: type) -> None:
        assert isinstance(exc, parent)
        assert isinstance(exc, WavepilotError)

    @pytest.mark.parametrize("cls", [TaskGraphError, InvalidTransitionError, ServiceError])
    def test_direct_children(self, cls: type) -> None:
        assert issubclass(cls, WavepilotError)


class TestMessages:
    def test_cycle(self) -> None:
        err = CyclicDependencyError(["A", "B", "A"])
        assert str(err) == "Dependency cycle detected: A -> B -> A"
        assert err.cycle == ["A", "B", "A"]

    def test_state_not_found(self) -> None:
        assert str(StateNotFoundError("auth")) == "No pipeline state found for 'auth'. Run init first."

    def test_validation_lists_problems(self) -> None:
        err = StateValidationError("auth", ["one", "two"])
        assert err.problems == ["one", "two"]
        assert str(err) == "Invalid state for 'auth': one; two"

    def test_locked_with_holder(self) -> None:
        assert "(held by 123 1700000000)" in str(PipelineLockedError("auth", "123 1700000000"))
        assert "held by" not in str(PipelineLockedError("auth"))

    def test_transition_with_reason(self) -> None:
        err = InvalidTransitionError("INIT", "COMPLETED", "not allowed")
        assert str(err) == "Invalid transition INIT -> COMPLETED: not allowed"
        assert (err.current, err.target) == ("INIT", "COMPLETED")

    def test_transition_without_reason(self) -> None:
        assert str(InvalidTransitionError("INIT", "COMPLETED")) == "Invalid transition INIT -> COMPLETED"

    def test_artifact_errors_carry_task_id(self) -> None:
        assert DuplicateArtifactError("7").task_id == "7"
        assert "task 7" in str(ArtifactNotFoundError("7"))
