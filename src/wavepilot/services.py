"""Boundary contracts for version control, change-set publishing and review status."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum


class BranchScope(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"
    ANY = "any"


class ReviewDecision(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    CHANGES_REQUESTED = "changesRequested"


@dataclass
class ReviewStatusReport:
    decision: ReviewDecision = ReviewDecision.PENDING
    blocking_count: int = 0
    reviewer: str = ""


@dataclass
class ChangeSet:
    ref: str
    url: str = ""


class VersionControlService(ABC):
    """Branch operations the coordinator needs."""

    @abstractmethod
    def create_branch(self, name: str, base: str) -> None:
        """Create *name* from *base* and check it out. Raise ``ServiceError`` on failure."""
        ...

    @abstractmethod
    def branch_exists(self, name: str, scope: BranchScope = BranchScope.ANY) -> bool:
        ...

    @abstractmethod
    def push(self, branch: str) -> bool:
        ...

    @abstractmethod
    def delete_branch(self, name: str, scope: BranchScope) -> bool:
        ...

    @abstractmethod
    def current_branch(self) -> str:
        ...

    @abstractmethod
    def checkout(self, name: str) -> None:
        """Switch to *name*, tracking the remote branch when only it exists."""
        ...

    def fetch(self, name: str) -> bool:
        return False

    def pull(self, name: str) -> bool:
        return False

    def head(self, name: str) -> str:
        """Commit id at the tip of *name*, or ``""`` when it cannot be resolved."""
        return ""


class ChangeSetPublisher(ABC):
    @abstractmethod
    def publish(self, branch: str, target: str, title: str, body: str = "") -> ChangeSet:
        ...

    @abstractmethod
    def merge(self, ref: str) -> bool:
        ...


class ReviewService(ABC):
    @abstractmethod
    def get_review_status(self, ref: str, *, since: str | None = None,
                          head: str | None = None) -> ReviewStatusReport:
        """Current review outcome for *ref*.

        Reviews submitted before *since* (ISO-8601 UTC) or left on a commit
        other than *head* are stale and must be ignored.
        """
        ...
