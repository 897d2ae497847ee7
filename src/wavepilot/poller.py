"""Review poller: one bounded check per call, with advisory timeout math."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable

from wavepilot import log
from wavepilot.services import ReviewDecision, ReviewService
from wavepilot.state import Phase, PipelineState
from wavepilot.tasks.io import utc_now

_DECISIONS = {
    "APPROVED": ReviewDecision.APPROVED,
    "CHANGES_REQUESTED": ReviewDecision.CHANGES_REQUESTED,
}


def normalize_decision(raw: str | None) -> ReviewDecision:
    """Map a review state (``APPROVED``, ``changesRequested``, ...) to a :class:`ReviewDecision`.

    ``COMMENTED``, ``DISMISSED``, unknown values and ``None`` are pending.
    """
    if not raw:
        return ReviewDecision.PENDING
    if isinstance(raw, ReviewDecision):
        return raw
    try:
        return ReviewDecision(raw)
    except ValueError:
        return _DECISIONS.get(str(raw).upper(), ReviewDecision.PENDING)


@dataclass
class PollTimeout:
    poll_count: int
    elapsed_ms: int
    max_ms: int
    remaining_ms: int
    continue_polling: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "pollCount": self.poll_count,
            "elapsedMs": self.elapsed_ms,
            "maxMs": self.max_ms,
            "remainingMs": self.remaining_ms,
            "continuePolling": self.continue_polling,
        }


def poll_timeout(poll_count: int, poll_interval_ms: int, max_poll_duration_ms: int) -> PollTimeout:
    """Elapsed time is ``poll_count * poll_interval_ms``; polling continues while it is under the max."""
    elapsed = poll_count * poll_interval_ms
    return PollTimeout(
        poll_count=poll_count,
        elapsed_ms=elapsed,
        max_ms=max_poll_duration_ms,
        remaining_ms=max(0, max_poll_duration_ms - elapsed),
        continue_polling=elapsed < max_poll_duration_ms,
    )


def state_poll_timeout(state: PipelineState) -> PollTimeout:
    return poll_timeout(
        state.review_status.poll_count,
        state.flags.poll_interval_ms,
        state.flags.max_poll_duration_ms,
    )


@dataclass
class PollResult:
    decision: ReviewDecision
    blocking_count: int
    poll_count: int
    elapsed_ms: int
    remaining_ms: int
    continue_polling: bool
    reviewer: str = ""

    @property
    def timed_out(self) -> bool:
        return self.decision == ReviewDecision.PENDING and not self.continue_polling

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision": self.decision.value,
            "blockingCount": self.blocking_count,
            "pollCount": self.poll_count,
            "elapsedMs": self.elapsed_ms,
            "remainingMs": self.remaining_ms,
            "continuePolling": self.continue_polling,
            "timedOut": self.timed_out,
            "reviewer": self.reviewer,
        }


class ReviewPoller:
    """Asks the review service once per call and records the poll on the state.

    Timeouts are reported, never acted on: the pipeline stays in
    ``AWAITING_REVIEW`` and the caller decides what to do.
    """

    def __init__(self, review: ReviewService) -> None:
        self.review = review

    def check_once(self, state: PipelineState) -> PollResult:
        if state.phase != Phase.AWAITING_REVIEW:
            raise ValueError(f"Review polling requires AWAITING_REVIEW, pipeline is {state.phase.value}")
        if not state.pull_request_ref:
            raise ValueError("Review polling requires a pull request reference")

        rs = state.review_status
        report = self.review.get_review_status(
            state.pull_request_ref, since=rs.published_at, head=rs.published_head,
        )
        decision = normalize_decision(report.decision)

        rs.poll_count += 1
        rs.last_check = utc_now()
        timeout = state_poll_timeout(state)

        log.debug(
            f"Poll {rs.poll_count} on {state.pull_request_ref}: {decision.value} "
            f"({report.blocking_count} blocking, {timeout.remaining_ms}ms left)"
        )
        return PollResult(
            decision=decision,
            blocking_count=max(0, report.blocking_count),
            poll_count=rs.poll_count,
            elapsed_ms=timeout.elapsed_ms,
            remaining_ms=timeout.remaining_ms,
            continue_polling=timeout.continue_polling,
            reviewer=report.reviewer,
        )

    def wait_for_review(
        self,
        state: PipelineState,
        *,
        on_poll: Callable[[PipelineState, PollResult], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> PollResult:
        """Poll until a decision arrives or the advisory timeout is reached.

        *on_poll* runs after every check (typically to persist the state), so
        an interrupted wait resumes from the saved ``pollCount``.
        """
        while True:
            result = self.check_once(state)
            if on_poll is not None:
                on_poll(state, result)
            if result.decision != ReviewDecision.PENDING or not result.continue_polling:
                return result
            sleep(state.flags.poll_interval_ms / 1000)
