"""Tests for wavepilot.notify: milestone detection, message text and platform dispatch."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from wavepilot import notify
from wavepilot.machine import advance, create
from wavepilot.notify import Milestone, Notice, compose, milestone_for
from wavepilot.services import ReviewDecision, ReviewStatusReport
from wavepilot.state import ExecutionStatus, HistoryEntry, Phase, PipelineState, ReviewStatus


def _state(phase: Phase, **overrides) -> PipelineState:
    values = dict(
        pipeline_id="demo",
        spec_name="demo",
        tasks_file="tasks.json",
        total_waves=2,
        current_wave=1,
        phase=phase,
        integration_branch="feature/demo",
        wave_branch="feature/demo-wave-1",
        pull_request_ref="42",
    )
    values.update(overrides)
    return PipelineState(**values)


# ═══════════════════════════════════════════════════════════════════
#  Milestones
# ═══════════════════════════════════════════════════════════════════


class TestMilestoneFor:
    @pytest.mark.parametrize("before, after, expected", [
        (Phase.REVIEW_PROCESSING, Phase.READY_TO_MERGE, Milestone.APPROVED),
        (Phase.REVIEW_PROCESSING, Phase.EXECUTE, Milestone.CHANGES_REQUESTED),
        (Phase.READY_TO_MERGE, Phase.EXECUTE, Milestone.WAVE_MERGED),
        (Phase.READY_TO_MERGE, Phase.COMPLETED, Milestone.COMPLETED),
        (Phase.EXECUTE, Phase.FAILED, Milestone.FAILED),
    ])
    def test_worth_a_toast(self, before: Phase, after: Phase, expected: Milestone) -> None:
        assert milestone_for(before, _state(after)) == expected

    @pytest.mark.parametrize("before, after", [
        (Phase.INIT, Phase.EXECUTE),
        (Phase.EXECUTE, Phase.AWAITING_REVIEW),
        (Phase.AWAITING_REVIEW, Phase.REVIEW_PROCESSING),
        (Phase.FAILED, Phase.EXECUTE),
    ])
    def test_routine_moves_are_quiet(self, before: Phase, after: Phase) -> None:
        assert milestone_for(before, _state(after)) is None


class TestCompose:
    def test_approved(self) -> None:
        notice = compose(Milestone.APPROVED, _state(Phase.READY_TO_MERGE))
        assert notice.title == "wavepilot - demo"
        assert notice.message == "Wave 1/2: PR 42 approved, ready to merge"
        assert notice.critical is False

    def test_changes_requested_counts_blocking_issues(self) -> None:
        state = _state(Phase.EXECUTE, review_status=ReviewStatus(blocking_count=3, review_cycles=2))
        notice = compose(Milestone.CHANGES_REQUESTED, state)
        assert notice.message == "Wave 1/2: 3 blocking issue(s) on PR 42 (review cycle 2)"

    def test_wave_merged_names_previous_wave(self) -> None:
        state = _state(Phase.EXECUTE, current_wave=2, history=[HistoryEntry(wave=1)])
        notice = compose(Milestone.WAVE_MERGED, state)
        assert notice.message == "Wave 1 merged into feature/demo; starting Wave 2/2"

    def test_completed(self) -> None:
        notice = compose(Milestone.COMPLETED, _state(Phase.COMPLETED, current_wave=3))
        assert notice.message == "All 2 wave(s) merged into feature/demo"

    def test_failed_is_critical(self) -> None:
        state = _state(Phase.FAILED, execution_status=ExecutionStatus(last_error="Task 4 blocked: boom"))
        notice = compose(Milestone.FAILED, state)
        assert notice.title == "wavepilot - demo - Error"
        assert notice.message == "Wave 1/2 failed: Task 4 blocked: boom"
        assert notice.critical is True


# ═══════════════════════════════════════════════════════════════════
#  Platform dispatch
# ═══════════════════════════════════════════════════════════════════


class TestShow:
    def test_linux_toast_and_sound(self) -> None:
        with patch("wavepilot.notify._run_quiet") as run, patch("wavepilot.notify.sys.platform", "linux"):
            notify.show(Notice("wavepilot - demo", "Wave 1/2 approved"))
        commands = [c.args[0] for c in run.call_args_list]
        assert commands == ["notify-send", "paplay"]

    def test_linux_critical_is_urgent_and_silent(self) -> None:
        with patch("wavepilot.notify._run_quiet") as run, patch("wavepilot.notify.sys.platform", "linux"):
            notify.show(Notice("wavepilot - demo - Error", "boom", critical=True))
        run.assert_called_once_with("notify-send", "-u", "critical", "wavepilot - demo - Error", "boom")

    def test_darwin_quotes_are_neutralised(self) -> None:
        with patch("wavepilot.notify._run_quiet") as run, patch("wavepilot.notify.sys.platform", "darwin"):
            notify.show(Notice("wavepilot", 'PR "42" approved'))
        script = run.call_args_list[-1].args[2]
        assert "PR '42' approved" in script

    def test_windows_critical_sound(self) -> None:
        with patch("wavepilot.notify._run_quiet") as run, patch("wavepilot.notify.sys.platform", "win32"):
            notify.show(Notice("wavepilot", "boom", critical=True))
        assert "Hand" in run.call_args.args[2]

    def test_missing_binary_is_ignored(self) -> None:
        with patch("wavepilot.notify.subprocess.Popen", side_effect=FileNotFoundError):
            notify._run_quiet("notify-send", "x", "y")


# ═══════════════════════════════════════════════════════════════════
#  Wiring into the lifecycle
# ═══════════════════════════════════════════════════════════════════


class TestAnnounce:
    def test_quiet_move_shows_nothing(self) -> None:
        with patch("wavepilot.notify.show") as show:
            assert notify.announce(Phase.INIT, _state(Phase.EXECUTE)) is None
        show.assert_not_called()

    def test_lifecycle_announces_when_enabled(self, make_ctx, write_spec, make_review, cfg) -> None:
        write_spec()
        cfg.notify = True
        ctx = make_ctx(review=make_review(ReviewStatusReport(ReviewDecision.CHANGES_REQUESTED, 1, "claude[bot]")))
        create(ctx, "demo")

        with patch("wavepilot.notify.show") as show:
            for _ in range(4):
                advance(ctx, "demo")
        show.assert_called_once()
        notice = show.call_args.args[0]
        assert "1 blocking issue(s)" in notice.message

    def test_lifecycle_silent_by_default(self, make_ctx, write_spec) -> None:
        write_spec()
        ctx = make_ctx()
        create(ctx, "demo")
        with patch("wavepilot.notify.show") as show:
            for _ in range(5):
                advance(ctx, "demo")
        show.assert_not_called()
