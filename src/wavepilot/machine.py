"""Delivery state machine.

Every operation reconstructs its working state from the persisted
document, performs at most one transition's worth of work and writes the
document back::

    lock -> load -> validate -> mutate -> validate -> atomic save

Phases::

    INIT -> EXECUTE -> AWAITING_REVIEW -> REVIEW_PROCESSING -> READY_TO_MERGE
                ^                                 |                  |
                +------- changes requested -------+                  |
                +------------------ next wave -----------------------+
                                                    last wave -> COMPLETED

``FAILED`` is reachable from every non-terminal phase and left only via
:func:`reset` or :func:`recover`.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from wavepilot import log, notify
from wavepilot.branches import BranchCoordinator, integration_branch_name, normalize_spec_name, wave_branch_name
from wavepilot.config import Config
from wavepilot.errors import (
    BranchError,
    InvalidTransitionError,
    ServiceError,
    StateError,
    TaskGraphError,
)
from wavepilot.executor import ShellTaskRunner, TaskRunner, WaveExecutor
from wavepilot.ledger import ArtifactLedger
from wavepilot.poller import ReviewPoller, normalize_decision, state_poll_timeout
from wavepilot.scheduler import current_wave_from_status, plan_waves
from wavepilot.services import ChangeSetPublisher, ReviewDecision, ReviewService, VersionControlService
from wavepilot.state import (
    PUBLISHED_PHASES,
    ExecutionStatus,
    Flags,
    HistoryEntry,
    Phase,
    PipelineState,
    ReviewStatus,
    StateStore,
)
from wavepilot.tasks.io import find_task_file, load_task_graph, save_task_graph, summarize, utc_now
from wavepilot.tasks.model import TaskStatus

TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.INIT: frozenset({Phase.EXECUTE, Phase.FAILED}),
    Phase.EXECUTE: frozenset({Phase.AWAITING_REVIEW, Phase.FAILED}),
    Phase.AWAITING_REVIEW: frozenset({Phase.REVIEW_PROCESSING, Phase.FAILED}),
    Phase.REVIEW_PROCESSING: frozenset({Phase.READY_TO_MERGE, Phase.EXECUTE, Phase.FAILED}),
    Phase.READY_TO_MERGE: frozenset({Phase.EXECUTE, Phase.COMPLETED, Phase.FAILED}),
    Phase.COMPLETED: frozenset(),
    Phase.FAILED: frozenset(),
}


def can_transition(current: Phase, target: Phase) -> bool:
    return target in TRANSITIONS[current]


@dataclass
class PipelineContext:
    """Everything an operation needs, passed explicitly."""

    cfg: Config
    store: StateStore
    vcs: VersionControlService | None = None
    publisher: ChangeSetPublisher | None = None
    review: ReviewService | None = None
    runner: TaskRunner | None = None

    @classmethod
    def from_config(cls, cfg: Config) -> PipelineContext:
        from wavepilot.git_ops import GitService
        from wavepilot.github import GhChangeSetPublisher, GhReviewService

        project = Path(cfg.project_dir)
        runner = ShellTaskRunner(cfg.task_command, project, cfg.task_timeout) if cfg.task_command else None
        return cls(
            cfg=cfg,
            store=StateStore(cfg.state_dir, cfg.stale_lock_seconds),
            vcs=GitService(project, cfg.remote),
            publisher=GhChangeSetPublisher(project),
            review=GhReviewService(cfg.reviewer_pattern, project),
            runner=runner,
        )

    def branches(self) -> BranchCoordinator:
        if self.vcs is None:
            raise ServiceError("No version control service configured")
        return BranchCoordinator(self.vcs, self.cfg.trunk)

    def task_file(self, state: PipelineState) -> Path:
        path = Path(state.tasks_file)
        return path if path.is_absolute() else Path(self.cfg.project_dir) / path

    def ledger(self, state: PipelineState) -> ArtifactLedger:
        return ArtifactLedger(self.task_file(state), Path(self.cfg.project_dir))


@dataclass
class StepResult:
    pipeline_id: str
    phase_before: Phase
    phase_after: Phase
    action: str
    message: str = ""
    needs_attention: bool = False
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return self.phase_before != self.phase_after

    def to_dict(self) -> dict[str, Any]:
        return {
            "pipelineId": self.pipeline_id,
            "phaseBefore": self.phase_before.value,
            "phaseAfter": self.phase_after.value,
            "action": self.action,
            "message": self.message,
            "needsAttention": self.needs_attention,
            "data": self.data,
        }


# ── document plumbing ────────────────────────────────────────────────


def _mutate(ctx: PipelineContext, pipeline_id: str, fn: Callable[[PipelineState], Any]) -> Any:
    """Run *fn* on the loaded state under the pipeline lock, then persist it.

    Nothing is written when *fn* raises or the result fails validation.
    """
    with ctx.store.lock(pipeline_id):
        state = ctx.store.load(pipeline_id)
        before = state.phase
        result = fn(state)
        state.updated_at = utc_now()
        ctx.store.save(state)
    if state.phase != before:
        log.phase(pipeline_id, before.value, state.phase.value)
        if ctx.cfg.notify:
            notify.announce(before, state)
    return result


def _require(state: PipelineState, target: Phase, reason: str = "") -> None:
    if not can_transition(state.phase, target):
        raise InvalidTransitionError(state.phase.value, target.value, reason)


# ── creation ─────────────────────────────────────────────────────────


def create(
    ctx: PipelineContext,
    spec_name: str,
    *,
    manual: bool = False,
    replan: bool = False,
    force: bool = False,
) -> PipelineState:
    """Plan the spec's task graph and write a fresh INIT state document."""
    spec_dir = ctx.cfg.spec_dir(spec_name)
    task_path = find_task_file(spec_dir)
    if task_path is None:
        raise TaskGraphError(f"No task file (tasks.json / tasks.yaml) in {spec_dir}")

    pipeline_id = normalize_spec_name(spec_dir.name)
    with ctx.store.lock(pipeline_id):
        if ctx.store.exists(pipeline_id) and not force:
            raise StateError(f"Pipeline '{pipeline_id}' already exists; use --force to re-initialize")
        state = _planned_state(ctx, spec_dir.name, pipeline_id, task_path, manual=manual, replan=replan)

    log.success(
        f"Initialized pipeline {pipeline_id}: {state.total_waves} wave(s), starting at wave {state.current_wave}"
    )
    return state


def _planned_state(ctx: PipelineContext, spec_name: str, pipeline_id: str, task_path: Path, *,
                   manual: bool, replan: bool) -> PipelineState:
    """Plan in memory, commit the state document, then write the waves back to the task file."""
    tf = load_task_graph(task_path)
    waves = plan_waves(tf, replan=replan)
    total = len(waves)
    current = current_wave_from_status(tf)
    now = utc_now()
    state = PipelineState(
        pipeline_id=pipeline_id,
        spec_name=spec_name,
        tasks_file=str(task_path),
        total_waves=total,
        current_wave=current,
        integration_branch=integration_branch_name(pipeline_id),
        wave_branch=wave_branch_name(pipeline_id, current),
        is_final_wave=current == total,
        execution_status=ExecutionStatus(tasks_total=len(tf.wave_tasks(current))),
        flags=Flags(
            manual_mode=manual or ctx.cfg.manual_mode,
            poll_interval_ms=ctx.cfg.poll_interval_ms,
            max_poll_duration_ms=ctx.cfg.max_poll_duration_ms,
        ),
        created_at=now,
        updated_at=now,
    )

    ctx.store.save(state)
    save_task_graph(tf, task_path)
    return state


# ── wave advancement ─────────────────────────────────────────────────


def advance_wave(state: PipelineState, merged_at: str | None = None) -> bool:
    """Record the merged wave in history and move to the next wave or COMPLETED.

    Returns ``True`` when the pipeline completed.
    """
    _require(state, Phase.EXECUTE if state.current_wave < state.total_waves else Phase.COMPLETED)
    state.history.append(
        HistoryEntry(
            wave=state.current_wave,
            pull_request_ref=state.pull_request_ref,
            pull_request_url=state.pull_request_url,
            merged_at=merged_at or utc_now(),
            review_cycles=state.review_status.review_cycles,
        )
    )
    state.pull_request_ref = None
    state.pull_request_url = None
    state.review_status = ReviewStatus()
    state.execution_status = ExecutionStatus()

    if state.current_wave >= state.total_waves:
        state.current_wave = state.total_waves + 1
        state.is_final_wave = False
        state.phase = Phase.COMPLETED
        return True

    state.current_wave += 1
    state.wave_branch = wave_branch_name(state.pipeline_id, state.current_wave)
    state.is_final_wave = state.current_wave == state.total_waves
    state.phase = Phase.EXECUTE
    return False


def merge_wave(ctx: PipelineContext, pipeline_id: str) -> StepResult:
    """Record an externally performed merge of the current wave."""

    def apply(state: PipelineState) -> StepResult:
        if state.phase != Phase.READY_TO_MERGE:
            raise InvalidTransitionError(state.phase.value, "next wave", "wave is not ready to merge")
        wave = state.current_wave
        completed = advance_wave(state)
        return StepResult(
            pipeline_id, Phase.READY_TO_MERGE, state.phase,
            "completed" if completed else "advanced",
            f"Wave {wave} merged",
            data={"previousWave": wave, "currentWave": state.current_wave, "totalWaves": state.total_waves},
        )

    return _mutate(ctx, pipeline_id, apply)


# ── advance: one step per call ───────────────────────────────────────


def advance(ctx: PipelineContext, pipeline_id: str) -> StepResult:
    """Perform the next step for the pipeline's current phase."""

    def apply(state: PipelineState) -> StepResult:
        before = state.phase
        handler = _HANDLERS[before]
        result = handler(ctx, state)
        result.phase_before = before
        result.phase_after = state.phase
        return result

    return _mutate(ctx, pipeline_id, apply)


def _result(state: PipelineState, action: str, message: str = "", *, attention: bool = False,
            **data: Any) -> StepResult:
    return StepResult(state.pipeline_id, state.phase, state.phase, action, message, attention, data)


def _step_init(ctx: PipelineContext, state: PipelineState) -> StepResult:
    _require(state, Phase.EXECUTE)
    data: dict[str, Any] = {}
    if ctx.vcs is not None:
        setup = ctx.branches().setup(state.pipeline_id, state.current_wave, state.total_waves)
        state.integration_branch = setup.integration_branch
        state.wave_branch = setup.wave_branch
        state.is_final_wave = setup.is_final_wave
        data = setup.to_dict()
    else:
        state.integration_branch = integration_branch_name(state.pipeline_id)
        state.wave_branch = wave_branch_name(state.pipeline_id, state.current_wave)
    state.phase = Phase.EXECUTE
    return _result(state, "branches_ready", f"Working on {state.wave_branch}", **data)


def _ensure_wave_branch(ctx: PipelineContext, state: PipelineState) -> None:
    if ctx.vcs is None:
        return
    if ctx.vcs.current_branch() != state.wave_branch:
        ctx.branches().setup(state.pipeline_id, state.current_wave, state.total_waves)


def _step_execute(ctx: PipelineContext, state: PipelineState) -> StepResult:
    _ensure_wave_branch(ctx, state)
    task_path = ctx.task_file(state)

    report = None
    if ctx.runner is not None and not state.flags.manual_mode:
        executor = WaveExecutor(task_path, ctx.ledger(state), ctx.runner, ctx.cfg.max_parallel)
        report = executor.run_wave(state.current_wave)

    tf = load_task_graph(task_path)
    tasks = tf.wave_tasks(state.current_wave)
    if not tasks:
        raise TaskGraphError(f"Wave {state.current_wave} has no tasks in {task_path}")

    passed = [t for t in tasks if t.status == TaskStatus.PASS]
    blocked = [t for t in tasks if t.status == TaskStatus.BLOCKED]
    es = state.execution_status
    es.tasks_total = len(tasks)
    es.tasks_completed = len(passed)
    es.tasks_failed = len(blocked)
    extra = {"execution": report.to_dict()} if report else {}

    if blocked:
        first = blocked[0]
        es.last_error = f"Task {first.id} blocked: {first.last_error or 'no error recorded'}"
        _require(state, Phase.FAILED)
        state.phase = Phase.FAILED
        log.error(es.last_error)
        return _result(state, "failed", es.last_error, attention=True,
                       blocked=[t.id for t in blocked], **extra)

    if len(passed) < len(tasks):
        pending = [t.id for t in tasks if t.status != TaskStatus.PASS]
        return _result(
            state, "waiting",
            f"{len(pending)} task(s) still open in wave {state.current_wave}: {', '.join(pending)}",
            pending=pending, **extra,
        )

    reviewed = _awaiting_fixes(ctx, state)
    if reviewed:
        return _result(
            state, "waiting",
            f"{state.wave_branch} is still at {reviewed[:8]}, the commit reviewed in cycle "
            f"{state.review_status.review_cycles}; push fixes before republishing",
            attention=True, reviewedHead=reviewed, **extra,
        )

    return _publish(ctx, state, extra)


def _awaiting_fixes(ctx: PipelineContext, state: PipelineState) -> str:
    """The reviewed commit, while the wave branch has not moved since changes were requested."""
    reviewed = state.review_status.reviewed_head
    if not reviewed or ctx.vcs is None:
        return ""
    return reviewed if ctx.vcs.head(state.wave_branch) == reviewed else ""


def _publish(ctx: PipelineContext, state: PipelineState, extra: dict[str, Any]) -> StepResult:
    if ctx.publisher is None or state.flags.manual_mode:
        return _result(
            state, "needs_publish",
            f"Wave {state.current_wave} complete; open a pull request from {state.wave_branch} "
            f"into {state.integration_branch} and record it with set-pr",
            attention=True, **extra,
        )

    _require(state, Phase.AWAITING_REVIEW)
    pushed = ctx.vcs.push(state.wave_branch) if ctx.vcs is not None else False
    if state.pull_request_ref:
        action = "republished"
        message = f"Pushed review fixes to PR {state.pull_request_ref}"
    else:
        change = ctx.publisher.publish(
            state.wave_branch,
            state.integration_branch,
            f"{state.spec_name}: wave {state.current_wave}/{state.total_waves}",
            _pr_body(ctx, state),
        )
        state.pull_request_ref = change.ref
        state.pull_request_url = change.url or None
        action = "published"
        message = f"Opened PR {change.ref}"

    head = ctx.vcs.head(state.wave_branch) if ctx.vcs is not None else ""
    state.review_status = ReviewStatus(
        review_cycles=state.review_status.review_cycles,
        published_at=utc_now(),
        published_head=head or None,
    )
    state.phase = Phase.AWAITING_REVIEW
    return _result(state, action, message, pushed=pushed, pullRequestRef=state.pull_request_ref,
                   pullRequestUrl=state.pull_request_url, **extra)


def _pr_body(ctx: PipelineContext, state: PipelineState) -> str:
    tf = load_task_graph(ctx.task_file(state))
    lines = [f"Wave {state.current_wave} of {state.total_waves} for `{state.spec_name}`.", "", "Tasks:"]
    lines += [f"- {t.id}: {t.title}" for t in tf.wave_tasks(state.current_wave)]
    return "\n".join(lines)


def _step_awaiting_review(ctx: PipelineContext, state: PipelineState) -> StepResult:
    if ctx.review is None or state.flags.manual_mode:
        return _result(
            state, "awaiting_manual_review",
            f"Record the review outcome for PR {state.pull_request_ref} with update-review",
            attention=True,
        )

    poll = ReviewPoller(ctx.review).check_once(state)
    if poll.decision != ReviewDecision.PENDING:
        _apply_decision(state, poll.decision, poll.blocking_count)
        return _result(state, "review_received",
                       f"Review {poll.decision.value} ({poll.blocking_count} blocking)", **poll.to_dict())
    if poll.timed_out:
        return _result(
            state, "needs_manual_check",
            f"No review after {poll.elapsed_ms // 1000}s; check PR {state.pull_request_ref} manually",
            attention=True, **poll.to_dict(),
        )
    return _result(state, "polling", f"Review pending (poll {poll.poll_count})", **poll.to_dict())


def _apply_decision(state: PipelineState, decision: ReviewDecision, blocking: int) -> None:
    _require(state, Phase.REVIEW_PROCESSING)
    state.review_status.decision = decision
    state.review_status.blocking_count = max(0, blocking)
    state.phase = Phase.REVIEW_PROCESSING


def _loop_back(state: PipelineState) -> None:
    """Back to EXECUTE on the same wave; the reviewed commit must be superseded before republishing."""
    rs = state.review_status
    rs.review_cycles += 1
    rs.reviewed_head = rs.published_head
    state.phase = Phase.EXECUTE


def _step_review_processing(ctx: PipelineContext, state: PipelineState) -> StepResult:
    rs = state.review_status
    if rs.decision == ReviewDecision.APPROVED and rs.blocking_count == 0:
        _require(state, Phase.READY_TO_MERGE)
        state.phase = Phase.READY_TO_MERGE
        return _result(state, "approved", f"PR {state.pull_request_ref} approved")

    _require(state, Phase.EXECUTE)
    _loop_back(state)
    return _result(
        state, "changes_requested",
        f"{rs.blocking_count} blocking issue(s) on PR {state.pull_request_ref}; "
        f"address them on {state.wave_branch} (review cycle {rs.review_cycles})",
        attention=True, blockingCount=rs.blocking_count, reviewCycles=rs.review_cycles,
    )


def _step_ready_to_merge(ctx: PipelineContext, state: PipelineState) -> StepResult:
    if ctx.publisher is None or state.flags.manual_mode:
        return _result(
            state, "needs_manual_merge",
            f"Merge PR {state.pull_request_ref} into {state.integration_branch}, then run advance-wave",
            attention=True,
        )

    ref = state.pull_request_ref or ""
    if not ctx.publisher.merge(ref):
        return _result(state, "merge_failed", f"Could not merge PR {ref}; resolve and retry", attention=True)

    merged_branch = state.wave_branch
    wave = state.current_wave
    completed = advance_wave(state)
    data: dict[str, Any] = {"previousWave": wave, "currentWave": state.current_wave}
    if ctx.cfg.cleanup_merged and ctx.vcs is not None:
        data["cleanup"] = _cleanup_merged(ctx, state, merged_branch)

    if completed:
        msg = (f"All {state.total_waves} wave(s) merged into {state.integration_branch}; "
               f"it is ready to merge into {ctx.cfg.trunk or 'trunk'}")
        return _result(state, "completed", msg, **data)
    return _result(state, "advanced", f"Wave {wave} merged; starting wave {state.current_wave}", **data)


def _cleanup_merged(ctx: PipelineContext, state: PipelineState, branch: str) -> dict[str, Any]:
    """Delete the merged wave branch. Failures are reported, the merge stands."""
    try:
        ctx.vcs.checkout(state.integration_branch)
        ctx.vcs.pull(state.integration_branch)
        result = ctx.branches().cleanup(branch)
    except (BranchError, ServiceError) as e:
        log.warn(f"Could not clean up {branch}: {e}")
        return {"branch": branch, "errors": [str(e)]}
    if result.deleted_local or result.deleted_remote:
        state.history[-1].branch_cleaned = True
    return result.to_dict()


def _step_completed(ctx: PipelineContext, state: PipelineState) -> StepResult:
    return _result(state, "noop", "Pipeline already completed")


def _step_failed(ctx: PipelineContext, state: PipelineState) -> StepResult:
    return _result(
        state, "noop",
        f"Pipeline failed: {state.execution_status.last_error or 'unknown error'}; run reset after fixing",
        attention=True,
    )


_HANDLERS: dict[Phase, Callable[[PipelineContext, PipelineState], StepResult]] = {
    Phase.INIT: _step_init,
    Phase.EXECUTE: _step_execute,
    Phase.AWAITING_REVIEW: _step_awaiting_review,
    Phase.REVIEW_PROCESSING: _step_review_processing,
    Phase.READY_TO_MERGE: _step_ready_to_merge,
    Phase.COMPLETED: _step_completed,
    Phase.FAILED: _step_failed,
}


# ── explicit operator controls ───────────────────────────────────────


def transition(ctx: PipelineContext, pipeline_id: str, target: Phase | str,
               data: dict[str, Any] | None = None) -> StepResult:
    """Move to *target* on request, applying optional camelCase *data*.

    Recognised keys: ``pullRequestRef``, ``pullRequestUrl``, ``decision``,
    ``blockingCount``, ``lastError``. Disallowed moves raise
    :class:`InvalidTransitionError` and leave the document untouched.
    """
    try:
        target = Phase(target)
    except ValueError:
        raise InvalidTransitionError("?", str(target), "unknown phase") from None
    data = data or {}

    def apply(state: PipelineState) -> StepResult:
        before = state.phase
        _require(state, target)
        if "pullRequestRef" in data:
            state.pull_request_ref = str(data["pullRequestRef"]) if data["pullRequestRef"] else None
        if "pullRequestUrl" in data:
            state.pull_request_url = data["pullRequestUrl"] or None
        if "lastError" in data:
            state.execution_status.last_error = data["lastError"]

        if before == Phase.READY_TO_MERGE and target in (Phase.EXECUTE, Phase.COMPLETED):
            advance_wave(state)
            if state.phase != target:
                raise InvalidTransitionError(before.value, target.value,
                                             f"merging wave would lead to {state.phase.value}")
        elif target == Phase.REVIEW_PROCESSING:
            _apply_decision(state, normalize_decision(data.get("decision")),
                            int(data.get("blockingCount", state.review_status.blocking_count)))
        elif before == Phase.REVIEW_PROCESSING and target == Phase.EXECUTE:
            _loop_back(state)
        else:
            if target in PUBLISHED_PHASES and not state.pull_request_ref:
                raise InvalidTransitionError(before.value, target.value, "pullRequestRef is required")
            state.phase = target
        return StepResult(pipeline_id, before, state.phase, "transition",
                          f"{before.value} -> {state.phase.value}")

    return _mutate(ctx, pipeline_id, apply)


def fail(ctx: PipelineContext, pipeline_id: str, error: str) -> StepResult:
    def apply(state: PipelineState) -> StepResult:
        before = state.phase
        _require(state, Phase.FAILED, "pipeline is already terminal or failed")
        state.phase = Phase.FAILED
        state.execution_status.last_error = error
        return StepResult(pipeline_id, before, state.phase, "failed", error, True)

    return _mutate(ctx, pipeline_id, apply)


def reset(ctx: PipelineContext, pipeline_id: str, *, requeue_blocked: bool = False) -> StepResult:
    """Clear execution and review sub-state and return to EXECUTE for the same wave.

    ``history``, ``currentWave`` and the open pull request are kept. With
    *requeue_blocked*, blocked tasks of the current wave go back to pending.
    """

    def apply(state: PipelineState) -> StepResult:
        before = state.phase
        if state.phase == Phase.COMPLETED:
            raise InvalidTransitionError(before.value, Phase.EXECUTE.value, "pipeline is completed")
        if not state.integration_branch:
            state.integration_branch = integration_branch_name(state.pipeline_id)
        if not state.wave_branch:
            state.wave_branch = wave_branch_name(state.pipeline_id, state.current_wave)
        state.execution_status = ExecutionStatus()
        state.review_status = ReviewStatus()
        state.phase = Phase.EXECUTE

        requeued: list[str] = []
        if requeue_blocked:
            requeued = _requeue_blocked(ctx, state)
        return StepResult(pipeline_id, before, state.phase, "reset",
                          "State reset; ready to retry the current wave", data={"requeued": requeued})

    return _mutate(ctx, pipeline_id, apply)


def _requeue_blocked(ctx: PipelineContext, state: PipelineState) -> list[str]:
    path = ctx.task_file(state)
    tf = load_task_graph(path)
    requeued = [t.id for t in tf.wave_tasks(state.current_wave) if t.status == TaskStatus.BLOCKED]
    for tid in requeued:
        tf.get_task(tid).status = TaskStatus.PENDING
    if requeued:
        save_task_graph(tf, path)
    return requeued


retry = reset


def recover(ctx: PipelineContext, pipeline_id: str, phase: Phase | str) -> StepResult:
    """Force a possibly invalid document into a known-good *phase*.

    Works from the raw document: counters are clamped, ``currentWave`` is
    pulled into range and the wave branch is recomputed from it. Phases after
    publishing require a recorded pull request.
    """
    try:
        target = Phase(phase)
    except ValueError:
        raise InvalidTransitionError("?", str(phase), "unknown phase") from None
    if target == Phase.COMPLETED:
        raise InvalidTransitionError("?", target.value, "recover cannot complete a pipeline")

    with ctx.store.lock(pipeline_id):
        raw = ctx.store.load_raw(pipeline_id)
        before = str(raw.get("phase", "?"))
        state = _lenient_state(raw, pipeline_id)
        if target in PUBLISHED_PHASES and not state.pull_request_ref:
            raise InvalidTransitionError(before, target.value, "pullRequestRef is required")
        state.phase = target
        state.updated_at = utc_now()
        ctx.store.save(state)

    log.success(f"Recovered {pipeline_id} into {target.value}")
    try:
        before_phase = Phase(before)
    except ValueError:
        before_phase = target
    return StepResult(pipeline_id, before_phase, target, "recovered", f"{before} -> {target.value}")


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _lenient_state(raw: dict[str, Any], pipeline_id: str) -> PipelineState:
    total = max(1, _as_int(raw.get("totalWaves"), 1))
    current = min(max(1, _as_int(raw.get("currentWave"), 1)), total)

    rs_raw = raw.get("reviewStatus") if isinstance(raw.get("reviewStatus"), dict) else {}
    decision_raw = rs_raw.get("decision")
    decision = normalize_decision(decision_raw) if decision_raw else None
    review = ReviewStatus(
        poll_count=max(0, _as_int(rs_raw.get("pollCount"), 0)),
        last_check=rs_raw.get("lastCheck"),
        decision=decision,
        blocking_count=max(0, _as_int(rs_raw.get("blockingCount"), 0)),
        review_cycles=max(0, _as_int(rs_raw.get("reviewCycles"), 0)),
        published_at=rs_raw.get("publishedAt") or None,
        published_head=rs_raw.get("publishedHead") or None,
        reviewed_head=rs_raw.get("reviewedHead") or None,
    )

    es_raw = raw.get("executionStatus") if isinstance(raw.get("executionStatus"), dict) else {}
    execution = ExecutionStatus(
        tasks_total=max(0, _as_int(es_raw.get("tasksTotal"), 0)),
        tasks_completed=max(0, _as_int(es_raw.get("tasksCompleted"), 0)),
        tasks_failed=max(0, _as_int(es_raw.get("tasksFailed"), 0)),
        last_error=es_raw.get("lastError"),
    )

    history: list[HistoryEntry] = []
    for entry in raw.get("history") or []:
        try:
            h = HistoryEntry.from_dict(entry)
        except (KeyError, TypeError, ValueError):
            continue
        if h.wave < current and (not history or h.wave > history[-1].wave):
            history.append(h)

    flags_raw = raw.get("flags") if isinstance(raw.get("flags"), dict) else {}
    flags = Flags.from_dict({k: v for k, v in flags_raw.items() if _as_int(v, 1) > 0})

    ref = raw.get("pullRequestRef")
    return PipelineState(
        pipeline_id=pipeline_id,
        spec_name=str(raw.get("specName") or pipeline_id),
        tasks_file=str(raw.get("tasksFile") or ""),
        total_waves=total,
        current_wave=current,
        integration_branch=str(raw.get("integrationBranch") or integration_branch_name(pipeline_id)),
        wave_branch=wave_branch_name(pipeline_id, current),
        is_final_wave=current == total,
        pull_request_ref=str(ref) if ref else None,
        pull_request_url=raw.get("pullRequestUrl") or None,
        review_status=review,
        execution_status=execution,
        history=history,
        flags=flags,
        created_at=str(raw.get("createdAt") or utc_now()),
    )


def set_pull_request(ctx: PipelineContext, pipeline_id: str, ref: str, url: str | None = None) -> StepResult:
    def apply(state: PipelineState) -> StepResult:
        if state.phase in (Phase.COMPLETED, Phase.INIT):
            raise StateError(f"Cannot record a pull request while {state.phase.value}")
        state.pull_request_ref = str(ref)
        state.pull_request_url = url or None
        rs = state.review_status
        rs.published_at = utc_now()
        rs.published_head = (ctx.vcs.head(state.wave_branch) if ctx.vcs is not None else "") or None
        return StepResult(pipeline_id, state.phase, state.phase, "pull_request_recorded",
                          f"PR {ref}", data={"pullRequestRef": ref, "pullRequestUrl": url})

    return _mutate(ctx, pipeline_id, apply)


def update_review(ctx: PipelineContext, pipeline_id: str, decision: str | None,
                  blocking_count: int = 0) -> StepResult:
    """Record a review result obtained outside the poller (manual mode)."""
    normalized = normalize_decision(decision)

    def apply(state: PipelineState) -> StepResult:
        before = state.phase
        if state.phase not in (Phase.AWAITING_REVIEW, Phase.REVIEW_PROCESSING):
            raise InvalidTransitionError(before.value, Phase.REVIEW_PROCESSING.value,
                                         "no review is outstanding")
        rs = state.review_status
        rs.poll_count += 1
        rs.last_check = utc_now()
        if state.phase == Phase.AWAITING_REVIEW and normalized != ReviewDecision.PENDING:
            _apply_decision(state, normalized, blocking_count)
        elif state.phase == Phase.REVIEW_PROCESSING:
            rs.decision = normalized
            rs.blocking_count = max(0, blocking_count)
        return StepResult(pipeline_id, before, state.phase, "review_recorded", normalized.value,
                          data=rs.to_dict())

    return _mutate(ctx, pipeline_id, apply)


def poll(ctx: PipelineContext, pipeline_id: str, *, wait: bool = False,
         sleep: Callable[[float], None] = time.sleep) -> StepResult:
    """Check the review once, or keep checking until a decision or the timeout (*wait*)."""
    if ctx.review is None:
        raise ServiceError("No review service configured")
    if not wait:
        def apply_once(state: PipelineState) -> StepResult:
            if state.phase != Phase.AWAITING_REVIEW:
                raise InvalidTransitionError(state.phase.value, Phase.REVIEW_PROCESSING.value,
                                             "not awaiting review")
            before = state.phase
            result = _step_awaiting_review(ctx, state)
            result.phase_before = before
            result.phase_after = state.phase
            return result

        return _mutate(ctx, pipeline_id, apply_once)

    with ctx.store.lock(pipeline_id):
        state = ctx.store.load(pipeline_id)
        before = state.phase
        if before != Phase.AWAITING_REVIEW:
            raise InvalidTransitionError(before.value, Phase.REVIEW_PROCESSING.value, "not awaiting review")

        def persist(s: PipelineState, _result: Any) -> None:
            s.updated_at = utc_now()
            ctx.store.save(s)
            ctx.store.refresh_lock(pipeline_id)

        result = ReviewPoller(ctx.review).wait_for_review(state, on_poll=persist, sleep=sleep)
        if result.decision != ReviewDecision.PENDING:
            _apply_decision(state, result.decision, result.blocking_count)
            persist(state, result)
            action = "review_received"
        else:
            action = "needs_manual_check"
    return StepResult(pipeline_id, before, state.phase, action, result.decision.value,
                      action == "needs_manual_check", result.to_dict())


def check_poll_timeout(ctx: PipelineContext, pipeline_id: str) -> dict[str, Any]:
    state = ctx.store.load(pipeline_id)
    return state_poll_timeout(state).to_dict()


def mark_cleaned(ctx: PipelineContext, pipeline_id: str, wave: int) -> StepResult:
    def apply(state: PipelineState) -> StepResult:
        for entry in state.history:
            if entry.wave == wave:
                entry.branch_cleaned = True
                return StepResult(pipeline_id, state.phase, state.phase, "marked_cleaned",
                                  f"Wave {wave} branch cleaned", data={"wave": wave, "branchCleaned": True})
        raise StateError(f"No history entry for wave {wave} in '{pipeline_id}'")

    return _mutate(ctx, pipeline_id, apply)


# ── read-only ────────────────────────────────────────────────────────


def status(ctx: PipelineContext, pipeline_id: str) -> dict[str, Any]:
    """State document plus derived progress. Missing pipelines report ``exists: false``."""
    if not ctx.store.exists(pipeline_id):
        return {"exists": False, "pipelineId": pipeline_id, "message": "No pipeline state found. Run init first."}
    state = ctx.store.load(pipeline_id)
    data = {"exists": True, **state.to_dict()}
    data["pollTimeout"] = state_poll_timeout(state).to_dict()
    task_path = ctx.task_file(state)
    if task_path.is_file():
        data["progress"] = summarize(load_task_graph(task_path))
    return data


def list_pipelines(ctx: PipelineContext) -> list[dict[str, Any]]:
    return ctx.store.list_states()


def delete(ctx: PipelineContext, pipeline_id: str) -> bool:
    with ctx.store.lock(pipeline_id):
        return ctx.store.delete(pipeline_id)
