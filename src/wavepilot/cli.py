"""WAVEPILOT CLI: thin dispatch over the planner, state machine, ledger and branch coordinator.

Installed as ``wavepilot`` console_script. Commands that report state
print JSON on stdout; logs go to stderr.
"""

from __future__ import annotations

import functools
import json
import sys
from pathlib import Path
from typing import Any, Callable

import click

from wavepilot import __version__
from wavepilot.config import DEFAULT_MAX_POLL_DURATION_MS, DEFAULT_POLL_INTERVAL_MS, Config
from wavepilot.errors import TaskGraphError, WavepilotError
from wavepilot.io_utils import dump_json

CONTEXT_SETTINGS = dict(help_option_names=["-h", "--help"])


# ── helpers ──────────────────────────────────────────────────────────


def _emit(data: Any) -> None:
    click.echo(dump_json(data), nl=False)


def _handle_errors(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Turn :class:`WavepilotError` into a logged error and exit code 1."""

    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        from wavepilot import log as wlog

        try:
            return fn(*args, **kwargs)
        except WavepilotError as e:
            wlog.error(str(e))
            sys.exit(1)

    return wrapper


def _cfg(ctx: click.Context) -> Config:
    return ctx.obj["cfg"]


def _pipeline(ctx: click.Context):
    """Build the :class:`PipelineContext` (tests may inject a ``factory``)."""
    from wavepilot.machine import PipelineContext

    factory = ctx.obj.get("factory") or PipelineContext.from_config
    return factory(_cfg(ctx))


def _pid(spec: str) -> str:
    from wavepilot.branches import normalize_spec_name

    return normalize_spec_name(spec)


def _task_file(ctx: click.Context, spec: str) -> Path:
    from wavepilot.tasks.io import find_task_file

    spec_dir = _cfg(ctx).spec_dir(spec)
    path = find_task_file(spec_dir)
    if path is None:
        raise TaskGraphError(f"No task file (tasks.json / tasks.yaml) in {spec_dir}")
    return path


def _ledger(ctx: click.Context, spec: str):
    from wavepilot.ledger import ArtifactLedger

    return ArtifactLedger(_task_file(ctx, spec), Path(_cfg(ctx).project_dir))


def _parse_json_arg(raw: str, what: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"{what} must be valid JSON: {e}") from e


# ── root group ───────────────────────────────────────────────────────


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option("--project-dir", default="", help="Project root (default: nearest dir with .wavepilot)")
@click.option("--state-dir", default="", help="Where pipeline state documents live")
@click.option("--specs-dir", default="", help="Where spec folders with task files live")
@click.option("--trunk", default="", help="Trunk branch (default: main, else master)")
@click.option("--remote", default="origin", help="Git remote name")
@click.option("--manual", is_flag=True, help="Do not publish, poll or merge automatically")
@click.option("--poll-interval", type=int, default=DEFAULT_POLL_INTERVAL_MS, help="Review poll interval (ms)")
@click.option("--max-poll-duration", type=int, default=DEFAULT_MAX_POLL_DURATION_MS,
              help="Advisory review wait limit (ms)")
@click.option("--task-command", default="", help="Shell command that runs one task")
@click.option("--max-parallel", type=int, default=3, help="Max concurrent tasks per wave")
@click.option("--task-timeout", type=int, default=0, help="Seconds before a task is killed (0=none)")
@click.option("--no-cleanup", is_flag=True, help="Keep wave branches after merge")
@click.option("--notify", is_flag=True, help="Desktop notifications for review, merge and completion milestones")
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
@click.version_option(__version__, prog_name="wavepilot")
@click.pass_context
def main(
    ctx: click.Context,
    project_dir: str,
    state_dir: str,
    specs_dir: str,
    trunk: str,
    remote: str,
    manual: bool,
    poll_interval: int,
    max_poll_duration: int,
    task_command: str,
    max_parallel: int,
    task_timeout: int,
    no_cleanup: bool,
    notify: bool,
    verbose: bool,
) -> None:
    """WAVEPILOT: wave-based delivery orchestrator.

    Partitions a task graph into waves and drives each wave through
    execute -> pull request -> review -> merge, one step per invocation.

    \b
    WORKFLOW:
      1. wavepilot plan auth-system        # compute waves into tasks.json
      2. wavepilot init auth-system        # create the pipeline state
      3. wavepilot advance auth-system     # repeat until COMPLETED
      4. wavepilot status auth-system      # inspect at any point
    """
    from wavepilot import log as wlog

    wlog.set_verbose(verbose)
    ctx.ensure_object(dict)
    if "cfg" not in ctx.obj:
        ctx.obj["cfg"] = Config(
            project_dir=project_dir,
            state_dir=state_dir,
            specs_dir=specs_dir,
            trunk=trunk,
            remote=remote,
            cleanup_merged=not no_cleanup,
            poll_interval_ms=poll_interval,
            max_poll_duration_ms=max_poll_duration,
            manual_mode=manual,
            task_command=task_command,
            max_parallel=max_parallel,
            task_timeout=task_timeout,
            notify=notify,
            verbose=verbose,
        )


# ── planning ─────────────────────────────────────────────────────────


@main.command()
@click.argument("spec")
@click.option("--replan", is_flag=True, help="Recompute waves even if already planned")
@click.option("--dry-run", is_flag=True, help="Show the plan without writing it")
@click.option("--json", "as_json", is_flag=True, help="Print the plan as JSON")
@click.pass_context
@_handle_errors
def plan(ctx: click.Context, spec: str, replan: bool, dry_run: bool, as_json: bool) -> None:
    """Partition SPEC's task graph into waves and store them in its task file."""
    from rich.markup import escape

    from wavepilot import log as wlog
    from wavepilot.scheduler import plan_waves
    from wavepilot.tasks.io import load_task_graph, save_task_graph
    from wavepilot.tasks.validate import validate_and_report

    path = _task_file(ctx, spec)
    tf = load_task_graph(path)
    if not validate_and_report(tf):
        sys.exit(1)

    waves = plan_waves(tf, replan=replan)
    if not dry_run:
        save_task_graph(tf, path)

    if as_json:
        _emit({"spec": spec, "totalWaves": len(waves), "waves": [w.to_dict() for w in waves]})
        return

    wlog.console.print("")
    wlog.console.print("[bold]============================================[/bold]")
    wlog.console.print(f"[bold]{escape(spec)}[/bold]: {len(tf.tasks)} task(s) in {len(waves)} wave(s)")
    for w in waves:
        wlog.console.print(f"[cyan]Wave {w.wave}[/cyan] [dim]{w.rationale}[/dim]")
        for tid in w.tasks:
            task = tf.get_task(tid)
            title = task.title if task else ""
            wlog.console.print(escape(f"  - [{tid}] {title}" if title else f"  - [{tid}]"))
        for c in w.conflicts:
            wlog.console.print(
                "  [yellow]![/yellow] " + escape(f"{' & '.join(c['tasks'])} share {', '.join(c['resources'])}")
            )
    wlog.console.print("[bold]============================================[/bold]")


# ── pipeline lifecycle ───────────────────────────────────────────────


@main.command()
@click.argument("spec")
@click.option("--manual", is_flag=True, help="Operator publishes, reviews and merges by hand")
@click.option("--replan", is_flag=True, help="Recompute waves even if already planned")
@click.option("--force", is_flag=True, help="Overwrite an existing pipeline state")
@click.pass_context
@_handle_errors
def init(ctx: click.Context, spec: str, manual: bool, replan: bool, force: bool) -> None:
    """Create the pipeline state for SPEC."""
    from wavepilot.machine import create

    pctx = _pipeline(ctx)
    state = create(pctx, spec, manual=manual, replan=replan, force=force)
    _emit({
        "success": True,
        "pipelineId": state.pipeline_id,
        "stateFile": str(pctx.store.path_for(state.pipeline_id)),
        "currentWave": state.current_wave,
        "totalWaves": state.total_waves,
        "phase": state.phase.value,
        "manualMode": state.flags.manual_mode,
    })


@main.command()
@click.argument("spec")
@click.option("--steps", type=int, default=1, help="Keep advancing up to N steps while progress is made")
@click.pass_context
@_handle_errors
def advance(ctx: click.Context, spec: str, steps: int) -> None:
    """Perform the next step of SPEC's pipeline."""
    from wavepilot.machine import advance as advance_step

    pctx = _pipeline(ctx)
    results = []
    for _ in range(max(1, steps)):
        result = advance_step(pctx, _pid(spec))
        results.append(result.to_dict())
        if result.needs_attention or not result.changed:
            break
    _emit(results[0] if len(results) == 1 else {"steps": results})


@main.command()
@click.argument("spec")
@click.pass_context
@_handle_errors
def status(ctx: click.Context, spec: str) -> None:
    """Dump SPEC's pipeline state."""
    from wavepilot.machine import status as pipeline_status

    _emit(pipeline_status(_pipeline(ctx), _pid(spec)))


@main.command("list")
@click.pass_context
@_handle_errors
def list_cmd(ctx: click.Context) -> None:
    """List every pipeline with its phase and wave."""
    from wavepilot.machine import list_pipelines

    _emit({"pipelines": list_pipelines(_pipeline(ctx))})


@main.command()
@click.argument("spec")
@click.option("--requeue-blocked", is_flag=True, help="Return blocked tasks of the current wave to pending")
@click.pass_context
@_handle_errors
def reset(ctx: click.Context, spec: str, requeue_blocked: bool) -> None:
    """Clear failure and review state; retry the current wave."""
    from wavepilot.machine import reset as reset_pipeline

    _emit(reset_pipeline(_pipeline(ctx), _pid(spec), requeue_blocked=requeue_blocked).to_dict())


@main.command()
@click.argument("spec")
@click.pass_context
@_handle_errors
def retry(ctx: click.Context, spec: str) -> None:
    """Reset and requeue blocked tasks of the current wave."""
    from wavepilot.machine import reset as reset_pipeline

    _emit(reset_pipeline(_pipeline(ctx), _pid(spec), requeue_blocked=True).to_dict())


@main.command()
@click.argument("spec")
@click.argument("phase", type=click.Choice(
    ["INIT", "EXECUTE", "AWAITING_REVIEW", "REVIEW_PROCESSING", "READY_TO_MERGE", "FAILED"],
    case_sensitive=False,
))
@click.pass_context
@_handle_errors
def recover(ctx: click.Context, spec: str, phase: str) -> None:
    """Force SPEC's (possibly invalid) state into PHASE."""
    from wavepilot.machine import recover as recover_pipeline

    _emit(recover_pipeline(_pipeline(ctx), _pid(spec), phase.upper()).to_dict())


@main.command()
@click.argument("spec")
@click.argument("error")
@click.pass_context
@_handle_errors
def fail(ctx: click.Context, spec: str, error: str) -> None:
    """Mark SPEC's pipeline FAILED with ERROR."""
    from wavepilot.machine import fail as fail_pipeline

    _emit(fail_pipeline(_pipeline(ctx), _pid(spec), error).to_dict())


@main.command()
@click.argument("spec")
@click.argument("phase")
@click.option("--data", "data_json", default="", help='Extra fields as JSON, e.g. \'{"pullRequestRef": "12"}\'')
@click.pass_context
@_handle_errors
def transition(ctx: click.Context, spec: str, phase: str, data_json: str) -> None:
    """Request an explicit transition of SPEC's pipeline to PHASE."""
    from wavepilot.machine import transition as do_transition

    data = _parse_json_arg(data_json, "--data") if data_json else {}
    if not isinstance(data, dict):
        raise click.BadParameter("--data must be a JSON object")
    _emit(do_transition(_pipeline(ctx), _pid(spec), phase.upper(), data).to_dict())


@main.command("set-pr")
@click.argument("spec")
@click.argument("ref")
@click.argument("url", required=False, default="")
@click.pass_context
@_handle_errors
def set_pr(ctx: click.Context, spec: str, ref: str, url: str) -> None:
    """Record the pull request REF (and URL) for the current wave."""
    from wavepilot.machine import set_pull_request

    _emit(set_pull_request(_pipeline(ctx), _pid(spec), ref, url or None).to_dict())


@main.command("update-review")
@click.argument("spec")
@click.argument("decision")
@click.option("--blocking", type=int, default=0, help="Number of blocking review issues")
@click.pass_context
@_handle_errors
def update_review_cmd(ctx: click.Context, spec: str, decision: str, blocking: int) -> None:
    """Record a review DECISION (approved, changesRequested, pending)."""
    from wavepilot.machine import update_review

    _emit(update_review(_pipeline(ctx), _pid(spec), decision, blocking).to_dict())


@main.command()
@click.argument("spec")
@click.option("--wait", is_flag=True, help="Keep polling until a decision or the timeout")
@click.pass_context
@_handle_errors
def poll(ctx: click.Context, spec: str, wait: bool) -> None:
    """Check the review status of the current wave's pull request."""
    from wavepilot.machine import poll as poll_review

    _emit(poll_review(_pipeline(ctx), _pid(spec), wait=wait).to_dict())


@main.command("check-poll-timeout")
@click.argument("spec")
@click.pass_context
@_handle_errors
def check_poll_timeout_cmd(ctx: click.Context, spec: str) -> None:
    """Report whether polling should continue."""
    from wavepilot.machine import check_poll_timeout

    _emit(check_poll_timeout(_pipeline(ctx), _pid(spec)))


@main.command("advance-wave")
@click.argument("spec")
@click.pass_context
@_handle_errors
def advance_wave_cmd(ctx: click.Context, spec: str) -> None:
    """Record a manual merge of the current wave and move on."""
    from wavepilot.machine import merge_wave

    _emit(merge_wave(_pipeline(ctx), _pid(spec)).to_dict())


@main.command("mark-cleaned")
@click.argument("spec")
@click.argument("wave", type=int)
@click.pass_context
@_handle_errors
def mark_cleaned_cmd(ctx: click.Context, spec: str, wave: int) -> None:
    """Record that WAVE's branch has been deleted."""
    from wavepilot.machine import mark_cleaned

    _emit(mark_cleaned(_pipeline(ctx), _pid(spec), wave).to_dict())


@main.command()
@click.argument("spec")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
@_handle_errors
def delete(ctx: click.Context, spec: str, yes: bool) -> None:
    """Delete SPEC's pipeline state document."""
    from wavepilot.machine import delete as delete_pipeline

    pid = _pid(spec)
    if not yes:
        click.confirm(f"Delete pipeline state for '{pid}'?", abort=True, err=True)
    _emit({"deleted": delete_pipeline(_pipeline(ctx), pid), "pipelineId": pid})


# ── task subgroup ────────────────────────────────────────────────────


@main.group()
def task() -> None:
    """Task status and artifact ledger operations."""


@task.command("update")
@click.argument("spec")
@click.argument("task_id")
@click.argument("status", type=click.Choice(["pending", "in_progress", "pass", "blocked"]))
@click.option("--error", default=None, help="Reason, for blocked tasks")
@click.pass_context
@_handle_errors
def task_update(ctx: click.Context, spec: str, task_id: str, status: str, error: str | None) -> None:
    """Set TASK_ID's status."""
    from wavepilot.tasks.io import update_task_status
    from wavepilot.tasks.model import TaskStatus

    t = update_task_status(_task_file(ctx, spec), task_id, TaskStatus(status), error=error)
    _emit({"success": True, "taskId": t.id, "status": t.status.value, "attempts": t.attempts})


@task.command("artifacts")
@click.argument("spec")
@click.argument("task_id")
@click.argument("artifacts_json")
@click.pass_context
@_handle_errors
def task_artifacts(ctx: click.Context, spec: str, task_id: str, artifacts_json: str) -> None:
    """Record ARTIFACTS_JSON for a passed TASK_ID."""
    from wavepilot.tasks.model import TaskArtifacts

    data = _parse_json_arg(artifacts_json, "ARTIFACTS_JSON")
    if not isinstance(data, dict):
        raise click.BadParameter("ARTIFACTS_JSON must be a JSON object")
    written = _ledger(ctx, spec).record(task_id, TaskArtifacts.from_dict(data))
    _emit({"success": True, "taskId": task_id, "written": written})


@task.command("query")
@click.argument("spec")
@click.argument("task_id")
@click.pass_context
@_handle_errors
def task_query(ctx: click.Context, spec: str, task_id: str) -> None:
    """Show the recorded artifacts of TASK_ID."""
    _emit({"taskId": task_id, "artifacts": _ledger(ctx, spec).query(task_id).to_dict()})


@task.command("verify")
@click.argument("spec")
@click.argument("task_id")
@click.argument("symbols", nargs=-1)
@click.pass_context
@_handle_errors
def task_verify(ctx: click.Context, spec: str, task_id: str, symbols: tuple[str, ...]) -> None:
    """Check TASK_ID's exports against the codebase (default: all recorded exports)."""
    result = _ledger(ctx, spec).verify(task_id, list(symbols) if symbols else None)
    _emit(result.to_dict())
    if not result.verified:
        sys.exit(1)


@task.command("validate-names")
@click.argument("spec")
@click.argument("names", nargs=-1, required=True)
@click.pass_context
@_handle_errors
def task_validate_names(ctx: click.Context, spec: str, names: tuple[str, ...]) -> None:
    """Check that NAMES exist in the codebase or in a task's recorded exports."""
    _emit(_ledger(ctx, spec).validate_names(list(names)))


@task.command("collect-artifacts")
@click.argument("since", default="HEAD~1")
@click.pass_context
@_handle_errors
def task_collect_artifacts(ctx: click.Context, since: str) -> None:
    """Derive an artifact record from git changes since SINCE."""
    from wavepilot.ledger import collect_artifacts

    _emit(collect_artifacts(since, Path(_cfg(ctx).project_dir)).to_dict())


@task.command("status")
@click.argument("spec")
@click.pass_context
@_handle_errors
def task_status(ctx: click.Context, spec: str) -> None:
    """Progress summary and per-wave task statuses."""
    from wavepilot.tasks.io import load_task_graph, summarize

    tf = load_task_graph(_task_file(ctx, spec))
    _emit({
        "spec": tf.spec or spec,
        "summary": summarize(tf),
        "waves": [
            {"wave": w.wave, "tasks": {t.id: t.status.value for t in tf.wave_tasks(w.wave)}}
            for w in tf.waves
        ],
    })


# ── branch subgroup ──────────────────────────────────────────────────


@main.group()
def branch() -> None:
    """Integration and wave branch management."""


def _coordinator(ctx: click.Context):
    return _pipeline(ctx).branches()


@branch.command("setup")
@click.argument("spec")
@click.argument("wave", type=int)
@click.option("--total", type=int, default=None, help="Total waves (marks the final wave)")
@click.pass_context
@_handle_errors
def branch_setup(ctx: click.Context, spec: str, wave: int, total: int | None) -> None:
    """Ensure the integration and wave branches for WAVE exist and check it out."""
    try:
        result = _coordinator(ctx).setup(_pid(spec), wave, total)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e
    _emit({"success": True, **result.to_dict()})


@branch.command("pr-target")
@click.argument("name", required=False, default="")
@click.pass_context
@_handle_errors
def branch_pr_target(ctx: click.Context, name: str) -> None:
    """Merge target for NAME (default: the current branch)."""
    coordinator = _coordinator(ctx)
    current = name or coordinator.vcs.current_branch()
    _emit({"branch": current, "target": coordinator.resolve_merge_target(current)})


@branch.command("validate")
@click.argument("spec")
@click.argument("wave", type=int)
@click.pass_context
@_handle_errors
def branch_validate(ctx: click.Context, spec: str, wave: int) -> None:
    """Check that the checked-out branch is WAVE's branch."""
    result = _coordinator(ctx).validate(_pid(spec), wave)
    _emit(result)
    if not result["valid"]:
        sys.exit(1)


@branch.command("info")
@click.argument("name", required=False, default="")
@click.pass_context
@_handle_errors
def branch_info_cmd(ctx: click.Context, name: str) -> None:
    """Classify NAME (default: the current branch)."""
    from wavepilot.branches import branch_info

    coordinator = _coordinator(ctx)
    current = name or coordinator.vcs.current_branch()
    info = branch_info(current)
    _emit({
        "branch": info.branch,
        "type": info.branch_type,
        "spec": info.spec,
        "wave": info.wave,
        "integrationBranch": info.integration_branch,
        "mergeTarget": coordinator.resolve_merge_target(current),
    })


@branch.command("cleanup")
@click.argument("name")
@click.pass_context
@_handle_errors
def branch_cleanup(ctx: click.Context, name: str) -> None:
    """Delete merged wave branch NAME locally and on the remote."""
    result = _coordinator(ctx).cleanup(name)
    _emit({"success": not result.errors, **result.to_dict()})


if __name__ == "__main__":
    main()
