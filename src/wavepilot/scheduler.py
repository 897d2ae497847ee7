"""Wave partitioner: topological layering of the task graph into parallel waves."""

from __future__ import annotations

from itertools import combinations

from wavepilot import log
from wavepilot.errors import CyclicDependencyError, PlanningError
from wavepilot.tasks.model import TaskGraph, TaskStatus, Wave, natural_key
from wavepilot.tasks.validate import find_cycle


def partition_waves(tf: TaskGraph) -> list[Wave]:
    """Group tasks into ordered waves of mutually independent tasks.

    Each pass collects every unassigned task whose dependencies all sit in
    earlier waves; that set becomes the next wave. Members are ordered by
    ascending task id so the result is reproducible. Pure: *tf* is not
    modified.

    Raises :class:`PlanningError` for an empty graph, duplicate ids or unknown
    dependencies and :class:`CyclicDependencyError` when no further progress
    is possible.
    """
    if not tf.tasks:
        raise PlanningError("Cannot plan an empty task graph")

    deps: dict[str, set[str]] = {}
    touches: dict[str, set[str]] = {}
    for task in tf.tasks:
        if task.id in deps:
            raise PlanningError(f"Duplicate task id: {task.id}")
        deps[task.id] = {d for d in task.depends_on if d}
        touches[task.id] = {r for r in task.touches if r}

    for tid, task_deps in deps.items():
        unknown = sorted(task_deps - deps.keys(), key=natural_key)
        if unknown:
            raise PlanningError(f"Task {tid} depends on unknown task(s): {', '.join(unknown)}")

    assigned: dict[str, int] = {}
    waves: list[Wave] = []
    remaining = set(deps)

    while remaining:
        ready = sorted(
            (tid for tid in remaining if deps[tid] <= assigned.keys()),
            key=natural_key,
        )
        if not ready:
            cycle = find_cycle(tf) or sorted(remaining, key=natural_key)
            raise CyclicDependencyError(cycle)

        number = len(waves) + 1
        for tid in ready:
            assigned[tid] = number
        remaining.difference_update(ready)

        waves.append(
            Wave(
                wave=number,
                tasks=ready,
                rationale=_rationale(ready, deps, assigned),
                conflicts=_conflicts(ready, touches),
            )
        )

    return waves


def _rationale(members: list[str], deps: dict[str, set[str]], assigned: dict[str, int]) -> str:
    upstream = sorted({assigned[d] for tid in members for d in deps[tid]})
    if not upstream:
        return f"{len(members)} task(s) with no dependencies"
    waves = ", ".join(str(n) for n in upstream)
    return f"{len(members)} task(s) whose dependencies complete in wave(s) {waves}"


def _conflicts(members: list[str], touches: dict[str, set[str]]) -> list[dict[str, list[str]]]:
    """Pairs of same-wave tasks that declare overlapping touched resources."""
    found: list[dict[str, list[str]]] = []
    for a, b in combinations(members, 2):
        shared = touches[a] & touches[b]
        if shared:
            found.append({"tasks": [a, b], "resources": sorted(shared)})
    return found


def plan_waves(tf: TaskGraph, *, replan: bool = False) -> list[Wave]:
    """Partition *tf* and store the waves on it.

    Waves are plan data: an already-planned graph keeps its waves unless
    *replan* is set.
    """
    if tf.waves and not replan:
        log.debug(f"Task graph already planned ({len(tf.waves)} waves); keeping existing plan")
        return tf.waves

    waves = partition_waves(tf)
    for w in waves:
        for c in w.conflicts:
            log.warn(
                f"Wave {w.wave}: tasks {' & '.join(c['tasks'])} both touch "
                f"{', '.join(c['resources'])} (higher conflict risk)"
            )
    tf.waves = waves
    log.info(f"Planned {len(tf.tasks)} task(s) into {len(waves)} wave(s)")
    return waves


def wave_of(waves: list[Wave]) -> dict[str, int]:
    """Map each task id to its wave number."""
    return {tid: w.wave for w in waves for tid in w.tasks}


def current_wave_from_status(tf: TaskGraph) -> int:
    """First wave that still has a task not in ``pass`` (1 when nothing is planned).

    Returns ``len(waves)`` when every task already passed, so a fully-done
    plan resumes at its final wave.
    """
    for w in tf.waves:
        for task in tf.wave_tasks(w.wave):
            if task.status != TaskStatus.PASS:
                return w.wave
    return len(tf.waves) or 1
