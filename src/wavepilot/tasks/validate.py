"""Task graph validation: schema checks and cycle detection."""

from __future__ import annotations

from wavepilot import log
from wavepilot.tasks.model import TaskGraph, natural_key


def find_cycle(tf: TaskGraph) -> list[str]:
    """Return one dependency cycle as a closed path (``[A, B, A]``), or ``[]``.

    Dependencies on unknown ids are ignored here; :func:`validate` reports them.
    """
    deps = {t.id: [d for d in t.depends_on if d] for t in tf.tasks}
    white, grey, black = 0, 1, 2
    color = {tid: white for tid in deps}
    stack: list[str] = []

    def visit(tid: str) -> list[str]:
        color[tid] = grey
        stack.append(tid)
        for dep in sorted(deps[tid], key=natural_key):
            if dep not in color:
                continue
            if color[dep] == grey:
                return stack[stack.index(dep):] + [dep]
            if color[dep] == white:
                found = visit(dep)
                if found:
                    return found
        stack.pop()
        color[tid] = black
        return []

    for tid in sorted(deps, key=natural_key):
        if color[tid] == white:
            found = visit(tid)
            if found:
                return found
    return []


def detect_cycles(tf: TaskGraph) -> str:
    """Human-readable cycle description, or ``""`` when the graph is acyclic."""
    cycle = find_cycle(tf)
    return " -> ".join(cycle)


def validate(tf: TaskGraph) -> list[str]:
    """Return a list of problems; empty means the graph can be planned."""
    errors: list[str] = []

    if not tf.tasks:
        errors.append("Task file contains no tasks")
        return errors

    seen: set[str] = set()
    for t in tf.tasks:
        if t.id in seen:
            errors.append(f"Duplicate task id: {t.id}")
        seen.add(t.id)

    for t in tf.tasks:
        for dep in t.depends_on:
            if dep not in seen:
                errors.append(f"Task {t.id} depends on unknown task: {dep}")

    cycle = detect_cycles(tf)
    if cycle:
        errors.append(f"Dependency cycle: {cycle}")

    return errors


def validate_and_report(tf: TaskGraph) -> bool:
    """Validate and log problems. Returns ``True`` when valid."""
    errors = validate(tf)
    if not errors:
        log.debug(f"Task graph valid ({len(tf.tasks)} tasks)")
        return True
    log.error("Task graph validation failed:")
    for err in errors:
        log.error(f"  - {err}")
    return False
