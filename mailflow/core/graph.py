import json

from mailflow.core.errors import InvalidStepConfig
from mailflow.core.models import TRIGGER_SOURCE, Handle, StepType
from mailflow.core.steps import parse_step_config


def definition_from_rows(steps, edges) -> dict:
    """Rebuild a validatable definition from stored Step and Edge rows."""
    return {
        "steps": [
            {
                "id": s.id,
                "step_type": s.step_type,
                "config": json.loads(s.config) if s.config else {},
            }
            for s in steps
        ],
        "edges": [
            {
                "source_step_id": e.source_step_id,
                "target_step_id": e.target_step_id,
                "source_handle": e.source_handle or Handle.DEFAULT,
            }
            for e in edges
        ],
    }


def validate_workflow(definition: dict) -> list[str]:
    """Validate a workflow graph definition. Returns a list of errors (empty = valid)."""
    errors = []

    steps = definition.get("steps")
    if not isinstance(steps, list) or len(steps) == 0:
        errors.append("'steps' must be a non-empty list")
        return errors
    edges = definition.get("edges") or []

    step_types = {}
    for step in steps:
        if "id" not in step:
            errors.append("Each step must have an 'id' field")
            continue
        if step["id"] == TRIGGER_SOURCE:
            errors.append(f"'{TRIGGER_SOURCE}' is reserved and cannot be a step id")
            continue
        if step["id"] in step_types:
            errors.append(f"Duplicate step ID: '{step['id']}'")
            continue
        step_types[step["id"]] = step.get("step_type")
        try:
            parse_step_config(step.get("step_type", ""), step.get("config"))
        except InvalidStepConfig as e:
            errors.append(f"Step '{step['id']}': {e}")

    adjacency = {sid: [] for sid in step_types}
    entries = []
    seen_edges = set()
    incoming = {}
    for edge in edges:
        source = edge.get("source_step_id")
        target = edge.get("target_step_id")
        handle = edge.get("source_handle") or Handle.DEFAULT
        handle = getattr(handle, "value", handle)

        if target not in step_types:
            errors.append(f"Edge has unknown target step: '{target}'")
            continue
        if source != TRIGGER_SOURCE and source not in step_types:
            errors.append(f"Edge has unknown source step: '{source}'")
            continue

        if (source, target, handle) in seen_edges:
            errors.append(f"Duplicate edge: '{source}' -> '{target}' ({handle})")
            continue
        seen_edges.add((source, target, handle))
        # Each incoming branch queues its own row for the target, so a step
        # may only be entered from one source. The yes/no edges of a single
        # condition are exclusive and count as one.
        incoming.setdefault(target, set()).add(source)

        if source == TRIGGER_SOURCE:
            entries.append(target)
            continue

        if step_types[source] == StepType.CONDITION:
            if handle not in (Handle.YES, Handle.NO):
                errors.append(
                    f"Condition step '{source}' edge must use 'yes' or 'no' handle, "
                    f"got '{handle}'"
                )
        elif handle != Handle.DEFAULT:
            errors.append(
                f"Step '{source}' edge must use the 'default' handle, got '{handle}'"
            )
        adjacency[source].append(target)

    if not entries:
        errors.append("No steps connected to trigger")

    if errors:
        return errors

    if _has_cycle(adjacency):
        errors.append("Workflow contains a cycle")
        return errors

    for target in sorted(incoming):
        if len(incoming[target]) > 1:
            sources = ", ".join(f"'{s}'" for s in sorted(incoming[target]))
            errors.append(
                f"Step '{target}' is entered from more than one step ({sources})"
            )
    if errors:
        return errors

    unreachable = set(step_types) - _reachable(adjacency, entries)
    for sid in sorted(unreachable):
        errors.append(f"Step '{sid}' is not reachable from the trigger")

    return errors


def _reachable(adjacency: dict[str, list[str]], entries: list[str]) -> set[str]:
    seen = set()
    stack = list(entries)
    while stack:
        node = stack.pop()
        if node in seen:
            continue
        seen.add(node)
        stack.extend(adjacency.get(node, []))
    return seen


def _has_cycle(adjacency: dict[str, list[str]]) -> bool:
    """Detect cycles using DFS with three-color marking."""
    WHITE, GRAY, BLACK = 0, 1, 2
    color = {node: WHITE for node in adjacency}

    def dfs(node):
        color[node] = GRAY
        for neighbor in adjacency[node]:
            if color[neighbor] == GRAY:
                return True
            if color[neighbor] == WHITE and dfs(neighbor):
                return True
        color[node] = BLACK
        return False

    for node in adjacency:
        if color[node] == WHITE:
            if dfs(node):
                return True
    return False
