from __future__ import annotations

from typing import Any

from conveyor.errors import PlanCycleError, StructuralValidationError, ValidationIssue
from conveyor.validation import (
    check_string,
    check_string_list,
    is_object,
    is_path_segment,
    is_string,
)


def _check_task_shape(issues: list[ValidationIssue], base: str, task: dict[str, Any]) -> None:
    task_id = task.get("id")
    check_string(issues, f"{base}.id", task_id)
    if is_string(task_id) and task_id and not is_path_segment(task_id):
        issues.append(
            ValidationIssue(f"{base}.id", "expected a single path segment of [A-Za-z0-9._-]")
        )
    check_string(issues, f"{base}.title", task.get("title"))
    if task.get("kind") != "patch":
        issues.append(ValidationIssue(f"{base}.kind", 'expected "patch"'))
    check_string_list(issues, f"{base}.dependsOn", task.get("dependsOn", []))
    check_string_list(
        issues, f"{base}.allowedPathPrefixes", task.get("allowedPathPrefixes"), min_items=1
    )
    check_string(issues, f"{base}.prompt", task.get("prompt"))


def _dependencies(task: dict[str, Any]) -> list[Any]:
    deps = task.get("dependsOn")
    return deps if isinstance(deps, list) else []


def validate_plan(plan: Any) -> list[ValidationIssue]:
    """Return every structural and graph issue found in ``plan``.

    Shape checks never short-circuit each other, and dependency resolution and
    cycle detection run even when other problems were already found.
    """
    issues: list[ValidationIssue] = []
    if not is_object(plan):
        return [ValidationIssue("$", "expected object")]

    if plan.get("version") != 1:
        issues.append(ValidationIssue("$.version", "expected 1"))
    check_string(issues, "$.intent", plan.get("intent"))
    if is_string(plan.get("intent")) and plan["intent"] and not plan["intent"].strip():
        issues.append(ValidationIssue("$.intent", "expected non-blank string"))

    tasks = plan.get("tasks")
    if not isinstance(tasks, list):
        issues.append(ValidationIssue("$.tasks", "expected array"))
        return issues
    if not tasks:
        issues.append(ValidationIssue("$.tasks", "expected at least 1 task"))

    seen: set[str] = set()
    for index, task in enumerate(tasks):
        base = f"$.tasks[{index}]"
        if not is_object(task):
            issues.append(ValidationIssue(base, "expected object"))
            continue
        _check_task_shape(issues, base, task)
        task_id = task.get("id")
        if is_string(task_id):
            if task_id in seen:
                issues.append(ValidationIssue(f"{base}.id", "duplicate task id"))
            seen.add(task_id)

    issues.extend(_dependency_issues(tasks))
    return issues


def _dependency_issues(tasks: list[Any]) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    by_id: dict[str, tuple[int, dict[str, Any]]] = {}
    for index, task in enumerate(tasks):
        if is_object(task) and is_string(task.get("id")) and task["id"] not in by_id:
            by_id[task["id"]] = (index, task)

    for index, task in enumerate(tasks):
        if not is_object(task) or not is_string(task.get("id")):
            continue
        for dep_index, dep in enumerate(_dependencies(task)):
            if is_string(dep) and dep not in by_id:
                issues.append(
                    ValidationIssue(f"$.tasks[{index}].dependsOn[{dep_index}]", "unknown task id")
                )

    visiting: set[str] = set()
    visited: set[str] = set()

    def visit(task_id: str) -> None:
        visiting.add(task_id)
        index, task = by_id[task_id]
        for dep_index, dep in enumerate(_dependencies(task)):
            if not is_string(dep) or dep not in by_id or dep in visited:
                continue
            if dep in visiting:
                issues.append(
                    ValidationIssue(
                        f"$.tasks[{index}].dependsOn[{dep_index}]",
                        f'cycle detected at task "{dep}"',
                    )
                )
                continue
            visit(dep)
        visiting.discard(task_id)
        visited.add(task_id)

    for task_id in by_id:
        if task_id not in visited:
            visit(task_id)
    return issues


def topological_order(tasks: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Order tasks so every task follows its dependencies.

    Traversal is depth-first over the original list order. A task reached again
    while still on the stack raises :class:`PlanCycleError`.
    """
    by_id = {task["id"]: task for task in tasks}
    visiting: set[str] = set()
    visited: set[str] = set()
    ordered: list[dict[str, Any]] = []

    def visit(task_id: str) -> None:
        if task_id in visited:
            return
        if task_id in visiting:
            raise PlanCycleError(
                "task ordering",
                [ValidationIssue("$.tasks", f'cycle detected at task "{task_id}"')],
            )
        task = by_id.get(task_id)
        if task is None:
            raise StructuralValidationError(
                "task ordering",
                [ValidationIssue("$.tasks", f'unknown task id "{task_id}"')],
            )
        visiting.add(task_id)
        for dep in _dependencies(task):
            visit(dep)
        visiting.discard(task_id)
        visited.add(task_id)
        ordered.append(task)

    for task in tasks:
        visit(task["id"])
    return ordered
