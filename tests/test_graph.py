from typing import Any

import pytest

from conveyor.errors import PlanCycleError, StructuralValidationError
from conveyor.graph import topological_order, validate_plan


def _task(task_id: str, depends_on: list[str] | None = None, **overrides: Any) -> dict[str, Any]:
    task: dict[str, Any] = {
        "id": task_id,
        "title": f"Task {task_id}",
        "kind": "patch",
        "dependsOn": depends_on or [],
        "allowedPathPrefixes": ["src/"],
        "prompt": f"Do {task_id}.",
    }
    task.update(overrides)
    return task


def _plan(*tasks: dict[str, Any]) -> dict[str, Any]:
    return {"version": 1, "intent": "Ship it", "tasks": list(tasks)}


def test_valid_plan_has_no_issues() -> None:
    plan = _plan(_task("a"), _task("b", ["a"]))

    assert validate_plan(plan) == []


def test_non_object_plan_is_single_root_issue() -> None:
    issues = validate_plan(["not", "a", "plan"])

    assert [(issue.path, issue.message) for issue in issues] == [("$", "expected object")]


def test_shape_issues_are_reported_together() -> None:
    plan = {
        "version": 2,
        "intent": "",
        "tasks": [_task("a", kind="shell", allowedPathPrefixes=[], prompt=3)],
    }

    paths = {issue.path for issue in validate_plan(plan)}

    assert "$.version" in paths
    assert "$.intent" in paths
    assert "$.tasks[0].kind" in paths
    assert "$.tasks[0].allowedPathPrefixes" in paths
    assert "$.tasks[0].prompt" in paths


def test_empty_task_list_is_rejected() -> None:
    issues = validate_plan(_plan())

    assert any(issue.path == "$.tasks" for issue in issues)


def test_duplicate_task_ids_are_flagged() -> None:
    issues = validate_plan(_plan(_task("a"), _task("a")))

    assert [(issue.path, issue.message) for issue in issues] == [
        ("$.tasks[1].id", "duplicate task id")
    ]


@pytest.mark.parametrize("task_id", ["../../escaped", "nested/id", ".", "..", "-rf", "a\n"])
def test_task_ids_must_be_single_path_segments(task_id: str) -> None:
    issues = validate_plan(_plan(_task(task_id)))

    assert ("$.tasks[0].id", "expected a single path segment of [A-Za-z0-9._-]") in [
        (issue.path, issue.message) for issue in issues
    ]


def test_task_ids_allow_dots_and_dashes() -> None:
    assert validate_plan(_plan(_task("impl-core.v2_b"))) == []


def test_unknown_dependency_is_flagged_with_position() -> None:
    issues = validate_plan(_plan(_task("a"), _task("b", ["a", "ghost"])))

    assert [(issue.path, issue.message) for issue in issues] == [
        ("$.tasks[1].dependsOn[1]", "unknown task id")
    ]


def test_cycle_is_detected_at_closing_edge() -> None:
    issues = validate_plan(_plan(_task("a", ["b"]), _task("b", ["a"])))

    assert len(issues) == 1
    assert issues[0].path == "$.tasks[1].dependsOn[0]"
    assert issues[0].message == 'cycle detected at task "a"'


def test_self_dependency_is_a_cycle() -> None:
    issues = validate_plan(_plan(_task("a", ["a"])))

    assert [issue.message for issue in issues] == ['cycle detected at task "a"']


def test_graph_checks_run_alongside_shape_errors() -> None:
    plan = _plan(_task("a", ["b"], title=""), _task("b", ["a"]))

    messages = [issue.message for issue in validate_plan(plan)]

    assert any("length" in message for message in messages)
    assert any(message.startswith("cycle detected") for message in messages)


def test_topological_order_puts_dependencies_first() -> None:
    tasks = [_task("c", ["b"]), _task("a"), _task("b", ["a"])]

    ordered = [task["id"] for task in topological_order(tasks)]

    assert ordered == ["a", "b", "c"]


def test_topological_order_keeps_independent_tasks_in_list_order() -> None:
    tasks = [_task("x"), _task("y"), _task("z")]

    assert [task["id"] for task in topological_order(tasks)] == ["x", "y", "z"]


def test_topological_order_raises_on_cycle() -> None:
    with pytest.raises(PlanCycleError, match='cycle detected at task "a"'):
        topological_order([_task("a", ["b"]), _task("b", ["a"])])


def test_topological_order_raises_on_unknown_dependency() -> None:
    with pytest.raises(StructuralValidationError, match='unknown task id "ghost"'):
        topological_order([_task("a", ["ghost"])])
