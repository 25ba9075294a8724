from typing import Any

import pytest

from conveyor.errors import StructuralValidationError, ValidationIssue, raise_for_issues
from conveyor.validation import (
    validate_apply_result,
    validate_config,
    validate_lock,
    validate_run,
    validate_verify_summary,
)


def _paths(issues: list[ValidationIssue]) -> set[str]:
    return {issue.path for issue in issues}


def _run_document(**overrides: Any) -> dict[str, Any]:
    run: dict[str, Any] = {
        "version": 1,
        "runId": "2026-01-01-demo",
        "intent": "demo",
        "backend": "codex",
        "packs": ["forge"],
        "status": "planned",
        "startedAt": "2026-01-01T00:00:00+00:00",
        "base": {"repoRoot": "/repo", "branch": "main", "sha": "abc"},
        "worktree": {"path": "", "branch": "conveyor/2026-01-01-demo"},
        "artifacts": {
            "planJson": "plan.json",
            "planMd": "plan.md",
            "patchesDir": "patches",
            "applyJson": "apply/applied.json",
            "verifyDir": "verify",
            "reportMd": "report.md",
        },
    }
    run.update(overrides)
    return run


def test_config_accepts_minimal_document() -> None:
    config = {
        "version": 1,
        "backend": "claude",
        "packs": ["forge"],
        "created_at": "2026-01-01T00:00:00+00:00",
        "verify": {"mode": "auto"},
    }

    assert validate_config(config) == []


def test_config_reports_every_problem() -> None:
    config = {
        "version": 3,
        "backend": "gpt",
        "packs": [],
        "verify": {"mode": "sometimes", "commands": [{"name": "", "command": 1}]},
    }

    paths = _paths(validate_config(config))

    assert {
        "$.version",
        "$.backend",
        "$.packs",
        "$.created_at",
        "$.verify.mode",
        "$.verify.commands[0].name",
        "$.verify.commands[0].command",
    } <= paths


def test_lock_requires_sha256_digest() -> None:
    lock = {
        "version": 1,
        "lockedAt": "2026-01-01T00:00:00+00:00",
        "engine": {"name": "conveyor", "version": "0.3.0"},
        "catalog": {"type": "embedded", "digest": "md5:abc"},
        "packs": ["forge"],
    }

    issues = validate_lock(lock)

    assert [(issue.path, issue.message) for issue in issues] == [
        ("$.catalog.digest", 'expected "sha256:" prefix')
    ]


def test_run_document_round_trip_shape() -> None:
    assert validate_run(_run_document()) == []


def test_run_rejects_unknown_status_and_missing_artifacts() -> None:
    run = _run_document(status="paused")
    del run["artifacts"]["reportMd"]
    del run["base"]["sha"]

    paths = _paths(validate_run(run))

    assert paths == {"$.status", "$.artifacts.reportMd", "$.base.sha"}


def test_apply_result_checks_task_entries_and_commit() -> None:
    apply_result = {
        "version": 1,
        "appliedAt": "2026-01-01T00:00:00+00:00",
        "baseSha": "abc",
        "tasks": [{"id": "a", "patchPath": "p.diff", "ok": "yes"}],
        "commit": {"sha": "", "message": "m"},
    }

    paths = _paths(validate_apply_result(apply_result))

    assert paths == {"$.tasks[0].ok", "$.commit.sha"}


def test_verify_summary_ok_must_match_exit_codes() -> None:
    summary = {
        "version": 1,
        "ranAt": "2026-01-01T00:00:00+00:00",
        "ok": True,
        "commands": [
            {
                "name": "test",
                "command": "exit 3",
                "ok": True,
                "exitCode": 3,
                "outputPath": "verify/test.txt",
            }
        ],
    }

    messages = {(issue.path, issue.message) for issue in validate_verify_summary(summary)}

    assert ("$.commands[0].ok", "does not match exitCode") in messages
    assert ("$.ok", "does not match commands") in messages


def test_verify_summary_rejects_boolean_exit_code() -> None:
    summary = {
        "version": 1,
        "ranAt": "now",
        "ok": True,
        "commands": [
            {"name": "t", "command": "c", "ok": True, "exitCode": False, "outputPath": "o"}
        ],
    }

    assert "$.commands[0].exitCode" in _paths(validate_verify_summary(summary))


def test_raise_for_issues_lists_every_issue() -> None:
    issues = [ValidationIssue("$.a", "expected string"), ValidationIssue("$.b", "missing")]

    with pytest.raises(StructuralValidationError) as excinfo:
        raise_for_issues(issues, "demo validation")

    message = str(excinfo.value)
    assert message.startswith("demo validation failed:")
    assert "- $.a: expected string" in message
    assert "- $.b: missing" in message
    assert excinfo.value.issues == issues


def test_raise_for_issues_is_silent_without_issues() -> None:
    raise_for_issues([], "nothing")
