"""Structural validators; each returns the full issue list instead of raising."""

from __future__ import annotations

import re
from typing import Any

from conveyor.errors import ValidationIssue

BACKENDS = ("codex", "claude")
VERIFY_MODES = ("auto", "manual")
RUN_STATUSES = ("planned", "executing", "verifying", "succeeded", "failed")
RUN_ARTIFACT_KEYS = ("planJson", "planMd", "patchesDir", "applyJson", "verifyDir", "reportMd")

# Leading alphanumeric rules out ".", ".." and option-like names.
_PATH_SEGMENT_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")


def is_object(value: Any) -> bool:
    return isinstance(value, dict)


def is_string(value: Any) -> bool:
    return isinstance(value, str)


def is_integer(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def is_path_segment(value: Any) -> bool:
    """True when ``value`` is usable verbatim as a single file name."""
    return is_string(value) and _PATH_SEGMENT_RE.fullmatch(value) is not None


def check_string(
    issues: list[ValidationIssue], path: str, value: Any, *, min_length: int = 1
) -> None:
    if not is_string(value):
        issues.append(ValidationIssue(path, "expected string"))
        return
    if len(value) < min_length:
        issues.append(ValidationIssue(path, f"expected string length >= {min_length}"))


def check_string_list(
    issues: list[ValidationIssue], path: str, value: Any, *, min_items: int = 0
) -> None:
    if not isinstance(value, list):
        issues.append(ValidationIssue(path, "expected array"))
        return
    if len(value) < min_items:
        issues.append(ValidationIssue(path, f"expected array length >= {min_items}"))
    for index, item in enumerate(value):
        check_string(issues, f"{path}[{index}]", item)


def _check_present_string(
    issues: list[ValidationIssue], path: str, container: dict[str, Any], key: str
) -> None:
    if key not in container:
        issues.append(ValidationIssue(path, "missing"))
    elif not is_string(container[key]):
        issues.append(ValidationIssue(path, "expected string"))


def validate_config(config: Any) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    if not is_object(config):
        return [ValidationIssue("$", "expected object")]

    if config.get("version") != 1:
        issues.append(ValidationIssue("$.version", "expected 1"))
    if config.get("backend") not in BACKENDS:
        issues.append(ValidationIssue("$.backend", 'expected "codex" or "claude"'))
    check_string_list(issues, "$.packs", config.get("packs"), min_items=1)
    check_string(issues, "$.created_at", config.get("created_at"))

    verify = config.get("verify")
    if not is_object(verify):
        issues.append(ValidationIssue("$.verify", "expected object"))
        return issues
    if verify.get("mode") not in VERIFY_MODES:
        issues.append(ValidationIssue("$.verify.mode", 'expected "auto" or "manual"'))
    commands = verify.get("commands")
    if commands is None:
        return issues
    if not isinstance(commands, list):
        issues.append(ValidationIssue("$.verify.commands", "expected array"))
        return issues
    for index, command in enumerate(commands):
        base = f"$.verify.commands[{index}]"
        if not is_object(command):
            issues.append(ValidationIssue(base, "expected object"))
            continue
        check_string(issues, f"{base}.name", command.get("name"))
        check_string(issues, f"{base}.command", command.get("command"))
    return issues


def validate_lock(lock: Any) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    if not is_object(lock):
        return [ValidationIssue("$", "expected object")]

    if lock.get("version") != 1:
        issues.append(ValidationIssue("$.version", "expected 1"))
    check_string(issues, "$.lockedAt", lock.get("lockedAt"))
    check_string_list(issues, "$.packs", lock.get("packs"), min_items=1)

    engine = lock.get("engine")
    if not is_object(engine):
        issues.append(ValidationIssue("$.engine", "expected object"))
    else:
        if engine.get("name") != "conveyor":
            issues.append(ValidationIssue("$.engine.name", 'expected "conveyor"'))
        if "version" in engine:
            check_string(issues, "$.engine.version", engine.get("version"))

    catalog = lock.get("catalog")
    if not is_object(catalog):
        issues.append(ValidationIssue("$.catalog", "expected object"))
    else:
        if catalog.get("type") != "embedded":
            issues.append(ValidationIssue("$.catalog.type", 'expected "embedded"'))
        check_string(issues, "$.catalog.digest", catalog.get("digest"))
        digest = catalog.get("digest")
        if is_string(digest) and digest and not digest.startswith("sha256:"):
            issues.append(ValidationIssue("$.catalog.digest", 'expected "sha256:" prefix'))
    return issues


def validate_run(run: Any) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    if not is_object(run):
        return [ValidationIssue("$", "expected object")]

    if run.get("version") != 1:
        issues.append(ValidationIssue("$.version", "expected 1"))
    check_string(issues, "$.runId", run.get("runId"))
    check_string(issues, "$.intent", run.get("intent"))
    if run.get("backend") not in BACKENDS:
        issues.append(ValidationIssue("$.backend", 'expected "codex" or "claude"'))
    check_string_list(issues, "$.packs", run.get("packs"), min_items=1)
    if run.get("status") not in RUN_STATUSES:
        issues.append(ValidationIssue("$.status", "invalid status"))
    check_string(issues, "$.startedAt", run.get("startedAt"))
    if "endedAt" in run:
        check_string(issues, "$.endedAt", run.get("endedAt"))

    base = run.get("base")
    if not is_object(base):
        issues.append(ValidationIssue("$.base", "expected object"))
    else:
        check_string(issues, "$.base.repoRoot", base.get("repoRoot"))
        _check_present_string(issues, "$.base.branch", base, "branch")
        _check_present_string(issues, "$.base.sha", base, "sha")

    worktree = run.get("worktree")
    if not is_object(worktree):
        issues.append(ValidationIssue("$.worktree", "expected object"))
    else:
        _check_present_string(issues, "$.worktree.path", worktree, "path")
        _check_present_string(issues, "$.worktree.branch", worktree, "branch")

    artifacts = run.get("artifacts")
    if not is_object(artifacts):
        issues.append(ValidationIssue("$.artifacts", "expected object"))
    else:
        for key in RUN_ARTIFACT_KEYS:
            check_string(issues, f"$.artifacts.{key}", artifacts.get(key))
    return issues


def validate_apply_result(apply_result: Any) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    if not is_object(apply_result):
        return [ValidationIssue("$", "expected object")]

    if apply_result.get("version") != 1:
        issues.append(ValidationIssue("$.version", "expected 1"))
    check_string(issues, "$.appliedAt", apply_result.get("appliedAt"))
    check_string(issues, "$.baseSha", apply_result.get("baseSha"))

    tasks = apply_result.get("tasks")
    if not isinstance(tasks, list):
        issues.append(ValidationIssue("$.tasks", "expected array"))
    else:
        for index, task in enumerate(tasks):
            base = f"$.tasks[{index}]"
            if not is_object(task):
                issues.append(ValidationIssue(base, "expected object"))
                continue
            check_string(issues, f"{base}.id", task.get("id"))
            check_string(issues, f"{base}.patchPath", task.get("patchPath"))
            if not isinstance(task.get("ok"), bool):
                issues.append(ValidationIssue(f"{base}.ok", "expected boolean"))
            if "error" in task:
                check_string(issues, f"{base}.error", task.get("error"))

    if "commit" in apply_result:
        commit = apply_result.get("commit")
        if not is_object(commit):
            issues.append(ValidationIssue("$.commit", "expected object"))
        else:
            check_string(issues, "$.commit.sha", commit.get("sha"))
            check_string(issues, "$.commit.message", commit.get("message"))
    return issues


def validate_verify_summary(summary: Any) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    if not is_object(summary):
        return [ValidationIssue("$", "expected object")]

    if summary.get("version") != 1:
        issues.append(ValidationIssue("$.version", "expected 1"))
    check_string(issues, "$.ranAt", summary.get("ranAt"))
    if not isinstance(summary.get("ok"), bool):
        issues.append(ValidationIssue("$.ok", "expected boolean"))

    commands = summary.get("commands")
    if not isinstance(commands, list):
        issues.append(ValidationIssue("$.commands", "expected array"))
        return issues

    all_ok = True
    for index, command in enumerate(commands):
        base = f"$.commands[{index}]"
        if not is_object(command):
            issues.append(ValidationIssue(base, "expected object"))
            continue
        check_string(issues, f"{base}.name", command.get("name"))
        check_string(issues, f"{base}.command", command.get("command"))
        if not isinstance(command.get("ok"), bool):
            issues.append(ValidationIssue(f"{base}.ok", "expected boolean"))
        exit_code = command.get("exitCode")
        if not is_integer(exit_code):
            issues.append(ValidationIssue(f"{base}.exitCode", "expected integer"))
        else:
            all_ok = all_ok and exit_code == 0
            if command.get("ok") is not (exit_code == 0):
                issues.append(ValidationIssue(f"{base}.ok", "does not match exitCode"))
        check_string(issues, f"{base}.outputPath", command.get("outputPath"))

    if isinstance(summary.get("ok"), bool) and summary["ok"] is not all_ok:
        issues.append(ValidationIssue("$.ok", "does not match commands"))
    return issues
