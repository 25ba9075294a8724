"""Markdown renderings of run artifacts, always rebuilt from the JSON on disk."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from conveyor.errors import ConveyorError, RunStateError
from conveyor.state.runs import RunPaths, read_json, write_text

logger = logging.getLogger(__name__)


def _bullets(items: list[str], indent: str = "") -> list[str]:
    if not items:
        return [f"{indent}(none)"]
    return [f"{indent}- {item}" for item in items]


def render_plan_md(plan: dict[str, Any]) -> str:
    lines = ["# Conveyor Plan", "", f"Intent: {plan['intent']}", "", "## Tasks", ""]
    for task in plan["tasks"]:
        depends_on = task.get("dependsOn") or []
        lines.extend(
            [
                f"### {task['id']}: {task['title']}",
                "",
                f"- kind: {task['kind']}",
                f"- dependsOn: {', '.join(depends_on) if depends_on else '(none)'}",
                f"- allowedPathPrefixes: {', '.join(task['allowedPathPrefixes'])}",
                "",
                "Prompt:",
                "",
                "```",
                task["prompt"].strip(),
                "```",
                "",
            ]
        )
    return "\n".join(lines)


def _load_optional(path: Path) -> dict[str, Any] | None:
    if not path.exists():
        return None
    try:
        payload = read_json(path)
    except (OSError, ConveyorError) as exc:
        logger.debug("report skips unreadable %s: %s", path, exc)
        return None
    return payload if isinstance(payload, dict) else None


def build_report(
    run: dict[str, Any],
    plan: dict[str, Any] | None,
    apply_result: dict[str, Any] | None,
    verify_summary: dict[str, Any] | None,
) -> str:
    lines = [
        "# Conveyor Run Report",
        "",
        f"- runId: `{run['runId']}`",
        f"- status: `{run['status']}`",
        f"- intent: {run['intent']}",
        f"- backend: `{run['backend']}`",
        f"- packs: {', '.join(run['packs'])}",
        f"- startedAt: {run['startedAt']}",
    ]
    if run.get("endedAt"):
        lines.append(f"- endedAt: {run['endedAt']}")

    base = run["base"]
    worktree = run["worktree"]
    lines.extend(
        [
            "",
            "## Base",
            "",
            f"- repoRoot: `{base['repoRoot']}`",
            f"- branch: `{base['branch']}`",
            f"- sha: `{base['sha']}`",
            "",
            "## Worktree",
            "",
            f"- path: `{worktree['path'] or '(not created)'}`",
            f"- branch: `{worktree['branch']}`",
            "",
            "## Plan",
            "",
        ]
    )

    if plan is None:
        lines.append("(missing plan.json)")
    else:
        lines.extend([f"Intent: {plan.get('intent', '')}", "", "Tasks:", ""])
        for task in plan.get("tasks", []):
            lines.append(f"- `{task.get('id')}`: {task.get('title')}")
            lines.append("  - allowedPathPrefixes:")
            lines.extend(_bullets(list(task.get("allowedPathPrefixes", [])), indent="    "))
    lines.extend(["", "## Apply", ""])

    if apply_result is None:
        lines.append("(missing apply/applied.json)")
    else:
        lines.extend(
            [
                f"- appliedAt: {apply_result['appliedAt']}",
                f"- baseSha: `{apply_result['baseSha']}`",
                "",
                "Tasks:",
                "",
            ]
        )
        for task in apply_result.get("tasks", []):
            lines.append(f"- `{task['id']}`: {'OK' if task['ok'] else 'FAILED'}")
            lines.append(f"  - patch: `{task['patchPath']}`")
            if task.get("error"):
                lines.append(f"  - error: {task['error']}")
        commit = apply_result.get("commit")
        if commit:
            lines.extend(["", f"Commit: `{commit['sha']}`"])
    lines.extend(["", "## Verify", ""])

    if verify_summary is None:
        lines.append("(missing verify/summary.json)")
    else:
        lines.extend(
            [
                f"- ok: {'true' if verify_summary['ok'] else 'false'}",
                f"- ranAt: {verify_summary['ranAt']}",
                "",
                "Commands:",
                "",
            ]
        )
        for command in verify_summary.get("commands", []):
            status = "OK" if command["ok"] else "FAILED"
            lines.append(f"- `{command['name']}`: {status} (exit {command['exitCode']})")
            lines.append(f"  - command: `{command['command']}`")
            lines.append(f"  - output: `{command['outputPath']}`")

    lines.extend(
        [
            "",
            "## Next Steps",
            "",
            "- Inspect the worktree path above.",
            "- If verification passed, push the worktree branch or open a pull request.",
        ]
    )
    return "\n".join(lines)


def write_report(paths: RunPaths) -> Path:
    if not paths.run_json.exists():
        raise RunStateError(f"missing run.json in {paths.root}")
    run = read_json(paths.run_json)
    report = build_report(
        run,
        _load_optional(paths.plan_json),
        _load_optional(paths.apply_json),
        _load_optional(paths.verify_summary_json),
    )
    write_text(paths.report_md, report + "\n")
    return paths.report_md
