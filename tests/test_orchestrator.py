import asyncio
import subprocess
from pathlib import Path
from typing import Any

import pytest

from conveyor.config import ConveyorConfig, VerifyCommand, VerifyConfig, create_config
from conveyor.errors import (
    ConveyorError,
    OwnershipViolation,
    RunStateError,
    StructuralValidationError,
)
from conveyor.kernel import KernelBridge, KernelMode
from conveyor.orchestrator import Orchestrator
from conveyor.providers import MockProvider, PatchRequest, PlanRequest, Provider
from conveyor.state.runs import CommitRecord, read_json, write_json


class StaticProvider(Provider):
    name = "static"

    def __init__(self, plan: dict[str, Any], patches: dict[str, str]) -> None:
        self.plan = plan
        self.patches = patches

    async def generate_plan(self, request: PlanRequest) -> dict[str, Any]:
        _ = request
        return self.plan

    async def generate_patch(self, request: PatchRequest) -> dict[str, Any]:
        return {"patch": self.patches[request.task["id"]], "meta": {}}


def _run(cmd: list[str], cwd: Path) -> str:
    proc = subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)
    return proc.stdout.strip()


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "README.md"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


def _single_task_plan(task_id: str = "only") -> dict[str, Any]:
    return {
        "version": 1,
        "intent": "static",
        "tasks": [
            {
                "id": task_id,
                "title": "Only task",
                "kind": "patch",
                "dependsOn": [],
                "allowedPathPrefixes": ["src/"],
                "prompt": "Do nothing much.",
            }
        ],
    }


def _orchestrator(
    tmp_path: Path,
    provider: Provider | None = None,
    config: ConveyorConfig | None = None,
    events: list[dict[str, Any]] | None = None,
) -> Orchestrator:
    repo = tmp_path / "repo"
    if not repo.exists():
        repo.mkdir()
        _init_git_repo(repo)
    return Orchestrator(
        repo,
        config or create_config("codex", ["forge"]),
        provider or MockProvider(),
        kernel=KernelBridge(KernelMode.LOCAL),
        worktree_root=tmp_path / "worktrees",
        event_hook=events.append if events is not None else None,
    )


def test_plan_persists_artifacts(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    orchestrator = _orchestrator(tmp_path, events=events)

    run = asyncio.run(orchestrator.plan("Add a demo file", run_id="demo"))
    paths = orchestrator.store.paths("demo")

    assert run.run_id == "demo"
    assert run.status == "planned"
    assert run.base.sha == _run(["git", "rev-parse", "HEAD"], cwd=tmp_path / "repo")
    assert read_json(paths.plan_json)["intent"] == "Add a demo file"
    assert paths.plan_md.read_text(encoding="utf-8").startswith("# Conveyor Plan")
    assert "status: `planned`" in paths.report_md.read_text(encoding="utf-8")
    assert [event["event"] for event in events] == ["run_planned"]
    assert all("at" in event for event in events)


def test_plan_makes_run_ids_unique(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path)

    first = asyncio.run(orchestrator.plan("Same intent", run_id="same"))
    second = asyncio.run(orchestrator.plan("Same intent", run_id="same"))

    assert (first.run_id, second.run_id) == ("same", "same-2")


def test_plan_rejects_blank_intent(tmp_path: Path) -> None:
    with pytest.raises(ConveyorError, match="intent must not be empty"):
        asyncio.run(_orchestrator(tmp_path).plan("   "))


def test_invalid_plan_fails_run(tmp_path: Path) -> None:
    plan = _single_task_plan()
    plan["tasks"][0]["dependsOn"] = ["only"]
    orchestrator = _orchestrator(tmp_path, provider=StaticProvider(plan, {}))

    with pytest.raises(StructuralValidationError, match="cycle detected"):
        asyncio.run(orchestrator.plan("Cyclic", run_id="cyclic"))

    run = orchestrator.store.load("cyclic")
    assert run.status == "failed"
    assert run.ended_at is not None
    assert not orchestrator.store.paths("cyclic").plan_json.exists()


def test_traversing_task_id_is_rejected_at_plan(tmp_path: Path) -> None:
    task_id = "../../../../escaped"
    provider = StaticProvider(_single_task_plan(task_id), {task_id: ""})
    orchestrator = _orchestrator(tmp_path, provider=provider)

    with pytest.raises(StructuralValidationError, match="single path segment"):
        asyncio.run(orchestrator.plan("Escape", run_id="demo"))

    assert orchestrator.store.load("demo").status == "failed"
    assert sorted(path.name for path in (tmp_path / "repo").iterdir()) == [
        ".conveyor",
        ".git",
        "README.md",
    ]
    assert list(tmp_path.rglob("escaped.diff")) == []


def test_execute_revalidates_edited_plan(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path, provider=StaticProvider(_single_task_plan(), {}))
    asyncio.run(orchestrator.plan("Static", run_id="demo"))
    plan_json = orchestrator.store.paths("demo").plan_json
    plan = read_json(plan_json)
    plan["tasks"][0]["id"] = "../../../../escaped"
    write_json(plan_json, plan)

    with pytest.raises(StructuralValidationError, match="single path segment"):
        asyncio.run(orchestrator.execute("demo"))

    assert orchestrator.store.load("demo").status == "failed"
    assert list(tmp_path.rglob("escaped.diff")) == []


def test_execute_applies_tasks_in_worktree(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    orchestrator = _orchestrator(tmp_path, events=events)
    asyncio.run(orchestrator.plan("Add a demo file", run_id="demo"))

    outcome = asyncio.run(orchestrator.execute("demo"))

    worktree = outcome.worktree_path
    assert worktree == (tmp_path / "worktrees" / "repo" / "demo").resolve()
    assert (worktree / "src" / "conveyor-demo.txt").exists()
    assert (worktree / "tests" / "conveyor-demo.txt").exists()
    assert not (tmp_path / "repo" / "src").exists()
    assert outcome.run.status == "executing"
    assert outcome.verify_summary is None

    applied = read_json(orchestrator.store.paths("demo").apply_json)
    assert [(task["id"], task["ok"]) for task in applied["tasks"]] == [
        ("impl-core", True),
        ("tests-core", True),
    ]
    assert orchestrator.store.paths("demo").patch_file("impl-core").exists()
    assert [event["event"] for event in events].count("task_applied") == 2


def test_execute_blocks_unauthorized_patch(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path, provider=MockProvider("unauthorized"))
    asyncio.run(orchestrator.plan("Touch the readme", run_id="bad"))

    with pytest.raises(OwnershipViolation, match="unauthorized path: README.md"):
        asyncio.run(orchestrator.execute("bad"))

    run = orchestrator.store.load("bad")
    applied = read_json(orchestrator.store.paths("bad").apply_json)
    assert run.status == "failed"
    assert applied["tasks"][0]["ok"] is False
    assert "unauthorized path: README.md" in applied["tasks"][0]["error"]
    report = orchestrator.store.paths("bad").report_md.read_text(encoding="utf-8")
    assert "FAILED" in report


def test_execute_requires_planned_run(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path)
    asyncio.run(orchestrator.plan("Add a demo file", run_id="demo"))
    asyncio.run(orchestrator.execute("demo"))

    with pytest.raises(RunStateError, match="exec requires a planned run"):
        asyncio.run(orchestrator.execute("demo"))


def test_verify_without_commit_keeps_worktree(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path)
    asyncio.run(orchestrator.plan("Add a demo file", run_id="demo"))
    outcome = asyncio.run(orchestrator.execute("demo"))

    summary = orchestrator.verify("demo")

    run = orchestrator.store.load("demo")
    assert summary.ok is True
    assert run.status == "succeeded"
    assert outcome.worktree_path.exists()
    assert orchestrator.store.load_apply_result("demo").commit is None
    assert orchestrator.store.paths("demo").verify_summary_json.exists()


def test_verify_refuses_finished_run(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path)
    asyncio.run(orchestrator.run("Add a demo file", run_id="demo"))

    with pytest.raises(RunStateError, match="already finished"):
        orchestrator.verify("demo")


def test_run_with_commit_records_sha_and_removes_worktree(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    orchestrator = _orchestrator(tmp_path, events=events)

    summary = asyncio.run(orchestrator.run("Add a demo file", run_id="demo", commit=True))

    assert summary.ok
    assert summary.run.status == "succeeded"
    assert summary.run.worktree.path == ""
    assert not summary.worktree_path.exists()
    commit = summary.apply_result.commit
    assert commit is not None
    assert commit.message == "conveyor: demo"
    repo = tmp_path / "repo"
    assert _run(["git", "rev-parse", "conveyor/demo"], cwd=repo) == commit.sha
    files = [
        line
        for line in _run(["git", "show", "--name-only", "--format=", commit.sha], cwd=repo).splitlines()
        if line
    ]
    assert sorted(files) == ["src/conveyor-demo.txt", "tests/conveyor-demo.txt"]
    assert events[-1]["event"] == "run_finished"
    assert events[-1]["status"] == "succeeded"


def test_run_with_commit_and_keep_worktree(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path)

    summary = asyncio.run(
        orchestrator.run("Add a demo file", run_id="demo", commit=True, keep_worktree=True)
    )

    assert summary.worktree_path.exists()
    assert summary.run.worktree.path == str(summary.worktree_path)


def test_commit_skipped_when_nothing_changed(tmp_path: Path) -> None:
    provider = StaticProvider(_single_task_plan(), {"only": ""})
    orchestrator = _orchestrator(tmp_path, provider=provider)

    summary = asyncio.run(orchestrator.run("Nothing", run_id="noop", commit=True))

    assert summary.run.status == "succeeded"
    assert summary.apply_result.commit is None
    assert summary.worktree_path.exists()


def test_failed_verification_fails_run(tmp_path: Path) -> None:
    config = create_config("codex", ["forge"])
    config.verify = VerifyConfig(
        mode="manual",
        commands=[VerifyCommand("smoke", "echo ok"), VerifyCommand("broken", "exit 3")],
    )
    orchestrator = _orchestrator(tmp_path, config=config)

    summary = asyncio.run(orchestrator.run("Add a demo file", run_id="demo", commit=True))

    assert not summary.ok
    assert not summary.verify_summary.ok
    assert summary.run.status == "failed"
    assert summary.apply_result.commit is None
    report = orchestrator.store.paths("demo").report_md.read_text(encoding="utf-8")
    assert "- `broken`: FAILED (exit 3)" in report


def test_verify_recreates_committed_worktree(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path)
    asyncio.run(orchestrator.plan("Add a demo file", run_id="demo"))
    outcome = asyncio.run(orchestrator.execute("demo"))
    sha = orchestrator.worktrees.commit_all(outcome.worktree_path, "manual commit")
    apply_result = orchestrator.store.load_apply_result("demo")
    assert apply_result is not None
    apply_result.commit = CommitRecord(sha=sha, message="manual commit")
    orchestrator.store.save_apply_result("demo", apply_result)
    orchestrator.worktrees.remove(tmp_path / "repo", outcome.worktree_path)

    summary = orchestrator.verify("demo")

    assert summary.ok
    assert (outcome.worktree_path / "src" / "conveyor-demo.txt").exists()


def test_verify_without_worktree_or_commit_fails(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path)
    asyncio.run(orchestrator.plan("Add a demo file", run_id="demo"))
    outcome = asyncio.run(orchestrator.execute("demo"))
    orchestrator.worktrees.remove(tmp_path / "repo", outcome.worktree_path)

    with pytest.raises(RunStateError, match="missing worktree"):
        orchestrator.verify("demo")

    assert orchestrator.store.load("demo").status == "failed"
