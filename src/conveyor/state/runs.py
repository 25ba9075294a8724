from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from conveyor.errors import ConveyorError, RunStateError, raise_for_issues
from conveyor.validation import is_path_segment, validate_apply_result, validate_run
from conveyor.worktree import run_branch

RUNS_SUBDIR = Path(".conveyor") / "runs"
TERMINAL_STATUSES = frozenset({"succeeded", "failed"})
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "planned": frozenset({"executing", "failed"}),
    "executing": frozenset({"verifying", "failed"}),
    "verifying": frozenset({"succeeded", "failed"}),
    "succeeded": frozenset(),
    "failed": frozenset(),
}


def _utc_now() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as handle:
            handle.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def write_json(path: Path, payload: Any) -> None:
    write_text(path, json.dumps(payload, ensure_ascii=False, indent=2) + "\n")


def read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConveyorError(f"{path} is not valid JSON: {exc}") from exc


@dataclass(slots=True, frozen=True)
class RunPaths:
    root: Path

    @property
    def intent_txt(self) -> Path:
        return self.root / "intent.txt"

    @property
    def run_json(self) -> Path:
        return self.root / "run.json"

    @property
    def plan_json(self) -> Path:
        return self.root / "plan.json"

    @property
    def plan_md(self) -> Path:
        return self.root / "plan.md"

    @property
    def patches_dir(self) -> Path:
        return self.root / "patches"

    @property
    def apply_dir(self) -> Path:
        return self.root / "apply"

    @property
    def apply_json(self) -> Path:
        return self.apply_dir / "applied.json"

    @property
    def verify_dir(self) -> Path:
        return self.root / "verify"

    @property
    def verify_summary_json(self) -> Path:
        return self.verify_dir / "summary.json"

    @property
    def report_md(self) -> Path:
        return self.root / "report.md"

    def patch_file(self, task_id: str) -> Path:
        if not is_path_segment(task_id):
            raise RunStateError(f"Task id is not a safe file name: {task_id!r}")
        return self.patches_dir / f"{task_id}.diff"


@dataclass(slots=True)
class RunBase:
    repo_root: str
    branch: str = ""
    sha: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"repoRoot": self.repo_root, "branch": self.branch, "sha": self.sha}


@dataclass(slots=True)
class RunWorktree:
    branch: str
    path: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"path": self.path, "branch": self.branch}


@dataclass(slots=True)
class Run:
    run_id: str
    intent: str
    backend: str
    packs: list[str]
    status: str
    base: RunBase
    worktree: RunWorktree
    artifacts: dict[str, str]
    started_at: str
    ended_at: str | None = None
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "version": self.version,
            "runId": self.run_id,
            "intent": self.intent,
            "backend": self.backend,
            "packs": list(self.packs),
            "status": self.status,
            "base": self.base.to_dict(),
            "worktree": self.worktree.to_dict(),
            "artifacts": dict(self.artifacts),
            "startedAt": self.started_at,
        }
        if self.ended_at is not None:
            data["endedAt"] = self.ended_at
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Run:
        raise_for_issues(validate_run(data), "run validation")
        return cls(
            version=data["version"],
            run_id=data["runId"],
            intent=data["intent"],
            backend=data["backend"],
            packs=list(data["packs"]),
            status=data["status"],
            base=RunBase(
                repo_root=data["base"]["repoRoot"],
                branch=data["base"]["branch"],
                sha=data["base"]["sha"],
            ),
            worktree=RunWorktree(
                path=data["worktree"]["path"], branch=data["worktree"]["branch"]
            ),
            artifacts=dict(data["artifacts"]),
            started_at=data["startedAt"],
            ended_at=data.get("endedAt"),
        )


@dataclass(slots=True)
class TaskApplyRecord:
    id: str
    patch_path: str
    ok: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "patchPath": self.patch_path, "ok": self.ok}
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass(slots=True)
class CommitRecord:
    sha: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"sha": self.sha, "message": self.message}


@dataclass(slots=True)
class ApplyResult:
    applied_at: str
    base_sha: str
    tasks: list[TaskApplyRecord] = field(default_factory=list)
    commit: CommitRecord | None = None
    version: int = 1

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "version": self.version,
            "appliedAt": self.applied_at,
            "baseSha": self.base_sha,
            "tasks": [task.to_dict() for task in self.tasks],
        }
        if self.commit is not None:
            data["commit"] = self.commit.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ApplyResult:
        raise_for_issues(validate_apply_result(data), "apply result validation")
        commit = data.get("commit")
        return cls(
            version=data["version"],
            applied_at=data["appliedAt"],
            base_sha=data["baseSha"],
            tasks=[
                TaskApplyRecord(
                    id=task["id"],
                    patch_path=task["patchPath"],
                    ok=task["ok"],
                    error=task.get("error"),
                )
                for task in data["tasks"]
            ],
            commit=CommitRecord(sha=commit["sha"], message=commit["message"]) if commit else None,
        )


class RunStore:
    """Owns ``.conveyor/runs/<runId>/`` and the run status state machine."""

    def __init__(self, project_root: Path) -> None:
        self.project_root = project_root.resolve()
        self.runs_dir = self.project_root / RUNS_SUBDIR

    def paths(self, run_id: str) -> RunPaths:
        if not is_path_segment(run_id):
            raise RunStateError(f"Invalid run id: {run_id!r}")
        return RunPaths(self.runs_dir / run_id)

    def exists(self, run_id: str) -> bool:
        return self.paths(run_id).run_json.exists()

    def create(
        self,
        run_id: str,
        intent: str,
        backend: str,
        packs: list[str],
        base: RunBase,
    ) -> Run:
        paths = self.paths(run_id)
        if self.exists(run_id):
            raise RunStateError(f"Run already exists: {run_id}")
        for directory in (paths.root, paths.patches_dir, paths.apply_dir, paths.verify_dir):
            directory.mkdir(parents=True, exist_ok=True)
        write_text(paths.intent_txt, intent + "\n")

        run = Run(
            run_id=run_id,
            intent=intent,
            backend=backend,
            packs=list(packs),
            status="planned",
            base=base,
            worktree=RunWorktree(branch=run_branch(run_id)),
            artifacts={
                "planJson": str(paths.plan_json),
                "planMd": str(paths.plan_md),
                "patchesDir": str(paths.patches_dir),
                "applyJson": str(paths.apply_json),
                "verifyDir": str(paths.verify_dir),
                "reportMd": str(paths.report_md),
            },
            started_at=_utc_now(),
        )
        self.save(run)
        return run

    def load(self, run_id: str) -> Run:
        run_json = self.paths(run_id).run_json
        if not run_json.exists():
            raise RunStateError(f"Run not found: {run_id}")
        return Run.from_dict(read_json(run_json))

    def save(self, run: Run) -> None:
        payload = run.to_dict()
        raise_for_issues(validate_run(payload), "run validation")
        write_json(self.paths(run.run_id).run_json, payload)

    def transition(self, run: Run, status: str) -> Run:
        allowed = ALLOWED_TRANSITIONS.get(run.status, frozenset())
        if status not in allowed:
            raise RunStateError(
                f"Run {run.run_id} cannot move from {run.status!r} to {status!r}"
            )
        run.status = status
        if status in TERMINAL_STATUSES:
            run.ended_at = _utc_now()
        self.save(run)
        return run

    def load_apply_result(self, run_id: str) -> ApplyResult | None:
        path = self.paths(run_id).apply_json
        if not path.exists():
            return None
        return ApplyResult.from_dict(read_json(path))

    def save_apply_result(self, run_id: str, result: ApplyResult) -> None:
        payload = result.to_dict()
        raise_for_issues(validate_apply_result(payload), "apply result validation")
        write_json(self.paths(run_id).apply_json, payload)
