from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from conveyor.config import ConveyorConfig
from conveyor.errors import (
    ConveyorError,
    ProviderError,
    RunStateError,
    raise_for_issues,
)
from conveyor.git import current_branch, head_sha, is_clean, repo_root
from conveyor.graph import topological_order, validate_plan
from conveyor.kernel import KernelBridge
from conveyor.patches import PatchApplier
from conveyor.providers.base import PatchRequest, PlanRequest, Provider
from conveyor.state.ids import default_run_id, ensure_unique_run_id
from conveyor.state.report import render_plan_md, write_report
from conveyor.state.runs import (
    ApplyResult,
    CommitRecord,
    Run,
    RunBase,
    RunStore,
    TaskApplyRecord,
    read_json,
    write_json,
    write_text,
)
from conveyor.verify import VerifyRunner, VerifySummary
from conveyor.worktree import WorktreeManager

logger = logging.getLogger(__name__)


def _utc_now() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class ExecOutcome:
    run: Run
    worktree_path: Path
    apply_result: ApplyResult
    verify_summary: VerifySummary | None = None


@dataclass(slots=True)
class RunSummary:
    run: Run
    worktree_path: Path
    apply_result: ApplyResult
    verify_summary: VerifySummary

    @property
    def ok(self) -> bool:
        return self.run.status == "succeeded"


class Orchestrator:
    def __init__(
        self,
        project_root: Path,
        config: ConveyorConfig,
        provider: Provider,
        *,
        kernel: KernelBridge,
        worktree_root: Path | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.project_root = project_root.resolve()
        self.config = config
        self.provider = provider
        self.kernel = kernel
        self.worktree_root = worktree_root
        self.event_hook = event_hook
        self.store = RunStore(self.project_root)
        self.worktrees = WorktreeManager(kernel)
        self.patches = PatchApplier(kernel)
        self.verifier = VerifyRunner(kernel)

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            payload.setdefault("at", _utc_now())
            self.event_hook(payload)

    def _fail(self, run: Run) -> None:
        if not run.is_terminal:
            self.store.transition(run, "failed")
        write_report(self.store.paths(run.run_id))
        self._emit({"event": "run_finished", "run_id": run.run_id, "status": run.status})

    def _require_repo(self) -> Path:
        root = repo_root(self.project_root)
        if root is None:
            raise ConveyorError(f"{self.project_root} is not inside a git repository")
        return root

    def _capture_base(self) -> RunBase:
        root = repo_root(self.project_root)
        if root is None:
            return RunBase(repo_root=str(self.project_root))
        return RunBase(repo_root=str(root), branch=current_branch(root), sha=head_sha(root))

    def _load_plan(self, run_id: str) -> dict[str, Any]:
        plan_json = self.store.paths(run_id).plan_json
        if not plan_json.exists():
            raise RunStateError(f"missing plan.json (run `conveyor plan` first): {plan_json}")
        plan = read_json(plan_json)
        raise_for_issues(validate_plan(plan), "plan validation")
        return plan

    async def plan(self, intent: str, run_id: str | None = None) -> Run:
        if not intent.strip():
            raise ConveyorError("intent must not be empty")
        base_id = run_id or default_run_id(intent)
        unique_id = ensure_unique_run_id(self.store.runs_dir, base_id)
        run = self.store.create(
            unique_id, intent, self.config.backend, self.config.packs, self._capture_base()
        )
        paths = self.store.paths(unique_id)

        try:
            plan = await self.provider.generate_plan(
                PlanRequest(intent=intent, repo_root=self.project_root, packs=list(run.packs))
            )
            raise_for_issues(validate_plan(plan), "plan validation")
            write_json(paths.plan_json, plan)
            write_text(paths.plan_md, render_plan_md(plan))
        except Exception:
            self._fail(run)
            raise

        write_report(paths)
        logger.info("planned run %s with %d task(s)", unique_id, len(plan["tasks"]))
        self._emit({"event": "run_planned", "run_id": unique_id, "tasks": len(plan["tasks"])})
        return run

    async def execute(
        self, run_id: str, *, commit: bool = False, keep_worktree: bool = False
    ) -> ExecOutcome:
        run = self.store.load(run_id)
        if run.status != "planned":
            raise RunStateError(f"Run {run_id} is {run.status}; exec requires a planned run")
        paths = self.store.paths(run_id)

        try:
            plan = self._load_plan(run_id)
            repo = self._require_repo()
            base_sha = run.base.sha or head_sha(repo)
            existing = Path(run.worktree.path) if run.worktree.path else None
            desired = (
                existing
                if existing is not None and existing.exists()
                else self.worktrees.default_path(repo, run_id, self.worktree_root)
            )
            worktree_path = self.worktrees.ensure(repo, desired, run.worktree.branch, base_sha)
            run.worktree.path = str(worktree_path)
            self.store.transition(run, "executing")

            apply_result = ApplyResult(applied_at=_utc_now(), base_sha=base_sha)
            self.store.save_apply_result(run_id, apply_result)
            for task in topological_order(plan["tasks"]):
                await self._apply_task(run, task, worktree_path, apply_result)
            write_report(paths)
        except Exception:
            self._fail(run)
            raise

        outcome = ExecOutcome(run=run, worktree_path=worktree_path, apply_result=apply_result)
        if commit:
            outcome.verify_summary = self.verify(
                run_id, commit=True, keep_worktree=keep_worktree
            )
            outcome.run = self.store.load(run_id)
            outcome.apply_result = self.store.load_apply_result(run_id) or apply_result
        return outcome

    async def _apply_task(
        self,
        run: Run,
        task: dict[str, Any],
        worktree_path: Path,
        apply_result: ApplyResult,
    ) -> None:
        task_id = task["id"]
        patch_path = self.store.paths(run.run_id).patch_file(task_id)

        def record(ok: bool, error: str | None = None) -> None:
            apply_result.tasks.append(
                TaskApplyRecord(id=task_id, patch_path=str(patch_path), ok=ok, error=error)
            )
            self.store.save_apply_result(run.run_id, apply_result)

        try:
            output = await self.provider.generate_patch(
                PatchRequest(
                    task=task,
                    repo_root=worktree_path,
                    packs=list(run.packs),
                    worktree_path=worktree_path,
                )
            )
            patch = output.get("patch") if isinstance(output, dict) else None
            if not isinstance(patch, str):
                raise ProviderError(f"provider returned non-string patch for task: {task_id}")
            write_text(patch_path, patch if patch.endswith("\n") else patch + "\n")
            result = self.patches.apply(
                worktree_path, patch, task["allowedPathPrefixes"], patch_path=patch_path
            )
        except ConveyorError as exc:
            record(False, str(exc))
            logger.info("task %s failed: %s", task_id, exc)
            self._emit({"event": "task_failed", "run_id": run.run_id, "task_id": task_id})
            raise

        record(True)
        logger.info("task %s applied (%d file(s))", task_id, len(result.touched_files))
        self._emit(
            {
                "event": "task_applied",
                "run_id": run.run_id,
                "task_id": task_id,
                "touched_files": list(result.touched_files),
            }
        )

    def _worktree_for_verify(self, run: Run) -> Path:
        if run.worktree.path and Path(run.worktree.path).exists():
            return Path(run.worktree.path)
        apply_result = self.store.load_apply_result(run.run_id)
        if apply_result is None or apply_result.commit is None:
            raise RunStateError(
                "verify: missing worktree and changes were not committed. "
                f"Re-run: conveyor exec {run.run_id} (or use --commit to persist changes)."
            )
        repo = self._require_repo()
        worktree_path = self.worktrees.ensure(
            repo,
            self.worktrees.default_path(repo, run.run_id, self.worktree_root),
            run.worktree.branch,
            run.base.sha or head_sha(repo),
        )
        run.worktree.path = str(worktree_path)
        self.store.save(run)
        return worktree_path

    def verify(
        self, run_id: str, *, commit: bool = False, keep_worktree: bool = False
    ) -> VerifySummary:
        run = self.store.load(run_id)
        if run.is_terminal:
            raise RunStateError(f"Run {run_id} already finished with status {run.status}")
        if run.status != "executing":
            raise RunStateError(f"Run {run_id} is {run.status}; verify requires an executed run")
        paths = self.store.paths(run_id)

        try:
            worktree_path = self._worktree_for_verify(run)
            self.store.transition(run, "verifying")
            write_report(paths)
            summary = self.verifier.run(worktree_path, self.config.verify, paths.verify_dir)
        except Exception:
            self._fail(run)
            raise

        self._emit(
            {
                "event": "verify_finished",
                "run_id": run_id,
                "ok": summary.ok,
                "commands": len(summary.commands),
            }
        )
        if not summary.ok:
            self.store.transition(run, "failed")
            write_report(paths)
            logger.info("verification failed for run %s", run_id)
            self._emit({"event": "run_finished", "run_id": run_id, "status": run.status})
            return summary

        committed = False
        if commit:
            try:
                committed = self._commit(run, worktree_path)
            except Exception:
                self._fail(run)
                raise

        self.store.transition(run, "succeeded")
        if committed and not keep_worktree:
            repo = repo_root(self.project_root)
            if repo is not None and self.worktrees.remove(repo, worktree_path):
                run.worktree.path = ""
                self.store.save(run)
        write_report(paths)
        self._emit({"event": "run_finished", "run_id": run_id, "status": run.status})
        return summary

    def _commit(self, run: Run, worktree_path: Path) -> bool:
        if is_clean(worktree_path):
            logger.info("run %s changed nothing; skipping commit", run.run_id)
            return False
        message = f"conveyor: {run.run_id}"
        sha = self.worktrees.commit_all(worktree_path, message)
        apply_result = self.store.load_apply_result(run.run_id) or ApplyResult(
            applied_at=_utc_now(), base_sha=run.base.sha or sha
        )
        apply_result.commit = CommitRecord(sha=sha, message=message)
        self.store.save_apply_result(run.run_id, apply_result)
        logger.info("committed run %s as %s", run.run_id, sha)
        return True

    async def run(
        self,
        intent: str,
        *,
        run_id: str | None = None,
        commit: bool = False,
        keep_worktree: bool = False,
    ) -> RunSummary:
        planned = await self.plan(intent, run_id=run_id)
        outcome = await self.execute(planned.run_id)
        summary = self.verify(planned.run_id, commit=commit, keep_worktree=keep_worktree)
        return RunSummary(
            run=self.store.load(planned.run_id),
            worktree_path=outcome.worktree_path,
            apply_result=self.store.load_apply_result(planned.run_id) or outcome.apply_result,
            verify_summary=summary,
        )
