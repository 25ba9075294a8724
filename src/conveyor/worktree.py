from __future__ import annotations

import logging
import tempfile
from pathlib import Path

from conveyor.errors import ConveyorError, HelperProtocolError, WorktreeStateError
from conveyor.git import branch_exists, head_sha, is_worktree_root, run_git
from conveyor.kernel import KernelBridge

logger = logging.getLogger(__name__)

WORKTREE_DIRNAME = "conveyor-worktrees"


def run_branch(run_id: str) -> str:
    return f"conveyor/{run_id}"


def _resolved(path: Path) -> Path:
    return path.expanduser().resolve()


def is_inside(path: Path, root: Path) -> bool:
    path, root = _resolved(path), _resolved(root)
    return path == root or root in path.parents


class WorktreeManager:
    """Creates and tears down the isolated git worktree a run mutates."""

    def __init__(self, kernel: KernelBridge) -> None:
        self.kernel = kernel

    @staticmethod
    def default_path(repo_root: Path, run_id: str, worktree_root: Path | None = None) -> Path:
        root = worktree_root if worktree_root is not None else (
            Path(tempfile.gettempdir()) / WORKTREE_DIRNAME
        )
        return _resolved(root) / _resolved(repo_root).name / run_id

    def ensure(self, repo_root: Path, desired_path: Path, branch: str, base_sha: str) -> Path:
        repo_root = _resolved(repo_root)
        desired_path = _resolved(desired_path)
        if is_inside(desired_path, repo_root):
            raise WorktreeStateError(
                "Refusing to create worktree inside repo root (would recurse): "
                f"repoRoot={repo_root} worktreePath={desired_path}"
            )

        if self.kernel.supports("worktree.ensure"):
            payload = self.kernel.invoke(
                "worktree.ensure",
                {
                    "repoRoot": str(repo_root),
                    "worktreePath": str(desired_path),
                    "branch": branch,
                    "baseSha": base_sha,
                },
            )
            path = (payload or {}).get("worktreePath")
            if not isinstance(path, str) or not path:
                raise HelperProtocolError(
                    "worktree.ensure returned no worktreePath", command="worktree.ensure"
                )
            return Path(path)

        if not branch_exists(repo_root, branch):
            run_git(["branch", branch, base_sha], cwd=repo_root)
            logger.debug("created branch %s at %s", branch, base_sha)

        if desired_path.exists():
            if not is_worktree_root(desired_path):
                raise WorktreeStateError(
                    f"Worktree path exists but is not a git worktree: {desired_path}"
                )
            logger.debug("reusing worktree %s", desired_path)
            return desired_path

        desired_path.parent.mkdir(parents=True, exist_ok=True)
        run_git(["worktree", "add", str(desired_path), branch], cwd=repo_root)
        logger.debug("added worktree %s on %s", desired_path, branch)
        return desired_path

    def remove(self, repo_root: Path, path: Path) -> bool:
        """Remove the worktree; failures are logged and reported as ``False``."""
        try:
            if self.kernel.supports("worktree.remove"):
                self.kernel.invoke(
                    "worktree.remove",
                    {"repoRoot": str(repo_root), "worktreePath": str(path), "force": True},
                )
            else:
                run_git(["worktree", "remove", "--force", str(path)], cwd=repo_root)
        except ConveyorError as exc:
            logger.warning("could not remove worktree %s: %s", path, exc)
            return False
        return True

    def commit_all(self, worktree_path: Path, message: str) -> str:
        if self.kernel.supports("git.commit_all"):
            payload = self.kernel.invoke(
                "git.commit_all", {"repoRoot": str(worktree_path), "message": message}
            )
            sha = (payload or {}).get("sha")
            if not isinstance(sha, str) or not sha:
                raise HelperProtocolError(
                    "git.commit_all returned no sha", command="git.commit_all"
                )
            return sha

        run_git(["add", "-A"], cwd=worktree_path)
        run_git(["commit", "-m", message], cwd=worktree_path)
        return head_sha(worktree_path)
