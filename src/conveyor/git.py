from __future__ import annotations

import subprocess
from pathlib import Path

from conveyor.errors import VersionControlError


def run_git(
    args: list[str],
    cwd: Path | None = None,
    *,
    input_text: str | None = None,
    check: bool = True,
) -> subprocess.CompletedProcess[str]:
    try:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=str(cwd) if cwd is not None else None,
            text=True,
            capture_output=True,
            input=input_text,
        )
    except FileNotFoundError as exc:
        raise VersionControlError("git executable not found in PATH.", args=args) from exc
    if check and proc.returncode != 0:
        stderr = proc.stderr.strip()
        raise VersionControlError(
            stderr or proc.stdout.strip() or f"git {' '.join(args)} failed",
            args=args,
            stderr=stderr,
        )
    return proc


def repo_root(cwd: Path) -> Path | None:
    try:
        proc = run_git(["rev-parse", "--show-toplevel"], cwd=cwd, check=False)
    except VersionControlError:
        return None
    if proc.returncode != 0 or not proc.stdout.strip():
        return None
    return Path(proc.stdout.strip()).resolve()


def head_sha(repo: Path) -> str:
    return run_git(["rev-parse", "HEAD"], cwd=repo).stdout.strip()


def current_branch(repo: Path) -> str:
    return run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=repo).stdout.strip()


def is_clean(repo: Path) -> bool:
    return not run_git(["status", "--porcelain"], cwd=repo).stdout.strip()


def branch_exists(repo: Path, branch: str) -> bool:
    proc = run_git(
        ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], cwd=repo, check=False
    )
    return proc.returncode == 0


def is_worktree_root(path: Path) -> bool:
    """True when ``path`` is the top level of a git working tree."""
    if not path.is_dir():
        return False
    toplevel = repo_root(path)
    return toplevel is not None and toplevel == path.resolve()
