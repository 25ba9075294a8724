import subprocess
from pathlib import Path

import pytest

from conveyor.errors import VersionControlError, WorktreeStateError
from conveyor.git import branch_exists, head_sha, is_clean, is_worktree_root, repo_root, run_git
from conveyor.kernel import KernelBridge, KernelMode
from conveyor.worktree import WorktreeManager, is_inside, run_branch


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


def _manager() -> WorktreeManager:
    return WorktreeManager(KernelBridge(KernelMode.LOCAL))


def _repo(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    return repo


def test_run_branch_name() -> None:
    assert run_branch("2026-01-01-demo") == "conveyor/2026-01-01-demo"


def test_is_inside(tmp_path: Path) -> None:
    assert is_inside(tmp_path / "a" / "b", tmp_path)
    assert is_inside(tmp_path, tmp_path)
    assert not is_inside(tmp_path.parent, tmp_path)


def test_default_path_layout(tmp_path: Path) -> None:
    path = WorktreeManager.default_path(tmp_path / "myrepo", "run-1", tmp_path / "wt")

    assert path == (tmp_path / "wt" / "myrepo" / "run-1").resolve()


def test_run_git_raises_with_stderr(tmp_path: Path) -> None:
    repo = _repo(tmp_path)

    with pytest.raises(VersionControlError) as excinfo:
        run_git(["rev-parse", "does-not-exist"], cwd=repo)

    assert excinfo.value.git_args == ["rev-parse", "does-not-exist"]


def test_repo_root_outside_repository(tmp_path: Path) -> None:
    plain = tmp_path / "plain"
    plain.mkdir()

    assert repo_root(plain) is None


def test_ensure_creates_branch_and_worktree(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    sha = head_sha(repo)
    desired = tmp_path / "wt" / "repo" / "run-1"

    path = _manager().ensure(repo, desired, "conveyor/run-1", sha)

    assert path == desired.resolve()
    assert branch_exists(repo, "conveyor/run-1")
    assert is_worktree_root(path)
    assert head_sha(path) == sha
    assert (path / "README.md").read_text(encoding="utf-8") == "seed\n"


def test_ensure_is_idempotent(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    sha = head_sha(repo)
    desired = tmp_path / "wt" / "run-1"
    manager = _manager()

    first = manager.ensure(repo, desired, "conveyor/run-1", sha)
    (first / "scratch.txt").write_text("kept\n", encoding="utf-8")
    second = manager.ensure(repo, desired, "conveyor/run-1", sha)

    assert first == second
    assert (second / "scratch.txt").exists()


def test_ensure_keeps_existing_branch_where_it_is(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    first_sha = head_sha(repo)
    _run(["git", "branch", "conveyor/run-1", first_sha], cwd=repo)
    (repo / "README.md").write_text("moved on\n", encoding="utf-8")
    _run(["git", "commit", "-am", "second"], cwd=repo)
    second_sha = head_sha(repo)
    assert second_sha != first_sha

    path = _manager().ensure(repo, tmp_path / "wt" / "run-1", "conveyor/run-1", second_sha)

    assert _run(["git", "rev-parse", "conveyor/run-1"], cwd=repo) == first_sha
    assert head_sha(path) == first_sha
    assert (path / "README.md").read_text(encoding="utf-8") == "seed\n"


def test_ensure_refuses_path_inside_repo(tmp_path: Path) -> None:
    repo = _repo(tmp_path)

    with pytest.raises(WorktreeStateError, match="would recurse"):
        _manager().ensure(repo, repo / ".wt" / "run-1", "conveyor/run-1", head_sha(repo))

    assert not branch_exists(repo, "conveyor/run-1")


def test_ensure_refuses_existing_non_worktree_directory(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    desired = tmp_path / "occupied"
    desired.mkdir()
    (desired / "file.txt").write_text("x\n", encoding="utf-8")

    with pytest.raises(WorktreeStateError, match="not a git worktree"):
        _manager().ensure(repo, desired, "conveyor/run-1", head_sha(repo))


def test_commit_all_and_remove(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    base = head_sha(repo)
    manager = _manager()
    path = manager.ensure(repo, tmp_path / "wt" / "run-1", "conveyor/run-1", base)
    (path / "new.txt").write_text("new\n", encoding="utf-8")

    sha = manager.commit_all(path, "conveyor: run-1")

    assert sha != base
    assert is_clean(path)
    assert _run(["git", "log", "-1", "--format=%s", "conveyor/run-1"], cwd=repo) == "conveyor: run-1"

    assert manager.remove(repo, path) is True
    assert not path.exists()
    assert branch_exists(repo, "conveyor/run-1")


def test_remove_reports_failure_without_raising(tmp_path: Path) -> None:
    repo = _repo(tmp_path)

    assert _manager().remove(repo, tmp_path / "never-created") is False
