from __future__ import annotations

import platform
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from conveyor.catalog import default_packs, unknown_packs
from conveyor.config import (
    DEFAULT_BACKEND,
    BackendName,
    ConveyorConfig,
    create_config,
    load_config,
    save_config,
)
from conveyor.errors import ConveyorError, HelperUnavailable
from conveyor.git import is_clean, repo_root
from conveyor.kernel import KernelBridge
from conveyor.lock import read_lock, write_lock
from conveyor.state.runs import write_text
from conveyor.validation import BACKENDS

STATE_DIRNAME = ".conveyor"
GITIGNORE_CONTENT = "\n".join(
    ["# Conveyor runtime artifacts (do not commit)", "runs/", "cache/", "tmp/", ""]
)


@dataclass(slots=True, frozen=True)
class ProjectPaths:
    project_root: Path

    @property
    def state_dir(self) -> Path:
        return self.project_root / STATE_DIRNAME

    @property
    def config(self) -> Path:
        return self.state_dir / "conveyor.toml"

    @property
    def locks_dir(self) -> Path:
        return self.state_dir / "locks"

    @property
    def registry_lock(self) -> Path:
        return self.locks_dir / "registry.lock.json"

    @property
    def gitignore(self) -> Path:
        return self.state_dir / ".gitignore"

    def relative(self, path: Path) -> str:
        try:
            return str(path.relative_to(self.project_root))
        except ValueError:
            return str(path)


@dataclass(slots=True)
class InitResult:
    config: ConveyorConfig
    config_path: Path
    created: bool
    lock_written: bool


@dataclass(slots=True)
class HealthCheck:
    name: str
    ok: bool
    detail: str = ""


@dataclass(slots=True)
class HealthReport:
    checks: list[HealthCheck] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(check.ok for check in self.checks)


def resolve_project_root(cwd: Path) -> Path:
    return repo_root(cwd) or cwd.resolve()


def initialize(
    project_root: Path,
    backend: BackendName | None = None,
    packs: list[str] | None = None,
) -> InitResult:
    """Create ``.conveyor/`` state; safe to run repeatedly."""
    backend = backend or DEFAULT_BACKEND
    if backend not in BACKENDS:
        raise ConveyorError('init: backend must be "codex" or "claude"')
    selected = packs or default_packs()
    unknown = unknown_packs(selected)
    if unknown:
        raise ConveyorError(f"Unknown packs: {', '.join(unknown)}")

    paths = ProjectPaths(project_root)
    created = not paths.config.exists()
    if created:
        config = create_config(backend, selected)
        save_config(paths.config, config)
    else:
        config = load_config(paths.config)

    write_text(paths.gitignore, GITIGNORE_CONTENT)
    paths.locks_dir.mkdir(parents=True, exist_ok=True)
    lock_written = write_lock(paths.registry_lock, config.packs, overwrite=False)
    return InitResult(
        config=config, config_path=paths.config, created=created, lock_written=lock_written
    )


def _probe_version(binary: str) -> HealthCheck:
    try:
        proc = subprocess.run(
            [binary, "--version"], text=True, capture_output=True, stdin=subprocess.DEVNULL
        )
    except OSError as exc:
        return HealthCheck(binary, False, str(exc))
    if proc.returncode != 0:
        return HealthCheck(binary, False, proc.stderr.strip() or f"exit {proc.returncode}")
    return HealthCheck(binary, True, proc.stdout.strip())


def health_check(project_root: Path, kernel: KernelBridge) -> HealthReport:
    report = HealthReport()
    checks = report.checks
    paths = ProjectPaths(project_root)

    checks.append(HealthCheck("python", True, platform.python_version()))

    try:
        kernel.resolve()
        checks.append(HealthCheck("kernel", True, kernel.describe()))
    except HelperUnavailable as exc:
        checks.append(HealthCheck("kernel", False, str(exc)))

    git_check = _probe_version("git")
    checks.append(git_check)
    root = repo_root(project_root) if git_check.ok else None
    checks.append(HealthCheck("repo", root is not None, str(root) if root else "not a git repo"))
    if root is not None:
        try:
            clean = is_clean(root)
            checks.append(HealthCheck("clean", clean, "clean" if clean else "dirty"))
        except ConveyorError as exc:
            checks.append(HealthCheck("clean", False, str(exc)))

    checks.append(_probe_version("codex"))
    checks.append(_probe_version("claude"))

    config: ConveyorConfig | None = None
    if paths.config.exists():
        try:
            config = load_config(paths.config)
            checks.append(
                HealthCheck("conveyor", True, f"initialized ({paths.relative(paths.config)})")
            )
        except ConveyorError as exc:
            checks.append(HealthCheck("conveyor", False, str(exc)))
    else:
        checks.append(HealthCheck("conveyor", False, "not initialized (run: conveyor init)"))

    if config is not None:
        unknown = unknown_packs(config.packs)
        if unknown:
            checks.append(HealthCheck("packs", False, f"Unknown packs: {', '.join(unknown)}"))
        else:
            checks.append(HealthCheck("packs", True, ", ".join(config.packs)))

    if paths.registry_lock.exists():
        try:
            read_lock(paths.registry_lock)
            checks.append(HealthCheck("lock", True, paths.relative(paths.registry_lock)))
        except ConveyorError as exc:
            checks.append(HealthCheck("lock", False, str(exc)))
    else:
        checks.append(
            HealthCheck("lock", False, f"missing ({paths.relative(paths.registry_lock)})")
        )
    return report
