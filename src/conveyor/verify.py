from __future__ import annotations

import json
import logging
import re
import subprocess
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from conveyor.config import VerifyCommand, VerifyConfig
from conveyor.errors import ConveyorError, HelperProtocolError, raise_for_issues
from conveyor.kernel import KernelBridge
from conveyor.state.runs import write_json
from conveyor.validation import validate_verify_summary

logger = logging.getLogger(__name__)

AUTO_HOOKS = ("lint", "test", "build")
SUMMARY_FILENAME = "summary.json"

_SLUG_RE = re.compile(r"[^a-z0-9._-]+")
_LOCKFILE_RUNNERS = (
    ("pnpm-lock.yaml", "pnpm run"),
    ("yarn.lock", "yarn run"),
    ("bun.lockb", "bun run"),
    ("bun.lock", "bun run"),
    ("package-lock.json", "npm run"),
)
_MANAGER_RUNNERS = {"pnpm": "pnpm run", "yarn": "yarn run", "bun": "bun run", "npm": "npm run"}


def _utc_now() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def command_slug(name: str) -> str:
    slug = _SLUG_RE.sub("-", name.strip().lower()).strip("-")
    return slug or "command"


@dataclass(slots=True)
class VerifyCommandResult:
    name: str
    command: str
    ok: bool
    exit_code: int
    output_path: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "command": self.command,
            "ok": self.ok,
            "exitCode": self.exit_code,
            "outputPath": self.output_path,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VerifyCommandResult:
        return cls(
            name=str(data["name"]),
            command=str(data["command"]),
            ok=bool(data["ok"]),
            exit_code=int(data["exitCode"]),
            output_path=str(data["outputPath"]),
        )


@dataclass(slots=True)
class VerifySummary:
    ran_at: str
    ok: bool
    commands: list[VerifyCommandResult] = field(default_factory=list)
    version: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "ranAt": self.ran_at,
            "ok": self.ok,
            "commands": [command.to_dict() for command in self.commands],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VerifySummary:
        raise_for_issues(validate_verify_summary(data), "verify summary validation")
        return cls(
            version=int(data["version"]),
            ran_at=str(data["ranAt"]),
            ok=bool(data["ok"]),
            commands=[VerifyCommandResult.from_dict(item) for item in data["commands"]],
        )


def _script_runner(worktree_path: Path, manifest: dict[str, Any]) -> str:
    declared = manifest.get("packageManager")
    if isinstance(declared, str) and declared.strip():
        runner = _MANAGER_RUNNERS.get(declared.split("@", 1)[0].strip().lower())
        if runner is not None:
            return runner
    for lockfile, runner in _LOCKFILE_RUNNERS:
        if (worktree_path / lockfile).is_file():
            return runner
    return "npm run"


def detect_auto_commands(worktree_path: Path) -> list[VerifyCommand]:
    """Derive checks from ``package.json`` scripts; never invents any."""
    manifest_path = worktree_path / "package.json"
    if not manifest_path.is_file():
        return []
    try:
        manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.debug("ignoring unreadable %s: %s", manifest_path, exc)
        return []
    if not isinstance(manifest, dict):
        return []
    scripts = manifest.get("scripts")
    if not isinstance(scripts, dict):
        return []

    wanted = [
        hook for hook in AUTO_HOOKS if isinstance(scripts.get(hook), str) and scripts[hook].strip()
    ]
    if not wanted:
        return []
    runner = _script_runner(worktree_path, manifest)
    return [VerifyCommand(name=hook, command=f"{runner} {hook}") for hook in wanted]


def resolve_commands(worktree_path: Path, verify_config: VerifyConfig) -> list[VerifyCommand]:
    if verify_config.mode == "manual":
        return list(verify_config.commands)
    return detect_auto_commands(worktree_path)


class VerifyRunner:
    def __init__(self, kernel: KernelBridge) -> None:
        self.kernel = kernel

    def run(self, worktree_path: Path, verify_config: VerifyConfig, out_dir: Path) -> VerifySummary:
        out_dir.mkdir(parents=True, exist_ok=True)
        commands = resolve_commands(worktree_path, verify_config)

        if self.kernel.supports("verify.run"):
            return self._run_native(worktree_path, commands, out_dir)

        results: list[VerifyCommandResult] = []
        used: set[str] = set()
        for command in commands:
            slug = command_slug(command.name)
            candidate, counter = slug, 2
            while candidate in used:
                candidate = f"{slug}-{counter}"
                counter += 1
            used.add(candidate)
            output_path = out_dir / f"{candidate}.txt"
            exit_code = self._run_one(command, worktree_path, output_path)
            logger.debug("verify %s exited %d", command.name, exit_code)
            results.append(
                VerifyCommandResult(
                    name=command.name,
                    command=command.command,
                    ok=exit_code == 0,
                    exit_code=exit_code,
                    output_path=str(output_path),
                )
            )

        summary = VerifySummary(
            ran_at=_utc_now(),
            ok=all(result.ok for result in results),
            commands=results,
        )
        payload = summary.to_dict()
        raise_for_issues(validate_verify_summary(payload), "verify summary validation")
        write_json(out_dir / SUMMARY_FILENAME, payload)
        return summary

    @staticmethod
    def _run_one(command: VerifyCommand, worktree_path: Path, output_path: Path) -> int:
        with output_path.open("w", encoding="utf-8") as handle:
            try:
                proc = subprocess.run(
                    command.command,
                    shell=True,
                    cwd=str(worktree_path),
                    stdin=subprocess.DEVNULL,
                    stdout=handle,
                    stderr=subprocess.STDOUT,
                )
            except OSError as exc:
                raise ConveyorError(
                    f"could not start a shell for verify command {command.name!r}: {exc}"
                ) from exc
        return proc.returncode

    def _run_native(
        self, worktree_path: Path, commands: list[VerifyCommand], out_dir: Path
    ) -> VerifySummary:
        payload = self.kernel.invoke(
            "verify.run",
            {
                "worktreePath": str(worktree_path),
                "outDir": str(out_dir),
                "commands": [command.to_dict() for command in commands],
            },
        )
        if not isinstance(payload, dict) or payload.get("version") != 1:
            raise HelperProtocolError("verify.run returned invalid output", command="verify.run")
        summary = VerifySummary.from_dict(payload)
        summary_path = out_dir / SUMMARY_FILENAME
        if not summary_path.exists():
            write_json(summary_path, payload)
        return summary
