from __future__ import annotations

import logging
import re
import tempfile
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from conveyor.errors import (
    HelperProtocolError,
    MalformedPatch,
    OwnershipViolation,
    PatchApplyError,
    StructuralValidationError,
    ValidationIssue,
)
from conveyor.git import run_git
from conveyor.kernel import KernelBridge

logger = logging.getLogger(__name__)

_DIFF_HEADER_RE = re.compile(r"^diff --git a/(.+?) b/(.+)$")
_DRIVE_RE = re.compile(r"^[A-Za-z]:/")
_HUNK_RE = re.compile(r"^@@ -\d+(?:,(\d+))? \+\d+(?:,(\d+))? @@")
_RENAME_COPY_PREFIXES = ("rename from ", "rename to ", "copy from ", "copy to ")


@dataclass(slots=True, frozen=True)
class TouchedFile:
    path: str
    invalid: bool = False


@dataclass(slots=True)
class PatchApplyResult:
    touched_files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"touchedFiles": list(self.touched_files)}


def normalize_repo_path(path: str) -> str | None:
    """Return a clean repository-relative path, or ``None`` if it is unsafe.

    Absolute paths, drive-letter paths and any ``..`` segment are rejected.
    """
    posix = path.replace("\\", "/")
    if posix.startswith("/") or _DRIVE_RE.match(posix):
        return None
    parts: list[str] = []
    for part in posix.split("/"):
        if part == "..":
            return None
        if part in {"", "."}:
            continue
        parts.append(part)
    if not parts:
        return None
    return "/".join(parts)


def _strip_side(raw: str) -> str | None:
    """Path named by a ``---``/``+++`` line, without its ``a/``/``b/`` prefix."""
    path = raw.split("\t", 1)[0].strip()
    if path == "/dev/null":
        return None
    if path.startswith(("a/", "b/")):
        return path[2:]
    return path


def _hunk_lengths(line: str) -> tuple[int, int]:
    match = _HUNK_RE.match(line)
    if match is None:
        raise MalformedPatch(f"unreadable hunk header: {line!r}")
    old, new = match.group(1), match.group(2)
    return (1 if old is None else int(old)), (1 if new is None else int(new))


def _scan_paths(patch_text: str) -> list[str]:
    """Every path a file section of ``patch_text`` names, in order of appearance.

    Reads the ``diff --git`` line, the ``---``/``+++`` pair and the rename/copy
    headers of each section, and counts hunk lines so hunk bodies are never
    mistaken for headers. A ``---``/``+++`` pair outside a ``diff --git``
    section raises :class:`MalformedPatch`.
    """
    lines = patch_text.splitlines()
    paths: list[str] = []
    in_header = False
    old_left = new_left = 0
    index = 0
    while index < len(lines):
        line = lines[index]
        index += 1

        if old_left > 0 or new_left > 0:
            marker = line[:1]
            if marker == "\\":
                continue
            if marker in {" ", ""}:
                old_left -= 1
                new_left -= 1
                continue
            if marker == "-":
                old_left -= 1
                continue
            if marker == "+":
                new_left -= 1
                continue
            old_left = new_left = 0

        header = _DIFF_HEADER_RE.match(line)
        if header is not None:
            old_path, new_path = header.group(1), header.group(2)
            paths.append(old_path if new_path == "/dev/null" else new_path)
            if old_path not in {new_path, "/dev/null"} and new_path != "/dev/null":
                paths.append(old_path)
            in_header = True
            continue

        if line.startswith("@@") and paths:
            old_left, new_left = _hunk_lengths(line)
            in_header = False
            continue

        if in_header:
            if line.startswith(("--- ", "+++ ")):
                side = _strip_side(line[4:])
                if side is not None:
                    paths.append(side)
            elif line.startswith(_RENAME_COPY_PREFIXES):
                paths.append(line.split(" ", 2)[2])
            continue

        if line.startswith("--- ") and index < len(lines) and lines[index].startswith("+++ "):
            raise MalformedPatch(
                f'file section without a "diff --git" header: {line[4:].strip()}'
            )
    return paths


def touched_files(patch_text: str) -> list[TouchedFile]:
    """Paths ``patch_text`` would create, modify, delete, rename or copy.

    Both sides of a rename or copy are reported.
    """
    files: list[TouchedFile] = []
    seen: set[str] = set()
    for raw in _scan_paths(patch_text):
        normalized = normalize_repo_path(raw)
        if normalized is None:
            if raw not in seen:
                seen.add(raw)
                files.append(TouchedFile(raw, invalid=True))
            continue
        if normalized in seen:
            continue
        seen.add(normalized)
        files.append(TouchedFile(normalized))
    return files


def _numstat_paths(output: str) -> list[str]:
    """Parse ``git apply --numstat -z``; a rename entry carries both paths."""
    tokens = output.split("\0")
    paths: list[str] = []
    index = 0
    while index < len(tokens):
        fields = tokens[index].split("\t", 2)
        index += 1
        if len(fields) < 3:
            continue
        if fields[2]:
            paths.append(fields[2])
        else:
            paths.extend(token for token in tokens[index : index + 2] if token)
            index += 2
    return paths


def normalize_prefixes(prefixes: Iterable[str]) -> list[str]:
    normalized: list[str] = []
    for prefix in prefixes:
        cleaned = prefix.replace("\\", "/").strip().rstrip("/")
        if not cleaned:
            continue
        candidate = f"{cleaned}/"
        if candidate not in normalized:
            normalized.append(candidate)
    if not normalized:
        raise StructuralValidationError(
            "ownership configuration",
            [ValidationIssue("allowedPathPrefixes", "expected at least 1 non-blank prefix")],
        )
    return normalized


def is_authorized(path: str, prefixes: Sequence[str]) -> bool:
    return any(path == prefix[:-1] or path.startswith(prefix) for prefix in prefixes)


def ownership_violations(files: Sequence[TouchedFile], prefixes: Iterable[str]) -> list[str]:
    allowed = normalize_prefixes(prefixes)
    violations: list[str] = []
    for touched in files:
        if touched.invalid:
            violations.append(f"invalid path in patch: {touched.path}")
        elif not is_authorized(touched.path, allowed):
            violations.append(f"unauthorized path: {touched.path}")
    return violations


class PatchApplier:
    def __init__(self, kernel: KernelBridge) -> None:
        self.kernel = kernel

    def apply(
        self,
        worktree_path: Path,
        patch_text: str,
        allowed_prefixes: Sequence[str],
        *,
        patch_path: Path | None = None,
    ) -> PatchApplyResult:
        normalize_prefixes(allowed_prefixes)
        if self.kernel.supports("patch.apply"):
            return self._apply_native(worktree_path, patch_text, allowed_prefixes, patch_path)
        return self._apply_local(worktree_path, patch_text, allowed_prefixes)

    def _apply_native(
        self,
        worktree_path: Path,
        patch_text: str,
        allowed_prefixes: Sequence[str],
        patch_path: Path | None,
    ) -> PatchApplyResult:
        if patch_path is not None:
            return self._invoke_native(worktree_path, patch_path, allowed_prefixes)
        with tempfile.TemporaryDirectory(prefix="conveyor-patch-") as tmp:
            scratch = Path(tmp) / "task.diff"
            scratch.write_text(patch_text, encoding="utf-8")
            return self._invoke_native(worktree_path, scratch, allowed_prefixes)

    def _invoke_native(
        self, worktree_path: Path, patch_path: Path, allowed_prefixes: Sequence[str]
    ) -> PatchApplyResult:
        payload = self.kernel.invoke(
            "patch.apply",
            {
                "worktreePath": str(worktree_path),
                "patchPath": str(patch_path),
                "allowedPathPrefixes": list(allowed_prefixes),
            },
        )
        touched = (payload or {}).get("touchedFiles")
        if not isinstance(touched, list) or not all(isinstance(item, str) for item in touched):
            raise HelperProtocolError(
                "patch.apply returned no touchedFiles list", command="patch.apply"
            )
        return PatchApplyResult(touched_files=list(touched))

    def _apply_local(
        self, worktree_path: Path, patch_text: str, allowed_prefixes: Sequence[str]
    ) -> PatchApplyResult:
        if not patch_text.strip():
            return PatchApplyResult()

        files = touched_files(patch_text)
        if not files:
            raise MalformedPatch(
                'patch has content but no "diff --git" headers (not a unified diff?)'
            )

        violations = ownership_violations(files, allowed_prefixes)
        if violations:
            raise OwnershipViolation(violations)

        if not patch_text.endswith("\n"):
            patch_text += "\n"
        numstat = run_git(
            ["apply", "--numstat", "-z", "-"],
            cwd=worktree_path,
            input_text=patch_text,
            check=False,
        )
        if numstat.returncode != 0:
            raise PatchApplyError(numstat.stderr.strip() or "git apply --numstat failed")
        known = {touched.path for touched in files}
        unlisted: list[TouchedFile] = []
        for raw in _numstat_paths(numstat.stdout):
            normalized = normalize_repo_path(raw)
            if normalized is None:
                unlisted.append(TouchedFile(raw, invalid=True))
            elif normalized not in known:
                unlisted.append(TouchedFile(normalized))
        violations = ownership_violations(unlisted, allowed_prefixes)
        if violations:
            raise OwnershipViolation(violations)

        check = run_git(
            ["apply", "--check", "-"], cwd=worktree_path, input_text=patch_text, check=False
        )
        if check.returncode != 0:
            raise PatchApplyError(check.stderr.strip() or "git apply --check failed")
        applied = run_git(["apply", "-"], cwd=worktree_path, input_text=patch_text, check=False)
        if applied.returncode != 0:
            raise PatchApplyError(applied.stderr.strip() or "git apply failed")

        logger.debug("applied patch touching %d file(s) in %s", len(files), worktree_path)
        return PatchApplyResult(touched_files=[touched.path for touched in files])
