from __future__ import annotations

import asyncio
import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from importlib import resources
from pathlib import Path
from typing import Any

from conveyor.errors import ProviderError

_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n(.*?)\n```\s*$", re.DOTALL)


@dataclass(slots=True)
class PlanRequest:
    intent: str
    repo_root: Path
    packs: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PatchRequest:
    task: dict[str, Any]
    repo_root: Path
    packs: list[str] = field(default_factory=list)
    worktree_path: Path | None = None


class Provider(ABC):
    """Source of plans and patches.

    Implementations return raw decoded JSON; callers validate the result.
    """

    name: str = "provider"

    @abstractmethod
    async def generate_plan(self, request: PlanRequest) -> dict[str, Any]:
        """Return a plan document for ``request.intent``."""

    @abstractmethod
    async def generate_patch(self, request: PatchRequest) -> dict[str, Any]:
        """Return ``{"patch": <unified diff>, "meta": {...}}`` for one task."""


def load_template(name: str) -> str:
    return (resources.files("conveyor") / "prompts" / name).read_text(encoding="utf-8")


def _now() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def build_plan_prompt(request: PlanRequest) -> str:
    return "\n".join(
        [
            load_template("plan.md").rstrip(),
            "",
            "## Caller Input",
            f"generatedAt: {_now()}",
            f"projectRoot: {request.repo_root}",
            f"packs: {', '.join(request.packs)}",
            f"intent: {request.intent.strip()}",
            "",
            "Return JSON only.",
        ]
    )


def build_patch_prompt(request: PatchRequest) -> str:
    task = request.task
    summary = {"id": task.get("id"), "title": task.get("title"), "prompt": task.get("prompt")}
    prefixes = task.get("allowedPathPrefixes") or []
    return "\n".join(
        [
            load_template("patch.md").rstrip(),
            "",
            "## Caller Input",
            f"generatedAt: {_now()}",
            f"projectRoot: {request.repo_root}",
            f"packs: {', '.join(request.packs)}",
            f"task: {json.dumps(summary, ensure_ascii=False, indent=2)}",
            f"allowedPathPrefixes: {', '.join(prefixes)}",
            "",
            "Patch rules:",
            '- If patch is non-empty, it must be a raw unified diff starting with "diff --git".',
            "- Do not wrap diffs in code fences.",
            "",
            "Return JSON only.",
        ]
    )


def parse_json_document(raw: str, *, source: str) -> dict[str, Any]:
    """Decode the single JSON object an agent returned, tolerating a code fence."""
    text = raw.strip()
    fenced = _FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1).strip()
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise ProviderError(
                f"{source} output is not valid JSON ({exc}). Raw:\n{raw[:2000]}"
            ) from exc
        try:
            payload = json.loads(text[start : end + 1])
        except json.JSONDecodeError as inner:
            raise ProviderError(
                f"{source} output is not valid JSON ({inner}). Raw:\n{raw[:2000]}"
            ) from inner
    if not isinstance(payload, dict):
        raise ProviderError(f"{source} returned {type(payload).__name__}, expected an object")
    return payload


async def run_agent(
    command: list[str],
    *,
    cwd: Path | None,
    input_text: str | None = None,
    source: str,
) -> str:
    """Run an agent CLI to completion and return its stdout."""
    stdin = asyncio.subprocess.PIPE if input_text is not None else asyncio.subprocess.DEVNULL
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(cwd) if cwd else None,
            stdin=stdin,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise ProviderError(f"{source} binary not found: {command[0]}") from exc

    stdin_bytes = input_text.encode("utf-8") if input_text is not None else None
    stdout_bytes, stderr_bytes = await process.communicate(stdin_bytes)
    stdout = stdout_bytes.decode("utf-8", errors="replace").rstrip()
    stderr = stderr_bytes.decode("utf-8", errors="replace").rstrip()
    if process.returncode != 0:
        details = [f"{source} failed (exit {process.returncode})"]
        if stdout:
            details.append(f"stdout:\n{stdout}")
        if stderr:
            details.append(f"stderr:\n{stderr}")
        raise ProviderError("\n\n".join(details))
    return stdout
