from __future__ import annotations

import logging
import tempfile
from importlib import resources
from pathlib import Path
from typing import Any

from conveyor.errors import ProviderError
from conveyor.providers.base import (
    PatchRequest,
    PlanRequest,
    Provider,
    build_patch_prompt,
    build_plan_prompt,
    parse_json_document,
    run_agent,
)

logger = logging.getLogger(__name__)


class CodexProvider(Provider):
    name = "codex"

    def __init__(self, binary: str = "codex", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def build_command(self, repo_root: Path, schema_path: Path, output_path: Path) -> list[str]:
        return [
            self.binary,
            "exec",
            "--sandbox",
            "read-only",
            "--skip-git-repo-check",
            "--cd",
            str(repo_root),
            "--output-schema",
            str(schema_path),
            "--output-last-message",
            str(output_path),
            "-",
        ]

    async def _run_json(self, repo_root: Path, prompt: str, schema_name: str) -> dict[str, Any]:
        schema = resources.files("conveyor") / "schemas" / schema_name
        with resources.as_file(schema) as schema_path, tempfile.TemporaryDirectory(
            prefix="conveyor-codex-"
        ) as tmp:
            output_path = Path(tmp) / "last-message.json"
            command = self.build_command(repo_root, schema_path, output_path)
            logger.debug("running %s exec with schema %s", self.binary, schema_name)
            await run_agent(
                command,
                cwd=self.working_directory or repo_root,
                input_text=prompt,
                source="codex exec",
            )
            if not output_path.exists():
                raise ProviderError("codex exec did not write --output-last-message file")
            raw = output_path.read_text(encoding="utf-8")
        return parse_json_document(raw, source="codex")

    async def generate_plan(self, request: PlanRequest) -> dict[str, Any]:
        return await self._run_json(
            request.repo_root, build_plan_prompt(request), "plan.schema.json"
        )

    async def generate_patch(self, request: PatchRequest) -> dict[str, Any]:
        return await self._run_json(
            request.repo_root, build_patch_prompt(request), "patch.schema.json"
        )
