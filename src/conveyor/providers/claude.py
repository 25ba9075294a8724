from __future__ import annotations

import logging
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


class ClaudeProvider(Provider):
    name = "claude"

    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def build_command(self, prompt: str) -> list[str]:
        return [self.binary, "-p", prompt, "--output-format", "json"]

    @staticmethod
    def _extract_result(stdout: str) -> str:
        envelope = parse_json_document(stdout, source="claude")
        if envelope.get("is_error"):
            raise ProviderError(f"claude reported an error: {envelope.get('result', '')}")
        result = envelope.get("result")
        if not isinstance(result, str):
            raise ProviderError("claude output has no string `result` field")
        return result

    async def _run_json(self, repo_root: Path, prompt: str) -> dict[str, Any]:
        logger.debug("running %s -p (%d prompt chars)", self.binary, len(prompt))
        stdout = await run_agent(
            self.build_command(prompt),
            cwd=self.working_directory or repo_root,
            source="claude -p",
        )
        return parse_json_document(self._extract_result(stdout), source="claude")

    async def generate_plan(self, request: PlanRequest) -> dict[str, Any]:
        return await self._run_json(request.repo_root, build_plan_prompt(request))

    async def generate_patch(self, request: PatchRequest) -> dict[str, Any]:
        return await self._run_json(request.repo_root, build_patch_prompt(request))
