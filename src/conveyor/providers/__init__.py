from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

from conveyor.errors import ProviderError
from conveyor.providers.base import PatchRequest, PlanRequest, Provider
from conveyor.providers.claude import ClaudeProvider
from conveyor.providers.codex import CodexProvider
from conveyor.providers.mock import DEFAULT_FIXTURE, MockProvider


def get_provider(
    backend: str,
    env: Mapping[str, str] | None = None,
    working_directory: Path | None = None,
) -> Provider:
    """Build the provider for ``backend``; ``CONVEYOR_PROVIDER`` overrides it."""
    env = os.environ if env is None else env
    override = env.get("CONVEYOR_PROVIDER", "").strip().lower()
    name = override or backend
    if name == "mock":
        return MockProvider(env.get("CONVEYOR_FIXTURE", DEFAULT_FIXTURE))
    if name == "codex":
        return CodexProvider(working_directory=working_directory)
    if name == "claude":
        return ClaudeProvider(working_directory=working_directory)
    if override:
        raise ProviderError(f"Unknown CONVEYOR_PROVIDER: {override}")
    raise ProviderError(f"Unknown backend: {backend}")


__all__ = [
    "ClaudeProvider",
    "CodexProvider",
    "MockProvider",
    "PatchRequest",
    "PlanRequest",
    "Provider",
    "get_provider",
]
