from __future__ import annotations

import json
from importlib import resources
from importlib.resources.abc import Traversable
from typing import Any

from conveyor.errors import ProviderError
from conveyor.providers.base import PatchRequest, PlanRequest, Provider

DEFAULT_FIXTURE = "basic"


class MockProvider(Provider):
    """Deterministic provider replaying packaged fixtures."""

    name = "mock"

    def __init__(self, fixture: str = DEFAULT_FIXTURE) -> None:
        self.fixture = fixture.strip() or DEFAULT_FIXTURE

    def _root(self) -> Traversable:
        return resources.files("conveyor") / "providers" / "fixtures" / self.fixture

    async def generate_plan(self, request: PlanRequest) -> dict[str, Any]:
        plan_file = self._root().joinpath("plan.json")
        if not plan_file.is_file():
            raise ProviderError(f"mock fixture {self.fixture!r} has no plan.json")
        plan = json.loads(plan_file.read_text(encoding="utf-8"))
        plan["intent"] = request.intent.strip() or plan.get("intent") or "intent"
        return plan

    async def generate_patch(self, request: PatchRequest) -> dict[str, Any]:
        task_id = request.task.get("id")
        patch_file = self._root() / "patches" / f"{task_id}.diff"
        if not patch_file.is_file():
            raise ProviderError(f"mock fixture {self.fixture!r} has no patch for task {task_id}")
        return {
            "patch": patch_file.read_text(encoding="utf-8"),
            "meta": {"provider": self.name, "fixture": self.fixture},
        }
