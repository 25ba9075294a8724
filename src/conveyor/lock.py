from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from conveyor import __version__
from conveyor.catalog import compute_digest
from conveyor.errors import raise_for_issues
from conveyor.state.runs import read_json, write_json
from conveyor.validation import validate_lock

ENGINE_NAME = "conveyor"


@dataclass(slots=True)
class RegistryLock:
    locked_at: str
    digest: str
    packs: list[str] = field(default_factory=list)
    engine_version: str = __version__
    version: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "lockedAt": self.locked_at,
            "engine": {"name": ENGINE_NAME, "version": self.engine_version},
            "catalog": {"type": "embedded", "digest": self.digest},
            "packs": list(self.packs),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RegistryLock:
        raise_for_issues(validate_lock(data), "registry lock validation")
        return cls(
            version=data["version"],
            locked_at=data["lockedAt"],
            digest=data["catalog"]["digest"],
            packs=list(data["packs"]),
            engine_version=str(data["engine"].get("version", "")),
        )


def build_lock(packs: list[str]) -> RegistryLock:
    lock = RegistryLock(
        locked_at=datetime.now(UTC).replace(microsecond=0).isoformat(),
        digest=compute_digest(),
        packs=list(packs),
    )
    raise_for_issues(validate_lock(lock.to_dict()), "registry lock validation")
    return lock


def write_lock(path: Path, packs: list[str], *, overwrite: bool = True) -> bool:
    """Write the registry lock; returns ``False`` when an existing lock was kept."""
    if not overwrite and path.exists():
        return False
    write_json(path, build_lock(packs).to_dict())
    return True


def read_lock(path: Path) -> RegistryLock:
    return RegistryLock.from_dict(read_json(path))
