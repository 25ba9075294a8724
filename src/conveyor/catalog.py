from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from importlib import resources
from importlib.resources.abc import Traversable
from typing import Any

DEFAULT_PACKS = ("blueprint", "forge", "proof", "sentinel")


@dataclass(slots=True)
class Pack:
    id: str
    name: str
    description: str = ""
    tags: list[str] = field(default_factory=list)
    modules: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Pack:
        return cls(
            id=str(data.get("id", "")).strip(),
            name=str(data.get("name", "")).strip(),
            description=str(data.get("description", "")).strip(),
            tags=[tag for tag in data.get("tags", []) if isinstance(tag, str)],
            modules=[module for module in data.get("modules", []) if isinstance(module, str)],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "tags": list(self.tags),
            "modules": list(self.modules),
        }


def _package_root() -> Traversable:
    return resources.files("conveyor")


def _list_files(directory: str, suffix: str) -> list[tuple[str, Traversable]]:
    folder = _package_root().joinpath(directory)
    if not folder.is_dir():
        return []
    entries = [
        (f"{directory}/{entry.name}", entry)
        for entry in folder.iterdir()
        if entry.is_file() and entry.name.endswith(suffix)
    ]
    return sorted(entries, key=lambda item: item[0])


def load_packs() -> list[Pack]:
    packs = [
        Pack.from_dict(json.loads(entry.read_text(encoding="utf-8")))
        for _, entry in _list_files("packs", ".json")
    ]
    return sorted(packs, key=lambda pack: pack.id)


def known_pack_ids() -> set[str]:
    return {pack.id for pack in load_packs()}


def default_packs() -> list[str]:
    return list(DEFAULT_PACKS)


def unknown_packs(pack_ids: list[str]) -> list[str]:
    known = known_pack_ids()
    return [pack_id for pack_id in pack_ids if pack_id not in known]


def compute_digest() -> str:
    """Digest of every embedded pack definition and prompt template."""
    digest = hashlib.sha256()
    files = _list_files("packs", ".json") + _list_files("prompts", ".md")
    for relative, entry in sorted(files, key=lambda item: item[0]):
        digest.update(relative.encode("utf-8"))
        digest.update(b"\n")
        digest.update(entry.read_bytes())
        digest.update(b"\n")
    return f"sha256:{digest.hexdigest()}"
