from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from conveyor.errors import (
    ConveyorError,
    StructuralValidationError,
    ValidationIssue,
    raise_for_issues,
)
from conveyor.validation import validate_config

BackendName = Literal["codex", "claude"]
VerifyMode = Literal["auto", "manual"]

DEFAULT_BACKEND: BackendName = "codex"


@dataclass(slots=True)
class VerifyCommand:
    name: str
    command: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "command": self.command}


@dataclass(slots=True)
class VerifyConfig:
    mode: VerifyMode = "auto"
    commands: list[VerifyCommand] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VerifyConfig:
        return cls(
            mode=data.get("mode", "auto"),
            commands=[
                VerifyCommand(name=item["name"], command=item["command"])
                for item in data.get("commands", [])
            ],
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"mode": self.mode}
        if self.commands:
            data["commands"] = [command.to_dict() for command in self.commands]
        return data


@dataclass(slots=True)
class ConveyorConfig:
    backend: BackendName = DEFAULT_BACKEND
    packs: list[str] = field(default_factory=list)
    created_at: str = ""
    verify: VerifyConfig = field(default_factory=VerifyConfig)
    version: int = 1

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConveyorConfig:
        raise_for_issues(validate_config(data), "config validation")
        return cls(
            version=data["version"],
            backend=data["backend"],
            packs=list(data["packs"]),
            created_at=data["created_at"],
            verify=VerifyConfig.from_dict(data["verify"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "backend": self.backend,
            "packs": list(self.packs),
            "created_at": self.created_at,
            "verify": self.verify.to_dict(),
        }


def create_config(backend: BackendName, packs: list[str]) -> ConveyorConfig:
    return ConveyorConfig(
        backend=backend,
        packs=list(packs),
        created_at=datetime.now(UTC).replace(microsecond=0).isoformat(),
    )


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ConveyorConfig) -> str:
    data = config.to_dict()
    verify = data.pop("verify")
    lines = [f"{key} = {_toml_value(value)}" for key, value in data.items()]
    lines.append("")
    lines.append("[verify]")
    lines.append(f"mode = {_toml_value(verify['mode'])}")
    for command in verify.get("commands", []):
        lines.append("")
        lines.append("[[verify.commands]]")
        for key, value in command.items():
            lines.append(f"{key} = {_toml_value(value)}")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ConveyorConfig:
    if not path.exists():
        raise ConveyorError(f"{path} not found. Run `conveyor init` first.")
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise StructuralValidationError(
            "config validation", [ValidationIssue("$", f"invalid TOML: {exc}")]
        ) from exc
    return ConveyorConfig.from_dict(data)


def save_config(path: Path, config: ConveyorConfig) -> None:
    raise_for_issues(validate_config(config.to_dict()), "config validation")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
