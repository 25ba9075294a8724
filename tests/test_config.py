import json
import tomllib
from pathlib import Path

import pytest

from conveyor import __version__
from conveyor.catalog import compute_digest, default_packs, load_packs, unknown_packs
from conveyor.config import (
    ConveyorConfig,
    VerifyCommand,
    VerifyConfig,
    create_config,
    dumps_toml,
    load_config,
    save_config,
)
from conveyor.errors import ConveyorError, StructuralValidationError
from conveyor.lock import read_lock, write_lock


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / ".conveyor" / "conveyor.toml"
    config = create_config("claude", ["forge", "proof"])
    config.verify = VerifyConfig(
        mode="manual",
        commands=[
            VerifyCommand("unit", "pytest -q"),
            VerifyCommand("lint", 'ruff check "src"'),
        ],
    )

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded == config
    assert loaded.verify.commands[1].command == 'ruff check "src"'


def test_toml_dump_layout() -> None:
    config = ConveyorConfig(
        backend="codex",
        packs=["forge"],
        created_at="2026-01-01T00:00:00+00:00",
        verify=VerifyConfig(mode="manual", commands=[VerifyCommand("t", "make test")]),
    )

    rendered = dumps_toml(config)

    assert rendered.splitlines()[:4] == [
        "version = 1",
        'backend = "codex"',
        'packs = ["forge"]',
        'created_at = "2026-01-01T00:00:00+00:00"',
    ]
    assert "[verify]\nmode = \"manual\"" in rendered
    assert "[[verify.commands]]" in rendered
    assert tomllib.loads(rendered)["verify"]["commands"] == [{"name": "t", "command": "make test"}]


def test_auto_mode_omits_command_tables() -> None:
    rendered = dumps_toml(create_config("codex", ["forge"]))

    assert "[[verify.commands]]" not in rendered
    assert tomllib.loads(rendered)["verify"] == {"mode": "auto"}


def test_load_config_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConveyorError, match="conveyor init"):
        load_config(tmp_path / "conveyor.toml")


def test_load_config_reports_all_issues(tmp_path: Path) -> None:
    config_path = tmp_path / "conveyor.toml"
    config_path.write_text(
        'version = 2\nbackend = "gpt"\npacks = []\ncreated_at = "x"\n\n[verify]\nmode = "auto"\n',
        encoding="utf-8",
    )

    with pytest.raises(StructuralValidationError) as excinfo:
        load_config(config_path)

    assert {issue.path for issue in excinfo.value.issues} == {"$.version", "$.backend", "$.packs"}


def test_load_config_rejects_invalid_toml(tmp_path: Path) -> None:
    config_path = tmp_path / "conveyor.toml"
    config_path.write_text("backend = \n", encoding="utf-8")

    with pytest.raises(StructuralValidationError, match="invalid TOML"):
        load_config(config_path)


def test_save_config_refuses_invalid_config(tmp_path: Path) -> None:
    config = create_config("codex", [])

    with pytest.raises(StructuralValidationError):
        save_config(tmp_path / "conveyor.toml", config)

    assert not (tmp_path / "conveyor.toml").exists()


def test_embedded_catalog() -> None:
    packs = load_packs()

    assert [pack.id for pack in packs] == sorted(default_packs())
    assert all(pack.name and pack.description for pack in packs)
    assert unknown_packs(["forge", "nope"]) == ["nope"]


def test_catalog_digest_is_stable() -> None:
    digest = compute_digest()

    assert digest.startswith("sha256:")
    assert len(digest) == len("sha256:") + 64
    assert compute_digest() == digest


def test_registry_lock_write_and_keep(tmp_path: Path) -> None:
    lock_path = tmp_path / "locks" / "registry.lock.json"

    assert write_lock(lock_path, ["forge"]) is True
    first = lock_path.read_text(encoding="utf-8")
    assert write_lock(lock_path, ["proof"], overwrite=False) is False
    assert lock_path.read_text(encoding="utf-8") == first

    lock = read_lock(lock_path)
    payload = json.loads(first)
    assert lock.packs == ["forge"]
    assert lock.digest == compute_digest()
    assert payload["engine"] == {"name": "conveyor", "version": __version__}
    assert payload["catalog"]["type"] == "embedded"


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
