"""JSON-over-stdio bridge to the optional ``conveyor-kernel`` helper."""

from __future__ import annotations

import json
import logging
import os
import platform
import shutil
import subprocess
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from conveyor.errors import HelperProtocolError, HelperUnavailable

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 1
HELPER_NAME = "conveyor-kernel"
REMEDIATION = (
    "Build it with:\n"
    "  cargo build --release --manifest-path crates/conveyor-kernel/Cargo.toml\n"
    "Then re-run, or set CONVEYOR_KERNEL=local to use the built-in implementation."
)


class KernelMode(str, Enum):
    AUTO = "auto"
    NATIVE = "native"
    LOCAL = "local"


_MODE_ALIASES = {
    "": KernelMode.AUTO,
    "auto": KernelMode.AUTO,
    "native": KernelMode.NATIVE,
    "rust": KernelMode.NATIVE,
    "kernel": KernelMode.NATIVE,
    "local": KernelMode.LOCAL,
    "node": KernelMode.LOCAL,
    "js": KernelMode.LOCAL,
    "python": KernelMode.LOCAL,
    "off": KernelMode.LOCAL,
    "disable": KernelMode.LOCAL,
}


def parse_mode(raw: str | None) -> KernelMode:
    """Map a ``CONVEYOR_KERNEL`` value to a mode; unknown values mean ``auto``."""
    if raw is None:
        return KernelMode.AUTO
    return _MODE_ALIASES.get(raw.strip().lower(), KernelMode.AUTO)


def binary_name() -> str:
    return f"{HELPER_NAME}.exe" if sys.platform == "win32" else HELPER_NAME


def platform_key() -> str | None:
    if sys.platform == "darwin":
        os_name = "darwin"
    elif sys.platform.startswith("linux"):
        os_name = "linux"
    elif sys.platform == "win32":
        os_name = "windows"
    else:
        return None
    machine = platform.machine().lower()
    if machine in {"x86_64", "amd64", "x64"}:
        cpu = "x64"
    elif machine in {"arm64", "aarch64"}:
        cpu = "arm64"
    else:
        return None
    return f"{os_name}-{cpu}"


@dataclass(slots=True)
class KernelInfo:
    version: int
    protocol: int
    helper_version: str
    commands: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "protocol": self.protocol,
            "helperVersion": self.helper_version,
            "commands": list(self.commands),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> KernelInfo:
        protocol = data.get("protocol")
        commands = data.get("commands")
        if not isinstance(protocol, int) or isinstance(protocol, bool):
            raise ValueError("kernel.info: protocol must be an integer")
        if not isinstance(commands, list) or not all(isinstance(c, str) for c in commands):
            raise ValueError("kernel.info: commands must be a list of strings")
        version = data.get("version", 1)
        return cls(
            version=version if isinstance(version, int) else 1,
            protocol=protocol,
            helper_version=str(data.get("helperVersion", "")),
            commands=list(commands),
        )


class KernelBridge:
    def __init__(
        self,
        mode: KernelMode = KernelMode.AUTO,
        *,
        explicit_path: str | None = None,
        bundled_root: Path | None = None,
        build_root: Path | None = None,
    ) -> None:
        self.mode = mode
        self.explicit_path = explicit_path
        self.bundled_root = bundled_root or Path(__file__).resolve().parent / "bin"
        self.build_root = build_root or Path(__file__).resolve().parents[2]
        self._resolved = False
        self._helper: tuple[str, KernelInfo] | None = None

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> KernelBridge:
        env = os.environ if env is None else env
        explicit = env.get("CONVEYOR_KERNEL_PATH", "").strip() or None
        return cls(parse_mode(env.get("CONVEYOR_KERNEL")), explicit_path=explicit)

    @property
    def binary(self) -> str | None:
        helper = self._handshake()
        return helper[0] if helper is not None else None

    def reset(self) -> None:
        self._resolved = False
        self._helper = None

    def discover(self) -> str | None:
        """Locate the helper binary; the first candidate that exists wins."""
        if self.explicit_path:
            candidate = Path(self.explicit_path).expanduser().resolve()
            if candidate.is_file():
                return str(candidate)

        key = platform_key()
        if key is not None:
            bundled = self.bundled_root / key / binary_name()
            if bundled.is_file():
                return str(bundled)

        on_path = shutil.which(HELPER_NAME)
        if on_path is not None and self._answers_version(on_path):
            return on_path

        for profile in ("release", "debug"):
            built = self.build_root / "crates" / HELPER_NAME / "target" / profile / binary_name()
            if built.is_file():
                return str(built)
        return None

    @staticmethod
    def _answers_version(binary: str) -> bool:
        try:
            proc = subprocess.run(
                [binary, "--version"],
                text=True,
                capture_output=True,
                stdin=subprocess.DEVNULL,
            )
        except OSError:
            return False
        return proc.returncode == 0

    def resolve(self) -> KernelInfo | None:
        """Discover the helper and run the ``kernel.info`` handshake once.

        Returns ``None`` when the local implementation should be used.
        """
        helper = self._handshake()
        return helper[1] if helper is not None else None

    def _handshake(self) -> tuple[str, KernelInfo] | None:
        if not self._resolved:
            self._helper = self._probe()
            self._resolved = True
        return self._helper

    def _probe(self) -> tuple[str, KernelInfo] | None:
        if self.mode is KernelMode.LOCAL:
            return None

        binary = self.discover()
        if binary is None:
            if self.mode is KernelMode.NATIVE:
                raise HelperUnavailable(
                    f"{HELPER_NAME} required (CONVEYOR_KERNEL=native) but not found. {REMEDIATION}"
                )
            logger.debug("%s not found; using the built-in implementation", HELPER_NAME)
            return None

        try:
            payload = self._call(binary, "kernel.info", {})
            info = KernelInfo.from_dict(payload)
            if info.protocol != PROTOCOL_VERSION:
                raise ValueError(
                    f"protocol {info.protocol} is not supported (expected {PROTOCOL_VERSION})"
                )
        except (HelperProtocolError, ValueError) as exc:
            if self.mode is KernelMode.NATIVE:
                raise HelperUnavailable(
                    f"{HELPER_NAME} at {binary} failed the kernel.info handshake: {exc}\n"
                    f"{REMEDIATION}"
                ) from exc
            logger.debug("%s handshake failed (%s); using the built-in implementation", binary, exc)
            return None

        logger.debug(
            "using %s %s (protocol %s) at %s",
            HELPER_NAME,
            info.helper_version,
            info.protocol,
            binary,
        )
        return binary, info

    def available(self) -> bool:
        return self.resolve() is not None

    def supports(self, command: str) -> bool:
        info = self.resolve()
        return info is not None and command in info.commands

    def invoke(self, command: str, request: Mapping[str, Any]) -> dict[str, Any] | None:
        """Run ``command`` on the helper.

        ``None`` means the caller should use its local implementation: the
        bridge is disabled, or (in auto mode) the helper does not advertise
        the verb. Failures after a successful handshake always raise.
        """
        helper = self._handshake()
        if helper is None:
            return None
        binary, info = helper
        if command not in info.commands:
            if self.mode is KernelMode.NATIVE:
                raise HelperUnavailable(
                    f"{HELPER_NAME} {info.helper_version} does not support {command}. {REMEDIATION}"
                )
            logger.debug("%s does not advertise %s; running locally", HELPER_NAME, command)
            return None
        return self._call(binary, command, request)

    @staticmethod
    def _call(binary: str, command: str, request: Mapping[str, Any]) -> dict[str, Any]:
        try:
            proc = subprocess.run(
                [binary, command],
                input=json.dumps(dict(request), ensure_ascii=False),
                text=True,
                capture_output=True,
            )
        except OSError as exc:
            raise HelperProtocolError(
                f"{HELPER_NAME} {command} could not be started: {exc}", command=command
            ) from exc

        stdout = proc.stdout.strip()
        stderr = proc.stderr.strip()
        if proc.returncode != 0:
            details = [f"{HELPER_NAME} {command} failed (exit {proc.returncode})"]
            if stderr:
                details.append(f"stderr:\n{stderr}")
            if stdout:
                details.append(f"stdout:\n{stdout}")
            raise HelperProtocolError(
                "\n\n".join(details),
                command=command,
                exit_code=proc.returncode,
                stdout=proc.stdout,
                stderr=proc.stderr,
            )

        try:
            payload = json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise HelperProtocolError(
                f"{HELPER_NAME} {command} returned non-JSON output ({exc}). Raw:\n{stdout[:2000]}",
                command=command,
                exit_code=proc.returncode,
                stdout=proc.stdout,
                stderr=proc.stderr,
            ) from exc
        if not isinstance(payload, dict):
            raise HelperProtocolError(
                f"{HELPER_NAME} {command} returned {type(payload).__name__}, expected an object",
                command=command,
                exit_code=proc.returncode,
                stdout=proc.stdout,
                stderr=proc.stderr,
            )
        return payload

    def describe(self) -> str:
        """One-line status used by ``conveyor doctor``."""
        if self.mode is KernelMode.LOCAL:
            return "disabled (CONVEYOR_KERNEL=local)"
        try:
            helper = self._handshake()
        except HelperUnavailable as exc:
            return str(exc).splitlines()[0]
        if helper is None:
            return "not found; using the built-in implementation"
        binary, info = helper
        return f"{HELPER_NAME} {info.helper_version} (protocol {info.protocol}) at {binary}"
