from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class ValidationIssue:
    path: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"path": self.path, "message": self.message}


class ConveyorError(RuntimeError):
    """Base class for every failure raised by the engine."""


class StructuralValidationError(ConveyorError):
    """Raised once with every shape/type violation found in a document."""

    def __init__(self, label: str, issues: Sequence[ValidationIssue]) -> None:
        self.label = label
        self.issues = list(issues)
        lines = "\n".join(f"- {issue.path}: {issue.message}" for issue in self.issues)
        super().__init__(f"{label} failed:\n{lines}")


class PlanCycleError(StructuralValidationError):
    """Raised when ordering a task graph that contains a cycle."""


class OwnershipViolation(ConveyorError):
    """Raised when a patch touches unauthorized or unsafe paths."""

    def __init__(self, violations: Sequence[str]) -> None:
        self.violations = list(violations)
        details = "\n- ".join(self.violations)
        super().__init__(f"patch ownership check failed:\n- {details}")


class MalformedPatch(ConveyorError):
    """Raised when a non-empty patch has no recognizable diff headers."""


class PatchApplyError(ConveyorError):
    """Raised when git refuses a patch during the dry run or the real apply."""


class WorktreeStateError(ConveyorError):
    """Raised when a worktree path is unsafe or not a valid worktree."""


class HelperUnavailable(ConveyorError):
    """Raised when the native helper is required but cannot be used."""


class HelperProtocolError(ConveyorError):
    """Raised when the native helper exits non-zero or emits non-JSON output."""

    def __init__(
        self,
        message: str,
        *,
        command: str,
        exit_code: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class VersionControlError(ConveyorError):
    """Raised when a wrapped git invocation fails."""

    def __init__(self, message: str, *, args: Sequence[str] = (), stderr: str = "") -> None:
        super().__init__(message)
        self.git_args = list(args)
        self.stderr = stderr


class ProviderError(ConveyorError):
    """Raised when a provider cannot be built or returns unusable output."""


class RunStateError(ConveyorError):
    """Raised on duplicate runs, unknown runs and illegal status transitions."""


def raise_for_issues(issues: Sequence[ValidationIssue], label: str = "validation") -> None:
    if issues:
        raise StructuralValidationError(label, issues)
