"""Error taxonomy for provisioning, preconditions and Terraform failures."""
from __future__ import annotations

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .retry import TransientSignature


class HarnessError(Exception):
    """Base class for all harness errors."""


class ProvisioningError(HarnessError):
    """A setup step failed before apply."""

    def __init__(self, step: str, message: str) -> None:
        super().__init__(f"{step}: {message}")
        self.step = step


class PreconditionError(HarnessError):
    """A required external precondition is missing. Never retried."""


class ToolError(HarnessError):
    """Terraform exited non-zero with an unrecognized failure."""

    def __init__(self, command: str, exit_code: int, output: str) -> None:
        super().__init__(f"{command} failed with exit code {exit_code}: {_tail(output)}")
        self.command = command
        self.exit_code = exit_code
        self.output = output


class TransientToolError(ToolError):
    """Terraform failure matching a known transient signature."""

    def __init__(
        self,
        command: str,
        exit_code: int,
        output: str,
        signature: Optional["TransientSignature"] = None,
    ) -> None:
        super().__init__(command, exit_code, output)
        self.signature = signature


class TeardownError(HarnessError):
    """Teardown failed after an otherwise successful run."""

    def __init__(self, failures: list) -> None:
        descriptions = "; ".join(f"{item.description}: {item.error}" for item in failures)
        super().__init__(f"{len(failures)} teardown step(s) failed: {descriptions}")
        self.failures = failures


def _tail(output: str, lines: int = 20) -> str:
    """Keep exception messages readable for long Terraform logs."""
    parts = output.strip().splitlines()
    if len(parts) <= lines:
        return "\n".join(parts)
    return "\n".join(["..."] + parts[-lines:])
