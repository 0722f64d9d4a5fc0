"""cdndeploy exception hierarchy.

Resolver and ledger errors are never caught locally; they bubble up to the
pipeline, which tags them with the failing stage.
"""

from __future__ import annotations

from typing import Sequence


class DeployError(Exception):
    """Base exception for all cdndeploy errors."""


class CycleError(DeployError):
    """A file is reachable from itself through its own dependency chain."""

    def __init__(self, path: Sequence[str], offender: str) -> None:
        self.path = list(path)
        self.offender = offender
        super().__init__(
            f"Circular dependency detected, which is not supported: {self.path} "
            f"detected in adding {offender}"
        )


class ResolveError(DeployError):
    """A relative specifier points outside the deploy root or at a missing file."""


class StoreError(DeployError):
    """Object store failure."""


class TransientStoreError(StoreError):
    """Metadata/ACL call failure; retried by the uploader."""


class BenignConflictError(StoreError):
    """Upload refused because the object already exists (earlier interrupted run)."""


class UnclassifiedCommandError(DeployError):
    """Any other external command failure. Fatal for the run."""

    def __init__(
        self,
        cmd: Sequence[str] | str,
        *,
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
        message: str | None = None,
    ) -> None:
        self.cmd = cmd if isinstance(cmd, str) else " ".join(cmd)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        if message is None:
            message = f"Command failed: {self.cmd}\nSTDOUT:\n{stdout}\nSTDERR:\n{stderr}"
        super().__init__(message)
