"""Custom exceptions for kvm-install-vm."""

from __future__ import annotations

from typing import Optional, Sequence


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors.

    ``stage`` is filled in by the provisioning pipeline with the name of the
    stage the error escaped from.
    """

    stage: Optional[str] = None

    def describe(self) -> str:
        if self.stage:
            return f"[{self.stage}] {self}"
        return str(self)


class NotConnectedError(ManagerError):
    """The hypervisor connection is missing or could not be opened."""


class NotFoundError(ManagerError):
    """A domain or distribution profile does not exist."""


class ExternalToolError(ManagerError):
    """An external tool exited non-zero or could not be executed."""

    def __init__(
        self,
        message: str,
        cmd: Optional[Sequence[str]] = None,
        returncode: Optional[int] = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.cmd = list(cmd) if cmd else []
        self.returncode = returncode
        self.stderr = stderr


class TransferError(ManagerError):
    """Network or HTTP status failure while downloading."""


class IntegrityError(ManagerError):
    """Image verification reported corruption."""


class FilesystemError(ManagerError):
    """Create/write/remove failure on local storage."""


class PreconditionError(ManagerError):
    """An operation was requested in a state that forbids it."""


class HypervisorError(ManagerError):
    """A libvirt call failed for a reason other than a missing domain."""


class IllegalTransitionError(ManagerError):
    """A domain lifecycle transition outside the allowed set was requested."""


class DomainOperationError(ManagerError):
    """Create or destroy failed; ``last_state`` is the lifecycle state reached."""

    def __init__(self, message: str, last_state=None) -> None:
        super().__init__(message)
        self.last_state = last_state

    def describe(self) -> str:
        if self.last_state is None:
            return super().describe()
        return f"{super().describe()} (last state: {self.last_state})"
