"""Error taxonomy for FFU builds."""

from typing import Any, List, Optional, Sequence


class FFUBuildError(Exception):
    """Base class for every error raised by ffubuilder."""


class ValidationError(FFUBuildError, ValueError):
    """Bad build parameters, detected before any resource was created."""

    def __init__(self, message: str, errors: Optional[Sequence[str]] = None):
        self.errors: List[str] = list(errors) if errors else [message]
        super().__init__(message)


class ProviderUnavailableError(FFUBuildError):
    """The hypervisor platform is not installed or not running."""

    def __init__(self, provider: str, detail: str):
        self.provider = provider
        self.detail = detail
        super().__init__(f"Hypervisor provider '{provider}' is unavailable: {detail}")


class ProvisioningError(FFUBuildError):
    """VM or disk creation failed part-way through."""


class OperationTimeoutError(ProvisioningError):
    """A provider call or external command exceeded its time bound."""

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} did not complete within {timeout:g}s")


class VMNotFoundError(ProvisioningError):
    """The VM backing an operation has disappeared."""

    def __init__(self, vm_name: str):
        self.vm_name = vm_name
        super().__init__(f"Virtual machine not found: {vm_name}")


class ExternalToolError(FFUBuildError):
    """An external tool (DISM, diskpart, vmrun, PowerShell) exited non-zero."""

    def __init__(self, command: Sequence[str], returncode: int, stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        tail = stderr.strip().splitlines()[-1] if stderr.strip() else ""
        msg = f"{self.command[0] if self.command else '<empty>'} exited with code {returncode}"
        if tail:
            msg += f": {tail}"
        super().__init__(msg)


class StepFailedError(FFUBuildError):
    """A pluggable build step (drivers, updates, media) reported failure."""

    def __init__(self, step: str, detail: str = ""):
        self.step = step
        super().__init__(f"Step '{step}' failed" + (f": {detail}" if detail else ""))


class CleanupError(FFUBuildError):
    """A registered teardown action failed."""

    def __init__(self, action: Any, cause: BaseException):
        self.action = action
        self.cause = cause
        super().__init__(f"Cleanup of {action} failed: {cause}")


class InvalidStateTransition(FFUBuildError):
    """Programmer error: illegal build-state transition."""

    def __init__(self, current: Any, target: Any):
        self.current = current
        self.target = target
        super().__init__(f"Illegal build state transition {current} -> {target}")
