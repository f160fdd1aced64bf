"""Abstract interface for running the external Windows tools a build depends on."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional


@dataclass
class ProcessResult:
    """Exit code and captured output of one finished tool invocation."""

    command: List[str]
    returncode: int
    stdout: str
    stderr: str
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def diagnostic(self) -> str:
        """Best text to explain a failure; DISM and diskpart report errors on stdout."""
        return self.stderr.strip() or self.stdout.strip()


class ProcessRunner(ABC):
    """
    Runs PowerShell, DISM, diskpart, bcdboot, vmrun and qemu-img for providers and steps.

    Implementations must remember the children they spawn so a controller can
    kill them when a build ignores cancellation.
    """

    @abstractmethod
    def run(
        self,
        command: List[str],
        timeout: Optional[float] = None,
        check: bool = True,
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
        input_text: Optional[str] = None,
    ) -> ProcessResult:
        """Run ``command`` to completion, feeding ``input_text`` on stdin (diskpart scripts).

        Raises OperationTimeoutError when ``timeout`` elapses and
        ExternalToolError when ``check`` is set and the exit code is non-zero.
        """

    @abstractmethod
    def terminate_all(self) -> int:
        """Kill every child process still running. Returns how many were killed."""
