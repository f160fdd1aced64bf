"""Process runner backed by subprocess.Popen that keeps every live child killable."""

import subprocess
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Set

import structlog

from ..exceptions import ExternalToolError, OperationTimeoutError
from ..interfaces.process import ProcessResult, ProcessRunner

log = structlog.get_logger(__name__)


class SubprocessRunner(ProcessRunner):
    """Run processes using the subprocess module, keeping track of live children."""

    def __init__(self):
        self._children: Set[subprocess.Popen] = set()
        self._lock = threading.Lock()

    def run(
        self,
        command: List[str],
        timeout: Optional[float] = None,
        check: bool = True,
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
        input_text: Optional[str] = None,
    ) -> ProcessResult:
        """Run a command."""
        log.debug("process.start", command=command[0], args=len(command) - 1)
        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                command,
                stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
                env=env,
                text=True,
            )
        except FileNotFoundError as e:
            raise ExternalToolError(command, 127, str(e)) from e

        with self._lock:
            self._children.add(proc)
        try:
            stdout, stderr = proc.communicate(input=input_text, timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.communicate()
            log.warning("process.timeout", command=command[0], timeout=timeout)
            raise OperationTimeoutError(" ".join(command[:2]), timeout)
        finally:
            with self._lock:
                self._children.discard(proc)

        result = ProcessResult(
            command=list(command),
            returncode=proc.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            duration_seconds=time.monotonic() - started,
        )
        log.debug("process.exit", command=command[0], returncode=result.returncode,
                  duration_s=round(result.duration_seconds, 2))
        if check and not result.success:
            raise ExternalToolError(command, result.returncode, result.diagnostic)
        return result

    def terminate_all(self) -> int:
        """Kill every tracked child process."""
        with self._lock:
            children = list(self._children)
        killed = 0
        for proc in children:
            if proc.poll() is None:
                try:
                    proc.kill()
                    killed += 1
                except OSError as e:
                    log.warning("process.kill_failed", pid=proc.pid, error=str(e))
        if killed:
            log.warning("process.terminated_children", count=killed)
        return killed
