"""
Build controller.

Owns the worker thread a build runs on and the controller side of the
messaging channel: polling, cancellation and the terminal report.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional

import structlog

from .cleanup import CleanupStatus
from .interfaces.process import ProcessRunner
from .logging import bind_build_context, clear_build_context
from .messaging import BuildChannel, BuildMessage, BuildState, MessageLevel
from .orchestrator import BuildOrchestrator, BuildPhase, BuildResult

log = structlog.get_logger(__name__)


@dataclass
class BuildReport:
    """What the controller tells the user once the worker is done (or gone)."""

    state: BuildState
    failed_phase: Optional[BuildPhase] = None
    error: Optional[str] = None
    cleanup_status: CleanupStatus = CleanupStatus.NOT_RUN
    leftovers: List[str] = field(default_factory=list)
    forced: bool = False
    result: Optional[BuildResult] = None

    @property
    def succeeded(self) -> bool:
        return self.state == BuildState.COMPLETED


class BuildController:
    """
    Run a BuildOrchestrator on a background thread.

    Usage:
        controller = BuildController(orchestrator, channel, runner)
        controller.start()
        while controller.is_running():
            for message in controller.poll():
                render(message)
            time.sleep(controller.poll_interval)
        report = controller.report()
    """

    def __init__(
        self,
        orchestrator: BuildOrchestrator,
        channel: BuildChannel,
        runner: ProcessRunner,
        poll_hz: float = 20.0,
    ):
        if poll_hz <= 0:
            raise ValueError("poll_hz must be positive")
        self.orchestrator = orchestrator
        self.channel = channel
        self.runner = runner
        self.poll_hz = poll_hz
        self._thread: Optional[threading.Thread] = None
        self._result: Optional[BuildResult] = None
        self._worker_error: Optional[BaseException] = None
        self._forced = False

    @property
    def poll_interval(self) -> float:
        return 1.0 / self.poll_hz

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("build already started")
        self._thread = threading.Thread(
            target=self._work,
            name=f"ffubuild-{self.orchestrator.definition.name}",
            daemon=True,
        )
        self._thread.start()
        log.info("controller.started", build=self.orchestrator.definition.name)

    def _work(self) -> None:
        bind_build_context(self.orchestrator.definition.name, self.orchestrator.provider.name)
        try:
            self._result = self.orchestrator.run()
        except Exception as e:
            # Only programmer errors reach here; run() reports build failures itself.
            self._worker_error = e
            log.exception("controller.worker_crashed", error=str(e))
            self.channel.critical(f"Build worker crashed: {e}", source="controller")
        finally:
            clear_build_context()

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def poll(self, max_messages: int = 1000) -> List[BuildMessage]:
        """Drain queued messages without blocking."""
        return self.channel.drain(max_messages)

    def cancel(self) -> None:
        self.channel.request_cancellation()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Join the worker. Returns True once it has finished."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def cancel_and_wait(self, grace_period: float) -> BuildReport:
        """Request cancellation, then kill child processes if the worker overstays ``grace_period``."""
        self.cancel()
        deadline = time.monotonic() + grace_period
        while not self.wait(timeout=min(self.poll_interval, max(0.0, deadline - time.monotonic()))):
            if time.monotonic() >= deadline:
                killed = self.runner.terminate_all()
                self._forced = True
                log.warning("controller.forced_termination", grace_period=grace_period, killed=killed)
                self.channel.warning(
                    f"Build did not stop within {grace_period:g}s; terminated {killed} child process(es)",
                    source="controller",
                )
                self.wait(timeout=self.poll_interval)
                break
        return self.report()

    def report(self) -> BuildReport:
        last_error = self.channel.last_message(MessageLevel.ERROR)
        error = last_error.text if last_error else None
        if self._worker_error is not None:
            error = str(self._worker_error)

        result = self._result
        if result is None:
            return BuildReport(
                state=self.channel.state,
                error=error,
                cleanup_status=CleanupStatus.NOT_RUN,
                forced=self._forced,
            )
        return BuildReport(
            state=result.state,
            failed_phase=result.failed_phase,
            error=error,
            cleanup_status=result.cleanup.status,
            leftovers=result.cleanup.leftovers,
            forced=self._forced,
            result=result,
        )
