"""
Build messaging channel.

Carries progress, log and state messages from the build worker to a
controller, and the cancellation request the other way. Neither side ever
blocks on the other: the worker appends, the controller drains whatever is
queued on its own schedule.
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Deque, Dict, List, Optional, Set

import structlog

from .exceptions import InvalidStateTransition

log = structlog.get_logger(__name__)


class MessageLevel(Enum):
    DEBUG = "debug"
    INFO = "info"
    PROGRESS = "progress"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# structlog method used when mirroring a message to the log.
_LOG_METHODS = {
    MessageLevel.DEBUG: "debug",
    MessageLevel.INFO: "info",
    MessageLevel.PROGRESS: "info",
    MessageLevel.SUCCESS: "info",
    MessageLevel.WARNING: "warning",
    MessageLevel.ERROR: "error",
    MessageLevel.CRITICAL: "critical",
}


class BuildState(Enum):
    NOT_STARTED = "not_started"
    INITIALIZING = "initializing"
    RUNNING = "running"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BuildState.CANCELLED, BuildState.COMPLETED, BuildState.FAILED)


ALLOWED_TRANSITIONS: Dict[BuildState, Set[BuildState]] = {
    BuildState.NOT_STARTED: {BuildState.INITIALIZING},
    BuildState.INITIALIZING: {BuildState.RUNNING, BuildState.FAILED, BuildState.CANCELLING},
    BuildState.RUNNING: {BuildState.COMPLETED, BuildState.FAILED, BuildState.CANCELLING},
    BuildState.CANCELLING: {BuildState.CANCELLED, BuildState.FAILED},
    BuildState.CANCELLED: set(),
    BuildState.COMPLETED: set(),
    BuildState.FAILED: set(),
}


def can_transition(current: BuildState, target: BuildState) -> bool:
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, set())


@dataclass(frozen=True)
class BuildMessage:
    """One immutable message emitted by a build."""

    level: MessageLevel
    text: str
    source: str = "build"
    percent: Optional[float] = None
    operation: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class ChannelOptions:
    capacity: int = 100_000
    mirror_to_log: bool = False


class BuildChannel:
    """
    Thread-safe, bounded FIFO of BuildMessages plus shared control fields.

    When the queue is full the oldest message is dropped and counted in
    ``dropped``; the writer never blocks.
    """

    def __init__(self, options: Optional[ChannelOptions] = None):
        self.options = options or ChannelOptions()
        if self.options.capacity < 1:
            raise ValueError("channel capacity must be at least 1")
        self._queue: Deque[BuildMessage] = deque()
        self._lock = threading.Lock()
        self._state = BuildState.NOT_STARTED
        self._cancel = threading.Event()
        self._dropped = 0
        self._last_by_level: Dict[MessageLevel, BuildMessage] = {}

    # ── writer side ──────────────────────────────────────────────────────────

    def emit(self, message: BuildMessage) -> None:
        with self._lock:
            if len(self._queue) >= self.options.capacity:
                self._queue.popleft()
                self._dropped += 1
            self._queue.append(message)
            self._last_by_level[message.level] = message
        if self.options.mirror_to_log:
            getattr(log, _LOG_METHODS[message.level])(
                message.text,
                level_tag=message.level.value,
                source=message.source,
                percent=message.percent,
                operation=message.operation,
            )

    def _emit(self, level: MessageLevel, text: str, source: str, **payload) -> BuildMessage:
        message = BuildMessage(level=level, text=text, source=source, **payload)
        self.emit(message)
        return message

    def debug(self, text: str, source: str = "build") -> BuildMessage:
        return self._emit(MessageLevel.DEBUG, text, source)

    def info(self, text: str, source: str = "build") -> BuildMessage:
        return self._emit(MessageLevel.INFO, text, source)

    def progress(
        self,
        text: str,
        percent: float,
        operation: Optional[str] = None,
        source: str = "build",
    ) -> BuildMessage:
        return self._emit(
            MessageLevel.PROGRESS,
            text,
            source,
            percent=max(0.0, min(100.0, percent)),
            operation=operation,
        )

    def success(self, text: str, source: str = "build") -> BuildMessage:
        return self._emit(MessageLevel.SUCCESS, text, source)

    def warning(self, text: str, source: str = "build") -> BuildMessage:
        return self._emit(MessageLevel.WARNING, text, source)

    def error(self, text: str, source: str = "build") -> BuildMessage:
        return self._emit(MessageLevel.ERROR, text, source)

    def critical(self, text: str, source: str = "build") -> BuildMessage:
        return self._emit(MessageLevel.CRITICAL, text, source)

    def request_state(self, new_state: BuildState) -> None:
        """Move the build state machine. Illegal transitions raise InvalidStateTransition."""
        with self._lock:
            current = self._state
            if not can_transition(current, new_state):
                raise InvalidStateTransition(current, new_state)
            self._state = new_state
        if current != new_state:
            self.debug(f"Build state {current.value} -> {new_state.value}", source="state")

    # ── reader side ──────────────────────────────────────────────────────────

    @property
    def state(self) -> BuildState:
        with self._lock:
            return self._state

    @property
    def dropped(self) -> int:
        with self._lock:
            return self._dropped

    def drain(self, max_messages: int = 1000) -> List[BuildMessage]:
        """Return up to ``max_messages`` queued messages without blocking."""
        out: List[BuildMessage] = []
        with self._lock:
            while self._queue and len(out) < max_messages:
                out.append(self._queue.popleft())
        return out

    def pending_count(self) -> int:
        with self._lock:
            return len(self._queue)

    def last_message(self, level: MessageLevel) -> Optional[BuildMessage]:
        """Latest message emitted at ``level``, drained or not."""
        with self._lock:
            return self._last_by_level.get(level)

    # ── cancellation ─────────────────────────────────────────────────────────

    def request_cancellation(self) -> None:
        """Ask the worker to stop at its next checkpoint. Idempotent."""
        if not self._cancel.is_set():
            self._cancel.set()
            log.info("build.cancellation_requested")

    def is_cancellation_requested(self) -> bool:
        return self._cancel.is_set()


def new_channel(options: Optional[ChannelOptions] = None) -> BuildChannel:
    return BuildChannel(options)
