"""
Resource cleanup registry for FFU builds.

Every resource a build provisions (VM, virtual disk, mounted image, share,
temporary account, attached ISO) registers an idempotent teardown here as
soon as it exists. On failure or cancellation the registry tears down what
is left in reverse registration order.
"""

import itertools
import shutil
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

import structlog

from .backends.powershell import powershell_command, ps_quote
from .exceptions import CleanupError, VMNotFoundError
from .interfaces.hypervisor import HypervisorProvider, VMInfo
from .interfaces.process import ProcessRunner

log = structlog.get_logger(__name__)


class CleanupKind(Enum):
    VM = "vm"
    VIRTUAL_DISK = "virtual-disk"
    MOUNTED_IMAGE = "mounted-image"
    TEMP_FILE = "temp-file"
    NETWORK_SHARE = "network-share"
    USER_ACCOUNT = "user-account"
    ISO = "iso"


@dataclass
class CleanupAction:
    """A registered teardown for one provisioned resource."""

    action_id: int
    kind: CleanupKind
    target: str
    teardown: Callable[[], None]

    def describe(self) -> str:
        return f"{self.kind.value} {self.target}"


@dataclass
class CleanupOutcome:
    """Result of invoking one cleanup action."""

    action: CleanupAction
    succeeded: bool
    error: Optional[str] = None


class CleanupStatus(Enum):
    NOT_NEEDED = "not_needed"
    FULL = "full"
    PARTIAL = "partial"
    NOT_RUN = "not_run"


@dataclass
class CleanupReport:
    """Summary of a cleanup sweep for the controller."""

    status: CleanupStatus
    outcomes: List[CleanupOutcome] = field(default_factory=list)

    @property
    def leftovers(self) -> List[str]:
        return [o.action.describe() for o in self.outcomes if not o.succeeded]

    @property
    def errors(self) -> List[str]:
        return [f"{o.action.describe()}: {o.error}" for o in self.outcomes if not o.succeeded]

    @classmethod
    def from_outcomes(cls, outcomes: List[CleanupOutcome]) -> "CleanupReport":
        if not outcomes:
            return cls(CleanupStatus.NOT_NEEDED, [])
        if all(o.succeeded for o in outcomes):
            return cls(CleanupStatus.FULL, list(outcomes))
        return cls(CleanupStatus.PARTIAL, list(outcomes))


class CleanupRegistry:
    """
    Ordered registry of pending teardown actions for one build.

    Not safe for concurrent writers; use one registry per build.

    Usage:
        registry = CleanupRegistry()
        disk_id = registry.register(CleanupKind.VIRTUAL_DISK, str(path), remove_file(path))
        ...
        outcomes = registry.invoke_all("build failed")  # LIFO, never raises
    """

    def __init__(self, name: str = "build"):
        self.name = name
        self._actions: Dict[int, CleanupAction] = {}
        self._counter = itertools.count(1)

    def register(self, kind: CleanupKind, target: str, teardown: Callable[[], None]) -> int:
        """Register a teardown. Returns the action id."""
        action = CleanupAction(
            action_id=next(self._counter),
            kind=kind,
            target=str(target),
            teardown=teardown,
        )
        self._actions[action.action_id] = action
        log.debug("cleanup.registered", registry=self.name, action_id=action.action_id,
                  kind=kind.value, target=action.target)
        return action.action_id

    def unregister(self, action_id: int) -> bool:
        """Drop an action without invoking it. Unknown ids are ignored."""
        action = self._actions.pop(action_id, None)
        if action is not None:
            log.debug("cleanup.unregistered", registry=self.name, action_id=action_id,
                      kind=action.kind.value, target=action.target)
        return action is not None

    def invoke_all(self, reason: str) -> List[CleanupOutcome]:
        """Invoke every registered teardown, last registered first.

        A failing teardown is logged and stays registered; the sweep goes on
        with the next action. Never raises.
        """
        pending = sorted(self._actions.values(), key=lambda a: a.action_id, reverse=True)
        if pending:
            log.info("cleanup.sweep_started", registry=self.name, reason=reason, actions=len(pending))

        outcomes: List[CleanupOutcome] = []
        for action in pending:
            try:
                action.teardown()
            except Exception as e:
                error = CleanupError(action.describe(), e)
                log.error("cleanup.action_failed", registry=self.name, action_id=action.action_id,
                          kind=action.kind.value, target=action.target, error=str(e))
                outcomes.append(CleanupOutcome(action=action, succeeded=False, error=str(error)))
                continue
            self._actions.pop(action.action_id, None)
            log.info("cleanup.action_completed", registry=self.name, action_id=action.action_id,
                     kind=action.kind.value, target=action.target)
            outcomes.append(CleanupOutcome(action=action, succeeded=True))

        if pending:
            failed = sum(1 for o in outcomes if not o.succeeded)
            log.info("cleanup.sweep_finished", registry=self.name, reason=reason,
                     succeeded=len(outcomes) - failed, failed=failed)
        return outcomes

    def clear(self) -> None:
        """Drop every registration without invoking it (confirmed success only)."""
        if self._actions:
            log.debug("cleanup.cleared", registry=self.name, dropped=len(self._actions))
        self._actions.clear()

    def pending(self) -> List[CleanupAction]:
        """Registered actions in registration order."""
        return sorted(self._actions.values(), key=lambda a: a.action_id)

    def __len__(self) -> int:
        return len(self._actions)

    def __contains__(self, action_id: object) -> bool:
        return action_id in self._actions

    @contextmanager
    def transaction(self, kind: CleanupKind, target: str, teardown: Callable[[], None]) -> Iterator[int]:
        """
        Register ``teardown`` and undo just this resource if the block raises.

        Usage:
            with registry.transaction(CleanupKind.MOUNTED_IMAGE, path, dismount) as action_id:
                apply_image(...)
            provider.dismount_virtual_disk(path)
            registry.unregister(action_id)
        """
        action_id = self.register(kind, target, teardown)
        try:
            yield action_id
        except Exception:
            action = self._actions.get(action_id)
            if action is not None:
                try:
                    action.teardown()
                    self._actions.pop(action_id, None)
                except Exception as e:
                    log.error("cleanup.rollback_failed", registry=self.name, action_id=action_id,
                              target=action.target, error=str(e))
            raise


# ── idempotent teardown factories ────────────────────────────────────────────

def remove_file(path: Path) -> Callable[[], None]:
    def teardown() -> None:
        Path(path).unlink(missing_ok=True)

    return teardown


def remove_directory(path: Path) -> Callable[[], None]:
    def teardown() -> None:
        if Path(path).exists():
            shutil.rmtree(path)

    return teardown


def remove_vm(provider: HypervisorProvider, vm: VMInfo) -> Callable[[], None]:
    def teardown() -> None:
        try:
            provider.remove_vm(vm, remove_disks=False)
        except VMNotFoundError:
            log.debug("cleanup.vm_already_gone", vm_name=vm.name)

    return teardown


def dismount_disk(provider: HypervisorProvider, path: Path) -> Callable[[], None]:
    def teardown() -> None:
        provider.dismount_virtual_disk(path)

    return teardown


def remove_disk(provider: HypervisorProvider, path: Path) -> Callable[[], None]:
    def teardown() -> None:
        provider.remove_virtual_disk(Path(path))

    return teardown


def detach_iso(provider: HypervisorProvider, vm: VMInfo) -> Callable[[], None]:
    def teardown() -> None:
        try:
            provider.detach_iso(vm)
        except VMNotFoundError:
            log.debug("cleanup.vm_already_gone", vm_name=vm.name)

    return teardown


def remove_network_share(runner: ProcessRunner, powershell: str, share_name: str) -> Callable[[], None]:
    def teardown() -> None:
        name = ps_quote(share_name)
        runner.run(
            powershell_command(
                powershell,
                f"if (Get-SmbShare -Name {name} -ErrorAction SilentlyContinue) "
                f"{{ Remove-SmbShare -Name {name} -Force }}",
            )
        )

    return teardown


def remove_user_account(runner: ProcessRunner, powershell: str, user_name: str) -> Callable[[], None]:
    def teardown() -> None:
        name = ps_quote(user_name)
        runner.run(
            powershell_command(
                powershell,
                f"if (Get-LocalUser -Name {name} -ErrorAction SilentlyContinue) "
                f"{{ Remove-LocalUser -Name {name} }}",
            )
        )

    return teardown
