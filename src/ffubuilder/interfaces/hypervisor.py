"""Interfaces for ffubuilder hypervisor providers."""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, FrozenSet, Iterable, List, Optional

from ..exceptions import OperationTimeoutError

if TYPE_CHECKING:
    from ..config import BuildSettings


class VMState(Enum):
    """VM lifecycle state as reported by a provider."""

    UNKNOWN = "unknown"
    OFF = "off"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    SAVED = "saved"
    SUSPENDED = "suspended"


class DiskFormat(str, Enum):
    VHD = "vhd"
    VHDX = "vhdx"
    VMDK = "vmdk"


class DiskType(str, Enum):
    DYNAMIC = "dynamic"
    FIXED = "fixed"


@dataclass(frozen=True)
class VMConfiguration:
    """Immutable request for VM creation."""

    name: str
    memory_bytes: int
    processor_count: int
    disk_format: DiskFormat
    disk_path: Path
    generation: int = 2
    enable_tpm: bool = False
    switch_name: Optional[str] = None
    iso_path: Optional[Path] = None


@dataclass
class VMInfo:
    """Snapshot of a VM's identity and runtime state."""

    id: str
    name: str
    hypervisor: str
    state: VMState = VMState.UNKNOWN
    memory_bytes: int = 0
    ip_addresses: List[str] = field(default_factory=list)
    config_path: Optional[Path] = None
    disk_path: Optional[Path] = None
    created_at: datetime = field(default_factory=datetime.now)

    def refresh_state(self, provider: "HypervisorProvider") -> VMState:
        """Reconcile ``state`` with what the hypervisor reports."""
        self.state = provider.get_vm_state(self)
        return self.state


@dataclass(frozen=True)
class MountHandle:
    """A mounted virtual disk with a usable drive letter on its Windows partition."""

    path: Path
    drive_letter: str
    disk_number: Optional[int] = None

    def __post_init__(self):
        if not self.drive_letter or len(self.drive_letter) != 1 or not self.drive_letter.isalpha():
            raise ValueError(f"Mount handle requires a drive letter, got {self.drive_letter!r}")

    @property
    def root(self) -> str:
        return f"{self.drive_letter.upper()}:\\"


@dataclass
class ValidationResult:
    """Outcome of validating a VMConfiguration against a provider."""

    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def _format_bytes(value: int) -> str:
    return f"{value / 1024**3:g} GiB"


def validate_common(
    config: VMConfiguration,
    settings: "BuildSettings",
    disk_formats: Iterable[DiskFormat],
    generations: Iterable[int],
    provider_name: str,
) -> ValidationResult:
    """Checks shared by every provider. Pure: no side effects."""
    result = ValidationResult()
    formats = set(disk_formats)

    if not config.name or not config.name.strip():
        result.errors.append("VM name cannot be empty")

    if config.memory_bytes < settings.min_memory_bytes:
        result.errors.append(
            f"memory {_format_bytes(config.memory_bytes)} is below the minimum "
            f"of {_format_bytes(settings.min_memory_bytes)}"
        )
    elif config.memory_bytes > settings.max_memory_bytes:
        result.errors.append(
            f"memory {_format_bytes(config.memory_bytes)} exceeds the maximum "
            f"of {_format_bytes(settings.max_memory_bytes)}"
        )

    if not 1 <= config.processor_count <= settings.max_processors:
        result.errors.append(
            f"processor count {config.processor_count} must be between 1 "
            f"and {settings.max_processors}"
        )

    if config.disk_format not in formats:
        supported = ", ".join(sorted(f.value for f in formats))
        result.errors.append(
            f"disk format '{config.disk_format.value}' is not supported by "
            f"{provider_name} (supported: {supported})"
        )

    if config.generation not in set(generations):
        result.errors.append(
            f"generation {config.generation} is not supported by {provider_name}"
        )

    return result


class HypervisorProvider(ABC):
    """Uniform VM and virtual-disk operations implemented per hypervisor."""

    settings: "BuildSettings"

    # True when the host can mount the VM disk and expose it as a physical
    # drive to the imaging tool.
    supports_host_capture: bool = False

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name (e.g., 'hyperv', 'workstation')."""
        pass

    @property
    @abstractmethod
    def supported_disk_formats(self) -> FrozenSet[DiskFormat]:
        pass

    @abstractmethod
    def test_available(self) -> bool:
        """Check the hypervisor platform is installed and running."""
        pass

    @abstractmethod
    def validate_configuration(self, config: VMConfiguration) -> ValidationResult:
        """Validate a VM request without side effects."""
        pass

    @abstractmethod
    def create_vm(self, config: VMConfiguration) -> VMInfo:
        """Create a VM. Raises ProvisioningError."""
        pass

    @abstractmethod
    def start_vm(self, vm: VMInfo, show_console: bool = False) -> None:
        pass

    @abstractmethod
    def stop_vm(self, vm: VMInfo, force: bool = False) -> None:
        pass

    @abstractmethod
    def remove_vm(self, vm: VMInfo, remove_disks: bool = False) -> None:
        """Remove a VM. Raises VMNotFoundError when the VM no longer exists."""
        pass

    @abstractmethod
    def get_vm_state(self, vm: VMInfo) -> VMState:
        """Best effort; never raises."""
        pass

    @abstractmethod
    def get_vm_ip_address(self, vm: VMInfo) -> str:
        """Best effort; returns an empty string when no IP is known."""
        pass

    @abstractmethod
    def new_virtual_disk(
        self,
        path: Path,
        size_bytes: int,
        disk_format: DiskFormat,
        disk_type: DiskType = DiskType.DYNAMIC,
    ) -> Path:
        pass

    @abstractmethod
    def mount_virtual_disk(self, path: Path) -> MountHandle:
        pass

    @abstractmethod
    def dismount_virtual_disk(self, path: Path) -> None:
        """Dismount a disk. A disk that is not mounted is not an error."""
        pass

    def remove_virtual_disk(self, path: Path) -> None:
        """Dismount and delete a disk with every file backing it. A missing disk is not an error."""
        if not path.exists():
            return
        self.dismount_virtual_disk(path)
        path.unlink(missing_ok=True)

    @abstractmethod
    def attach_iso(self, vm: VMInfo, path: Path) -> None:
        pass

    @abstractmethod
    def detach_iso(self, vm: VMInfo) -> None:
        pass

    def wait_for_state(
        self,
        vm: VMInfo,
        target: VMState,
        timeout: float,
        poll_interval: float,
        sleep: Callable[[float], None] = time.sleep,
    ) -> VMState:
        """Poll ``get_vm_state`` until ``target`` is reached.

        Raises OperationTimeoutError once ``timeout`` seconds have passed.
        """
        deadline = time.monotonic() + timeout
        while True:
            state = vm.refresh_state(self)
            if state == target:
                return state
            if time.monotonic() >= deadline:
                raise OperationTimeoutError(
                    f"waiting for VM '{vm.name}' to reach {target.value}", timeout
                )
            sleep(poll_interval)
