"""
Pytest fixtures and configuration for ffubuilder tests.
"""
from pathlib import Path
from typing import Callable, Dict, FrozenSet, List, Optional, Set

import pytest

from ffubuilder.config import BuildDefinition, BuildSettings
from ffubuilder.exceptions import ExternalToolError, VMNotFoundError
from ffubuilder.imaging import DismImagingTool
from ffubuilder.interfaces.hypervisor import (
    DiskFormat,
    DiskType,
    HypervisorProvider,
    MountHandle,
    ValidationResult,
    VMConfiguration,
    VMInfo,
    VMState,
    validate_common,
)
from ffubuilder.interfaces.process import ProcessResult, ProcessRunner
from ffubuilder.messaging import ChannelOptions, new_channel


class FakeRunner(ProcessRunner):
    """Records every command; answers from a list of (substring, stdout | exception) rules.

    ``stdout`` may be a callable, called once per matching command.
    """

    def __init__(self):
        self.commands: List[List[str]] = []
        self.inputs: List[Optional[str]] = []
        self.rules: List[tuple] = []
        self.terminated = 0

    def on(self, needle: str, stdout: str = "", returncode: int = 0, error: Optional[Exception] = None):
        self.rules.append((needle, stdout, returncode, error))
        return self

    def run(self, command, timeout=None, check=True, cwd=None, env=None, input_text=None):
        self.commands.append(list(command))
        self.inputs.append(input_text)
        text = " ".join(command) + "\n" + (input_text or "")
        for needle, stdout, returncode, error in self.rules:
            if needle in text:
                if error is not None:
                    raise error
                if callable(stdout):
                    stdout = stdout()
                if check and returncode != 0:
                    raise ExternalToolError(command, returncode, stdout)
                return ProcessResult(list(command), returncode, stdout, "")
        return ProcessResult(list(command), 0, "", "")

    def terminate_all(self) -> int:
        self.terminated += 1
        return 1

    def scripts(self) -> List[str]:
        """Joined command lines, for substring assertions."""
        return [" ".join(c) for c in self.commands]


class FakeProvider(HypervisorProvider):
    """In-memory hypervisor. Disks are real (empty) files so path checks work."""

    name = "fake"
    supported_disk_formats: FrozenSet[DiskFormat] = frozenset({DiskFormat.VHDX, DiskFormat.VMDK})

    def __init__(self, settings: BuildSettings, available: bool = True, host_capture: bool = True):
        self.settings = settings
        self.available = available
        self.supports_host_capture = host_capture
        self.calls: List[str] = []
        self.vms: Dict[str, VMInfo] = {}
        self.mounted: Set[Path] = set()
        self.isos: Dict[str, Path] = {}
        self.failures: Dict[str, Exception] = {}
        self.hooks: Dict[str, Callable[[], None]] = {}
        self.guest_shuts_down = True

    def _call(self, operation: str) -> None:
        self.calls.append(operation)
        hook = self.hooks.get(operation)
        if hook is not None:
            hook()
        if operation in self.failures:
            raise self.failures[operation]

    def test_available(self) -> bool:
        return self.available

    def validate_configuration(self, config: VMConfiguration) -> ValidationResult:
        return validate_common(config, self.settings, self.supported_disk_formats, {1, 2}, self.name)

    def create_vm(self, config: VMConfiguration) -> VMInfo:
        self._call("create_vm")
        vm = VMInfo(id=f"id-{config.name}", name=config.name, hypervisor=self.name, state=VMState.OFF)
        self.vms[vm.name] = vm
        return vm

    def start_vm(self, vm: VMInfo, show_console: bool = False) -> None:
        self._call("start_vm")
        vm.state = VMState.RUNNING

    def stop_vm(self, vm: VMInfo, force: bool = False) -> None:
        self._call("stop_vm")
        vm.state = VMState.OFF

    def remove_vm(self, vm: VMInfo, remove_disks: bool = False) -> None:
        self._call("remove_vm")
        if self.vms.pop(vm.name, None) is None:
            raise VMNotFoundError(vm.name)

    def get_vm_state(self, vm: VMInfo) -> VMState:
        if vm.name not in self.vms:
            return VMState.UNKNOWN
        if vm.state == VMState.RUNNING and self.guest_shuts_down:
            return VMState.OFF
        return vm.state

    def get_vm_ip_address(self, vm: VMInfo) -> str:
        return "192.168.1.50"

    def new_virtual_disk(self, path: Path, size_bytes: int, disk_format: DiskFormat,
                         disk_type: DiskType = DiskType.DYNAMIC) -> Path:
        self._call("new_virtual_disk")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"")
        return path

    def mount_virtual_disk(self, path: Path) -> MountHandle:
        self._call("mount_virtual_disk")
        self.mounted.add(path)
        return MountHandle(path=path, drive_letter="Z", disk_number=3)

    def dismount_virtual_disk(self, path: Path) -> None:
        self._call("dismount_virtual_disk")
        self.mounted.discard(path)

    def attach_iso(self, vm: VMInfo, path: Path) -> None:
        self._call("attach_iso")
        self.isos[vm.name] = path

    def detach_iso(self, vm: VMInfo) -> None:
        self._call("detach_iso")
        self.isos.pop(vm.name, None)


class RecordingImagingTool(DismImagingTool):
    """DISM wrapper that records arguments and fakes the files DISM would write."""

    def __init__(self, settings: BuildSettings):
        super().__init__(FakeRunner(), settings)
        self.calls: List[tuple] = []

    def _dism(self, *args, timeout=None):
        self.calls.append(args)
        if args[0] == "/Capture-FFU":
            image = Path(args[1].split(":", 1)[1])
            image.write_bytes(b"FFU")
        return ProcessResult(["dism.exe", *args], 0, "", "")

    def operations(self) -> List[str]:
        return [args[0] for args in self.calls]


@pytest.fixture
def settings():
    """Settings with short timeouts so waits finish quickly."""
    return BuildSettings(
        state_poll_interval=0.01,
        guest_workload_timeout=0.5,
        mount_backoff_seconds=0,
        cancel_grace_period=0.2,
        poll_hz=100,
    )


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def fake_provider(settings):
    return FakeProvider(settings)


@pytest.fixture
def imaging(settings):
    return RecordingImagingTool(settings)


@pytest.fixture
def channel():
    return new_channel(ChannelOptions(capacity=10_000))


@pytest.fixture
def definition(tmp_path):
    """A direct-capture build rooted in tmp_path."""
    return BuildDefinition(
        name="TestFFU",
        memory_gb=4,
        processors=2,
        disk_size_gb=30,
        work_dir=tmp_path / "VM",
        output_dir=tmp_path / "FFU",
    )


@pytest.fixture
def vm_definition(definition, tmp_path):
    """An install-then-capture build with install media attached."""
    iso = tmp_path / "apps.iso"
    iso.write_bytes(b"")
    return definition.model_copy(update={"install_apps": True, "iso_path": iso})


# Markers for test categories
def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "slow: Slow tests")
    config.addinivalue_line("markers", "integration: Integration tests")
