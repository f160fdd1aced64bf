"""VMware Workstation hypervisor provider implementation.

VMs are registered and powered through the ``vmrest`` REST service, with
``vmrun`` as a fallback for power operations. Workstation ships no
partitioning tooling, so disks are laid out with ``diskpart`` on a VHDX and,
for VM disks, converted to VMDK with ``qemu-img``.
"""

import os
import re
import shutil
from collections import OrderedDict
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional

import requests
import structlog

from ..config import BuildSettings
from ..exceptions import (
    ExternalToolError,
    OperationTimeoutError,
    ProvisioningError,
    VMNotFoundError,
)
from ..interfaces.hypervisor import (
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
from ..interfaces.process import ProcessRunner
from ..partitioning import (
    compute_layout,
    diskpart_assign_script,
    diskpart_attach_script,
    diskpart_create_script,
    diskpart_detach_script,
    diskpart_partition_script,
)
from .volumes import ensure_drive_letter, free_drive_letters

log = structlog.get_logger(__name__)

VMREST_MEDIA_TYPE = "application/vnd.vmware.vmw.rest-v1+json"

POWER_STATE_MAP = {
    "poweredOn": VMState.RUNNING,
    "poweredOff": VMState.OFF,
    "suspended": VMState.SUSPENDED,
    "paused": VMState.SUSPENDED,
}

# Partition holding Windows in partitioning.compute_layout.
WINDOWS_PARTITION_NUMBER = 3
CDROM_DEVICE = "sata0:1"
DISK_DEVICE = "nvme0:0"


EXTENT_LINE = re.compile(r'^\s*(?:RW|RDONLY|NOACCESS)\s+\d+\s+\w+\s+"([^"]+)"', re.MULTILINE)
# Sparse VMDKs embed their descriptor after the header; flat descriptors are small text files.
DESCRIPTOR_READ_BYTES = 64 * 1024


def vmdk_extent_files(path: Path) -> List[Path]:
    """Data files a VMDK descriptor references, excluding the descriptor itself."""
    try:
        with open(path, "rb") as f:
            head = f.read(DESCRIPTOR_READ_BYTES).decode("latin-1")
    except FileNotFoundError:
        head = ""
    extents = [path.parent / name for name in EXTENT_LINE.findall(head)]
    flat = path.with_name(f"{path.stem}-flat{path.suffix}")
    if flat not in extents and flat.exists():
        extents.append(flat)
    return [extent for extent in extents if extent != path]


def render_vmx(config: VMConfiguration, guest_os: str) -> "OrderedDict[str, str]":
    """VMX entries for a new build VM."""
    entries: "OrderedDict[str, str]" = OrderedDict()
    entries[".encoding"] = "UTF-8"
    entries["config.version"] = "8"
    entries["virtualHW.version"] = "19"
    entries["displayName"] = config.name
    entries["guestOS"] = guest_os
    entries["firmware"] = "efi" if config.generation == 2 else "bios"
    if config.generation == 2:
        entries["uefi.secureBoot.enabled"] = "TRUE"
    entries["memsize"] = str(config.memory_bytes // 1024**2)
    entries["numvcpus"] = str(config.processor_count)
    entries["nvme0.present"] = "TRUE"
    entries[f"{DISK_DEVICE}.present"] = "TRUE"
    entries[f"{DISK_DEVICE}.fileName"] = str(config.disk_path)
    entries["sata0.present"] = "TRUE"
    entries[f"{CDROM_DEVICE}.present"] = "FALSE"
    entries["ethernet0.present"] = "TRUE"
    entries["ethernet0.virtualDev"] = "e1000e"
    if config.switch_name:
        entries["ethernet0.connectionType"] = "custom"
        entries["ethernet0.vnet"] = config.switch_name
    else:
        entries["ethernet0.connectionType"] = "nat"
    entries["tools.syncTime"] = "TRUE"
    return entries


def read_vmx(path: Path) -> "OrderedDict[str, str]":
    entries: "OrderedDict[str, str]" = OrderedDict()
    for line in path.read_text(encoding="utf-8").splitlines():
        if "=" not in line or line.lstrip().startswith("#"):
            continue
        key, value = line.split("=", 1)
        entries[key.strip()] = value.strip().strip('"')
    return entries


def write_vmx(path: Path, entries: Dict[str, str]) -> None:
    lines = [f'{key} = "{value}"' for key, value in entries.items()]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


class WorkstationProvider(HypervisorProvider):
    """VMware Workstation provider (vmrest + vmrun, diskpart + qemu-img for disks)."""

    name = "workstation"
    supported_disk_formats: FrozenSet[DiskFormat] = frozenset({DiskFormat.VMDK})
    supported_generations = frozenset({1, 2})

    def __init__(self, settings: BuildSettings, runner: ProcessRunner):
        self.settings = settings
        self.runner = runner
        self._session: Optional[requests.Session] = None
        self._mounts: Dict[Path, str] = {}

    # ── REST plumbing ────────────────────────────────────────────────────────

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            session = requests.Session()
            if self.settings.vmrest_username:
                session.auth = (self.settings.vmrest_username, self.settings.vmrest_password or "")
            session.headers.update({"Accept": VMREST_MEDIA_TYPE, "Content-Type": VMREST_MEDIA_TYPE})
            self._session = session
        return self._session

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.settings.vmrest_url.rstrip('/')}/{path.lstrip('/')}"
        timeout = kwargs.pop("timeout", self.settings.request_timeout)
        try:
            return self.session.request(method, url, timeout=timeout, **kwargs)
        except requests.Timeout as e:
            raise OperationTimeoutError(f"{method} {path}", timeout) from e
        except requests.RequestException as e:
            raise ProvisioningError(f"vmrest request {method} {path} failed: {e}") from e

    def _check(self, response: requests.Response, vm: Optional[VMInfo] = None) -> requests.Response:
        if response.status_code == 404 and vm is not None:
            raise VMNotFoundError(vm.name)
        if response.status_code >= 400:
            raise ProvisioningError(
                f"vmrest returned HTTP {response.status_code}: {response.text[:240]}"
            )
        return response

    def _vmrun(self, *args: str, timeout: Optional[float] = None):
        return self.runner.run(
            [self.settings.vmrun, "-T", "ws", *args],
            timeout=timeout or self.settings.provider_command_timeout,
        )

    def _diskpart(self, script: str):
        return self.runner.run(
            [self.settings.diskpart],
            timeout=self.settings.provider_command_timeout,
            input_text=script,
        )

    # ── availability / validation ────────────────────────────────────────────

    def test_available(self) -> bool:
        if not Path(self.settings.vmrun).exists():
            log.debug("workstation.vmrun_missing", path=self.settings.vmrun)
            return False
        try:
            response = self._request("GET", "/vms", timeout=5)
        except Exception as e:
            log.debug("workstation.vmrest_unreachable", error=str(e))
            return False
        return response.status_code == 200

    def validate_configuration(self, config: VMConfiguration) -> ValidationResult:
        result = validate_common(
            config,
            self.settings,
            self.supported_disk_formats,
            self.supported_generations,
            self.name,
        )
        if config.enable_tpm:
            result.warnings.append(
                "TPM requested but Workstation needs an encrypted VM for a virtual TPM; TPM will be disabled"
            )
        return result

    # ── VM lifecycle ─────────────────────────────────────────────────────────

    def _vm_dir(self, config: VMConfiguration) -> Path:
        return config.disk_path.parent / f"{config.name}-vm"

    def create_vm(self, config: VMConfiguration) -> VMInfo:
        validation = self.validate_configuration(config)
        if not validation.is_valid:
            raise ProvisioningError(
                f"Invalid configuration for Workstation: {'; '.join(validation.errors)}"
            )

        vm_dir = self._vm_dir(config)
        vm_dir.mkdir(parents=True, exist_ok=True)
        vmx_path = vm_dir / f"{config.name}.vmx"
        write_vmx(vmx_path, render_vmx(config, self.settings.workstation_guest_os))

        try:
            response = self._check(
                self._request(
                    "POST", "/vms/registration", json={"name": config.name, "path": str(vmx_path)}
                )
            )
        except ProvisioningError:
            shutil.rmtree(vm_dir, ignore_errors=True)
            raise

        data = response.json() if response.content else {}
        vm = VMInfo(
            id=data.get("id") or config.name,
            name=config.name,
            hypervisor=self.name,
            state=VMState.OFF,
            memory_bytes=config.memory_bytes,
            config_path=vmx_path,
            disk_path=config.disk_path,
        )
        log.info("workstation.vm_created", vm_name=vm.name, vm_id=vm.id, vmx=str(vmx_path))
        return vm

    def _set_power(self, vm: VMInfo, operation: str, vmrun_args, timeout: float) -> None:
        response = self._request(
            "PUT", f"/vms/{vm.id}/power", data=operation, timeout=timeout
        )
        if response.status_code == 404:
            raise VMNotFoundError(vm.name)
        if response.status_code < 400:
            return
        log.warning(
            "workstation.rest_power_failed",
            vm_name=vm.name,
            operation=operation,
            status=response.status_code,
        )
        try:
            self._vmrun(*vmrun_args, timeout=timeout)
        except ExternalToolError as e:
            raise ProvisioningError(f"vmrun {operation} failed for '{vm.name}': {e}") from e

    def start_vm(self, vm: VMInfo, show_console: bool = False) -> None:
        previous, vm.state = vm.state, VMState.STARTING
        try:
            self._set_power(
                vm,
                "on",
                ["start", str(vm.config_path), "gui" if show_console else "nogui"],
                self.settings.vm_start_timeout,
            )
        except Exception:
            vm.state = previous
            raise
        vm.state = VMState.RUNNING
        log.info("workstation.vm_started", vm_name=vm.name)

    def stop_vm(self, vm: VMInfo, force: bool = False) -> None:
        previous, vm.state = vm.state, VMState.STOPPING
        try:
            self._set_power(
                vm,
                "off" if force else "shutdown",
                ["stop", str(vm.config_path), "hard" if force else "soft"],
                self.settings.vm_stop_timeout,
            )
        except Exception:
            vm.state = previous
            raise
        vm.state = VMState.OFF
        log.info("workstation.vm_stopped", vm_name=vm.name, force=force)

    def remove_vm(self, vm: VMInfo, remove_disks: bool = False) -> None:
        if self.get_vm_state(vm) == VMState.RUNNING:
            try:
                self.stop_vm(vm, force=True)
            except VMNotFoundError:
                pass

        vmx_path = vm.config_path
        if vmx_path is not None and vmx_path.exists() and not remove_disks:
            # vmrest deletes every file the VM references; keep the disk out of it.
            entries = read_vmx(vmx_path)
            for key in [k for k in entries if k.startswith(f"{DISK_DEVICE}.")]:
                del entries[key]
            write_vmx(vmx_path, entries)

        response = self._request("DELETE", f"/vms/{vm.id}")
        if response.status_code not in (200, 204, 404):
            raise ProvisioningError(
                f"Removing VM '{vm.name}' failed: HTTP {response.status_code} {response.text[:240]}"
            )

        if vmx_path is not None:
            shutil.rmtree(vmx_path.parent, ignore_errors=True)
        if remove_disks and vm.disk_path is not None:
            self.remove_virtual_disk(vm.disk_path)
        vm.state = VMState.UNKNOWN
        if response.status_code == 404:
            raise VMNotFoundError(vm.name)
        log.info("workstation.vm_removed", vm_name=vm.name, remove_disks=remove_disks)

    def get_vm_state(self, vm: VMInfo) -> VMState:
        try:
            response = self._request("GET", f"/vms/{vm.id}/power")
            if response.status_code != 200:
                return VMState.UNKNOWN
            return POWER_STATE_MAP.get(response.json().get("power_state"), VMState.UNKNOWN)
        except Exception as e:
            log.debug("workstation.state_query_failed", vm_name=vm.name, error=str(e))
            return VMState.UNKNOWN

    def get_vm_ip_address(self, vm: VMInfo) -> str:
        # vmrest answers 500 until VMware Tools reports an address.
        try:
            response = self._request("GET", f"/vms/{vm.id}/ip")
            if response.status_code != 200:
                return ""
            ip = response.json().get("ip") or ""
        except Exception as e:
            log.debug("workstation.ip_query_failed", vm_name=vm.name, error=str(e))
            return ""
        vm.ip_addresses = [ip] if ip else []
        return ip

    # ── virtual disks ────────────────────────────────────────────────────────

    def new_virtual_disk(
        self,
        path: Path,
        size_bytes: int,
        disk_format: DiskFormat,
        disk_type: DiskType = DiskType.DYNAMIC,
    ) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        if disk_format in (DiskFormat.VHD, DiskFormat.VHDX):
            self._diskpart(diskpart_create_script(path, size_bytes, disk_type))
            log.info("workstation.vhd_created", path=str(path), size_bytes=size_bytes)
            return path
        if disk_format != DiskFormat.VMDK:
            raise ProvisioningError(f"Workstation cannot create {disk_format.value} disks")

        staging = path.with_name(f"{path.stem}.staging.vhdx")
        layout = compute_layout(
            size_bytes, self.settings.winre_size_bytes, self.settings.recovery_margin_bytes
        )
        try:
            self._diskpart(diskpart_create_script(staging, size_bytes, disk_type))
            self._diskpart(diskpart_attach_script(staging))
            try:
                self._diskpart(diskpart_partition_script(staging, layout))
            finally:
                self._diskpart(diskpart_detach_script(staging))
            subformat = "monolithicFlat" if disk_type == DiskType.FIXED else "monolithicSparse"
            self.runner.run(
                [
                    self.settings.qemu_img,
                    "convert",
                    "-f", "vhdx",
                    "-O", "vmdk",
                    "-o", f"subformat={subformat}",
                    str(staging),
                    str(path),
                ],
                timeout=self.settings.imaging_timeout,
            )
        except ExternalToolError as e:
            for leftover in [path, *vmdk_extent_files(path)]:
                leftover.unlink(missing_ok=True)
            raise ProvisioningError(f"Creating virtual disk {path} failed: {e}") from e
        finally:
            if staging.exists():
                staging.unlink()
        log.info("workstation.vmdk_created", path=str(path), size_bytes=size_bytes, type=disk_type.value)
        return path

    def _letter_present(self, letter: str) -> bool:
        return os.path.exists(f"{letter}:\\")

    def _used_letters(self):
        return [chr(c) for c in range(ord("A"), ord("Z") + 1) if self._letter_present(chr(c))]

    def mount_virtual_disk(self, path: Path) -> MountHandle:
        if path in self._mounts:
            return MountHandle(path=path, drive_letter=self._mounts[path])

        is_vmdk = path.suffix.lower() == ".vmdk"
        if is_vmdk and not Path(self.settings.vmware_mount).exists():
            raise ProvisioningError(
                f"vmware-mount is not installed at {self.settings.vmware_mount}; cannot mount {path}"
            )
        if not is_vmdk:
            self._attach_vhd(path)

        candidates = free_drive_letters(self._used_letters())
        if not candidates:
            raise ProvisioningError("No free drive letters available")
        chosen: Dict[str, str] = {}

        def query() -> Optional[str]:
            letter = chosen.get("letter")
            return letter if letter and self._letter_present(letter) else None

        def assign(attempt: int) -> None:
            letter = candidates[(attempt - 1) % len(candidates)]
            chosen["letter"] = letter
            if is_vmdk:
                self.runner.run(
                    [self.settings.vmware_mount, f"{letter}:", str(path), f"/v:{WINDOWS_PARTITION_NUMBER}"],
                    timeout=self.settings.provider_command_timeout,
                )
            else:
                self._diskpart(diskpart_assign_script(path, WINDOWS_PARTITION_NUMBER, letter))

        try:
            letter = ensure_drive_letter(
                query=query,
                assign=assign,
                target=str(path),
                attempts=self.settings.mount_attempts,
                backoff_seconds=self.settings.mount_backoff_seconds,
            )
        except ProvisioningError:
            if not is_vmdk:
                self._detach_vhd(path)
            raise

        self._mounts[path] = letter
        log.info("workstation.disk_mounted", path=str(path), letter=letter)
        return MountHandle(path=path, drive_letter=letter)

    def _attach_vhd(self, path: Path) -> None:
        self._diskpart(diskpart_attach_script(path))
        result = self._diskpart(f'select vdisk file="{path}"\nlist partition\nexit\n')
        if "there are no partitions" in result.stdout.lower():
            layout = compute_layout(
                self._vhd_size(path),
                self.settings.winre_size_bytes,
                self.settings.recovery_margin_bytes,
            )
            self._diskpart(diskpart_partition_script(path, layout))
            log.info("workstation.vhd_partitioned", path=str(path))

    def _vhd_size(self, path: Path) -> int:
        result = self._diskpart(f'select vdisk file="{path}"\ndetail vdisk\nexit\n')
        for line in result.stdout.splitlines():
            key, _, value = line.partition(":")
            if key.strip().lower() == "virtual size":
                amount, _, unit = value.strip().partition(" ")
                scale = {"MB": 1024**2, "GB": 1024**3, "TB": 1024**4}.get(unit.strip().upper(), 1)
                return int(float(amount) * scale)
        raise ProvisioningError(f"Could not determine the size of {path}")

    def _detach_vhd(self, path: Path) -> None:
        try:
            self._diskpart(diskpart_detach_script(path))
        except ExternalToolError as e:
            if "not attached" not in (e.stderr or "").lower():
                raise ProvisioningError(f"Detaching {path} failed: {e}") from e

    def dismount_virtual_disk(self, path: Path) -> None:
        letter = self._mounts.pop(path, None)
        if path.suffix.lower() != ".vmdk":
            if path.exists():
                self._detach_vhd(path)
        elif letter is not None:
            try:
                self.runner.run(
                    [self.settings.vmware_mount, f"{letter}:", "/d", "/f"],
                    timeout=self.settings.provider_command_timeout,
                )
            except ExternalToolError as e:
                raise ProvisioningError(f"Dismounting {path} failed: {e}") from e
        log.info("workstation.disk_dismounted", path=str(path), letter=letter)

    def remove_virtual_disk(self, path: Path) -> None:
        if path.suffix.lower() != ".vmdk":
            super().remove_virtual_disk(path)
            return
        extents = vmdk_extent_files(path)
        if path.exists():
            self.dismount_virtual_disk(path)
        for extent in [path, *extents]:
            extent.unlink(missing_ok=True)
        log.info("workstation.disk_removed", path=str(path), extents=[str(e) for e in extents])

    # ── removable media ──────────────────────────────────────────────────────

    def _edit_vmx(self, vm: VMInfo, updates: Dict[str, str]) -> None:
        if vm.config_path is None or not vm.config_path.exists():
            raise VMNotFoundError(vm.name)
        entries = read_vmx(vm.config_path)
        entries.update(updates)
        write_vmx(vm.config_path, entries)

    def attach_iso(self, vm: VMInfo, path: Path) -> None:
        self._edit_vmx(
            vm,
            {
                f"{CDROM_DEVICE}.present": "TRUE",
                f"{CDROM_DEVICE}.deviceType": "cdrom-image",
                f"{CDROM_DEVICE}.fileName": str(path),
                f"{CDROM_DEVICE}.startConnected": "TRUE",
            },
        )
        log.info("workstation.iso_attached", vm_name=vm.name, iso=str(path))

    def detach_iso(self, vm: VMInfo) -> None:
        self._edit_vmx(
            vm,
            {
                f"{CDROM_DEVICE}.present": "FALSE",
                f"{CDROM_DEVICE}.fileName": "",
                f"{CDROM_DEVICE}.startConnected": "FALSE",
            },
        )
        log.info("workstation.iso_detached", vm_name=vm.name)
