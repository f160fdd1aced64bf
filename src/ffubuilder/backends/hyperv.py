"""Hyper-V hypervisor provider implementation."""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional

import structlog

from ..config import BuildSettings
from ..exceptions import ExternalToolError, ProvisioningError, VMNotFoundError
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
from ..interfaces.process import ProcessResult, ProcessRunner
from ..partitioning import GPT_TYPE_BASIC, compute_layout, powershell_partition_script
from .powershell import powershell_command, ps_quote
from .volumes import ensure_drive_letter

log = structlog.get_logger(__name__)

NOT_FOUND_MARKERS = (
    "objectnotfound",
    "unable to find a virtual machine",
    "was not found",
    "cannot find",
)

STATE_MAP = {
    "Off": VMState.OFF,
    "Starting": VMState.STARTING,
    "Running": VMState.RUNNING,
    "Stopping": VMState.STOPPING,
    "Saving": VMState.STOPPING,
    "Saved": VMState.SAVED,
    "Paused": VMState.SUSPENDED,
    "Pausing": VMState.SUSPENDED,
}


def _is_not_found(error: ExternalToolError) -> bool:
    text = error.stderr.lower()
    return any(marker in text for marker in NOT_FOUND_MARKERS)


class HyperVProvider(HypervisorProvider):
    """Hyper-V provider driven through the Hyper-V and Storage PowerShell modules."""

    name = "hyperv"
    supported_disk_formats: FrozenSet[DiskFormat] = frozenset({DiskFormat.VHD, DiskFormat.VHDX})
    supported_generations = frozenset({1, 2})
    supports_host_capture = True

    def __init__(self, settings: BuildSettings, runner: ProcessRunner):
        self.settings = settings
        self.runner = runner

    # ── PowerShell plumbing ──────────────────────────────────────────────────

    def _ps(self, script: str, timeout: Optional[float] = None, check: bool = True) -> ProcessResult:
        return self.runner.run(
            powershell_command(self.settings.powershell, script),
            timeout=timeout or self.settings.provider_command_timeout,
            check=check,
        )

    def _ps_json(self, script: str, timeout: Optional[float] = None) -> Any:
        result = self._ps(script, timeout=timeout)
        out = result.stdout.strip()
        return json.loads(out) if out else None

    def _vm_call(self, vm: VMInfo, script: str, timeout: Optional[float] = None) -> ProcessResult:
        """Run a VM-scoped script, mapping PowerShell failures onto the error taxonomy."""
        try:
            return self._ps(script, timeout=timeout)
        except ExternalToolError as e:
            if _is_not_found(e):
                raise VMNotFoundError(vm.name) from e
            raise ProvisioningError(f"Hyper-V operation on '{vm.name}' failed: {e}") from e

    # ── availability / validation ────────────────────────────────────────────

    def test_available(self) -> bool:
        script = (
            "$svc = Get-Service -Name vmms -ErrorAction SilentlyContinue; "
            "$cmd = Get-Command New-VM -ErrorAction SilentlyContinue; "
            "[bool]($svc -and $svc.Status -eq 'Running' -and $cmd)"
        )
        try:
            result = self._ps(script, timeout=60, check=False)
        except Exception as e:
            log.debug("hyperv.availability_check_failed", error=str(e))
            return False
        return result.success and result.stdout.strip().lower() == "true"

    def validate_configuration(self, config: VMConfiguration) -> ValidationResult:
        result = validate_common(
            config,
            self.settings,
            self.supported_disk_formats,
            self.supported_generations,
            self.name,
        )
        if config.generation == 2 and config.disk_format == DiskFormat.VHD:
            result.errors.append("generation 2 VMs require a VHDX disk")
        if config.enable_tpm and config.generation != 2:
            result.warnings.append("TPM requested but only generation 2 VMs support a virtual TPM; TPM will be disabled")
        return result

    # ── VM lifecycle ─────────────────────────────────────────────────────────

    def create_vm(self, config: VMConfiguration) -> VMInfo:
        validation = self.validate_configuration(config)
        if not validation.is_valid:
            raise ProvisioningError(
                f"Invalid configuration for Hyper-V: {'; '.join(validation.errors)}"
            )

        name = ps_quote(config.name)
        create = (
            f"New-VM -Name {name} -Generation {config.generation} "
            f"-MemoryStartupBytes {config.memory_bytes} -VHDPath {ps_quote(config.disk_path)}"
        )
        if config.switch_name:
            create += f" -SwitchName {ps_quote(config.switch_name)}"
        create += (
            " | Select-Object @{n='Id';e={$_.Id.Guid}}, Name, ConfigurationLocation,"
            " @{n='CreationTime';e={$_.CreationTime.ToString('o')}} | ConvertTo-Json"
        )
        try:
            data = self._ps_json(create)
        except ExternalToolError as e:
            raise ProvisioningError(f"New-VM failed for '{config.name}': {e}") from e

        vm = self._vm_info_from_json(data or {}, config)

        configure = [
            f"Set-VMProcessor -VMName {name} -Count {config.processor_count}",
            f"Set-VMMemory -VMName {name} -DynamicMemoryEnabled $false",
            f"Set-VM -Name {name} -AutomaticCheckpointsEnabled $false",
        ]
        if config.enable_tpm and config.generation == 2:
            configure.append(f"Set-VMKeyProtector -VMName {name} -NewLocalKeyProtector")
            configure.append(f"Enable-VMTPM -VMName {name}")
        try:
            self._ps("; ".join(configure))
        except ExternalToolError as e:
            # New-VM succeeded but the VM is unusable; do not leave it behind.
            log.warning("hyperv.configure_failed", vm_name=config.name, error=str(e))
            try:
                self.remove_vm(vm)
            except Exception as cleanup_error:
                log.error("hyperv.partial_vm_left", vm_name=config.name, error=str(cleanup_error))
            raise ProvisioningError(f"Configuring VM '{config.name}' failed: {e}") from e

        log.info("hyperv.vm_created", vm_name=vm.name, vm_id=vm.id)
        return vm

    def _vm_info_from_json(self, data: Dict[str, Any], config: VMConfiguration) -> VMInfo:
        created = data.get("CreationTime")
        try:
            created_at = datetime.fromisoformat(created[:26]) if created else datetime.now()
        except ValueError:
            created_at = datetime.now()
        config_dir = data.get("ConfigurationLocation")
        return VMInfo(
            id=data.get("Id") or config.name,
            name=data.get("Name") or config.name,
            hypervisor=self.name,
            state=VMState.OFF,
            memory_bytes=config.memory_bytes,
            config_path=Path(config_dir) if config_dir else None,
            disk_path=config.disk_path,
            created_at=created_at,
        )

    def start_vm(self, vm: VMInfo, show_console: bool = False) -> None:
        script = f"Start-VM -Name {ps_quote(vm.name)}"
        if show_console:
            script += f"; Start-Process vmconnect.exe -ArgumentList 'localhost',{ps_quote(vm.name)}"
        previous, vm.state = vm.state, VMState.STARTING
        try:
            self._vm_call(vm, script, timeout=self.settings.vm_start_timeout)
        except Exception:
            vm.state = previous
            raise
        vm.state = VMState.RUNNING
        log.info("hyperv.vm_started", vm_name=vm.name)

    def stop_vm(self, vm: VMInfo, force: bool = False) -> None:
        flag = "-TurnOff -Force" if force else "-Force"
        previous, vm.state = vm.state, VMState.STOPPING
        try:
            self._vm_call(vm, f"Stop-VM -Name {ps_quote(vm.name)} {flag}", timeout=self.settings.vm_stop_timeout)
        except Exception:
            vm.state = previous
            raise
        vm.state = VMState.OFF
        log.info("hyperv.vm_stopped", vm_name=vm.name, force=force)

    def remove_vm(self, vm: VMInfo, remove_disks: bool = False) -> None:
        script = (
            f"$vm = Get-VM -Name {ps_quote(vm.name)}; "
            "$disks = @($vm | Get-VMHardDiskDrive | ForEach-Object { $_.Path }); "
            "if ($vm.State -ne 'Off') { Stop-VM -VM $vm -TurnOff -Force }; "
            "Remove-VM -VM $vm -Force"
        )
        if remove_disks:
            script += "; $disks | ForEach-Object { Remove-Item -LiteralPath $_ -Force -ErrorAction SilentlyContinue }"
        try:
            self._ps(script, timeout=self.settings.vm_stop_timeout)
        except ExternalToolError as e:
            if _is_not_found(e):
                vm.state = VMState.UNKNOWN
                raise VMNotFoundError(vm.name) from e
            raise ProvisioningError(f"Removing VM '{vm.name}' failed: {e}") from e
        vm.state = VMState.UNKNOWN
        log.info("hyperv.vm_removed", vm_name=vm.name, remove_disks=remove_disks)

    def get_vm_state(self, vm: VMInfo) -> VMState:
        try:
            result = self._ps(f"(Get-VM -Name {ps_quote(vm.name)}).State.ToString()", check=False)
        except Exception as e:
            log.debug("hyperv.state_query_failed", vm_name=vm.name, error=str(e))
            return VMState.UNKNOWN
        if not result.success:
            return VMState.UNKNOWN
        return STATE_MAP.get(result.stdout.strip(), VMState.UNKNOWN)

    def get_vm_ip_address(self, vm: VMInfo) -> str:
        script = (
            f"@(Get-VMNetworkAdapter -VMName {ps_quote(vm.name)} | "
            "ForEach-Object { $_.IPAddresses }) | ConvertTo-Json -Compress"
        )
        try:
            data = self._ps_json(script)
        except Exception as e:
            log.debug("hyperv.ip_query_failed", vm_name=vm.name, error=str(e))
            return ""
        addresses: List[str] = [data] if isinstance(data, str) else list(data or [])
        vm.ip_addresses = addresses
        ipv4 = [a for a in addresses if ":" not in a]
        return (ipv4 or addresses or [""])[0]

    # ── virtual disks ────────────────────────────────────────────────────────

    def new_virtual_disk(
        self,
        path: Path,
        size_bytes: int,
        disk_format: DiskFormat,
        disk_type: DiskType = DiskType.DYNAMIC,
    ) -> Path:
        if disk_format not in self.supported_disk_formats:
            raise ProvisioningError(f"Hyper-V cannot create {disk_format.value} disks")
        if path.suffix.lower().lstrip(".") != disk_format.value:
            raise ProvisioningError(f"Disk path {path} does not match format {disk_format.value}")
        path.parent.mkdir(parents=True, exist_ok=True)
        kind = "-Fixed" if disk_type == DiskType.FIXED else "-Dynamic"
        try:
            self._ps(f"New-VHD -Path {ps_quote(path)} -SizeBytes {size_bytes} {kind} | Out-Null")
        except ExternalToolError as e:
            raise ProvisioningError(f"Creating virtual disk {path} failed: {e}") from e
        log.info("hyperv.disk_created", path=str(path), size_bytes=size_bytes, type=disk_type.value)
        return path

    def mount_virtual_disk(self, path: Path) -> MountHandle:
        attach = (
            f"$vhd = Get-VHD -Path {ps_quote(path)}; "
            f"if (-not $vhd.Attached) {{ Mount-VHD -Path {ps_quote(path)} -NoDriveLetter; "
            f"$vhd = Get-VHD -Path {ps_quote(path)} }}; "
            "Get-Disk -Number $vhd.DiskNumber | Select-Object Number, Size, "
            "@{n='Raw';e={$_.PartitionStyle -eq 'RAW' -or $_.PartitionStyle -eq 0}} | ConvertTo-Json"
        )
        try:
            disk = self._ps_json(attach) or {}
        except ExternalToolError as e:
            raise ProvisioningError(f"Mounting {path} failed: {e}") from e

        try:
            if disk.get("Number") is None:
                raise ProvisioningError(f"Mounting {path} returned no disk")
            disk_number = int(disk["Number"])
            if disk.get("Raw"):
                layout = compute_layout(
                    int(disk["Size"]),
                    self.settings.winre_size_bytes,
                    self.settings.recovery_margin_bytes,
                )
                self._ps(powershell_partition_script(disk_number, layout))
                log.info("hyperv.disk_partitioned", path=str(path), disk_number=disk_number)

            partition_number = self._windows_partition_number(disk_number)
            letter = ensure_drive_letter(
                query=lambda: self._partition_letter(disk_number, partition_number),
                assign=lambda attempt: self._ps(
                    f"Add-PartitionAccessPath -DiskNumber {disk_number} "
                    f"-PartitionNumber {partition_number} -AssignDriveLetter"
                ),
                target=str(path),
                attempts=self.settings.mount_attempts,
                backoff_seconds=self.settings.mount_backoff_seconds,
            )
        except Exception:
            self.dismount_virtual_disk(path)
            raise

        log.info("hyperv.disk_mounted", path=str(path), disk_number=disk_number, letter=letter)
        return MountHandle(path=path, drive_letter=letter, disk_number=disk_number)

    def _windows_partition_number(self, disk_number: int) -> int:
        script = (
            f"Get-Partition -DiskNumber {disk_number} | "
            f"Where-Object {{ $_.GptType -eq '{GPT_TYPE_BASIC}' -or $_.Type -eq 'IFS' }} | "
            "Sort-Object Size -Descending | Select-Object -First 1 -ExpandProperty PartitionNumber"
        )
        try:
            out = self._ps(script).stdout.strip()
        except ExternalToolError as e:
            raise ProvisioningError(f"Listing partitions on disk {disk_number} failed: {e}") from e
        if not out:
            raise ProvisioningError(f"Disk {disk_number} has no Windows partition")
        return int(out)

    def _partition_letter(self, disk_number: int, partition_number: int) -> Optional[str]:
        result = self._ps(
            f'"$((Get-Partition -DiskNumber {disk_number} -PartitionNumber {partition_number}).DriveLetter)"'
        )
        return result.stdout.strip() or None

    def dismount_virtual_disk(self, path: Path) -> None:
        script = (
            f"$vhd = Get-VHD -Path {ps_quote(path)} -ErrorAction SilentlyContinue; "
            f"if ($vhd -and $vhd.Attached) {{ Dismount-VHD -Path {ps_quote(path)} }}"
        )
        try:
            self._ps(script)
        except ExternalToolError as e:
            if _is_not_found(e):
                return
            raise ProvisioningError(f"Dismounting {path} failed: {e}") from e
        log.info("hyperv.disk_dismounted", path=str(path))

    # ── removable media ──────────────────────────────────────────────────────

    def attach_iso(self, vm: VMInfo, path: Path) -> None:
        name = ps_quote(vm.name)
        script = (
            f"$vm = Get-VM -Name {name}; "
            f"$dvd = @(Get-VMDvdDrive -VMName {name}); "
            f"if ($dvd.Count -gt 0) {{ Set-VMDvdDrive -VMName {name} "
            f"-ControllerNumber $dvd[0].ControllerNumber -ControllerLocation $dvd[0].ControllerLocation "
            f"-Path {ps_quote(path)} }} "
            f"else {{ Add-VMDvdDrive -VMName {name} -Path {ps_quote(path)}; $dvd = @(Get-VMDvdDrive -VMName {name}) }}; "
            f"if ($vm.Generation -eq 2) {{ Set-VMFirmware -VMName {name} -FirstBootDevice $dvd[0] }}"
        )
        self._vm_call(vm, script)
        log.info("hyperv.iso_attached", vm_name=vm.name, iso=str(path))

    def detach_iso(self, vm: VMInfo) -> None:
        self._vm_call(vm, f"Get-VMDvdDrive -VMName {ps_quote(vm.name)} | Remove-VMDvdDrive")
        log.info("hyperv.iso_detached", vm_name=vm.name)
