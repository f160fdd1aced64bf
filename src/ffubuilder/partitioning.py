"""
GPT disk layout for FFU builds.

Produces the four-partition UEFI layout (EFI system, MSR, Windows,
recovery) and renders it either as a diskpart script or as Storage-module
PowerShell, so both providers partition disks the same way.
"""

import math
from dataclasses import dataclass
from pathlib import Path
from typing import List

from .exceptions import ValidationError
from .interfaces.hypervisor import DiskType

MIB = 1024**2
GIB = 1024**3

SYSTEM_PARTITION_BYTES = 260 * MIB
MSR_PARTITION_BYTES = 16 * MIB
# Primary + backup GPT headers and alignment slack.
GPT_OVERHEAD_BYTES = 2 * MIB
MIN_WINDOWS_PARTITION_BYTES = 16 * GIB

# Added on top of the WinRE image size when sizing the recovery partition.
# Overridden per host through BuildSettings.recovery_margin_bytes.
RECOVERY_SAFETY_MARGIN_BYTES = 100 * MIB

GPT_TYPE_SYSTEM = "{c12a7328-f81f-11d2-ba4b-00a0c93ec93b}"
GPT_TYPE_MSR = "{e3c9e316-0b5c-4db8-817d-f92df00215ae}"
GPT_TYPE_BASIC = "{ebd0a0a2-b9e5-4433-87c0-68b6b72699c7}"
GPT_TYPE_RECOVERY = "{de94bba4-06d1-4d40-a16a-bfd50179d6ac}"

# Required + hidden + no drive letter.
RECOVERY_GPT_ATTRIBUTES = "0x8000000000000001"


@dataclass(frozen=True)
class Partition:
    number: int
    role: str
    size_bytes: int
    gpt_type: str
    filesystem: str = ""
    label: str = ""

    @property
    def size_mb(self) -> int:
        return self.size_bytes // MIB


@dataclass(frozen=True)
class DiskLayout:
    disk_size_bytes: int
    partitions: List[Partition]

    def by_role(self, role: str) -> Partition:
        for partition in self.partitions:
            if partition.role == role:
                return partition
        raise KeyError(role)

    @property
    def windows(self) -> Partition:
        return self.by_role("windows")

    @property
    def recovery(self) -> Partition:
        return self.by_role("recovery")


def _round_up_mib(value: int) -> int:
    return int(math.ceil(value / MIB)) * MIB


def recovery_partition_bytes(winre_bytes: int, margin_bytes: int = RECOVERY_SAFETY_MARGIN_BYTES) -> int:
    """Size of the recovery partition: WinRE plus the safety margin, MiB aligned."""
    if winre_bytes < 0 or margin_bytes < 0:
        raise ValidationError("WinRE size and recovery margin must be non-negative")
    return _round_up_mib(winre_bytes + margin_bytes)


def compute_layout(
    disk_size_bytes: int,
    winre_bytes: int,
    margin_bytes: int = RECOVERY_SAFETY_MARGIN_BYTES,
) -> DiskLayout:
    """Compute the partition layout for a disk of ``disk_size_bytes``.

    The Windows partition takes whatever the system, MSR and recovery
    partitions leave over. Raises ValidationError if that is too small.
    """
    recovery = recovery_partition_bytes(winre_bytes, margin_bytes)
    fixed = SYSTEM_PARTITION_BYTES + MSR_PARTITION_BYTES + recovery + GPT_OVERHEAD_BYTES
    windows = (disk_size_bytes - fixed) // MIB * MIB
    if windows < MIN_WINDOWS_PARTITION_BYTES:
        raise ValidationError(
            f"disk of {disk_size_bytes / GIB:g} GiB is too small: the Windows partition "
            f"would be {max(windows, 0) / GIB:.2f} GiB, at least "
            f"{MIN_WINDOWS_PARTITION_BYTES / GIB:g} GiB is required"
        )

    return DiskLayout(
        disk_size_bytes=disk_size_bytes,
        partitions=[
            Partition(1, "system", SYSTEM_PARTITION_BYTES, GPT_TYPE_SYSTEM, "FAT32", "System"),
            Partition(2, "msr", MSR_PARTITION_BYTES, GPT_TYPE_MSR),
            Partition(3, "windows", windows, GPT_TYPE_BASIC, "NTFS", "Windows"),
            Partition(4, "recovery", recovery, GPT_TYPE_RECOVERY, "NTFS", "Recovery"),
        ],
    )


# ── diskpart ─────────────────────────────────────────────────────────────────

def diskpart_create_script(path: Path, size_bytes: int, disk_type: DiskType) -> str:
    kind = "fixed" if disk_type == DiskType.FIXED else "expandable"
    return "\n".join(
        [
            f'create vdisk file="{path}" maximum={size_bytes // MIB} type={kind}',
            "exit",
        ]
    ) + "\n"


def diskpart_attach_script(path: Path) -> str:
    return "\n".join([f'select vdisk file="{path}"', "attach vdisk", "exit"]) + "\n"


def diskpart_detach_script(path: Path) -> str:
    return "\n".join([f'select vdisk file="{path}"', "detach vdisk", "exit"]) + "\n"


def diskpart_partition_script(path: Path, layout: DiskLayout) -> str:
    """Partition an attached, empty vdisk with ``layout``. No letters are assigned."""
    lines = [f'select vdisk file="{path}"', "convert gpt"]
    for partition in layout.partitions:
        if partition.role == "system":
            lines.append(f"create partition efi size={partition.size_mb}")
            lines.append(f'format quick fs=fat32 label="{partition.label}"')
        elif partition.role == "msr":
            lines.append(f"create partition msr size={partition.size_mb}")
        elif partition.role == "windows":
            lines.append(f"create partition primary size={partition.size_mb}")
            lines.append(f'format quick fs=ntfs label="{partition.label}"')
        elif partition.role == "recovery":
            lines.append("create partition primary")
            lines.append(f'format quick fs=ntfs label="{partition.label}"')
            lines.append(f'set id="{partition.gpt_type.strip("{}")}"')
            lines.append(f"gpt attributes={RECOVERY_GPT_ATTRIBUTES}")
    lines.append("exit")
    return "\n".join(lines) + "\n"


def diskpart_assign_script(path: Path, partition_number: int, letter: str) -> str:
    return "\n".join(
        [
            f'select vdisk file="{path}"',
            f"select partition {partition_number}",
            f"assign letter={letter}",
            "exit",
        ]
    ) + "\n"


# ── PowerShell (Storage module) ──────────────────────────────────────────────

def powershell_partition_script(disk_number: int, layout: DiskLayout) -> str:
    """Initialize a RAW disk as GPT and create ``layout`` without drive letters."""
    lines = [f"Initialize-Disk -Number {disk_number} -PartitionStyle GPT"]
    for partition in layout.partitions:
        size = (
            "-UseMaximumSize"
            if partition.role == "recovery"
            else f"-Size {partition.size_bytes}"
        )
        create = (
            f"$p = New-Partition -DiskNumber {disk_number} {size} "
            f"-GptType '{partition.gpt_type}'"
        )
        lines.append(create)
        if partition.filesystem:
            lines.append(
                f"$p | Format-Volume -FileSystem {partition.filesystem} "
                f"-NewFileSystemLabel '{partition.label}' -Confirm:$false | Out-Null"
            )
        if partition.role == "recovery":
            lines.append(
                "$p | Set-Partition -NoDefaultDriveLetter $true"
            )
    return "; ".join(lines)
