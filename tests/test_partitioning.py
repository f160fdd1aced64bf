"""Tests for GPT layout computation and script rendering."""
from pathlib import Path

import pytest

from ffubuilder.exceptions import ValidationError
from ffubuilder.interfaces.hypervisor import DiskType
from ffubuilder.partitioning import (
    GIB,
    MIB,
    MSR_PARTITION_BYTES,
    RECOVERY_GPT_ATTRIBUTES,
    RECOVERY_SAFETY_MARGIN_BYTES,
    SYSTEM_PARTITION_BYTES,
    compute_layout,
    diskpart_assign_script,
    diskpart_create_script,
    diskpart_partition_script,
    powershell_partition_script,
    recovery_partition_bytes,
)


class TestLayout:
    """Test the four-partition UEFI layout."""

    def test_partition_order(self):
        layout = compute_layout(50 * GIB, GIB)
        assert [p.role for p in layout.partitions] == ["system", "msr", "windows", "recovery"]
        assert [p.number for p in layout.partitions] == [1, 2, 3, 4]

    def test_sizes_fit_disk(self):
        layout = compute_layout(50 * GIB, GIB)
        assert sum(p.size_bytes for p in layout.partitions) <= 50 * GIB
        assert layout.by_role("system").size_bytes == SYSTEM_PARTITION_BYTES
        assert layout.by_role("msr").size_bytes == MSR_PARTITION_BYTES

    def test_recovery_includes_margin(self):
        layout = compute_layout(50 * GIB, GIB)
        assert layout.recovery.size_bytes == GIB + RECOVERY_SAFETY_MARGIN_BYTES

    def test_margin_is_tunable(self):
        layout = compute_layout(50 * GIB, GIB, margin_bytes=300 * MIB)
        assert layout.recovery.size_bytes == GIB + 300 * MIB

    def test_recovery_rounded_to_mib(self):
        assert recovery_partition_bytes(GIB + 1, 0) == GIB + MIB

    def test_windows_is_mib_aligned(self):
        layout = compute_layout(50 * GIB + 12345, GIB)
        assert layout.windows.size_bytes % MIB == 0

    def test_too_small(self):
        with pytest.raises(ValidationError, match="too small"):
            compute_layout(10 * GIB, GIB)

    def test_negative_winre_rejected(self):
        with pytest.raises(ValidationError):
            recovery_partition_bytes(-1)

    def test_unknown_role(self):
        with pytest.raises(KeyError):
            compute_layout(50 * GIB, GIB).by_role("data")


class TestScripts:
    """Test rendered diskpart and PowerShell scripts."""

    def test_create_script(self):
        script = diskpart_create_script(Path("C:/VM/_FFU.vhdx"), 50 * GIB, DiskType.FIXED)
        assert "maximum=51200 type=fixed" in script
        assert script.endswith("exit\n")

    def test_partition_script(self):
        layout = compute_layout(50 * GIB, GIB)
        script = diskpart_partition_script(Path("C:/VM/_FFU.vhdx"), layout)

        assert "convert gpt" in script
        assert "create partition efi size=260" in script
        assert "create partition msr size=16" in script
        assert f"gpt attributes={RECOVERY_GPT_ATTRIBUTES}" in script
        assert "assign" not in script

    def test_assign_script(self):
        script = diskpart_assign_script(Path("C:/VM/_FFU.vhdx"), 3, "W")
        assert "select partition 3" in script
        assert "assign letter=W" in script

    def test_powershell_script(self):
        layout = compute_layout(50 * GIB, GIB)
        script = powershell_partition_script(7, layout)

        assert script.startswith("Initialize-Disk -Number 7 -PartitionStyle GPT")
        assert script.count("New-Partition -DiskNumber 7") == 4
        assert "-UseMaximumSize" in script
        assert "Set-Partition -NoDefaultDriveLetter $true" in script
        assert "AssignDriveLetter" not in script
