#!/usr/bin/env python3
"""
Pydantic models for build settings and build definitions.

``BuildSettings`` is the immutable host configuration (bounds, timeouts,
tool paths) constructed once at startup and handed to every component.
``BuildDefinition`` holds the parameters of one build, usually loaded from
a YAML file.
"""

import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .interfaces.hypervisor import DiskFormat, DiskType, VMConfiguration

GIB = 1024**3
MIB = 1024**2

SETTINGS_ENV_VAR = "FFUBUILDER_SETTINGS"


class BuildSettings(BaseModel):
    """Host-wide settings shared by every component of a build."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # VM bounds
    min_memory_bytes: int = Field(default=2 * GIB, gt=0)
    max_memory_bytes: int = Field(default=256 * GIB, gt=0)
    max_processors: int = Field(default=64, ge=1)

    # Provider timeouts (seconds)
    provider_command_timeout: float = Field(default=300.0, gt=0)
    vm_start_timeout: float = Field(default=120.0, gt=0)
    vm_stop_timeout: float = Field(default=300.0, gt=0)
    guest_workload_timeout: float = Field(default=4 * 3600.0, gt=0)
    state_poll_interval: float = Field(default=5.0, gt=0)

    # Mount drive-letter resolution
    mount_attempts: int = Field(default=3, ge=1)
    mount_backoff_seconds: float = Field(default=2.0, ge=0)

    # External imaging tool
    imaging_timeout: float = Field(default=3600.0, gt=0)

    # Disk layout
    winre_size_bytes: int = Field(default=1 * GIB, ge=0)
    recovery_margin_bytes: int = Field(default=100 * MIB, ge=0)

    # Messaging / controller
    channel_capacity: int = Field(default=100_000, ge=1)
    cancel_grace_period: float = Field(default=30.0, ge=0)
    poll_hz: float = Field(default=20.0, gt=0)

    # Tool paths
    powershell: str = "powershell.exe"
    dism: str = "dism.exe"
    diskpart: str = "diskpart.exe"
    bcdboot: str = "bcdboot.exe"

    # VMware Workstation
    vmrest_url: str = "http://127.0.0.1:8697/api"
    vmrest_username: Optional[str] = None
    vmrest_password: Optional[str] = None
    request_timeout: float = Field(default=30.0, gt=0)
    vmrun: str = r"C:\Program Files (x86)\VMware\VMware Workstation\vmrun.exe"
    vmware_mount: str = r"C:\Program Files (x86)\VMware\VMware Workstation\vmware-mount.exe"
    qemu_img: str = "qemu-img.exe"
    workstation_guest_os: str = "windows11-64"

    @field_validator("max_memory_bytes")
    @classmethod
    def max_above_min(cls, v: int, info) -> int:
        lower = info.data.get("min_memory_bytes")
        if lower is not None and v < lower:
            raise ValueError("max_memory_bytes must be >= min_memory_bytes")
        return v

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "BuildSettings":
        """Load settings from YAML, falling back to $FFUBUILDER_SETTINGS, then defaults."""
        if path is None:
            env_path = os.getenv(SETTINGS_ENV_VAR)
            if not env_path:
                return cls()
            path = Path(env_path)
        if not path.exists():
            raise FileNotFoundError(f"Settings file not found: {path}")
        data = yaml.safe_load(path.read_text()) or {}
        return cls.model_validate(data)


class BuildDefinition(BaseModel):
    """Validated parameters for a single FFU build."""

    name: str = Field(default="_FFU", description="VM and image name")
    memory_gb: float = Field(default=8, gt=0, description="VM memory in GiB")
    processors: int = Field(default=4, ge=1, description="Number of virtual processors")
    disk_size_gb: int = Field(default=50, ge=1, le=65536, description="Disk size in GiB")
    disk_format: DiskFormat = DiskFormat.VHDX
    disk_type: DiskType = DiskType.DYNAMIC
    generation: int = Field(default=2, ge=1, le=2)
    enable_tpm: bool = False
    switch_name: Optional[str] = None
    iso_path: Optional[Path] = Field(default=None, description="Media attached for the guest workload")
    install_apps: bool = Field(default=False, description="Boot a VM and capture after the guest workload")
    wim_path: Optional[Path] = Field(default=None, description="Base Windows image to apply")
    wim_index: int = Field(default=1, ge=1)
    work_dir: Path = Path("C:/FFUDevelopment/VM")
    output_dir: Path = Path("C:/FFUDevelopment/FFU")
    ffu_name: Optional[str] = None
    keep_vm: bool = False
    keep_disk: bool = False
    optimize: bool = True
    provider: Literal["auto", "hyperv", "workstation"] = "auto"

    @field_validator("name")
    @classmethod
    def name_must_be_valid(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Build name cannot be empty")
        if len(v) > 64:
            raise ValueError("Build name must be <= 64 characters")
        if any(c in v for c in '\\/:*?"<>|'):
            raise ValueError(f"Build name contains invalid characters: {v}")
        return v.strip()

    @property
    def memory_bytes(self) -> int:
        return int(self.memory_gb * GIB)

    @property
    def disk_size_bytes(self) -> int:
        return self.disk_size_gb * GIB

    @property
    def disk_path(self) -> Path:
        return self.work_dir / f"{self.name}.{self.disk_format.value}"

    @property
    def ffu_path(self) -> Path:
        return self.output_dir / f"{self.ffu_name or self.name}.ffu"

    def to_vm_configuration(self) -> VMConfiguration:
        """Build the provider-agnostic VM request."""
        return VMConfiguration(
            name=self.name,
            memory_bytes=self.memory_bytes,
            processor_count=self.processors,
            disk_format=self.disk_format,
            disk_path=self.disk_path,
            generation=self.generation,
            enable_tpm=self.enable_tpm,
            switch_name=self.switch_name,
            iso_path=self.iso_path,
        )

    def save(self, path: Path) -> None:
        """Save definition to YAML file."""
        data = self.model_dump(mode="json", exclude_none=True)
        path.write_text(yaml.dump(data, default_flow_style=False, sort_keys=False))

    @classmethod
    def load(cls, path: Path) -> "BuildDefinition":
        """Load definition from YAML file."""
        if path.is_dir():
            path = path / "ffubuild.yaml"
        if not path.exists():
            raise FileNotFoundError(f"Build definition not found: {path}")
        data = yaml.safe_load(path.read_text()) or {}
        return cls.model_validate(data)
