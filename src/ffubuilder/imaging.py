"""DISM wrapper for applying, capturing and servicing images."""

from pathlib import Path
from typing import List, Optional

import structlog

from .config import BuildSettings
from .interfaces.process import ProcessResult, ProcessRunner

log = structlog.get_logger(__name__)


class DismImagingTool:
    """Runs DISM as single blocking commands bounded by ``settings.imaging_timeout``.

    Non-zero exits raise ExternalToolError, timeouts OperationTimeoutError
    (both raised by the ProcessRunner).
    """

    def __init__(self, runner: ProcessRunner, settings: BuildSettings):
        self.runner = runner
        self.settings = settings

    def _dism(self, *args: str, timeout: Optional[float] = None) -> ProcessResult:
        command: List[str] = [self.settings.dism, *args]
        log.info("dism.run", operation=args[0])
        return self.runner.run(command, timeout=timeout or self.settings.imaging_timeout)

    def apply_image(self, image_file: Path, index: int, apply_dir: str) -> None:
        self._dism(
            "/Apply-Image",
            f"/ImageFile:{image_file}",
            f"/Index:{index}",
            f"/ApplyDir:{apply_dir}",
        )

    def make_bootable(self, windows_dir: str, system_letter: str) -> None:
        """Write UEFI boot files for ``windows_dir`` to the system partition."""
        self.runner.run(
            [self.settings.bcdboot, windows_dir, "/s", f"{system_letter.rstrip(':')}:", "/f", "UEFI"],
            timeout=self.settings.provider_command_timeout,
        )

    def capture_ffu(
        self,
        disk_number: int,
        image_file: Path,
        name: str,
        description: str = "",
    ) -> Path:
        image_file.parent.mkdir(parents=True, exist_ok=True)
        args = [
            "/Capture-FFU",
            f"/ImageFile:{image_file}",
            f"/CaptureDrive:\\\\.\\PhysicalDrive{disk_number}",
            f"/Name:{name}",
            "/Compress:Default",
        ]
        if description:
            args.append(f"/Description:{description}")
        self._dism(*args)
        return image_file

    def optimize_ffu(self, image_file: Path) -> None:
        self._dism("/Optimize-FFU", f"/ImageFile:{image_file}")

    def mount_image(self, image_file: Path, mount_dir: Path, index: int = 1) -> None:
        mount_dir.mkdir(parents=True, exist_ok=True)
        self._dism(
            "/Mount-Image",
            f"/ImageFile:{image_file}",
            f"/Index:{index}",
            f"/MountDir:{mount_dir}",
        )

    def add_drivers(self, mount_dir: Path, drivers_dir: Path) -> None:
        self._dism(
            f"/Image:{mount_dir}",
            "/Add-Driver",
            f"/Driver:{drivers_dir}",
            "/Recurse",
        )

    def unmount_image(self, mount_dir: Path, commit: bool) -> None:
        self._dism(
            "/Unmount-Image",
            f"/MountDir:{mount_dir}",
            "/Commit" if commit else "/Discard",
        )
