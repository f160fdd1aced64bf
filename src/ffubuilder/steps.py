"""
Pluggable build steps.

Driver and update acquisition, base-image application, the guest workload,
post-capture servicing and media assembly are collaborators the
orchestrator treats as opaque: each is a callable taking a StepContext and
returning a StepOutcome (``None`` counts as success). A missing callable is
a skipped step.
"""

import json
import secrets
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

import structlog

from .backends.powershell import powershell_command, ps_quote
from .cleanup import (
    CleanupKind,
    CleanupRegistry,
    detach_iso,
    remove_file,
    remove_network_share,
    remove_user_account,
)
from .config import BuildDefinition, BuildSettings
from .exceptions import ProvisioningError, StepFailedError
from .imaging import DismImagingTool
from .interfaces.hypervisor import HypervisorProvider, MountHandle, VMInfo, VMState
from .interfaces.process import ProcessRunner
from .messaging import BuildChannel

log = structlog.get_logger(__name__)


class StepOutcome(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class StepContext:
    """Everything a step may touch. Steps register whatever they create."""

    definition: BuildDefinition
    settings: BuildSettings
    channel: BuildChannel
    provider: HypervisorProvider
    registry: CleanupRegistry
    runner: Optional[ProcessRunner] = None
    vm: Optional[VMInfo] = None
    mount: Optional[MountHandle] = None
    output_path: Optional[Path] = None


Step = Callable[[StepContext], Optional[StepOutcome]]


@dataclass
class BuildSteps:
    acquire_drivers: Optional[Step] = None
    acquire_updates: Optional[Step] = None
    apply_base_image: Optional[Step] = None
    run_guest_workload: Optional[Step] = None
    capture_in_guest: Optional[Step] = None
    inject_drivers: Optional[Step] = None
    build_media: Optional[Step] = None


def run_step(name: str, step: Optional[Step], ctx: StepContext) -> StepOutcome:
    """Run ``step``; a FAILED outcome raises StepFailedError."""
    if step is None:
        ctx.channel.debug(f"Step '{name}' not configured, skipping", source=name)
        return StepOutcome.SKIPPED
    outcome = step(ctx) or StepOutcome.SUCCEEDED
    if outcome == StepOutcome.FAILED:
        raise StepFailedError(name)
    if outcome == StepOutcome.SKIPPED:
        ctx.channel.info(f"Step '{name}' skipped", source=name)
    log.debug("step.finished", step=name, outcome=outcome.value)
    return outcome


# ── stock steps ──────────────────────────────────────────────────────────────

def apply_base_image_step(imaging: DismImagingTool, wim_path: Path, index: int = 1) -> Step:
    """Apply a WIM to the mounted Windows partition."""

    def step(ctx: StepContext) -> StepOutcome:
        if ctx.mount is None:
            raise ProvisioningError("apply_base_image needs a mounted disk")
        if not wim_path.exists():
            raise StepFailedError("apply_base_image", f"image not found: {wim_path}")
        ctx.channel.info(f"Applying {wim_path.name} index {index} to {ctx.mount.root}", source="dism")
        imaging.apply_image(wim_path, index, ctx.mount.root)
        return StepOutcome.SUCCEEDED

    return step


def inject_drivers_step(imaging: DismImagingTool, drivers_dir: Path, mount_dir: Path) -> Step:
    """Service the captured FFU with the drivers in ``drivers_dir``."""

    def unmount_discard() -> None:
        if mount_dir.exists() and any(mount_dir.iterdir()):
            imaging.unmount_image(mount_dir, commit=False)

    def step(ctx: StepContext) -> StepOutcome:
        if not drivers_dir.exists() or not any(drivers_dir.iterdir()):
            return StepOutcome.SKIPPED
        if ctx.output_path is None:
            raise ProvisioningError("inject_drivers needs a captured image")
        imaging.mount_image(ctx.output_path, mount_dir)
        action_id = ctx.registry.register(CleanupKind.MOUNTED_IMAGE, str(mount_dir), unmount_discard)
        imaging.add_drivers(mount_dir, drivers_dir)
        imaging.unmount_image(mount_dir, commit=True)
        ctx.registry.unregister(action_id)
        return StepOutcome.SUCCEEDED

    return step


def guest_capture_step(
    capture_iso: Path,
    share_dir: Path,
    share_name: str = "FFUCaptureShare",
    user_name: str = "ffu_user",
) -> Step:
    """Capture from inside the VM: boot capture media that writes the FFU to a host share.

    Creates a temporary local account and SMB share (both registered for
    cleanup), drops their details in ``capture.json`` on the share, boots the
    VM from ``capture_iso`` and waits for it to power off.
    """

    def step(ctx: StepContext) -> StepOutcome:
        if ctx.vm is None or ctx.runner is None:
            raise ProvisioningError("guest capture needs a VM and a process runner")
        runner, ps = ctx.runner, ctx.settings.powershell
        password = secrets.token_urlsafe(18)

        runner.run(
            powershell_command(
                ps,
                f"New-LocalUser -Name {ps_quote(user_name)} "
                f"-Password (ConvertTo-SecureString {ps_quote(password)} -AsPlainText -Force) "
                "-AccountNeverExpires -PasswordNeverExpires | Out-Null",
            )
        )
        user_teardown = remove_user_account(runner, ps, user_name)
        user_action = ctx.registry.register(CleanupKind.USER_ACCOUNT, user_name, user_teardown)

        share_dir.mkdir(parents=True, exist_ok=True)
        runner.run(
            powershell_command(
                ps,
                f"New-SmbShare -Name {ps_quote(share_name)} -Path {ps_quote(share_dir)} "
                f"-FullAccess {ps_quote(user_name)} | Out-Null",
            )
        )
        share_teardown = remove_network_share(runner, ps, share_name)
        share_action = ctx.registry.register(CleanupKind.NETWORK_SHARE, share_name, share_teardown)

        capture_config = share_dir / "capture.json"
        capture_config.write_text(
            json.dumps(
                {
                    "share": share_name,
                    "user": user_name,
                    "password": password,
                    "image": ctx.definition.ffu_path.name,
                }
            )
        )
        config_action = ctx.registry.register(
            CleanupKind.TEMP_FILE, str(capture_config), remove_file(capture_config)
        )

        ctx.provider.attach_iso(ctx.vm, capture_iso)
        iso_action = ctx.registry.register(CleanupKind.ISO, str(capture_iso), detach_iso(ctx.provider, ctx.vm))
        ctx.provider.start_vm(ctx.vm)
        ctx.provider.wait_for_state(
            ctx.vm,
            VMState.OFF,
            timeout=ctx.settings.imaging_timeout,
            poll_interval=ctx.settings.state_poll_interval,
        )

        captured = share_dir / ctx.definition.ffu_path.name
        if not captured.exists():
            raise StepFailedError("capture_in_guest", f"capture media did not produce {captured}")
        ctx.definition.ffu_path.parent.mkdir(parents=True, exist_ok=True)
        captured.replace(ctx.definition.ffu_path)

        # Happy path: tear down the temporary plumbing now rather than leave it on the host.
        ctx.provider.detach_iso(ctx.vm)
        ctx.registry.unregister(iso_action)
        capture_config.unlink(missing_ok=True)
        ctx.registry.unregister(config_action)
        share_teardown()
        ctx.registry.unregister(share_action)
        user_teardown()
        ctx.registry.unregister(user_action)
        return StepOutcome.SUCCEEDED

    return step
