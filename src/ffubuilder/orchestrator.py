"""
Build phase orchestration for FFU images.

Runs one build as a fixed sequence of phases on a single worker:

    Validate -> AcquireResources -> PrepareDisk -> CreateVM ->
    RunGuestWorkload -> Capture -> InjectPostCaptureContent -> Package -> Done

Every phase boundary is a checkpoint: a pending cancellation request is
honoured there (cleanup first, then ``Cancelled``), otherwise a weighted
progress message is emitted. Cancellation requested while a phase body runs
is only seen at the next checkpoint.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .backends.subprocess_runner import SubprocessRunner
from .cleanup import (
    CleanupKind,
    CleanupRegistry,
    CleanupReport,
    CleanupStatus,
    detach_iso,
    dismount_disk,
    remove_disk,
    remove_file,
    remove_vm,
)
from .config import BuildDefinition, BuildSettings
from .exceptions import ProviderUnavailableError, ProvisioningError, ValidationError
from .imaging import DismImagingTool
from .interfaces.hypervisor import HypervisorProvider, VMInfo, VMState
from .interfaces.process import ProcessRunner
from .logging import get_logger, log_operation
from .messaging import BuildChannel, BuildState
from .partitioning import compute_layout
from .steps import BuildSteps, StepContext, run_step


class BuildPhase(Enum):
    VALIDATE = "Validate"
    ACQUIRE_RESOURCES = "AcquireResources"
    PREPARE_DISK = "PrepareDisk"
    CREATE_VM = "CreateVM"
    RUN_GUEST_WORKLOAD = "RunGuestWorkload"
    CAPTURE = "Capture"
    INJECT_POST_CAPTURE_CONTENT = "InjectPostCaptureContent"
    PACKAGE = "Package"
    DONE = "Done"


PHASE_ORDER: List[BuildPhase] = list(BuildPhase)

# Share of the overall progress bar; image application and capture dominate.
PHASE_WEIGHTS: Dict[BuildPhase, int] = {
    BuildPhase.VALIDATE: 2,
    BuildPhase.ACQUIRE_RESOURCES: 10,
    BuildPhase.PREPARE_DISK: 25,
    BuildPhase.CREATE_VM: 3,
    BuildPhase.RUN_GUEST_WORKLOAD: 20,
    BuildPhase.CAPTURE: 25,
    BuildPhase.INJECT_POST_CAPTURE_CONTENT: 5,
    BuildPhase.PACKAGE: 10,
    BuildPhase.DONE: 0,
}


def phase_start_percent(phase: BuildPhase, fraction: float = 0.0) -> float:
    """Percent complete when ``phase`` is ``fraction`` of the way through."""
    total = sum(PHASE_WEIGHTS.values())
    before = 0
    for candidate in PHASE_ORDER:
        if candidate == phase:
            break
        before += PHASE_WEIGHTS[candidate]
    return round(100.0 * (before + PHASE_WEIGHTS[phase] * fraction) / total, 2)


class BuildCancelled(Exception):
    """Raised internally once a checkpoint has finished handling cancellation."""

    def __init__(self, checkpoint: str, phase: BuildPhase):
        self.checkpoint = checkpoint
        self.phase = phase
        super().__init__(f"cancelled at {checkpoint}")


@dataclass
class BuildResult:
    """Terminal outcome of one build."""

    state: BuildState
    failed_phase: Optional[BuildPhase] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    validation_errors: List[str] = field(default_factory=list)
    output_path: Optional[Path] = None
    cleanup: CleanupReport = field(default_factory=lambda: CleanupReport(CleanupStatus.NOT_NEEDED))
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.state == BuildState.COMPLETED


class BuildOrchestrator:
    """
    Drive one FFU build through its phases on the selected provider.

    Usage:
        channel = new_channel()
        orch = BuildOrchestrator(provider, channel, settings, definition, steps=steps)
        result = orch.run()  # never raises for build failures
    """

    def __init__(
        self,
        provider: HypervisorProvider,
        channel: BuildChannel,
        settings: BuildSettings,
        definition: BuildDefinition,
        steps: Optional[BuildSteps] = None,
        imaging: Optional[DismImagingTool] = None,
        registry: Optional[CleanupRegistry] = None,
        runner: Optional[ProcessRunner] = None,
    ):
        self.provider = provider
        self.channel = channel
        self.settings = settings
        self.definition = definition
        self.steps = steps or BuildSteps()
        self.runner = runner or SubprocessRunner()
        self.imaging = imaging or DismImagingTool(self.runner, settings)
        self.registry = registry or CleanupRegistry(name=definition.name)
        self.log = get_logger(__name__).bind(build=definition.name, provider=provider.name)

        self.current_phase: Optional[BuildPhase] = None
        self.vm: Optional[VMInfo] = None
        self._cleanup_report = CleanupReport(CleanupStatus.NOT_NEEDED)
        self._disk_action: Optional[int] = None
        self._vm_action: Optional[int] = None
        self._iso_action: Optional[int] = None
        self._output_action: Optional[int] = None

    # ── public API ───────────────────────────────────────────────────────────

    def phases(self) -> List[Tuple[BuildPhase, Callable[[], None]]]:
        return [
            (BuildPhase.VALIDATE, self._validate),
            (BuildPhase.ACQUIRE_RESOURCES, self._acquire_resources),
            (BuildPhase.PREPARE_DISK, self._prepare_disk),
            (BuildPhase.CREATE_VM, self._create_vm),
            (BuildPhase.RUN_GUEST_WORKLOAD, self._run_guest_workload),
            (BuildPhase.CAPTURE, self._capture),
            (BuildPhase.INJECT_POST_CAPTURE_CONTENT, self._inject_post_capture_content),
            (BuildPhase.PACKAGE, self._package),
            (BuildPhase.DONE, self._done),
        ]

    def run(self) -> BuildResult:
        started = time.monotonic()
        self.channel.request_state(BuildState.INITIALIZING)
        self.channel.info(
            f"Starting build '{self.definition.name}' on {self.provider.name}", source="orchestrator"
        )

        try:
            if not self.provider.test_available():
                raise ProviderUnavailableError(
                    self.provider.name, "the hypervisor platform is not installed or not running"
                )
        except ProviderUnavailableError as e:
            return self._fail(e, started, cleanup=False)

        self.channel.request_state(BuildState.RUNNING)
        try:
            for phase, body in self.phases():
                self._checkpoint(phase)
                self.current_phase = phase
                with log_operation(self.log, f"phase.{phase.value}"):
                    body()
        except BuildCancelled as e:
            return BuildResult(
                state=BuildState.CANCELLED,
                failed_phase=e.phase,
                cleanup=self._cleanup_report,
                duration_seconds=time.monotonic() - started,
            )
        except ValidationError as e:
            # Nothing exists yet when Validate rejects a build.
            return self._fail(e, started, cleanup=self.current_phase != BuildPhase.VALIDATE)
        except Exception as e:
            return self._fail(e, started, cleanup=True)

        return BuildResult(
            state=BuildState.COMPLETED,
            output_path=self.definition.ffu_path,
            cleanup=CleanupReport(CleanupStatus.NOT_NEEDED),
            duration_seconds=time.monotonic() - started,
        )

    # ── checkpoints / terminal handling ──────────────────────────────────────

    def _checkpoint(self, phase: BuildPhase, label: Optional[str] = None, fraction: float = 0.0) -> None:
        name = label or phase.value
        if self.channel.is_cancellation_requested():
            self.channel.warning(f"Build cancelled by user at {name}", source=phase.value)
            self.log.warning("build.cancelled", checkpoint=name, pending_cleanup=len(self.registry))
            self.channel.request_state(BuildState.CANCELLING)
            outcomes = self.registry.invoke_all(f"user cancelled at {name}")
            self._cleanup_report = CleanupReport.from_outcomes(outcomes)
            self._report_leftovers(self._cleanup_report)
            self.channel.request_state(BuildState.CANCELLED)
            raise BuildCancelled(name, phase)
        self.channel.progress(name, phase_start_percent(phase, fraction), operation=name, source=phase.value)

    def _fail(self, error: Exception, started: float, cleanup: bool) -> BuildResult:
        phase = self.current_phase
        where = phase.value if phase else "Initialize"
        self.channel.error(f"{where} failed: {error}", source=where)
        self.log.error("build.failed", phase=where, error=str(error), error_type=type(error).__name__)

        report = CleanupReport(CleanupStatus.NOT_NEEDED)
        if cleanup:
            report = CleanupReport.from_outcomes(self.registry.invoke_all(f"{where} failed: {error}"))
            self._report_leftovers(report)
        self.channel.request_state(BuildState.FAILED)

        return BuildResult(
            state=BuildState.FAILED,
            failed_phase=phase,
            error=str(error),
            error_type=type(error).__name__,
            validation_errors=list(error.errors) if isinstance(error, ValidationError) else [],
            cleanup=report,
            duration_seconds=time.monotonic() - started,
        )

    def _report_leftovers(self, report: CleanupReport) -> None:
        if report.status == CleanupStatus.PARTIAL:
            self.channel.warning(
                "Cleanup incomplete, remove manually: " + ", ".join(report.leftovers),
                source="cleanup",
            )

    def _context(self, **overrides) -> StepContext:
        values = dict(
            definition=self.definition,
            settings=self.settings,
            channel=self.channel,
            provider=self.provider,
            registry=self.registry,
            runner=self.runner,
            vm=self.vm,
        )
        values.update(overrides)
        return StepContext(**values)

    # ── phases ───────────────────────────────────────────────────────────────

    def _validate(self) -> None:
        config = self.definition.to_vm_configuration()
        result = self.provider.validate_configuration(config)
        for warning in result.warnings:
            self.channel.warning(warning, source=self.provider.name)

        errors = list(result.errors)
        if not self.provider.supports_host_capture:
            if not self.definition.install_apps:
                errors.append(
                    f"{self.provider.name} cannot capture from the host; direct capture is unavailable"
                )
            elif self.steps.capture_in_guest is None:
                errors.append(f"{self.provider.name} needs an in-guest capture step")
        try:
            compute_layout(
                self.definition.disk_size_bytes,
                self.settings.winre_size_bytes,
                self.settings.recovery_margin_bytes,
            )
        except ValidationError as e:
            errors.append(str(e))

        if errors:
            raise ValidationError("Invalid build configuration: " + "; ".join(errors), errors)
        self.channel.info("Build configuration is valid", source=BuildPhase.VALIDATE.value)

    def _acquire_resources(self) -> None:
        ctx = self._context()
        run_step("acquire_drivers", self.steps.acquire_drivers, ctx)
        run_step("acquire_updates", self.steps.acquire_updates, ctx)

    def _prepare_disk(self) -> None:
        path = self.definition.disk_path
        if path.exists():
            self.channel.warning(f"Removing stale disk from a previous build: {path}", source="PrepareDisk")
            remove_disk(self.provider, path)()

        self.provider.new_virtual_disk(
            path,
            self.definition.disk_size_bytes,
            self.definition.disk_format,
            self.definition.disk_type,
        )
        self._disk_action = self.registry.register(
            CleanupKind.VIRTUAL_DISK, str(path), remove_disk(self.provider, path)
        )
        self.channel.info(f"Created virtual disk {path}", source="PrepareDisk")

        mount = self.provider.mount_virtual_disk(path)
        with self.registry.transaction(
            CleanupKind.MOUNTED_IMAGE, str(path), dismount_disk(self.provider, path)
        ) as mount_action:
            run_step("apply_base_image", self.steps.apply_base_image, self._context(mount=mount))
        self.provider.dismount_virtual_disk(path)
        self.registry.unregister(mount_action)

    def _create_vm(self) -> None:
        if not self.definition.install_apps:
            self.channel.info("Direct capture selected, no VM needed", source="CreateVM")
            return

        vm = self.provider.create_vm(self.definition.to_vm_configuration())
        self.vm = vm
        self._vm_action = self.registry.register(CleanupKind.VM, vm.name, remove_vm(self.provider, vm))
        self.channel.info(f"Created VM '{vm.name}' ({vm.id})", source="CreateVM")

        if self.definition.iso_path is not None:
            self.provider.attach_iso(vm, self.definition.iso_path)
            self._iso_action = self.registry.register(
                CleanupKind.ISO, str(self.definition.iso_path), detach_iso(self.provider, vm)
            )

    def _run_guest_workload(self) -> None:
        if self.vm is None:
            return
        vm = self.vm
        self._checkpoint(BuildPhase.RUN_GUEST_WORKLOAD, "RunGuestWorkload (start VM)", 0.05)
        self.provider.start_vm(vm)
        self.channel.info(f"VM '{vm.name}' started; waiting for the guest workload", source="RunGuestWorkload")

        run_step("run_guest_workload", self.steps.run_guest_workload, self._context())

        ip = self.provider.get_vm_ip_address(vm)
        if ip:
            self.channel.debug(f"Guest reported IP {ip}", source="RunGuestWorkload")
        self.provider.wait_for_state(
            vm,
            VMState.OFF,
            timeout=self.settings.guest_workload_timeout,
            poll_interval=self.settings.state_poll_interval,
        )
        self.channel.info("Guest workload finished, VM is off", source="RunGuestWorkload")

    def _capture(self) -> None:
        ffu_path = self.definition.ffu_path
        if self.vm is not None:
            self._checkpoint(BuildPhase.CAPTURE, "Capture (install-then-capture)", 0.1)
            if self._iso_action is not None:
                self.provider.detach_iso(self.vm)
                self.registry.unregister(self._iso_action)
                self._iso_action = None
            if self.steps.capture_in_guest is not None:
                self._output_action = self.registry.register(
                    CleanupKind.TEMP_FILE, str(ffu_path), remove_file(ffu_path)
                )
                run_step("capture_in_guest", self.steps.capture_in_guest, self._context(output_path=ffu_path))
            else:
                self._capture_from_host(ffu_path)
        else:
            self._checkpoint(BuildPhase.CAPTURE, "Capture (direct)", 0.1)
            self._capture_from_host(ffu_path)

        if not ffu_path.exists():
            raise ProvisioningError(f"Capture finished but {ffu_path} does not exist")
        self.channel.info(f"Captured {ffu_path}", source="Capture")
        self._release_build_resources()

    def _capture_from_host(self, ffu_path: Path) -> None:
        path = self.definition.disk_path
        mount = self.provider.mount_virtual_disk(path)
        mount_action = self.registry.register(
            CleanupKind.MOUNTED_IMAGE, str(path), dismount_disk(self.provider, path)
        )
        if mount.disk_number is None:
            raise ProvisioningError(f"{self.provider.name} did not expose a disk number for {path}")

        # DISM cannot be interrupted once started.
        self._checkpoint(BuildPhase.CAPTURE, "Capture (imaging tool)", 0.2)
        self._output_action = self.registry.register(CleanupKind.TEMP_FILE, str(ffu_path), remove_file(ffu_path))
        self.imaging.capture_ffu(
            mount.disk_number,
            ffu_path,
            name=self.definition.ffu_name or self.definition.name,
            description=f"Built by ffubuilder on {self.provider.name}",
        )
        self.provider.dismount_virtual_disk(path)
        self.registry.unregister(mount_action)

    def _release_build_resources(self) -> None:
        """Happy path: the VM and scratch disk are no longer needed once captured."""
        if self.vm is not None and self._vm_action is not None:
            if self.definition.keep_vm:
                self.channel.info(f"Keeping VM '{self.vm.name}'", source="Capture")
            else:
                remove_vm(self.provider, self.vm)()
            self.registry.unregister(self._vm_action)
            self._vm_action = None

        if self._disk_action is not None:
            if self.definition.keep_disk or (self.definition.keep_vm and self.vm is not None):
                self.channel.info(f"Keeping disk {self.definition.disk_path}", source="Capture")
            else:
                remove_disk(self.provider, self.definition.disk_path)()
            self.registry.unregister(self._disk_action)
            self._disk_action = None

    def _inject_post_capture_content(self) -> None:
        run_step(
            "inject_drivers",
            self.steps.inject_drivers,
            self._context(output_path=self.definition.ffu_path),
        )

    def _package(self) -> None:
        ffu_path = self.definition.ffu_path
        if self.definition.optimize:
            # DISM cannot be interrupted once started.
            self._checkpoint(BuildPhase.PACKAGE, "Package (optimize)", 0.1)
            self.imaging.optimize_ffu(ffu_path)
        run_step("build_media", self.steps.build_media, self._context(output_path=ffu_path))

        # The FFU is the shipped image from here on.
        if self._output_action is not None:
            self.registry.unregister(self._output_action)
            self._output_action = None

    def _done(self) -> None:
        self.registry.clear()
        self.channel.success(f"FFU image created: {self.definition.ffu_path}", source="Done")
        self.channel.progress("Done", 100.0, operation="Done", source="Done")
        self.channel.request_state(BuildState.COMPLETED)
