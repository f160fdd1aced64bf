"""Tests for the pluggable build steps."""
import json

import pytest

from ffubuilder.cleanup import CleanupKind, CleanupRegistry
from ffubuilder.exceptions import ProvisioningError, StepFailedError
from ffubuilder.interfaces.hypervisor import MountHandle
from ffubuilder.messaging import MessageLevel
from ffubuilder.steps import (
    StepContext,
    StepOutcome,
    apply_base_image_step,
    guest_capture_step,
    inject_drivers_step,
    run_step,
)


@pytest.fixture
def registry():
    return CleanupRegistry("test")


@pytest.fixture
def ctx(definition, settings, channel, fake_provider, registry, fake_runner):
    return StepContext(
        definition=definition,
        settings=settings,
        channel=channel,
        provider=fake_provider,
        registry=registry,
        runner=fake_runner,
    )


class TestRunStep:
    def test_missing_step_is_skipped(self, ctx, channel):
        assert run_step("acquire_drivers", None, ctx) == StepOutcome.SKIPPED
        assert "not configured" in channel.last_message(MessageLevel.DEBUG).text

    def test_none_counts_as_success(self, ctx):
        assert run_step("build_media", lambda c: None, ctx) == StepOutcome.SUCCEEDED

    def test_failed_outcome_raises(self, ctx):
        with pytest.raises(StepFailedError, match="acquire_updates"):
            run_step("acquire_updates", lambda c: StepOutcome.FAILED, ctx)

    def test_skipped_outcome_is_reported(self, ctx, channel):
        assert run_step("inject_drivers", lambda c: StepOutcome.SKIPPED, ctx) == StepOutcome.SKIPPED
        assert channel.last_message(MessageLevel.INFO).text == "Step 'inject_drivers' skipped"

    def test_exceptions_propagate(self, ctx):
        def broken(c):
            raise ProvisioningError("no network")

        with pytest.raises(ProvisioningError):
            run_step("acquire_drivers", broken, ctx)


class TestApplyBaseImage:
    def test_applies_to_mount_root(self, ctx, imaging, tmp_path):
        wim = tmp_path / "install.wim"
        wim.write_bytes(b"")
        ctx.mount = MountHandle(path=tmp_path / "d.vhdx", drive_letter="W", disk_number=3)

        apply_base_image_step(imaging, wim, index=6)(ctx)

        args = imaging.calls[0]
        assert args[0] == "/Apply-Image"
        assert "/Index:6" in args
        assert args[-1] == f"/ApplyDir:{ctx.mount.root}"

    def test_needs_mount(self, ctx, imaging, tmp_path):
        with pytest.raises(ProvisioningError):
            apply_base_image_step(imaging, tmp_path / "install.wim")(ctx)

    def test_missing_wim(self, ctx, imaging, tmp_path):
        ctx.mount = MountHandle(path=tmp_path / "d.vhdx", drive_letter="W")
        with pytest.raises(StepFailedError, match="image not found"):
            apply_base_image_step(imaging, tmp_path / "missing.wim")(ctx)
        assert imaging.calls == []


class TestInjectDrivers:
    def test_skipped_without_drivers(self, ctx, imaging, tmp_path):
        step = inject_drivers_step(imaging, tmp_path / "drivers", tmp_path / "mount")
        assert step(ctx) == StepOutcome.SKIPPED
        assert imaging.calls == []

    def test_mounts_adds_and_commits(self, ctx, imaging, registry, tmp_path):
        drivers = tmp_path / "drivers"
        drivers.mkdir()
        (drivers / "net.inf").write_text("[Version]")
        ctx.output_path = tmp_path / "TestFFU.ffu"

        outcome = inject_drivers_step(imaging, drivers, tmp_path / "mount")(ctx)

        assert outcome == StepOutcome.SUCCEEDED
        assert imaging.operations() == ["/Mount-Image", f"/Image:{tmp_path / 'mount'}", "/Unmount-Image"]
        assert imaging.calls[-1][-1] == "/Commit"
        assert len(registry) == 0

    def test_failure_leaves_mount_registered(self, ctx, imaging, registry, tmp_path):
        drivers = tmp_path / "drivers"
        drivers.mkdir()
        (drivers / "net.inf").write_text("[Version]")
        ctx.output_path = tmp_path / "TestFFU.ffu"

        def failing_add(mount_dir, drivers_dir):
            raise ProvisioningError("driver rejected")

        imaging.add_drivers = failing_add
        with pytest.raises(ProvisioningError):
            inject_drivers_step(imaging, drivers, tmp_path / "mount")(ctx)

        assert [a.kind for a in registry.pending()] == [CleanupKind.MOUNTED_IMAGE]


class TestGuestCapture:
    @pytest.fixture
    def vm(self, fake_provider, definition):
        return fake_provider.create_vm(definition.to_vm_configuration())

    def test_capture_moves_image_and_cleans_up(self, ctx, vm, fake_provider, fake_runner, registry, tmp_path):
        share = tmp_path / "capture"
        iso = tmp_path / "capture.iso"
        ctx.vm = vm
        fake_provider.hooks["start_vm"] = lambda: (share / "TestFFU.ffu").write_bytes(b"FFU")

        outcome = guest_capture_step(iso, share)(ctx)

        assert outcome == StepOutcome.SUCCEEDED
        assert ctx.definition.ffu_path.read_bytes() == b"FFU"
        assert not (share / "capture.json").exists()
        assert len(registry) == 0
        scripts = fake_runner.scripts()
        assert any("New-LocalUser -Name 'ffu_user'" in s for s in scripts)
        assert any("Remove-SmbShare -Name 'FFUCaptureShare'" in s for s in scripts)
        assert "Remove-LocalUser" in scripts[-1]
        assert fake_provider.isos == {}

    def test_capture_config_written_to_share(self, ctx, vm, fake_provider, tmp_path):
        share = tmp_path / "capture"
        seen = {}

        def capture():
            seen.update(json.loads((share / "capture.json").read_text()))
            (share / "TestFFU.ffu").write_bytes(b"FFU")

        ctx.vm = vm
        fake_provider.hooks["start_vm"] = capture
        guest_capture_step(tmp_path / "capture.iso", share)(ctx)

        assert seen["share"] == "FFUCaptureShare"
        assert seen["user"] == "ffu_user"
        assert seen["image"] == "TestFFU.ffu"
        assert seen["password"]

    def test_missing_image_leaves_plumbing_registered(self, ctx, vm, registry, tmp_path):
        ctx.vm = vm

        with pytest.raises(StepFailedError, match="did not produce"):
            guest_capture_step(tmp_path / "capture.iso", tmp_path / "capture")(ctx)

        kinds = [a.kind for a in registry.pending()]
        assert kinds == [CleanupKind.USER_ACCOUNT, CleanupKind.NETWORK_SHARE, CleanupKind.TEMP_FILE, CleanupKind.ISO]

    def test_needs_vm(self, ctx, tmp_path):
        with pytest.raises(ProvisioningError):
            guest_capture_step(tmp_path / "capture.iso", tmp_path / "capture")(ctx)
