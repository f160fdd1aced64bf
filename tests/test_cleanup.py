"""Tests for the resource cleanup registry."""
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from ffubuilder.cleanup import (
    CleanupKind,
    CleanupRegistry,
    CleanupReport,
    CleanupStatus,
    detach_iso,
    remove_directory,
    remove_disk,
    remove_file,
    remove_network_share,
    remove_user_account,
    remove_vm,
)
from ffubuilder.exceptions import ProvisioningError, VMNotFoundError
from ffubuilder.interfaces.hypervisor import VMInfo, VMState

from conftest import FakeProvider


class TestCleanupRegistry:
    """Test registration and the LIFO sweep."""

    def test_register_returns_increasing_ids(self):
        registry = CleanupRegistry()
        first = registry.register(CleanupKind.TEMP_FILE, "a", lambda: None)
        second = registry.register(CleanupKind.TEMP_FILE, "b", lambda: None)

        assert second > first
        assert len(registry) == 2
        assert first in registry

    def test_invoke_all_is_lifo(self):
        registry = CleanupRegistry()
        order = []
        for name in ("disk", "vm", "iso"):
            registry.register(CleanupKind.TEMP_FILE, name, lambda n=name: order.append(n))

        outcomes = registry.invoke_all("test")

        assert order == ["iso", "vm", "disk"]
        assert all(o.succeeded for o in outcomes)
        assert len(registry) == 0

    def test_failing_action_does_not_stop_sweep(self):
        registry = CleanupRegistry()
        order = []
        registry.register(CleanupKind.VIRTUAL_DISK, "disk", lambda: order.append("disk"))
        failing = registry.register(CleanupKind.VM, "vm", MagicMock(side_effect=ProvisioningError("locked")))
        registry.register(CleanupKind.ISO, "iso", lambda: order.append("iso"))

        outcomes = registry.invoke_all("test")

        assert order == ["iso", "disk"]
        assert [o.succeeded for o in outcomes] == [True, False, True]
        assert "locked" in outcomes[1].error
        assert [a.action_id for a in registry.pending()] == [failing]

    def test_failed_action_retried_on_next_sweep(self):
        registry = CleanupRegistry()
        teardown = MagicMock(side_effect=[OSError("busy"), None])
        registry.register(CleanupKind.TEMP_FILE, "f", teardown)

        registry.invoke_all("first")
        outcomes = registry.invoke_all("second")

        assert outcomes[0].succeeded
        assert teardown.call_count == 2
        assert len(registry) == 0

    def test_unregister_unknown_id_is_noop(self):
        registry = CleanupRegistry()
        assert registry.unregister(42) is False

    def test_unregistered_action_not_invoked(self):
        registry = CleanupRegistry()
        teardown = MagicMock()
        action_id = registry.register(CleanupKind.TEMP_FILE, "f", teardown)

        assert registry.unregister(action_id) is True
        registry.invoke_all("test")

        teardown.assert_not_called()

    def test_clear_drops_without_invoking(self):
        registry = CleanupRegistry()
        teardown = MagicMock()
        registry.register(CleanupKind.TEMP_FILE, "f", teardown)

        registry.clear()

        assert len(registry) == 0
        teardown.assert_not_called()

    def test_invoke_all_on_empty_registry(self):
        assert CleanupRegistry().invoke_all("nothing") == []


class TestTransaction:
    """Test local rollback."""

    def test_rolls_back_on_exception(self):
        registry = CleanupRegistry()
        teardown = MagicMock()

        with pytest.raises(RuntimeError):
            with registry.transaction(CleanupKind.MOUNTED_IMAGE, "disk", teardown):
                raise RuntimeError("apply failed")

        teardown.assert_called_once()
        assert len(registry) == 0

    def test_keeps_registration_on_success(self):
        registry = CleanupRegistry()
        teardown = MagicMock()

        with registry.transaction(CleanupKind.MOUNTED_IMAGE, "disk", teardown) as action_id:
            pass

        teardown.assert_not_called()
        assert action_id in registry

    def test_failed_rollback_stays_registered(self):
        registry = CleanupRegistry()
        teardown = MagicMock(side_effect=OSError("busy"))

        with pytest.raises(RuntimeError):
            with registry.transaction(CleanupKind.MOUNTED_IMAGE, "disk", teardown):
                raise RuntimeError("apply failed")

        assert len(registry) == 1


class TestCleanupReport:
    """Test report summarisation."""

    def test_statuses(self):
        registry = CleanupRegistry()
        assert CleanupReport.from_outcomes([]).status == CleanupStatus.NOT_NEEDED

        registry.register(CleanupKind.TEMP_FILE, "ok", lambda: None)
        assert CleanupReport.from_outcomes(registry.invoke_all("t")).status == CleanupStatus.FULL

        registry.register(CleanupKind.NETWORK_SHARE, "FFUCaptureShare", MagicMock(side_effect=OSError("x")))
        report = CleanupReport.from_outcomes(registry.invoke_all("t"))
        assert report.status == CleanupStatus.PARTIAL
        assert report.leftovers == ["network-share FFUCaptureShare"]
        assert report.errors[0].startswith("network-share FFUCaptureShare:")


class TestTeardownFactories:
    """Teardowns are idempotent; missing resources count as removed."""

    def test_remove_file_twice(self, tmp_path):
        target = tmp_path / "capture.json"
        target.write_text("{}")
        teardown = remove_file(target)

        teardown()
        teardown()

        assert not target.exists()

    def test_remove_directory(self, tmp_path):
        target = tmp_path / "mount"
        (target / "Windows").mkdir(parents=True)
        teardown = remove_directory(target)

        teardown()
        teardown()

        assert not target.exists()

    def test_remove_vm_not_found_is_success(self):
        provider = MagicMock()
        provider.remove_vm.side_effect = VMNotFoundError("_FFU")

        remove_vm(provider, VMInfo(id="1", name="_FFU", hypervisor="fake"))()

    def test_remove_vm_other_errors_propagate(self):
        provider = MagicMock()
        provider.remove_vm.side_effect = ProvisioningError("locked")

        with pytest.raises(ProvisioningError):
            remove_vm(provider, VMInfo(id="1", name="_FFU", hypervisor="fake"))()

    def test_remove_disk_delegates_to_provider(self, tmp_path):
        disk = tmp_path / "_FFU.vhdx"
        provider = MagicMock()

        remove_disk(provider, disk)()

        provider.remove_virtual_disk.assert_called_once_with(disk)

    def test_remove_disk_dismounts_then_deletes(self, tmp_path, settings):
        disk = tmp_path / "_FFU.vhdx"
        disk.write_bytes(b"")
        provider = FakeProvider(settings)
        provider.mounted.add(disk)

        remove_disk(provider, disk)()

        assert provider.calls == ["dismount_virtual_disk"]
        assert provider.mounted == set()
        assert not disk.exists()

    def test_remove_disk_missing_file(self, tmp_path, settings):
        provider = FakeProvider(settings)

        remove_disk(provider, tmp_path / "gone.vhdx")()

        assert provider.calls == []

    def test_remove_vm_twice_is_idempotent(self, settings):
        provider = FakeProvider(settings)
        vm = VMInfo(id="1", name="_FFU", hypervisor="fake", state=VMState.OFF)
        provider.vms[vm.name] = vm
        teardown = remove_vm(provider, vm)

        teardown()
        teardown()

        assert provider.calls.count("remove_vm") == 2
        assert provider.vms == {}

    def test_detach_iso_vm_gone(self):
        provider = MagicMock()
        provider.detach_iso.side_effect = VMNotFoundError("_FFU")

        detach_iso(provider, VMInfo(id="1", name="_FFU", hypervisor="fake"))()

    def test_share_and_account_scripts_guard_existence(self, fake_runner):
        remove_network_share(fake_runner, "powershell.exe", "FFUCaptureShare")()
        remove_user_account(fake_runner, "powershell.exe", "ffu_user")()

        share, user = fake_runner.scripts()
        assert "Get-SmbShare -Name 'FFUCaptureShare'" in share
        assert "Remove-SmbShare" in share
        assert "Get-LocalUser -Name 'ffu_user'" in user
        assert "Remove-LocalUser" in user

    def test_path_target_is_stringified(self):
        registry = CleanupRegistry()
        registry.register(CleanupKind.VIRTUAL_DISK, Path("C:/FFU/_FFU.vhdx"), lambda: None)

        assert registry.pending()[0].target == str(Path("C:/FFU/_FFU.vhdx"))
