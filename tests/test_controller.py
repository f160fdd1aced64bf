"""Tests for the background build controller."""
import threading
from unittest.mock import MagicMock

import pytest

from ffubuilder.cleanup import CleanupStatus
from ffubuilder.controller import BuildController
from ffubuilder.exceptions import ProvisioningError
from ffubuilder.messaging import BuildState, MessageLevel
from ffubuilder.orchestrator import BuildOrchestrator, BuildPhase
from ffubuilder.steps import BuildSteps


@pytest.fixture
def make_controller(fake_provider, channel, settings, definition, imaging, fake_runner):
    def factory(steps=None, definition_override=None):
        orchestrator = BuildOrchestrator(
            fake_provider,
            channel,
            settings,
            definition_override or definition,
            steps=steps,
            imaging=imaging,
            runner=fake_runner,
        )
        return BuildController(orchestrator, channel, fake_runner, poll_hz=settings.poll_hz)

    return factory


class TestBuildController:
    def test_runs_build_in_background(self, make_controller):
        controller = make_controller()

        controller.start()
        assert controller.wait(timeout=10)

        report = controller.report()
        assert report.succeeded
        assert report.state == BuildState.COMPLETED
        assert report.result.output_path.exists()
        assert report.forced is False

    def test_worker_thread_is_daemon(self, make_controller):
        controller = make_controller()
        controller.start()
        assert controller._thread.daemon
        controller.wait(timeout=10)

    def test_start_twice(self, make_controller):
        controller = make_controller()
        controller.start()
        with pytest.raises(RuntimeError):
            controller.start()
        controller.wait(timeout=10)

    def test_poll_drains_messages(self, make_controller):
        controller = make_controller()
        controller.start()
        controller.wait(timeout=10)

        messages = controller.poll(max_messages=100_000)

        assert messages[-1].level in (MessageLevel.PROGRESS, MessageLevel.DEBUG)
        assert any(m.level == MessageLevel.SUCCESS for m in messages)
        assert controller.poll() == []

    def test_failure_report(self, make_controller, fake_provider):
        fake_provider.failures["new_virtual_disk"] = ProvisioningError("disk full")
        controller = make_controller()
        controller.start()
        controller.wait(timeout=10)

        report = controller.report()
        assert report.state == BuildState.FAILED
        assert report.failed_phase == BuildPhase.PREPARE_DISK
        assert "disk full" in report.error

    def test_cancel_and_wait_cooperative(self, make_controller, fake_runner):
        entered = threading.Event()
        release = threading.Event()

        def slow_updates(ctx):
            entered.set()
            release.wait(5)

        controller = make_controller(steps=BuildSteps(acquire_updates=slow_updates))
        controller.start()
        assert entered.wait(5)

        threading.Timer(0.05, release.set).start()
        report = controller.cancel_and_wait(grace_period=5)

        assert report.state == BuildState.CANCELLED
        assert report.forced is False
        assert fake_runner.terminated == 0

    def test_cancel_and_wait_forces_after_grace(self, make_controller, fake_runner):
        entered = threading.Event()
        release = threading.Event()

        def stuck(ctx):
            entered.set()
            release.wait(5)

        controller = make_controller(steps=BuildSteps(acquire_drivers=stuck))
        controller.start()
        assert entered.wait(5)

        report = controller.cancel_and_wait(grace_period=0.05)

        assert report.forced is True
        assert fake_runner.terminated == 1
        assert report.cleanup_status == CleanupStatus.NOT_RUN
        assert report.state == BuildState.RUNNING
        release.set()
        controller.wait(timeout=5)
        assert controller.report().state == BuildState.CANCELLED

    def test_worker_crash_reported(self, channel, fake_runner):
        orchestrator = MagicMock()
        orchestrator.definition.name = "_FFU"
        orchestrator.run.side_effect = RuntimeError("boom")
        controller = BuildController(orchestrator, channel, fake_runner)

        controller.start()
        controller.wait(timeout=5)

        report = controller.report()
        assert report.error == "boom"
        assert report.cleanup_status == CleanupStatus.NOT_RUN
        assert channel.last_message(MessageLevel.CRITICAL) is not None

    def test_invalid_poll_rate(self, channel, fake_runner):
        with pytest.raises(ValueError):
            BuildController(MagicMock(), channel, fake_runner, poll_hz=0)
