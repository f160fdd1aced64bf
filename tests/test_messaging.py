"""Tests for the build messaging channel."""
import threading

import pytest

from ffubuilder.exceptions import InvalidStateTransition
from ffubuilder.messaging import (
    BuildMessage,
    BuildState,
    ChannelOptions,
    MessageLevel,
    can_transition,
    new_channel,
)


class TestBuildState:
    """Test the build state machine."""

    def test_happy_path(self):
        channel = new_channel()
        for state in (BuildState.INITIALIZING, BuildState.RUNNING, BuildState.COMPLETED):
            channel.request_state(state)
        assert channel.state == BuildState.COMPLETED
        assert channel.state.is_terminal

    def test_cancel_path(self):
        channel = new_channel()
        for state in (BuildState.INITIALIZING, BuildState.RUNNING, BuildState.CANCELLING, BuildState.CANCELLED):
            channel.request_state(state)
        assert channel.state == BuildState.CANCELLED

    def test_illegal_transition_raises(self):
        channel = new_channel()
        with pytest.raises(InvalidStateTransition):
            channel.request_state(BuildState.COMPLETED)
        assert channel.state == BuildState.NOT_STARTED

    def test_terminal_states_are_final(self):
        for terminal in (BuildState.COMPLETED, BuildState.FAILED, BuildState.CANCELLED):
            assert not can_transition(terminal, BuildState.RUNNING)

    def test_transition_emits_debug_message(self):
        channel = new_channel()
        channel.request_state(BuildState.INITIALIZING)

        (message,) = channel.drain()
        assert message.level == MessageLevel.DEBUG
        assert "not_started -> initializing" in message.text


class TestBuildChannel:
    """Test FIFO delivery and bounded memory."""

    def test_fifo_order(self):
        channel = new_channel()
        for i in range(5):
            channel.info(f"m{i}")

        assert [m.text for m in channel.drain()] == ["m0", "m1", "m2", "m3", "m4"]
        assert channel.drain() == []

    def test_drain_respects_max(self):
        channel = new_channel()
        for i in range(10):
            channel.info(f"m{i}")

        assert len(channel.drain(max_messages=4)) == 4
        assert channel.pending_count() == 6

    def test_overflow_drops_oldest(self):
        channel = new_channel(ChannelOptions(capacity=3))
        for i in range(5):
            channel.info(f"m{i}")

        assert [m.text for m in channel.drain()] == ["m2", "m3", "m4"]
        assert channel.dropped == 2

    def test_zero_capacity_rejected(self):
        with pytest.raises(ValueError):
            new_channel(ChannelOptions(capacity=0))

    def test_progress_is_clamped(self):
        channel = new_channel()
        assert channel.progress("x", 140).percent == 100
        assert channel.progress("x", -5).percent == 0

    def test_last_message_survives_drain(self):
        channel = new_channel()
        channel.error("first")
        channel.error("second")
        channel.drain()

        assert channel.last_message(MessageLevel.ERROR).text == "second"
        assert channel.last_message(MessageLevel.CRITICAL) is None

    def test_messages_are_immutable(self):
        message = BuildMessage(level=MessageLevel.INFO, text="x")
        with pytest.raises(AttributeError):
            message.text = "y"

    def test_concurrent_writer_and_reader_lose_nothing(self):
        channel = new_channel()
        total = 10_000
        received = []

        def writer():
            for i in range(total):
                channel.info(str(i))

        thread = threading.Thread(target=writer)
        thread.start()
        while thread.is_alive() or channel.pending_count():
            received.extend(m.text for m in channel.drain())
        thread.join()
        received.extend(m.text for m in channel.drain())

        assert received == [str(i) for i in range(total)]
        assert channel.dropped == 0

    def test_mirror_to_log(self):
        channel = new_channel(ChannelOptions(mirror_to_log=True))
        channel.warning("disk is slow")
        assert channel.pending_count() == 1


class TestCancellation:
    """Test the cancellation flag."""

    def test_request_is_idempotent(self):
        channel = new_channel()
        assert not channel.is_cancellation_requested()

        channel.request_cancellation()
        channel.request_cancellation()

        assert channel.is_cancellation_requested()

    def test_visible_across_threads(self):
        channel = new_channel()
        thread = threading.Thread(target=channel.request_cancellation)
        thread.start()
        thread.join()
        assert channel.is_cancellation_requested()
