# Directory: tests/
# Filename: test_barcode_scanner.py

#############################################################
##
## This test file is designed to systematically cover every function
## in hardware/barcode_scanner.py.
##
## Run this test with the following command:
## pytest tests/test_barcode_scanner.py --cov=hardware.barcode_scanner --cov-report term-missing
##
#############################################################

import sys
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from hardware.barcode_scanner import (
    KeyEvent,
    KeystrokeAggregator,
    PynputKeyboardSource,
    key_event_from_pynput,
)
from utils.code_classifier import CHANNEL_HID, ClassifiedCode, CodeKind, RawAcquisition
from utils.scheduler import CallbackScheduler, VirtualClock

# Binary-exact intervals keep the virtual clock arithmetic exact.
SCANNER_GAP = 0.015625
HUMAN_GAP = 0.75
PAST_FINALIZE = 0.25


@pytest.fixture
def clock():
    return VirtualClock()


@pytest.fixture
def scheduler(clock):
    return CallbackScheduler(clock=clock, logger_instance=MagicMock())


@pytest.fixture
def sinks():
    return SimpleNamespace(on_code=MagicMock(), on_error=MagicMock())


@pytest.fixture
def aggregator(scheduler, sinks):
    agg = KeystrokeAggregator(scheduler, on_code=sinks.on_code, on_error=sinks.on_error, logger_instance=MagicMock())
    agg.attach()
    return agg


def type_keys(aggregator, clock, keys, gap=SCANNER_GAP):
    for key in keys:
        aggregator.on_key_event(KeyEvent(key))
        clock.advance(gap)


class TestKeystrokeAggregator:

    def test_enter_finalizes_immediately(self, aggregator, clock, sinks):
        type_keys(aggregator, clock, "999999")
        assert aggregator.on_key_event(KeyEvent("enter")) is True

        sinks.on_code.assert_called_once_with(
            RawAcquisition("999999", CHANNEL_HID),
            ClassifiedCode("999999", CodeKind.SIX_DIGIT),
        )
        assert aggregator.buffer == ""

    def test_tab_also_finalizes(self, aggregator, clock, sinks):
        type_keys(aggregator, clock, "1234567")
        aggregator.on_key_event(KeyEvent("tab"))
        assert sinks.on_code.call_args[0][1] == ClassifiedCode("1234567", CodeKind.SEVEN_DIGIT)

    def test_idle_timer_finalizes_after_last_digit(self, aggregator, scheduler, clock, sinks):
        type_keys(aggregator, clock, "1234567")
        scheduler.run_pending()
        sinks.on_code.assert_not_called()

        clock.advance(PAST_FINALIZE)
        scheduler.run_pending()
        sinks.on_code.assert_called_once()
        assert sinks.on_code.call_args[0][1].normalized_code == "1234567"

    def test_each_digit_restarts_the_finalize_timer(self, aggregator, scheduler, clock):
        type_keys(aggregator, clock, "123")
        assert scheduler.pending_timers == 1

    def test_enter_with_empty_buffer_is_not_consumed(self, aggregator, sinks):
        assert aggregator.on_key_event(KeyEvent("enter")) is False
        sinks.on_code.assert_not_called()

    def test_slow_typing_discards_the_stale_prefix(self, aggregator, scheduler, clock, sinks):
        type_keys(aggregator, clock, "123")
        # Human pause: the idle timer fires on "123" and the classifier rejects it.
        clock.advance(HUMAN_GAP)
        scheduler.run_pending()
        sinks.on_error.assert_called_once()
        assert sinks.on_error.call_args[0][0] == RawAcquisition("123", CHANNEL_HID)

        type_keys(aggregator, clock, "456789")
        aggregator.on_key_event(KeyEvent("enter"))
        sinks.on_code.assert_called_once()
        assert sinks.on_code.call_args[0][1].normalized_code == "456789"

    def test_gap_above_threshold_clears_buffer_before_appending(self, scheduler, clock, sinks):
        # A long finalize delay isolates the reset rule from the idle timer.
        agg = KeystrokeAggregator(scheduler, on_code=sinks.on_code, finalize_delay_sec=5.0, logger_instance=MagicMock())
        agg.attach()
        type_keys(agg, clock, "12")
        clock.advance(HUMAN_GAP)
        type_keys(agg, clock, "3")
        assert agg.buffer == "3"

    def test_non_digit_keys_are_ignored(self, aggregator, clock):
        type_keys(aggregator, clock, "12")
        assert aggregator.on_key_event(KeyEvent("a")) is False
        assert aggregator.on_key_event(KeyEvent("<shift>")) is False
        assert aggregator.buffer == "12"

    def test_events_in_editable_fields_are_ignored(self, aggregator):
        assert aggregator.on_key_event(KeyEvent("1", editable_focus=True)) is False
        assert aggregator.buffer == ""

    def test_invalid_scan_reports_error_and_stays_ready(self, aggregator, clock, sinks):
        type_keys(aggregator, clock, "12345")
        aggregator.on_key_event(KeyEvent("enter"))
        sinks.on_error.assert_called_once()
        sinks.on_code.assert_not_called()

        type_keys(aggregator, clock, "123456")
        aggregator.on_key_event(KeyEvent("enter"))
        sinks.on_code.assert_called_once()

    def test_detached_aggregator_ignores_keys(self, aggregator, scheduler, clock, sinks):
        type_keys(aggregator, clock, "123")
        aggregator.detach()
        assert aggregator.buffer == ""
        assert scheduler.pending_timers == 0
        assert aggregator.on_key_event(KeyEvent("4")) is False

        clock.advance(PAST_FINALIZE)
        scheduler.run_pending()
        sinks.on_code.assert_not_called()

    def test_attach_and_detach_drive_the_keyboard_source(self, scheduler, sinks):
        source = MagicMock()
        agg = KeystrokeAggregator(scheduler, on_code=sinks.on_code, keyboard_source=source, logger_instance=MagicMock())

        agg.attach()
        agg.attach()
        source.start.assert_called_once_with(agg.on_key_event)

        type_keys(agg, VirtualClock(), "123456")
        agg.on_key_event(KeyEvent("enter"))
        source.consume_pending_input.assert_called_once()

        agg.detach()
        agg.detach()
        source.stop.assert_called_once()


class TestKeyTranslation:

    @pytest.fixture
    def keyboard_module(self):
        return SimpleNamespace(Key=SimpleNamespace(enter=object(), tab=object()))

    def test_enter_and_tab(self, keyboard_module):
        assert key_event_from_pynput(keyboard_module.Key.enter, keyboard_module) == KeyEvent("enter")
        assert key_event_from_pynput(keyboard_module.Key.tab, keyboard_module) == KeyEvent("tab")

    def test_character_keys(self, keyboard_module):
        assert key_event_from_pynput(SimpleNamespace(char="7"), keyboard_module, True) == KeyEvent("7", True)

    def test_other_special_keys(self, keyboard_module):
        assert key_event_from_pynput(SimpleNamespace(char=None, name="shift"), keyboard_module) == KeyEvent("<shift>")


class TestPynputKeyboardSource:

    @pytest.fixture
    def fake_pynput(self):
        keyboard = MagicMock()
        keyboard.Key = SimpleNamespace(enter=object(), tab=object())
        pynput = MagicMock()
        pynput.keyboard = keyboard
        with patch.dict(sys.modules, {"pynput": pynput, "pynput.keyboard": keyboard}):
            yield keyboard

    def test_key_presses_are_posted_to_the_scheduler(self, fake_pynput, scheduler):
        handler = MagicMock()
        source = PynputKeyboardSource(scheduler, editable_focus_probe=lambda: False, logger_instance=MagicMock())
        source.start(handler)

        assert source.is_running
        on_press = fake_pynput.Listener.call_args.kwargs["on_press"]
        on_press(SimpleNamespace(char="5"))
        handler.assert_not_called()

        scheduler.run_pending()
        handler.assert_called_once_with(KeyEvent("5", False))

    def test_stop_joins_listener_and_flushes_input(self, fake_pynput, scheduler):
        source = PynputKeyboardSource(scheduler, logger_instance=MagicMock())
        source.start(MagicMock())
        listener = fake_pynput.Listener.return_value

        with patch("hardware.barcode_scanner.flush_terminal_input") as mock_flush:
            source.stop()
            source.stop()

        listener.start.assert_called_once()
        listener.stop.assert_called_once()
        listener.join.assert_called_once()
        mock_flush.assert_called_once()
        assert not source.is_running
