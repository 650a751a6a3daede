"""
Unit tests for the EventBus (crmsync/bus/events.py).
Pure Python, a fresh bus per test.
"""

from unittest.mock import MagicMock

import pytest
from crmsync.bus.events import (
    EventBus,
    EVENT_QUERY_CREATED, EVENT_QUERY_SENT, EVENT_QUERY_FAILED, EVENT_QUERY_DONE,
    EVENT_QUERY_CANCELED, EVENT_SYNC_STARTED, EVENT_SYNC_PROGRESS, EVENT_SYNC_COMPLETE,
    EVENT_SYNC_FAILED, EVENT_SWEEP_COMPLETE,
)

ALL_EVENTS = [
    EVENT_QUERY_CREATED, EVENT_QUERY_SENT, EVENT_QUERY_FAILED, EVENT_QUERY_DONE,
    EVENT_QUERY_CANCELED, EVENT_SYNC_STARTED, EVENT_SYNC_PROGRESS, EVENT_SYNC_COMPLETE,
    EVENT_SYNC_FAILED, EVENT_SWEEP_COMPLETE,
]


@pytest.fixture
def bus():
    return EventBus()


def test_handler_receives_payload(bus):
    received = []
    bus.on(EVENT_QUERY_CREATED, received.append)
    bus.emit(EVENT_QUERY_CREATED, {'query_id': 7})
    assert received == [{'query_id': 7}]


def test_handlers_run_in_registration_order(bus):
    calls = []
    bus.on('evt', lambda d: calls.append('first'))
    bus.on('evt', lambda d: calls.append('second'))
    bus.emit('evt')
    assert calls == ['first', 'second']


def test_emit_without_data_sends_empty_dict(bus):
    received = []
    bus.on('evt', received.append)
    bus.emit('evt')
    assert received == [{}]


def test_emit_without_handlers_is_silent(bus):
    bus.emit(EVENT_SWEEP_COMPLETE, {'total': 0})


def test_failing_handler_does_not_stop_the_others(bus):
    calls = []

    def explode(data):
        raise RuntimeError("listener down")

    bus.on('evt', explode)
    bus.on('evt', lambda d: calls.append(True))
    bus.emit('evt', {})
    assert calls == [True]


def test_clear_drops_every_handler(bus):
    calls = []
    bus.on('evt', lambda d: calls.append(1))
    bus.clear()
    bus.emit('evt', {})
    assert calls == []


def test_events_do_not_cross_fire(bus):
    sent, failed = [], []
    bus.on(EVENT_QUERY_SENT, sent.append)
    bus.on(EVENT_QUERY_FAILED, failed.append)
    bus.emit(EVENT_QUERY_SENT, {'query_id': 1})
    assert sent == [{'query_id': 1}]
    assert failed == []


def test_event_names_are_unique_strings():
    assert all(isinstance(name, str) and name for name in ALL_EVENTS)
    assert len(ALL_EVENTS) == len(set(ALL_EVENTS))


def test_off_unregisters_handler(bus):
    received = []
    bus.on(EVENT_QUERY_DONE, received.append)
    assert bus.off(EVENT_QUERY_DONE, received.append) is True
    bus.emit(EVENT_QUERY_DONE, {'query_id': 1})
    assert received == []


def test_off_unknown_handler(bus):
    assert bus.off(EVENT_QUERY_DONE, print) is False


def test_handler_added_during_emit_waits_for_next_event(bus):
    late = []

    def subscribe_late(data):
        bus.on('evt', late.append)

    bus.on('evt', subscribe_late)
    bus.emit('evt', {'n': 1})
    assert late == []
    bus.emit('evt', {'n': 2})
    assert late == [{'n': 2}]


def test_handlers_without_name_are_accepted(bus):
    handler = MagicMock(spec=[])
    bus.on('evt', handler)
    bus.emit('evt', {'x': 1})
    handler.assert_called_once_with({'x': 1})
