from __future__ import annotations

import logging
import threading

from conftest import FakeClock
from transfer_common.engine import Tick
from transfer_common.events import EventChannel, EventChannelHandler


def test_drain_returns_in_order_and_clears():
    channel = EventChannel()
    channel.publish('a', n=1)
    channel.publish('b', n=2)
    events = channel.drain()
    assert [(e['type'], e['n']) for e in events] == [('a', 1), ('b', 2)]
    assert len(channel) == 0


def test_channel_is_bounded():
    channel = EventChannel(maxlen=3)
    for i in range(5):
        channel.publish('n', i=i)
    assert [e['i'] for e in channel.drain()] == [2, 3, 4]


def test_wait_for_consumes_up_to_match():
    channel = EventChannel()
    channel.publish('log', message='x')
    threading.Timer(0.05, channel.publish, args=('transfer_complete',), kwargs={'filename': 'a'}).start()
    event = channel.wait_for(lambda e: e['type'] == 'transfer_complete', 5.0)
    assert event['filename'] == 'a'
    assert len(channel) == 0
    assert channel.wait_for(lambda e: True, 0.05) is None


def test_log_handler_publishes_records():
    channel = EventChannel()
    log = logging.getLogger("transfer_common.test_events")
    handler = EventChannelHandler(channel)
    log.addHandler(handler)
    try:
        log.warning("[Client-1] Idle for more than 60s, closing.")
    finally:
        log.removeHandler(handler)
    [event] = channel.drain()
    assert event['type'] == 'log'
    assert event['level'] == 'WARNING'
    assert event['message'].endswith("Idle for more than 60s, closing.")


def test_tick():
    clock = FakeClock(0.0)
    tick = Tick(0.5, clock)
    assert not tick.due(0.4)
    assert tick.due(0.5)
    assert not tick.due(0.9)
    assert tick.due(1.0)
    assert not Tick(0.0, clock).due(100.0)
