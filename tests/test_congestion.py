from __future__ import annotations

import pytest

from conftest import FakeClock
from transfer_common.congestion import Algorithm, CongestionController


def test_initial_state():
    c = CongestionController()
    s = c.snapshot()
    assert s.algorithm is Algorithm.RENO
    assert s.congestion_window == 1.0
    assert s.slow_start_threshold == 64.0
    assert s.in_slow_start is True
    assert s.smoothed_rtt == 100.0
    assert s.packet_loss_rate == 0.0


def test_algorithm_names():
    assert Algorithm.parse("tcp_cubic") is Algorithm.CUBIC
    assert Algorithm.parse("Vegas") is Algorithm.VEGAS
    assert Algorithm.parse(Algorithm.TAHOE) is Algorithm.TAHOE
    with pytest.raises(ValueError, match="Unknown algorithm"):
        Algorithm.parse("BBR")


@pytest.mark.parametrize("algorithm", ["RENO", "TAHOE"])
def test_slow_start_ends_at_threshold(algorithm):
    c = CongestionController(algorithm)
    for _ in range(63):
        c.on_ack_received(0.0)
    assert c.congestion_window == 64.0
    assert c.in_slow_start is False
    c.on_ack_received(0.0)
    assert c.congestion_window == pytest.approx(64.0 + 1 / 64)


def test_reno_loss_halves_window():
    c = CongestionController("RENO")
    c.congestion_window = 20.0
    c.on_packet_loss()
    assert c.slow_start_threshold == 10.0
    assert c.congestion_window == 10.0
    assert c.in_slow_start is False


def test_tahoe_loss_restarts_slow_start():
    c = CongestionController("TAHOE")
    c.congestion_window = 20.0
    c.in_slow_start = False
    c.on_packet_loss()
    assert c.slow_start_threshold == 10.0
    assert c.congestion_window == 1.0
    assert c.in_slow_start is True


def test_cubic_and_vegas():
    cubic = CongestionController("CUBIC")
    cubic.on_ack_received(0.0)
    assert cubic.congestion_window == pytest.approx(2.0)
    cubic.congestion_window = 10.0
    cubic.on_packet_loss()
    assert cubic.congestion_window == pytest.approx(7.0)
    assert cubic.slow_start_threshold == pytest.approx(7.0)

    vegas = CongestionController("VEGAS")
    vegas.on_ack_received(0.0)
    assert vegas.congestion_window == pytest.approx(1.5)
    vegas.congestion_window = 10.0
    vegas.on_packet_loss()
    assert vegas.congestion_window == pytest.approx(8.0)


def test_threshold_never_below_one():
    c = CongestionController("RENO")
    c.on_data_sent(1024)
    assert c.congestion_window == 0.0
    c.on_packet_loss()
    assert c.slow_start_threshold == 1.0
    assert c.congestion_window == 1.0


@pytest.mark.parametrize("algorithm", list(Algorithm))
def test_window_stays_within_bounds(algorithm):
    c = CongestionController(algorithm, receive_window_cap=8)
    for i in range(200):
        if i % 7 == 0:
            c.on_packet_loss()
        elif i % 3 == 0:
            c.on_data_sent(1024)
        else:
            c.on_ack_received(float(i))
        assert 0.0 <= c.congestion_window <= 8
        assert c.slow_start_threshold >= 1.0


def test_can_send_follows_window():
    c = CongestionController()
    assert c.can_send()
    c.on_data_sent(1024)
    assert not c.can_send()
    assert c.send_budget() == 1.0
    c.on_ack_received(0.0)
    assert c.can_send()


def test_rtt_is_mean_of_last_ten_samples():
    c = CongestionController()
    for rtt in range(1, 21):
        c.on_ack_received(0.0, float(rtt))
    assert c.smoothed_rtt == pytest.approx(15.5)
    c.on_ack_received(0.0)  # no sample, average unchanged
    assert c.smoothed_rtt == pytest.approx(15.5)


def test_loss_rate():
    c = CongestionController()
    for _ in range(4):
        c.on_data_sent(100)
    c.on_packet_loss()
    assert c.packet_loss_rate == 0.25
    assert c.snapshot().packet_loss_rate == 0.25


def test_throughput_updates_after_interval():
    clock = FakeClock(0.0)
    c = CongestionController(clock=clock)
    c.on_data_sent(1000)
    assert c.snapshot().current_throughput == 0.0
    clock.advance(0.5)
    assert c.snapshot().current_throughput == 0.0
    clock.advance(1.5)
    assert c.snapshot().current_throughput == pytest.approx(1000 * 8 / 2.0)


def test_set_algorithm_resets_window():
    c = CongestionController("RENO")
    for _ in range(70):
        c.on_ack_received(0.0)
    assert c.set_algorithm("TCP_VEGAS") is Algorithm.VEGAS
    assert c.algorithm is Algorithm.VEGAS
    assert c.congestion_window == 1.0
    assert c.slow_start_threshold == 64.0
    assert c.in_slow_start is True
    with pytest.raises(ValueError):
        c.set_algorithm("nope")
    assert c.algorithm is Algorithm.VEGAS
