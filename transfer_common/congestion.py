# transfer_common/congestion.py
"""
Simulated TCP congestion control.

The window here is not fed by the kernel: the sender consumes one slot per
data packet it hands to the session, and ACK/NACK frames from the peer grow or
shrink it according to the selected algorithm. The effect is that each
algorithm throttles a transfer in its own visible way.
"""
from __future__ import annotations

import enum
import math
import random
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable

from transfer_common.protocol import (
    INITIAL_CWND, INITIAL_RTT_MS, INITIAL_SSTHRESH, MAX_WINDOW_SIZE, RTT_SAMPLES,
    THROUGHPUT_INTERVAL_MS,
)


class Algorithm(enum.Enum):
    RENO = "RENO"
    TAHOE = "TAHOE"
    CUBIC = "CUBIC"
    VEGAS = "VEGAS"

    @classmethod
    def parse(cls, name: "str | Algorithm") -> "Algorithm":
        """Accepts RENO, reno or TCP_RENO."""
        if isinstance(name, Algorithm):
            return name
        key = name.strip().upper()
        if key.startswith("TCP_"):
            key = key[4:]
        try:
            return cls[key]
        except KeyError:
            raise ValueError(f"Unknown algorithm: {name}") from None


@dataclass(frozen=True, slots=True)
class CongestionState:
    algorithm: Algorithm
    congestion_window: float
    slow_start_threshold: float
    in_slow_start: bool
    smoothed_rtt: float
    receive_window_cap: int
    current_throughput: float
    packets_lost: int
    packets_total: int

    @property
    def packet_loss_rate(self) -> float:
        return self.packets_lost / self.packets_total if self.packets_total else 0.0


@dataclass(frozen=True, slots=True)
class Impairment:
    """Drops a share of outgoing data packets so the loss path gets exercised."""
    loss_rate: float = 0.0

    def should_drop(self) -> bool:
        return self.loss_rate > 0 and random.random() < self.loss_rate


class CongestionController:
    def __init__(self, algorithm: "str | Algorithm" = Algorithm.RENO,
                 receive_window_cap: int = MAX_WINDOW_SIZE,
                 clock: Callable[[], float] = time.monotonic):
        if receive_window_cap < 1:
            raise ValueError("receive_window_cap must be at least 1")
        self._lock = threading.Lock()
        self._clock = clock
        self.algorithm = Algorithm.parse(algorithm)
        self.receive_window_cap = receive_window_cap
        self.congestion_window = min(INITIAL_CWND, receive_window_cap)
        self.slow_start_threshold = INITIAL_SSTHRESH
        self.in_slow_start = True
        self.smoothed_rtt = INITIAL_RTT_MS
        self.current_throughput = 0.0
        self.packets_lost = 0
        self.packets_total = 0
        self.last_ack_time = clock()
        self._rtt_samples: deque[float] = deque(maxlen=RTT_SAMPLES)
        self._bytes_this_interval = 0
        self._last_sample_time = clock()

    def set_algorithm(self, name: "str | Algorithm") -> Algorithm:
        """Switch algorithm and restart from the initial slow-start regime."""
        algorithm = Algorithm.parse(name)
        with self._lock:
            self.algorithm = algorithm
            self.congestion_window = min(INITIAL_CWND, self.receive_window_cap)
            self.slow_start_threshold = INITIAL_SSTHRESH
            self.in_slow_start = True
        return algorithm

    def on_data_sent(self, nbytes: int) -> None:
        with self._lock:
            self.packets_total += 1
            self._bytes_this_interval += nbytes
            self.congestion_window = max(self.congestion_window - 1.0, 0.0)
            self._update_throughput()

    def on_ack_received(self, timestamp: float, rtt_sample: float | None = None) -> None:
        """
        Grow the window for one acknowledged packet.

        :param timestamp: clock value the ack arrived at
        :param rtt_sample: measured round trip in milliseconds, if known
        """
        with self._lock:
            if rtt_sample is not None and rtt_sample >= 0:
                self._rtt_samples.append(float(rtt_sample))
                self.smoothed_rtt = sum(self._rtt_samples) / len(self._rtt_samples)
            self.last_ack_time = timestamp

            if self.algorithm in (Algorithm.RENO, Algorithm.TAHOE):
                if self.in_slow_start:
                    self.congestion_window += 1.0
                    if self.congestion_window >= self.slow_start_threshold:
                        self.in_slow_start = False
                else:
                    self.congestion_window += 1.0 / max(self.congestion_window, 1.0)
            elif self.algorithm is Algorithm.CUBIC:
                self.congestion_window += math.pow(1.0, 1 / 3)
            else:
                self.congestion_window += 0.5
            self._clamp()
            self._update_throughput()

    def on_packet_loss(self) -> None:
        with self._lock:
            self.packets_lost += 1
            if self.algorithm is Algorithm.RENO:
                self.slow_start_threshold = max(self.congestion_window / 2, 1.0)
                self.congestion_window = self.slow_start_threshold
                self.in_slow_start = False
            elif self.algorithm is Algorithm.TAHOE:
                self.slow_start_threshold = max(self.congestion_window / 2, 1.0)
                self.congestion_window = 1.0
                self.in_slow_start = True
            elif self.algorithm is Algorithm.CUBIC:
                self.slow_start_threshold = max(self.congestion_window * 0.7, 1.0)
                self.congestion_window = self.slow_start_threshold
                self.in_slow_start = False
            else:
                self.slow_start_threshold = max(self.congestion_window * 0.8, 1.0)
                self.congestion_window = self.slow_start_threshold
                self.in_slow_start = False
            self._clamp()
            self._update_throughput()

    def can_send(self) -> bool:
        with self._lock:
            return self.congestion_window > 0

    def send_budget(self) -> float:
        with self._lock:
            return max(1.0, self.congestion_window)

    @property
    def packet_loss_rate(self) -> float:
        with self._lock:
            return self.packets_lost / self.packets_total if self.packets_total else 0.0

    def snapshot(self) -> CongestionState:
        with self._lock:
            self._update_throughput()
            return CongestionState(
                algorithm=self.algorithm,
                congestion_window=self.congestion_window,
                slow_start_threshold=self.slow_start_threshold,
                in_slow_start=self.in_slow_start,
                smoothed_rtt=self.smoothed_rtt,
                receive_window_cap=self.receive_window_cap,
                current_throughput=self.current_throughput,
                packets_lost=self.packets_lost,
                packets_total=self.packets_total,
            )

    def _clamp(self) -> None:
        self.congestion_window = min(max(self.congestion_window, 0.0), float(self.receive_window_cap))

    def _update_throughput(self) -> None:
        # caller holds the lock
        now = self._clock()
        elapsed_ms = (now - self._last_sample_time) * 1000
        if elapsed_ms > THROUGHPUT_INTERVAL_MS:
            self.current_throughput = self._bytes_this_interval * 8 / (elapsed_ms / 1000)
            self._bytes_this_interval = 0
            self._last_sample_time = now
