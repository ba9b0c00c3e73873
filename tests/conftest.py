from __future__ import annotations

import socket
import time

import pytest

from transfer_common.config import EngineConfig
from transfer_common.congestion import Impairment
from transfer_common.events import EventChannel


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeSocket:
    """Accepts at most ``limit`` bytes per send; raises BlockingIOError while blocked."""

    def __init__(self, limit=None):
        self.sent = bytearray()
        self.limit = limit
        self.blocked = False
        self.closed = False

    def send(self, data):
        if self.blocked:
            raise BlockingIOError
        n = len(data) if self.limit is None else min(self.limit, len(data))
        self.sent += bytes(data[:n])
        return n

    def close(self):
        self.closed = True

    def lines(self):
        return self.sent.decode().splitlines()


class FakeEngine:
    """What a Session needs from its engine, with workers run inline."""

    def __init__(self, clock, storage_dir="uploads", **overrides):
        self.config = EngineConfig(storage_dir=storage_dir, **overrides).validate()
        self.clock = clock
        self.events = EventChannel()
        self.impairment = Impairment(self.config.loss_rate)
        self.storage_dir = storage_dir
        self.remote_files = []
        self.write_requests = []

    def request_write(self, session):
        self.write_requests.append(session)

    def submit(self, fn, *args):
        return fn(*args)

    def spawn(self, fn, *args, name=None):
        return fn(*args)


def flush(session):
    while session.flush_writable():
        pass
    return session.sock.lines()


class LineReader:
    """Blocking line reader over a real socket, for talking to a live server."""

    def __init__(self, sock, timeout=5.0):
        self.sock = sock
        self.sock.settimeout(timeout)
        self.buffer = b""

    def send(self, line):
        self.sock.sendall(line.encode() + b"\n")

    def read_line(self):
        while b"\n" not in self.buffer:
            data = self.sock.recv(4096)
            if not data:
                raise ConnectionError("closed")
            self.buffer += data
        line, self.buffer = self.buffer.split(b"\n", 1)
        return line.decode()

    def read_until(self, prefix, skip=("ACK:",)):
        while True:
            line = self.read_line()
            if line.startswith(skip):
                continue
            assert line.startswith(prefix), line
            return line


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_engine(clock, tmp_path):
    return FakeEngine(clock, storage_dir=str(tmp_path))


@pytest.fixture
def connect():
    opened = []

    def _connect(port):
        sock = socket.create_connection(("127.0.0.1", port), timeout=5)
        opened.append(sock)
        return LineReader(sock)

    yield _connect
    for sock in opened:
        sock.close()
