# transfer_common/engine.py
"""
Readiness-driven connection engine shared by the server and the client.

One engine thread owns the selector, the listening/connecting socket and the
membership of the session table. Worker threads (file reads and writes during
transfers) never touch the selector; when they queue a frame they ask for
write interest through ``request_write``, which wakes the loop through a
socketpair.
"""
from __future__ import annotations

import enum
import logging
import selectors
import socket
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

from transfer_common.config import EngineConfig
from transfer_common.congestion import Impairment
from transfer_common.events import EventChannel
from transfer_common.protocol import BUFFER_SIZE, HISTORY_POINTS, METRICS_INTERVAL
from transfer_common.session import Session

logger = logging.getLogger(__name__)

_WAKER = object()
LISTENER = object()


class EngineState(enum.Enum):
    STOPPED = "STOPPED"
    STARTING = "STARTING"
    RUNNING = "RUNNING"


class Tick:
    """A recurring deadline checked from the engine loop."""

    def __init__(self, interval: float, clock: Callable[[], float]):
        self.interval = interval
        self.next_due = clock() + interval

    def due(self, now: float) -> bool:
        if self.interval <= 0 or now < self.next_due:
            return False
        self.next_due = now + self.interval
        return True


class Engine:
    role = "Engine"

    def __init__(self, config: EngineConfig, clock: Callable[[], float] = time.monotonic):
        self.config = config.validate()
        self.clock = clock
        self.state = EngineState.STOPPED
        self.events = EventChannel()
        self.impairment = Impairment(config.loss_rate)
        self.storage_dir = config.storage_dir
        self.sessions: dict[socket.socket, Session] = {}
        self._sessions_lock = threading.Lock()
        self._history: dict[str, deque] = {}
        self._write_requests: set = set()
        self._requests_lock = threading.Lock()
        self._selector: selectors.BaseSelector | None = None
        self._sock: socket.socket | None = None
        self._waker_r = self._waker_w = None
        self._executor: ThreadPoolExecutor | None = None
        self._thread: threading.Thread | None = None
        self._loop_ident: int | None = None
        self._running = False
        self._metrics_tick = Tick(METRICS_INTERVAL, clock)

    # --- hooks for the server / client ---

    def _open_socket(self) -> socket.socket:
        raise NotImplementedError

    def _on_opened(self) -> None:
        pass

    def _on_listener_ready(self) -> None:
        pass

    def _on_tick(self, now: float) -> None:
        pass

    def _on_session_closed(self, session) -> None:
        pass

    # --- lifecycle ---

    def open(self) -> None:
        """Open sockets and loop resources. Failures leave the engine STOPPED."""
        if self.state is not EngineState.STOPPED:
            raise RuntimeError(f"{self.role} is already {self.state.value}")
        self._set_state(EngineState.STARTING)
        try:
            self._selector = selectors.DefaultSelector()
            self._waker_r, self._waker_w = socket.socketpair()
            self._waker_r.setblocking(False)
            self._waker_w.setblocking(False)
            self._selector.register(self._waker_r, selectors.EVENT_READ, _WAKER)
            self._executor = ThreadPoolExecutor(thread_name_prefix=f"{self.role.lower()}-worker")
            self._sock = self._open_socket()
            self._on_opened()
        except Exception:
            self._release()
            self._set_state(EngineState.STOPPED)
            raise
        self._running = True
        self._set_state(EngineState.RUNNING)

    def start(self) -> "Engine":
        """Open the engine and run its loop on a daemon thread."""
        self.open()
        self._thread = threading.Thread(target=self._loop, name=f"{self.role.lower()}-engine", daemon=True)
        self._thread.start()
        return self

    def serve_forever(self) -> None:
        """Open the engine and run its loop on the calling thread."""
        self.open()
        self._loop()

    def stop(self, timeout: float = 5.0) -> None:
        if self.state is EngineState.STOPPED:
            return
        logger.info(f"[{self.role}] Stopping...")
        self._running = False
        self._wake()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    @property
    def running(self) -> bool:
        return self.state is EngineState.RUNNING

    def _set_state(self, state: EngineState) -> None:
        self.state = state
        self.events.publish('engine_state', role=self.role, state=state.value)

    # --- loop ---

    def _loop(self) -> None:
        self._loop_ident = threading.get_ident()
        try:
            while self._running:
                self._apply_write_requests()
                for key, mask in self._selector.select(self.config.select_timeout):
                    self._dispatch(key, mask)
                now = self.clock()
                if self._metrics_tick.due(now):
                    self._sample_metrics()
                self._on_tick(now)
                self.sweep_idle(now)
        except OSError as e:
            if self._running:
                logger.error(f"[{self.role}] Engine error: {e}")
        finally:
            self._running = False
            self._teardown()

    def _dispatch(self, key: selectors.SelectorKey, mask: int) -> None:
        if key.data is _WAKER:
            self._drain_waker()
            return
        if key.data is LISTENER:
            self._on_listener_ready()
            return
        session = key.data
        try:
            if mask & selectors.EVENT_READ:
                self._handle_read(session)
            if session.active and mask & selectors.EVENT_WRITE:
                self._handle_write(session)
        except OSError as e:
            logger.error(f"[{session.label}] Connection error: {e}")
            self.close_session(session, f"connection error: {e}")

    def _handle_read(self, session) -> None:
        try:
            data = session.sock.recv(BUFFER_SIZE)
        except (BlockingIOError, InterruptedError):
            return
        if not data:
            self.close_session(session, "closed by peer")
            return
        session.on_bytes_received(data)

    def _handle_write(self, session) -> None:
        if not session.flush_writable(session.sock):
            self._set_interest(session, selectors.EVENT_READ)

    # --- session table ---

    def register_session(self, sock: socket.socket, session) -> None:
        with self._sessions_lock:
            self.sessions[sock] = session
        self._selector.register(sock, selectors.EVENT_READ, session)
        self._history[session.label] = deque(maxlen=HISTORY_POINTS)
        logger.info(f"[{self.role}] New connection: {session.label}")
        self.events.publish('session_opened', session=session.label)

    def close_session(self, session, reason: str = "closed") -> None:
        with self._sessions_lock:
            removed = self.sessions.pop(session.sock, None)
        if removed is None:
            return
        try:
            self._selector.unregister(session.sock)
        except (KeyError, ValueError):
            pass  # never registered or socket already closed
        session.close()
        self._history.pop(session.label, None)
        logger.info(f"[{session.label}] Disconnected ({reason}).")
        self.events.publish('session_closed', session=session.label, reason=reason)
        self._on_session_closed(session)

    def sweep_idle(self, now: float | None = None) -> list[str]:
        """Close sessions without read activity for longer than idle_timeout."""
        now = self.clock() if now is None else now
        with self._sessions_lock:
            sessions = list(self.sessions.values())
        expired = [s for s in sessions if now - s.last_activity > self.config.idle_timeout]
        for session in expired:
            logger.warning(f"[{session.label}] Idle for more than {self.config.idle_timeout:.0f}s, closing.")
            self.close_session(session, "idle timeout")
        return [s.label for s in expired]

    def get_session(self, label: str):
        with self._sessions_lock:
            for session in self.sessions.values():
                if session.label == label:
                    return session
        return None

    # --- write interest ---

    def request_write(self, session) -> None:
        """Thread-safe: mark ``session`` as having frames to flush."""
        with self._requests_lock:
            self._write_requests.add(session)
        if threading.get_ident() != self._loop_ident:
            self._wake()

    def _apply_write_requests(self) -> None:
        with self._requests_lock:
            pending = list(self._write_requests)
            self._write_requests.clear()
        for session in pending:
            if session.active:
                self._set_interest(session, selectors.EVENT_READ | selectors.EVENT_WRITE)

    def _set_interest(self, session, events: int) -> None:
        try:
            self._selector.modify(session.sock, events, session)
        except (KeyError, ValueError):
            pass  # session closed meanwhile

    def _wake(self) -> None:
        waker = self._waker_w
        if waker is None:
            return
        try:
            waker.send(b"\0")
        except (BlockingIOError, OSError):
            pass  # a wake-up is already pending, or the engine is shutting down

    def _drain_waker(self) -> None:
        try:
            while self._waker_r.recv(BUFFER_SIZE):
                pass
        except BlockingIOError:
            pass

    # --- workers ---

    def submit(self, fn, *args):
        executor = self._executor
        if executor is None:
            logger.warning(f"[{self.role}] Worker pool not running, dropping task {fn!r}")
            return None
        try:
            return executor.submit(fn, *args)
        except RuntimeError:
            logger.warning(f"[{self.role}] Worker pool is shut down, dropping task {fn!r}")
            return None

    def spawn(self, fn, *args, name=None) -> threading.Thread:
        """Run a long-lived task (a transfer stream) on its own daemon thread."""
        thread = threading.Thread(target=fn, args=args, name=name, daemon=True)
        thread.start()
        return thread

    # --- metrics ---

    def snapshots(self) -> dict:
        """Current metrics for every live session, keyed by session label."""
        with self._sessions_lock:
            sessions = list(self.sessions.values())
        return {s.label: s.snapshot() for s in sessions}

    def history(self, label: str) -> list:
        samples = self._history.get(label)
        return list(samples) if samples is not None else []

    def _sample_metrics(self) -> None:
        for label, snapshot in self.snapshots().items():
            samples = self._history.get(label)
            if samples is not None:
                samples.append(snapshot)

    # --- teardown ---

    def _teardown(self) -> None:
        with self._sessions_lock:
            sessions = list(self.sessions.values())
        for session in sessions:
            self.close_session(session, "engine stopped")
        self._release()
        self._set_state(EngineState.STOPPED)
        logger.info(f"[{self.role}] Stopped.")

    def _release(self) -> None:
        if self._sock is not None:
            try:
                self._sock.close()
            except OSError as e:
                logger.warning(f"[{self.role}] Error closing socket: {e}")
            self._sock = None
        if self._selector is not None:
            self._selector.close()
            self._selector = None
        for waker in (self._waker_r, self._waker_w):
            if waker is not None:
                waker.close()
        self._waker_r = self._waker_w = None
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
