# transfer_common/session.py
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable

from transfer_common.codec import Command, MessageDecoder, decode_chunk, encode, encode_chunk
from transfer_common.congestion import CongestionController
from transfer_common.errors import TransferError
from transfer_common.protocol import (
    BACKPRESSURE_SLEEP, CMD_ACK, CMD_ALGORITHM, CMD_ERROR, CMD_NACK, CMD_PING, FIELD_SEPARATOR,
    MAX_PENDING_FRAMES, PACKET_SIZE, RESP_PONG, WINDOW_POLL_SLEEP,
)
from transfer_common.storage import read_chunks
from transfer_common.transfer import Direction, TransferState

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MetricsSnapshot:
    label: str
    timestamp: float
    algorithm: str
    congestion_window: float
    slow_start_threshold: float
    in_slow_start: bool
    smoothed_rtt: float
    receive_window_cap: int
    current_throughput: float
    packet_loss_rate: float
    transfer_progress: float
    filename: str
    direction: str
    queue_depth: int


def parse_name_and_size(payload: str) -> tuple[str, int]:
    """'report.pdf;4096' -> ('report.pdf', 4096). Raises ValueError when malformed."""
    name, sep, size = payload.rpartition(FIELD_SEPARATOR)
    if not sep or not name.strip():
        raise ValueError(f"expected filename;size, got {payload!r}")
    size = int(size)
    if size < 0:
        raise ValueError(f"negative size {size}")
    return name.strip(), size


class Session:
    """
    One peer connection as seen from either side.

    The engine thread feeds received bytes in and flushes the outbound queue
    when the socket is writable. Worker threads may enqueue frames at any
    time; the queue and the controller/transfer state are lock protected.
    Subclasses register their command handlers in ``self.handlers``.
    """

    quiet_commands = frozenset({CMD_ACK})

    def __init__(self, sock, label: str, engine):
        self.sock = sock
        self.label = label
        self.engine = engine
        self.decoder = MessageDecoder()
        self.last_activity = engine.clock()
        self.active = True
        self.controller = CongestionController(engine.config.algorithm,
                                               engine.config.receive_window_cap,
                                               clock=engine.clock)
        self.transfer = TransferState()
        self._outbound: deque[bytes] = deque()
        self._head_offset = 0
        self._out_lock = threading.Lock()
        self.handlers: dict[str, Callable[[str], None]] = {
            CMD_PING: self.handle_ping,
            RESP_PONG: self.handle_pong,
            CMD_ACK: self.handle_ack,
            CMD_NACK: self.handle_nack,
            CMD_ALGORITHM: self.handle_algorithm,
            CMD_ERROR: self.handle_error,
        }

    def __repr__(self):
        return f"<{type(self).__name__} {self.label} active={self.active}>"

    # --- inbound ---

    def on_bytes_received(self, data: bytes) -> None:
        if not self.active:
            return
        self.last_activity = self.engine.clock()
        for command in self.decoder.feed(data):
            if not self.active:
                break
            self.dispatch(command)

    def dispatch(self, command: Command) -> None:
        handler = self.handlers.get(command.name)
        if handler is None:
            logger.warning(f"[{self.label}] Unknown command: {command.name!r}, ignoring.")
            return
        if command.name not in self.quiet_commands:
            logger.debug(f"[{self.label}] RX: Command='{command.name}', Args='{command.payload}'")
        try:
            handler(command.payload)
        except TransferError as e:
            # request rejected before any transfer state changed
            logger.warning(f"[{self.label}] {command.name} rejected: {e}")
            self.send_command(CMD_ERROR, str(e))
        except ValueError as e:
            logger.warning(f"[{self.label}] Malformed {command.name} ignored: {e}")
        except Exception:
            logger.exception(f"[{self.label}] ERROR handling {command.name}")

    # --- outbound ---

    def enqueue_send(self, frame: bytes) -> bool:
        if not self.active:
            return False
        with self._out_lock:
            self._outbound.append(frame)
        self.engine.request_write(self)
        return True

    def send_command(self, name: str, payload: str = "") -> bool:
        return self.enqueue_send(encode(name, payload))

    def flush_writable(self, sock=None) -> bool:
        """
        Write queued frames until the socket would block or the queue is empty.
        Returns True while data is still pending. A frame cut short by a
        partial write stays at the head with its offset remembered.
        """
        sock = sock if sock is not None else self.sock
        with self._out_lock:
            while self._outbound and self.active:
                frame = self._outbound[0]
                view = memoryview(frame)[self._head_offset:]
                try:
                    sent = sock.send(view)
                except BlockingIOError:
                    break
                if sent < len(view):
                    self._head_offset += sent
                    break
                self._outbound.popleft()
                self._head_offset = 0
            return bool(self._outbound) and self.active

    @property
    def queue_depth(self) -> int:
        with self._out_lock:
            return len(self._outbound)

    @property
    def has_pending_data(self) -> bool:
        return self.queue_depth > 0 and self.active

    def close(self) -> None:
        if not self.active:
            return
        self.active = False
        try:
            self.sock.close()
        except OSError as e:
            logger.warning(f"[{self.label}] Error closing socket: {e}")

    # --- shared handlers ---

    def handle_ping(self, payload: str) -> None:
        self.send_command(RESP_PONG, payload)

    def handle_pong(self, payload: str) -> None:
        sent_ms = int(payload)
        rtt = time.time() * 1000 - sent_ms
        self.controller.on_ack_received(self.engine.clock(), max(rtt, 0.0))

    def handle_ack(self, payload: str) -> None:
        seq = int(payload.split(FIELD_SEPARATOR, 1)[0])
        now = self.engine.clock()
        sent_at = self.transfer.pop_sent(seq)
        rtt = (now - sent_at) * 1000 if sent_at is not None else None
        self.controller.on_ack_received(now, rtt)

    def handle_nack(self, payload: str) -> None:
        logger.info(f"[{self.label}] Packet loss reported by peer ({payload or 'no seq'})")
        self.controller.on_packet_loss()

    def handle_algorithm(self, payload: str) -> None:
        try:
            algorithm = self.controller.set_algorithm(payload)
        except ValueError as e:
            self.send_command(CMD_ERROR, str(e))
            return
        logger.info(f"[{self.label}] Switched to {algorithm.value}")
        self.engine.events.publish('algorithm', session=self.label, algorithm=algorithm.value)

    def handle_error(self, payload: str) -> None:
        logger.warning(f"[{self.label}] Peer reported error: {payload}")
        filename = self.transfer.filename if self.transfer.busy else None
        if filename is not None:
            self.transfer.finish()
        self.engine.events.publish('transfer_failed', session=self.label, filename=filename,
                                   reason=payload, remote=True)

    # --- transfers ---

    def receive_chunk(self, payload: str) -> int:
        """Decode and store one data chunk, acknowledge it, return bytes so far."""
        data = decode_chunk(payload)
        transferred = self.transfer.add_data(data)
        self.send_command(CMD_ACK, str(self.transfer.next_sequence()))
        return transferred

    def receiving(self, direction: Direction) -> bool:
        if self.transfer.direction is direction and not self.transfer.finished:
            return True
        logger.warning(f"[{self.label}] Data received with no {direction.value.lower()} transfer armed, ignoring.")
        return False

    def fail_transfer(self, reason: str) -> None:
        logger.warning(f"[{self.label}] Transfer of '{self.transfer.filename}' failed: {reason}")
        self.transfer.finish()
        self.send_command(CMD_ERROR, reason)
        self.engine.events.publish('transfer_failed', session=self.label,
                                   filename=self.transfer.filename, reason=reason, remote=False)

    def start_worker(self, fn, *args) -> None:
        """Short disk work (saving a received file) on the engine's pool."""
        self.engine.submit(self._run_worker, fn, *args)

    def start_stream(self, fn, *args) -> None:
        """A whole outgoing transfer; holds its thread until done or cancelled."""
        self.engine.spawn(self._run_worker, fn, *args, name=f"stream {self.label}")

    def _run_worker(self, fn, *args):
        try:
            return fn(*args)
        except TransferError as e:
            self.fail_transfer(str(e))
        except Exception as e:
            logger.exception(f"[{self.label}] Worker failed")
            self.fail_transfer(f"Transfer failed: {e}")

    def stream_file(self, path: str, data_command: str, complete_command: str | None = None) -> bool:
        """
        Send ``path`` as base64 data frames. Runs on a worker thread.

        Every chunk waits for congestion window budget and for the outbound
        queue to drain below MAX_PENDING_FRAMES. Stops quietly when the session
        closes or the transfer is aborted by the peer.
        """
        filename = self.transfer.filename
        logger.info(f"[{self.label}] ({filename}) Sending {self.transfer.total_size} bytes...")
        try:
            for chunk in read_chunks(path, PACKET_SIZE):
                if not self._send_chunk(data_command, chunk):
                    logger.info(f"[{self.label}] ({filename}) Transfer stopped after "
                                f"{self.transfer.transferred} bytes.")
                    return False
                self._pace()
        except OSError as e:
            raise TransferError(f"Transfer failed: {e}") from e

        if complete_command is not None:
            self.transfer.finish()
            self.send_command(complete_command, filename)
            self.engine.events.publish('transfer_complete', session=self.label, filename=filename,
                                       size=self.transfer.transferred)
        logger.info(f"[{self.label}] ({filename}) All data queued "
                    f"({self.transfer.average_speed() / 1024:.1f} KB/s).")
        return True

    def _sending(self) -> bool:
        return self.active and not self.transfer.finished

    def _send_chunk(self, command: str, chunk: bytes) -> bool:
        while self._sending():
            if not self._wait_for_window():
                return False
            while self.queue_depth > MAX_PENDING_FRAMES and self._sending():
                time.sleep(BACKPRESSURE_SLEEP)
            if self.engine.impairment.should_drop():
                # the packet never makes it; the window backs off and the chunk is retried
                self.controller.on_data_sent(len(chunk))
                self.controller.on_packet_loss()
                continue
            seq = self.transfer.next_sequence()
            self.transfer.mark_sent(seq, self.engine.clock())
            self.controller.on_data_sent(len(chunk))
            if not self.send_command(command, encode_chunk(chunk)):
                return False
            self.transfer.advance(len(chunk))
            return True
        return False

    def _wait_for_window(self) -> bool:
        waiting_since = self.engine.clock()
        while self._sending() and not self.controller.can_send():
            if self.engine.clock() - waiting_since >= self.engine.config.ack_timeout:
                logger.debug(f"[{self.label}] No ACK within {self.engine.config.ack_timeout}s, "
                             f"counting a lost packet.")
                self.controller.on_packet_loss()
                waiting_since = self.engine.clock()
                continue
            time.sleep(WINDOW_POLL_SLEEP)
        return self._sending()

    def _pace(self) -> None:
        time.sleep(max(0.001, self.controller.smoothed_rtt / 10 / 1000))

    # --- metrics ---

    def snapshot(self) -> MetricsSnapshot:
        state = self.controller.snapshot()
        return MetricsSnapshot(
            label=self.label,
            timestamp=self.engine.clock(),
            algorithm=state.algorithm.value,
            congestion_window=state.congestion_window,
            slow_start_threshold=state.slow_start_threshold,
            in_slow_start=state.in_slow_start,
            smoothed_rtt=state.smoothed_rtt,
            receive_window_cap=state.receive_window_cap,
            current_throughput=state.current_throughput,
            packet_loss_rate=state.packet_loss_rate,
            transfer_progress=self.transfer.progress,
            filename=self.transfer.filename,
            direction=self.transfer.direction.value,
            queue_depth=self.queue_depth,
        )
