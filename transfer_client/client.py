# transfer_client/client.py
import logging
import os
import socket
import time

from transfer_common.config import ClientConfig
from transfer_common.engine import Engine, Tick
from transfer_common.errors import TransferError
from transfer_common.protocol import (
    CMD_ACK, CMD_ALGORITHM, CMD_DOWNLOAD, CMD_LIST_FILES, CMD_PING, CMD_UPLOAD, CMD_UPLOAD_DATA,
    CONNECT_TIMEOUT, FIELD_SEPARATOR, RESP_DOWNLOAD_COMPLETE, RESP_DOWNLOAD_START, RESP_FILE_DATA,
    RESP_FILE_LIST, RESP_PONG, RESP_UPLOAD_COMPLETE, RESP_UPLOAD_READY,
)
from transfer_common.session import Session, parse_name_and_size
from transfer_common.storage import parse_file_list, write_file
from transfer_common.transfer import Direction

logger = logging.getLogger(__name__)


class ServerHandler(Session):
    """Client side of the connection: reacts to what the server sends."""

    quiet_commands = frozenset({CMD_ACK, RESP_FILE_DATA, RESP_PONG})

    def __init__(self, server_socket, label, client):
        super().__init__(server_socket, label, client)
        self.handlers.update({
            RESP_FILE_LIST: self.handle_file_list,
            RESP_DOWNLOAD_START: self.handle_download_start,
            RESP_FILE_DATA: self.handle_file_data,
            RESP_DOWNLOAD_COMPLETE: self.handle_download_complete,
            RESP_UPLOAD_READY: self.handle_upload_ready,
            RESP_UPLOAD_COMPLETE: self.handle_upload_complete,
        })

    def handle_file_list(self, payload):
        files = parse_file_list(payload)
        self.engine.remote_files = files
        logger.info(f"[{self.label}] Found {len(files)} files.")
        self.engine.events.publish('file_list', files=files)

    def handle_download_start(self, payload):
        filename, file_size = parse_name_and_size(payload)
        self.transfer.start_download(filename, file_size)
        logger.info(f"[{self.label}] Downloading '{filename}' ({file_size} bytes)...")
        self.engine.events.publish('transfer_started', session=self.label, filename=filename,
                                   size=file_size, direction=Direction.DOWNLOADING.value)

    def handle_file_data(self, payload):
        if not self.receiving(Direction.DOWNLOADING):
            return
        try:
            self.receive_chunk(payload)
        except TransferError as e:
            self.fail_transfer(str(e))

    def handle_download_complete(self, filename):
        if not self.receiving(Direction.DOWNLOADING):
            return
        self.transfer.finish()
        expected, received = self.transfer.total_size, self.transfer.transferred
        if received != expected:
            reason = f"Download of '{filename}' incomplete. Expected {expected}, got {received}"
            logger.warning(f"[{self.label}] {reason}")
            self.engine.events.publish('transfer_failed', session=self.label, filename=filename,
                                       reason=reason, remote=False)
            return
        self.start_worker(self._save_download, self.transfer.filename, self.transfer.data())

    def _save_download(self, filename, data):
        save_path = write_file(self.engine.storage_dir, filename, data)
        logger.info(f"[{self.label}] File '{filename}' downloaded successfully to {save_path}")
        self.engine.events.publish('transfer_complete', session=self.label, filename=filename,
                                   size=len(data), path=save_path)

    def handle_upload_ready(self, filename):
        transfer = self.transfer
        if transfer.direction is not Direction.UPLOADING or transfer.finished or not transfer.source_path:
            logger.warning(f"[{self.label}] UPLOAD_READY for '{filename}' without a pending upload.")
            return
        self.start_stream(self.stream_file, transfer.source_path, CMD_UPLOAD_DATA)

    def handle_upload_complete(self, filename):
        transfer = self.transfer
        if transfer.direction is not Direction.UPLOADING or transfer.finished:
            logger.warning(f"[{self.label}] UPLOAD_COMPLETE for '{filename}' without a pending upload.")
            return
        transfer.finish()
        logger.info(f"[{self.label}] Upload of '{filename}' completed.")
        self.engine.events.publish('transfer_complete', session=self.label, filename=filename,
                                   size=self.transfer.transferred)


class Client(Engine):
    """Engine specialised to one outbound connection, with periodic RTT probes."""

    role = "Client"

    def __init__(self, config=None, clock=time.monotonic):
        super().__init__(config or ClientConfig(), clock)
        self.handler = None
        self.remote_files = []
        self._ping_tick = None

    @property
    def host(self):
        return self.config.host

    @property
    def port(self):
        return self.config.port

    def connect(self):
        if self.running:
            return True, f"Already connected to {self.host}:{self.port}"
        try:
            self.start()
        except socket.timeout:
            return False, f"Connection to server {self.host}:{self.port} timed out."
        except OSError as e:
            return False, f"Error connecting to server: {e}"
        return True, f"Connected to server at {self.host}:{self.port}"

    def disconnect(self):
        self.stop()
        return "Disconnected."

    def _open_socket(self):
        client_socket = socket.create_connection((self.host, self.port), timeout=CONNECT_TIMEOUT)
        client_socket.setblocking(False)
        return client_socket

    def _on_opened(self):
        peer = self._sock.getpeername()
        self.handler = ServerHandler(self._sock, f"Server ({peer[0]}:{peer[1]})", self)
        self.register_session(self._sock, self.handler)
        self._ping_tick = Tick(self.config.ping_interval, self.clock)

    def _on_tick(self, now):
        if self._ping_tick is not None and self._ping_tick.due(now):
            self.ping()

    def _on_session_closed(self, session):
        # nothing left to serve once the only connection is gone
        self._running = False

    def _connected(self):
        return self.running and self.handler is not None and self.handler.active

    # --- collaborator commands ---

    def ping(self):
        if not self._connected():
            return False
        return self.handler.send_command(CMD_PING, str(int(time.time() * 1000)))

    def request_list_files(self):
        if not self._connected():
            return False, "Not connected."
        self.handler.send_command(CMD_LIST_FILES)
        return True, "File list requested."

    def request_download_file(self, filename):
        if not self._connected():
            return False, "Not connected."
        if self.handler.transfer.busy:
            return False, f"Transfer in progress: {self.handler.transfer.filename}"
        self.handler.send_command(CMD_DOWNLOAD, filename)
        return True, f"Download of '{filename}' requested."

    def request_upload_file(self, file_path):
        if not self._connected():
            return False, "Not connected."
        if not os.path.isfile(file_path):
            return False, f"File not found: {file_path}"
        if self.handler.transfer.busy:
            return False, f"Transfer in progress: {self.handler.transfer.filename}"
        filename = os.path.basename(file_path)
        file_size = os.path.getsize(file_path)
        self.handler.transfer.start_upload(filename, file_size, file_path)
        self.handler.send_command(CMD_UPLOAD, f"{filename}{FIELD_SEPARATOR}{file_size}")
        self.events.publish('transfer_started', session=self.handler.label, filename=filename,
                            size=file_size, direction=Direction.UPLOADING.value)
        return True, f"Upload of '{filename}' announced ({file_size} bytes)."

    def switch_algorithm(self, algorithm):
        """Switch locally and tell the server to switch its side too."""
        if not self._connected():
            return False, "Not connected."
        try:
            chosen = self.handler.controller.set_algorithm(algorithm)
        except ValueError as e:
            return False, str(e)
        self.handler.send_command(CMD_ALGORITHM, chosen.value)
        self.events.publish('algorithm', session=self.handler.label, algorithm=chosen.value)
        return True, f"Switched to {chosen.value}"

    def wait_for_transfer(self, filename=None, timeout=60.0):
        """Block until a transfer completes or fails; returns the event or None."""
        def finished(event):
            return (event['type'] in ('transfer_complete', 'transfer_failed')
                    and (filename is None or event.get('filename') in (filename, None)))
        return self.events.wait_for(finished, timeout)
