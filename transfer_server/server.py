# transfer_server/server.py
import logging
import os
import selectors
import socket
import time

from transfer_common.config import ServerConfig
from transfer_common.engine import LISTENER, Engine
from transfer_common.errors import TransferError, TransferInProgressError
from transfer_common.protocol import (
    CMD_DOWNLOAD, CMD_ERROR, CMD_LIST_FILES, CMD_UPLOAD, CMD_UPLOAD_DATA, CMD_ACK,
    FIELD_SEPARATOR, RESP_DOWNLOAD_COMPLETE, RESP_DOWNLOAD_START, RESP_FILE_DATA, RESP_FILE_LIST,
    RESP_UPLOAD_COMPLETE, RESP_UPLOAD_READY,
)
from transfer_common.session import Session, parse_name_and_size
from transfer_common.storage import ensure_dir, format_file_list, list_files, resolve, write_file
from transfer_common.transfer import Direction

logger = logging.getLogger(__name__)


class ClientHandler(Session):
    """Server side of one client connection."""

    quiet_commands = frozenset({CMD_ACK, CMD_UPLOAD_DATA})

    def __init__(self, client_socket, label, server):
        super().__init__(client_socket, label, server)
        self.handlers.update({
            CMD_LIST_FILES: self.handle_list_files,
            CMD_DOWNLOAD: self.handle_download,
            CMD_UPLOAD: self.handle_upload,
            CMD_UPLOAD_DATA: self.handle_upload_data,
        })

    def handle_list_files(self, payload):
        files = list_files(self.engine.storage_dir)
        self.send_command(RESP_FILE_LIST, format_file_list(files))
        logger.info(f"[{self.label}] Sent file list ({len(files)} files).")

    def handle_download(self, filename):
        if not filename:
            raise TransferError("Filename not provided")
        if self.transfer.busy:
            raise TransferInProgressError(self.transfer.filename)
        file_path = resolve(self.engine.storage_dir, filename)
        if not os.path.isfile(file_path):
            logger.info(f"[{self.label}] File '{filename}' not found.")
            self.send_command(CMD_ERROR, f"File not found: {filename}")
            return

        file_size = os.path.getsize(file_path)
        name = os.path.basename(file_path)
        self.transfer.start_download(name, file_size, file_path)
        self.send_command(RESP_DOWNLOAD_START, f"{name}{FIELD_SEPARATOR}{file_size}")
        self.engine.events.publish('transfer_started', session=self.label, filename=name,
                                   size=file_size, direction=Direction.DOWNLOADING.value)
        self.start_stream(self.stream_file, file_path, RESP_FILE_DATA, RESP_DOWNLOAD_COMPLETE)

    def handle_upload(self, payload):
        filename, file_size = parse_name_and_size(payload)
        if self.transfer.busy:
            raise TransferInProgressError(self.transfer.filename)
        name = os.path.basename(resolve(self.engine.storage_dir, filename))
        self.transfer.start_upload(name, file_size)
        self.send_command(RESP_UPLOAD_READY, name)
        logger.info(f"[{self.label}] Accepting upload '{name}' ({file_size} bytes).")
        self.engine.events.publish('transfer_started', session=self.label, filename=name,
                                   size=file_size, direction=Direction.UPLOADING.value)
        if self.transfer.is_upload_complete():  # empty file
            self._complete_upload()

    def handle_upload_data(self, payload):
        if not self.receiving(Direction.UPLOADING):
            return
        try:
            self.receive_chunk(payload)
        except TransferError as e:
            self.fail_transfer(str(e))
            return
        if self.transfer.is_upload_complete():
            self._complete_upload()

    def _complete_upload(self):
        self.transfer.finish()
        self.start_worker(self._save_upload, self.transfer.filename, self.transfer.data())

    def _save_upload(self, filename, data):
        path = write_file(self.engine.storage_dir, filename, data)
        self.send_command(RESP_UPLOAD_COMPLETE, filename)
        logger.info(f"[{self.label}] File uploaded: {filename} ({len(data)} bytes) -> {path}")
        self.engine.events.publish('transfer_complete', session=self.label, filename=filename,
                                   size=len(data), path=path)


class Server(Engine):
    role = "Server"

    def __init__(self, config=None, clock=time.monotonic):
        super().__init__(config or ServerConfig(), clock)
        self._client_counter = 0

    @property
    def host(self):
        return self.config.host

    @property
    def port(self):
        """Bound port; differs from the configured one when that was 0."""
        if self._sock is not None:
            return self._sock.getsockname()[1]
        return self.config.port

    def _open_socket(self):
        ensure_dir(self.storage_dir)
        server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            server_socket.bind((self.config.host, self.config.port))
            server_socket.listen(50)
            server_socket.setblocking(False)
        except OSError as e:
            server_socket.close()
            logger.error(f"[ERROR] Could not start server: {e}")
            raise
        self._selector.register(server_socket, selectors.EVENT_READ, LISTENER)
        logger.info(f"[LISTENING] Server is listening on {self.config.host}:{server_socket.getsockname()[1]}")
        logger.info(f"Serving files from: {os.path.abspath(self.storage_dir)}")
        return server_socket

    def _on_listener_ready(self):
        try:
            client_socket, client_address = self._sock.accept()
        except (BlockingIOError, InterruptedError):
            return
        except OSError as e:
            logger.error(f"[{self.role}] Accept failed: {e}")
            return
        client_socket.setblocking(False)
        self._client_counter += 1
        label = f"Client-{self._client_counter} ({client_address[0]}:{client_address[1]})"
        self.register_session(client_socket, ClientHandler(client_socket, label, self))

    def set_storage_dir(self, path):
        """Point listings, downloads and uploads at another directory."""
        self.storage_dir = ensure_dir(path)
        logger.info(f"[{self.role}] Upload directory changed to: {os.path.abspath(path)}")
        self.events.publish('storage_dir', path=os.path.abspath(path))

    def switch_algorithm(self, label, algorithm):
        """Switch the congestion algorithm used towards one client."""
        session = self.get_session(label)
        if session is None:
            return False, f"No such client: {label}"
        try:
            chosen = session.controller.set_algorithm(algorithm)
        except ValueError as e:
            return False, str(e)
        logger.info(f"[{label}] Switched to {chosen.value}")
        self.events.publish('algorithm', session=label, algorithm=chosen.value)
        return True, f"{label} switched to {chosen.value}"
