from __future__ import annotations

import socket

import pytest

from conftest import wait_until
from transfer_client.client import Client
from transfer_common.config import ClientConfig, ServerConfig
from transfer_server.server import Server


@pytest.fixture
def server(tmp_path):
    served = tmp_path / "served"
    served.mkdir()
    (served / "b.bin").write_bytes(bytes(range(256)) * 12)
    srv = Server(ServerConfig(host="127.0.0.1", port=0, storage_dir=str(served)))
    srv.start()
    yield srv
    srv.stop()


@pytest.fixture
def client(server, tmp_path):
    c = Client(ClientConfig(host="127.0.0.1", port=server.port,
                            storage_dir=str(tmp_path / "downloads"), ack_timeout=0.2))
    yield c
    c.disconnect()


def test_commands_need_a_connection(client):
    assert client.request_list_files() == (False, "Not connected.")
    assert client.request_download_file("b.bin") == (False, "Not connected.")
    assert client.switch_algorithm("CUBIC") == (False, "Not connected.")
    assert client.ping() is False


def test_connect_refused(tmp_path):
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        port = s.getsockname()[1]
    c = Client(ClientConfig(host="127.0.0.1", port=port, storage_dir=str(tmp_path)))
    ok, msg = c.connect()
    assert not ok
    assert msg.startswith("Error connecting to server")
    assert not c.running


def test_connect_and_list(client):
    ok, msg = client.connect()
    assert ok, msg
    assert client.connect()[1].startswith("Already connected")
    assert client.request_list_files()[0]
    event = client.events.wait_for(lambda e: e['type'] == 'file_list', 5.0)
    assert event['files'] == [("b.bin", "3.00 KB")]
    assert client.remote_files == event['files']


def test_download(client, tmp_path):
    client.connect()
    ok, _ = client.request_download_file("b.bin")
    assert ok
    event = client.wait_for_transfer("b.bin", timeout=20.0)
    assert event['type'] == 'transfer_complete'
    assert (tmp_path / "downloads" / "b.bin").read_bytes() == bytes(range(256)) * 12


def test_download_missing(client):
    client.connect()
    client.request_download_file("nope.txt")
    event = client.wait_for_transfer(timeout=5.0)
    assert event['type'] == 'transfer_failed'
    assert event['reason'] == "File not found: nope.txt"


def test_upload(client, server, tmp_path):
    src = tmp_path / "notes.txt"
    src.write_bytes(b"n" * 3000)
    client.connect()
    ok, msg = client.request_upload_file(str(src))
    assert ok, msg
    assert client.request_upload_file(str(src)) == (False, "Transfer in progress: notes.txt")
    event = client.wait_for_transfer("notes.txt", timeout=20.0)
    assert event['type'] == 'transfer_complete'
    assert wait_until(lambda: (tmp_path / "served" / "notes.txt").exists())
    assert (tmp_path / "served" / "notes.txt").read_bytes() == b"n" * 3000


def test_upload_missing_local_file(client, tmp_path):
    client.connect()
    ok, msg = client.request_upload_file(str(tmp_path / "ghost.txt"))
    assert not ok
    assert msg.startswith("File not found")


def test_switch_algorithm_reaches_server(client, server):
    client.connect()
    ok, msg = client.switch_algorithm("tcp_cubic")
    assert ok
    assert msg == "Switched to CUBIC"
    assert wait_until(lambda: [s.algorithm for s in server.snapshots().values()] == ["CUBIC"])
    assert client.switch_algorithm("BBR") == (False, "Unknown algorithm: BBR")


def test_ping_measures_rtt(client):
    client.connect()
    assert client.ping()
    label = client.handler.label
    assert wait_until(lambda: client.snapshots()[label].smoothed_rtt != 100.0)


def test_server_shutdown_stops_client(client, server):
    client.connect()
    server.stop()
    assert wait_until(lambda: not client.running)
    assert client.request_list_files() == (False, "Not connected.")
