from __future__ import annotations

from transfer_common.transfer import Direction, TransferState


def test_upload_accumulates_until_complete():
    t = TransferState()
    t.start_upload("report.pdf", 10)
    assert t.busy
    assert t.add_data(b"12345") == 5
    assert not t.is_upload_complete()
    assert t.progress == 0.5
    t.add_data(b"67890")
    assert t.is_upload_complete()
    assert t.data() == b"1234567890"


def test_overfill_counts_as_complete():
    t = TransferState()
    t.start_download("a.bin", 3)
    t.add_data(b"abcdef")
    assert t.is_download_complete()
    assert not t.is_upload_complete()
    assert t.progress == 1.0


def test_start_resets_previous_transfer():
    t = TransferState()
    t.start_upload("one", 4, "/tmp/one")
    t.add_data(b"abcd")
    t.next_sequence()
    t.mark_sent(0, 1.0)
    t.finish()
    assert not t.busy

    t.start_download("two", 8)
    assert t.direction is Direction.DOWNLOADING
    assert t.filename == "two"
    assert t.transferred == 0
    assert t.data() == b""
    assert t.source_path is None
    assert t.finished is False
    assert t.next_sequence() == 0
    assert t.pop_sent(0) is None


def test_sent_times_are_popped_once():
    t = TransferState()
    t.start_download("a", 2048)
    t.mark_sent(t.next_sequence(), 5.0)
    assert t.pop_sent(0) == 5.0
    assert t.pop_sent(0) is None


def test_idle_and_empty_progress():
    t = TransferState()
    assert not t.busy
    assert t.progress == 0.0
    t.start_upload("empty.txt", 0)
    assert t.is_upload_complete()
    t.finish()
    assert t.progress == 1.0


def test_average_speed():
    t = TransferState()
    t.start_download("a", 100)
    t.advance(100)
    assert t.average_speed(t.started_at + 2.0) == 50.0
    assert t.average_speed(t.started_at) == 0.0
