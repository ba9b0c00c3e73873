# transfer_common/storage.py
from __future__ import annotations

import os

from transfer_common.errors import TransferError
from transfer_common.protocol import FIELD_SEPARATOR


def format_file_size(size: int) -> str:
    if size < 1024:
        return f"{size} bytes"
    elif size < 1024 * 1024:
        return f"{size / 1024:.2f} KB"
    elif size < 1024 * 1024 * 1024:
        return f"{size / (1024 * 1024):.2f} MB"
    return f"{size / (1024 * 1024 * 1024):.2f} GB"


def ensure_dir(directory: str) -> str:
    if not os.path.exists(directory):
        os.makedirs(directory)
    return directory


def list_files(directory: str) -> list[tuple[str, int]]:
    """Regular files in ``directory`` as (name, size), sorted by name."""
    if not os.path.isdir(directory):
        return []
    entries = []
    for name in sorted(os.listdir(directory)):
        path = os.path.join(directory, name)
        if os.path.isfile(path):
            entries.append((name, os.path.getsize(path)))
    return entries


def format_file_list(entries: list[tuple[str, int]]) -> str:
    return "".join(f"{name} ({format_file_size(size)}){FIELD_SEPARATOR}" for name, size in entries)


def parse_file_list(payload: str) -> list[tuple[str, str]]:
    """Split a FILE_LIST payload into (name, human readable size) pairs."""
    files = []
    for entry in payload.split(FIELD_SEPARATOR):
        entry = entry.strip()
        if not entry:
            continue
        name, sep, size = entry.rpartition(" (")
        if not sep:
            files.append((entry, ""))
            continue
        files.append((name, size.rstrip(")")))
    return files


def resolve(directory: str, filename: str) -> str:
    """Path of ``filename`` inside ``directory``; peers cannot name other directories."""
    name = os.path.basename(filename.replace("\\", "/"))
    if name in ("", ".", ".."):
        raise TransferError(f"Invalid filename: {filename}")
    return os.path.join(directory, name)


def read_chunks(path: str, chunk_size: int):
    with open(path, "rb") as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            yield chunk


def write_file(directory: str, filename: str, data: bytes) -> str:
    path = resolve(ensure_dir(directory), filename)
    try:
        with open(path, "wb") as f:
            f.write(data)
    except OSError as e:
        raise TransferError(f"Failed to save file: {e}") from e
    return path
