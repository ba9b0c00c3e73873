# transfer_common/codec.py
"""
Line-delimited text framing.

A frame is ``NAME:payload`` terminated by ``\\n`` (``\\r\\n`` is accepted on
input). Binary file chunks travel base64-encoded in the payload, so a frame is
always text-safe.
"""
from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass

from transfer_common.errors import TransferError
from transfer_common.protocol import NAME_SEPARATOR

_LINE_BREAK = re.compile(rb"\r?\n")


@dataclass(frozen=True, slots=True)
class Command:
    name: str
    payload: str = ""


def parse_line(line: str) -> Command | None:
    """Parse one complete line, or return None for blank lines."""
    line = line.strip()
    if not line:
        return None
    name, _, payload = line.partition(NAME_SEPARATOR)
    return Command(name.strip(), payload.strip())


def decode(buffer: bytes, new_bytes: bytes) -> tuple[list[Command], bytes]:
    """
    Append ``new_bytes`` to ``buffer`` and cut out every complete line.

    Returns the parsed commands and the unterminated tail, which must be passed
    back in as ``buffer`` on the next call. The result does not depend on where
    the stream was split.
    """
    data = buffer + new_bytes
    segments = _LINE_BREAK.split(data)
    remainder = segments.pop()  # b"" when data ends on a terminator
    commands = []
    for segment in segments:
        command = parse_line(segment.decode("utf-8", errors="replace"))
        if command is not None:
            commands.append(command)
    return commands, remainder


def encode(name: str, payload: str = "") -> bytes:
    return f"{name}{NAME_SEPARATOR}{payload}\n".encode("utf-8")


def encode_chunk(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def decode_chunk(payload: str) -> bytes:
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise TransferError(f"Invalid data chunk: {e}") from e


class MessageDecoder:
    """Keeps the unterminated tail between reads of one connection."""

    def __init__(self):
        self.buffer = b""

    def feed(self, data: bytes) -> list[Command]:
        commands, self.buffer = decode(self.buffer, data)
        return commands

    @property
    def pending(self) -> int:
        return len(self.buffer)
