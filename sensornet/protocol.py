"""Wire format shared by the servers and the sensor: "<code> <payload>" text messages."""

from __future__ import annotations

import re
import sys
from dataclasses import dataclass
from enum import IntEnum

MAX_MSG_SIZE = 500
SERVER_BACKLOG = 5
MAX_PIDS_LENGTH = 50


class MessageCode(IntEnum):
    """Codes that open every message."""

    OK = 0
    REQ_CONNPEER = 20
    RES_CONNPEER = 21
    REQ_DISCPEER = 22
    REQ_CONNSEN = 23
    RES_CONNSEN = 24
    REQ_DISCSEN = 25
    REQ_CHECKALERT = 36
    RES_CHECKALERT = 37
    REQ_SENSLOC = 38
    RES_SENSLOC = 39
    REQ_SENSSTATUS = 40
    RES_SENSSTATUS = 41
    REQ_LOCLIST = 42
    RES_LOCLIST = 43
    ERROR = 255


class OkCode(IntEnum):
    """Payload values carried by an OK message."""

    SUCCESSFUL_DISCONNECT = 1
    SUCCESSFUL_CREATE = 2
    SUCCESSFUL_UPDATE = 3


class ErrorCode(IntEnum):
    """Payload values carried by an ERROR message."""

    PEER_LIMIT_EXCEEDED = 1
    PEER_NOT_FOUND = 2
    INVALID_PAYLOAD = 3
    SENSOR_ID_ALREADY_EXISTS = 4
    INVALID_MSG_CODE = 5
    SENSOR_LIMIT_EXCEEDED = 9
    SENSOR_NOT_FOUND = 10


class ProtocolError(ValueError):
    """Raised when bytes received cannot be read as a message."""


_MESSAGE_RE = re.compile(r"\s*([+-]?\d+)\s*([^\n]*)")
_LEADING_INT_RE = re.compile(r"\s*([+-]?\d+)")


def _leading_int(text: str) -> int:
    """Read the integer at the start of text, or 0 when there is none."""
    match = _LEADING_INT_RE.match(text)
    return int(match.group(1)) if match else 0


@dataclass(frozen=True)
class Message:
    """A decoded message: its numeric code and its text payload."""

    code: int
    payload: str = ""

    @property
    def number(self) -> int:
        """The payload read as a leading integer, 0 when it does not start with one."""
        return _leading_int(self.payload)

    def encode(self) -> bytes:
        """The message as it goes on the wire."""
        return build_message(self.code, self.payload)


def build_message(code: int, payload: str | None = None) -> bytes:
    """Encode a message as "<code> <payload>", or "<code> " when there is no payload."""
    text = f"{int(code)} {payload}" if payload else f"{int(code)} "
    return text.encode("utf-8")[:MAX_MSG_SIZE]


def parse_message(data: bytes | str) -> Message:
    """Decode a message; the payload runs from the first non-blank after the code to the line end."""
    if isinstance(data, bytes):
        data = data.split(b"\0", 1)[0].decode("utf-8", errors="replace")
    else:
        data = data.split("\0", 1)[0]
    match = _MESSAGE_RE.match(data)
    if match is None:
        raise ProtocolError(f"no message code in {data!r}")
    return Message(int(match.group(1)), match.group(2))


def status_payload(value: int) -> str:
    """Format an OK or ERROR payload as a two-digit number."""
    return f"{int(value):02d}"


def log_info(msg: str) -> None:
    """Write an informational line to standard output."""
    print(f"[INFO] {msg}", flush=True)


def log_error(msg: str) -> None:
    """Write an error line to standard error, with the exception being handled if any."""
    exc = sys.exc_info()[1]
    line = f"{msg}: {exc}" if exc is not None else msg
    print(line, file=sys.stderr, flush=True)