"""
Log interpretation for build and runtime output.

Both conversions are pure functions over already-read data so they can be
exercised without a container runtime.
"""
import json
import struct
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

STDIN = 0
STDOUT = 1
STDERR = 2

FRAME_HEADER_SIZE = 8
STDERR_PREFIX = "[stderr] "

_HEADER = struct.Struct(">BxxxL")


@dataclass
class RuntimeLog:
    """Demultiplexed runtime output."""

    lines: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def text(self) -> str:
        return "\n".join(self.lines)

    @property
    def truncated(self) -> bool:
        return self.error is not None


def _split_lines(payload: bytes, stream: int) -> List[str]:
    text = payload.decode("utf-8", errors="replace")
    lines = []
    for line in text.split("\n"):
        line = line.rstrip("\r")
        if not line:
            continue
        if stream == STDERR:
            line = STDERR_PREFIX + line
        lines.append(line)
    return lines


def _looks_like_header(data: bytes, offset: int) -> bool:
    # Reserved bytes are always zero in a multiplexed stream
    return (
        data[offset] in (STDIN, STDOUT, STDERR)
        and data[offset + 1:offset + 4] == b"\x00\x00\x00"
    )


def _is_partial_header(data: bytes) -> bool:
    return data[0] in (STDIN, STDOUT, STDERR) and not data[1:4].strip(b"\x00")


def demux_runtime_log(data: bytes) -> RuntimeLog:
    """
    Walk a multiplexed runtime log buffer frame by frame.

    Each frame is an 8-byte header (stream selector, three reserved bytes,
    big-endian payload length) followed by the payload. Output from a
    container running with a TTY has no framing and is read as plain text,
    which also makes the function idempotent on its own output.

    Truncated input never raises: a declared length that overruns the buffer
    yields whatever payload is present, and an incomplete trailing header is
    dropped. Either case is reported in `RuntimeLog.error`.

    Args:
        data: Raw bytes as returned by the container logs endpoint

    Returns:
        RuntimeLog with the decoded lines and an error note for damaged input
    """
    result = RuntimeLog()
    if not data:
        return result

    if len(data) < FRAME_HEADER_SIZE and _is_partial_header(data):
        result.error = f"Incomplete frame header at byte 0 ({len(data)} of {FRAME_HEADER_SIZE} bytes)"
        return result

    if len(data) < FRAME_HEADER_SIZE or not _looks_like_header(data, 0):
        result.lines = _split_lines(data, STDOUT)
        return result

    offset = 0
    total = len(data)
    while offset < total:
        remaining = total - offset
        if remaining < FRAME_HEADER_SIZE:
            result.error = f"Incomplete frame header at byte {offset} ({remaining} of {FRAME_HEADER_SIZE} bytes)"
            break

        if not _looks_like_header(data, offset):
            result.lines.extend(_split_lines(data[offset:], STDOUT))
            result.error = f"Invalid frame header at byte {offset}"
            break

        stream, size = _HEADER.unpack_from(data, offset)
        offset += FRAME_HEADER_SIZE
        if size == 0:
            continue

        available = total - offset
        if size > available:
            result.lines.extend(_split_lines(data[offset:], stream))
            result.error = f"Frame at byte {offset - FRAME_HEADER_SIZE} declares {size} bytes, only {available} present"
            break

        result.lines.extend(_split_lines(data[offset:offset + size], stream))
        offset += size

    return result


def parse_runtime_log(data: bytes) -> str:
    """Demultiplex runtime output into newline-joined text."""
    return demux_runtime_log(data).text


def frame(stream: int, payload: bytes) -> bytes:
    """Encode one multiplexed frame."""
    return _HEADER.pack(stream, len(payload)) + payload


def join_build_log(lines: Iterable[str]) -> str:
    """Collect build output verbatim, newline-joined."""
    return "\n".join(lines)


class BuildLogCollector:
    """
    Accumulates the JSON-lines stream returned by the image build endpoint.

    `stream` messages carry the build output text; an `error` message means a
    build instruction failed. Lines that are not JSON are kept verbatim so a
    malformed stream never loses output.
    """

    def __init__(self):
        self._buffer = ""
        self._lines: List[str] = []
        self.error: Optional[str] = None
        self.image_id: Optional[str] = None
        self.decode_errors = 0

    def feed_line(self, raw: str) -> None:
        raw = raw.strip()
        if not raw:
            return
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            self.decode_errors += 1
            self._append(raw + "\n")
            return
        if isinstance(message, dict):
            self.feed_message(message)
        else:
            self.decode_errors += 1
            self._append(raw + "\n")

    def feed_message(self, message: Dict[str, Any]) -> None:
        if "stream" in message:
            self._append(str(message["stream"]))
        if "status" in message:
            status = str(message["status"])
            if message.get("progress"):
                return
            if message.get("id"):
                status = f"{message['id']}: {status}"
            self._append(status + "\n")
        aux = message.get("aux")
        if isinstance(aux, dict) and aux.get("ID"):
            self.image_id = aux["ID"]
        if message.get("error") or message.get("errorDetail"):
            detail = message.get("errorDetail") or {}
            error = message.get("error") or detail.get("message") or "unknown build error"
            self.error = str(error)
            self._append(f"ERROR: {self.error}\n")

    def _append(self, text: str) -> None:
        self._buffer += text
        *complete, self._buffer = self._buffer.split("\n")
        self._lines.extend(line.rstrip("\r") for line in complete)

    @property
    def lines(self) -> List[str]:
        if self._buffer:
            return self._lines + [self._buffer.rstrip("\r")]
        return list(self._lines)

    @property
    def text(self) -> str:
        return join_build_log(self.lines)
