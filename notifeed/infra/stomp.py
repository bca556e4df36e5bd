# notifeed/infra/stomp.py
"""
Minimal STOMP 1.2 frame codec for the push channel.

Only what a subscribing client needs: CONNECT / SUBSCRIBE / DISCONNECT
going out; CONNECTED / MESSAGE / RECEIPT / ERROR and heart-beats coming in.
"""
from typing import Dict, List, Optional, Tuple

from notifeed.errors import ProtocolError
from notifeed.models.stomp_frame import StompFrame

NULL = b"\x00"
HEARTBEAT = "\n"

# CONNECT and CONNECTED headers are never escaped (STOMP 1.2 §"Value Encoding")
_RAW_HEADER_COMMANDS = {"CONNECT", "CONNECTED", "STOMP"}

_ESCAPES = {"\\": "\\\\", "\r": "\\r", "\n": "\\n", ":": "\\c"}
_UNESCAPES = {"\\": "\\", "r": "\r", "n": "\n", "c": ":"}


def _escape(value: str) -> str:
    return "".join(_ESCAPES.get(ch, ch) for ch in value)


def _unescape(value: str) -> str:
    out = []
    chars = iter(value)
    for ch in chars:
        if ch != "\\":
            out.append(ch)
            continue
        nxt = next(chars, None)
        if nxt not in _UNESCAPES:
            raise ProtocolError(f"invalid header escape: \\{nxt or ''}")
        out.append(_UNESCAPES[nxt])
    return "".join(out)


def encode(frame: StompFrame) -> str:
    raw = frame.command in _RAW_HEADER_COMMANDS
    lines = [frame.command]
    for name, value in frame.headers.items():
        if raw:
            lines.append(f"{name}:{value}")
        else:
            lines.append(f"{_escape(name)}:{_escape(value)}")
    return "\n".join(lines) + "\n\n" + frame.body + "\x00"


def _parse_head(head: bytes, command_hint: Optional[str] = None) -> Tuple[str, Dict[str, str]]:
    try:
        text = head.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ProtocolError(f"frame head is not utf-8: {e}")

    lines = [line.rstrip("\r") for line in text.split("\n")]
    command = lines[0].strip()
    if not command:
        raise ProtocolError("frame without command")

    raw = command in _RAW_HEADER_COMMANDS
    headers: Dict[str, str] = {}
    for line in lines[1:]:
        if not line:
            continue
        if ":" not in line:
            raise ProtocolError(f"malformed header line: {line!r}")
        name, value = line.split(":", 1)
        if not raw:
            name, value = _unescape(name), _unescape(value)
        # repeated header: first occurrence wins
        headers.setdefault(name, value)
    return command, headers


def decode(data) -> List[StompFrame]:
    """
    Parses one transport message into frames.
    Bare EOLs (heart-beats) are skipped, so a pure heart-beat yields [].
    Raises ProtocolError on anything that is not a well-formed frame.
    """
    buf = data.encode("utf-8") if isinstance(data, str) else bytes(data)
    frames: List[StompFrame] = []
    pos = 0
    size = len(buf)

    while pos < size:
        # heart-beats / padding between frames
        while pos < size and buf[pos:pos + 1] in (b"\n", b"\r"):
            pos += 1
        if pos >= size:
            break

        sep = buf.find(b"\n\n", pos)
        sep_len = 2
        crlf = buf.find(b"\r\n\r\n", pos)
        if crlf != -1 and (sep == -1 or crlf < sep):
            sep, sep_len = crlf, 4
        if sep == -1:
            raise ProtocolError("frame without header terminator")

        command, headers = _parse_head(buf[pos:sep])
        body_start = sep + sep_len

        length = headers.get("content-length")
        if length is not None:
            try:
                n = int(length)
            except ValueError:
                raise ProtocolError(f"bad content-length: {length!r}")
            body_end = body_start + n
            if body_end >= size or buf[body_end:body_end + 1] != NULL:
                raise ProtocolError("content-length does not match frame")
        else:
            body_end = buf.find(NULL, body_start)
            if body_end == -1:
                raise ProtocolError("frame without NUL terminator")

        try:
            body = buf[body_start:body_end].decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"frame body is not utf-8: {e}")

        frames.append(StompFrame(command=command, headers=headers, body=body))
        pos = body_end + 1

    return frames


def connect_frame(host: str, token: str, heartbeat_ms: Tuple[int, int]) -> StompFrame:
    return StompFrame(
        command="CONNECT",
        headers={
            "accept-version": "1.2",
            "host": host,
            "heart-beat": f"{heartbeat_ms[0]},{heartbeat_ms[1]}",
            "Authorization": f"Bearer {token}",
        },
    )


def subscribe_frame(destination: str, subscription_id: str = "sub-0") -> StompFrame:
    return StompFrame(
        command="SUBSCRIBE",
        headers={"id": subscription_id, "destination": destination, "ack": "auto"},
    )


def disconnect_frame() -> StompFrame:
    return StompFrame(command="DISCONNECT", headers={"receipt": "disconnect-0"})


def parse_heartbeat(value: Optional[str]) -> Tuple[int, int]:
    if not value:
        return 0, 0
    try:
        x, y = (int(part.strip()) for part in value.split(","))
    except ValueError:
        raise ProtocolError(f"bad heart-beat header: {value!r}")
    if x < 0 or y < 0:
        raise ProtocolError(f"bad heart-beat header: {value!r}")
    return x, y


def negotiate_heartbeat(client: Tuple[int, int], server: Tuple[int, int]) -> Tuple[int, int]:
    """
    Returns (send_every_ms, expect_every_ms); 0 disables that direction.
    client = (cx, cy) as sent in CONNECT, server = (sx, sy) from CONNECTED.
    """
    cx, cy = client
    sx, sy = server
    outgoing = 0 if cx == 0 or sy == 0 else max(cx, sy)
    incoming = 0 if cy == 0 or sx == 0 else max(cy, sx)
    return outgoing, incoming
