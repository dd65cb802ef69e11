"""Streaming gateway transport.

One websocket connection carries one turn: a setup frame announces the
conversation, the gateway acknowledges it, the encoded turn goes out in a
message frame, and the reply streams back as frames that each repeat the
whole answer so far. Frames are binary and only partially structured, so the
answer is located by scanning for known markers in the raw bytes.
"""

from __future__ import annotations

import asyncio
import base64
import enum
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Callable, NamedTuple, Optional
from urllib.parse import quote, urlencode

from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from .encoder import APP_ID
from .errors import TransportClosedWithoutResponse, TransportError, TransportTimeout
from .utils import META_AI_ORIGIN, USER_AGENT, decode_escapes

logger = logging.getLogger(__name__)

GATEWAY_URL = "wss://gateway.meta.ai/ws/clippy"
DEFAULT_TIMEOUT = 30.0
MAX_FRAME_SIZE = 8 * 1024 * 1024
CLOSE_TIMEOUT = 0.5

SETUP_FRAME_TYPE = 0x0F
MESSAGE_FRAME_TYPE = 0x0D
MESSAGE_FRAME_TRAILER = b"\x00\x00\x80"
MESSAGE_LENGTH_OVERHEAD = 2
MAX_SETUP_BODY = 0xFF
MAX_MESSAGE_BODY = 0xFFFF - MESSAGE_LENGTH_OVERHEAD
INBOUND_HEADER_SIZE = 8

SETUP_ACK_MARKER = b'"code":200'
COMPLETION_MARKER = b"\x28\x01"
PRIMARY_TEXT_MARKER = '"GenAIMarkdownTextUXPrimitive","text":"'
SIDE_CHANNEL_MARKER = '"embedded_screens"'
FETCH_ID_MARKER = '"fetch_id":"'


class TransportState(enum.Enum):
    CONNECTING = "connecting"
    AWAITING_SETUP_ACK = "awaiting_setup_ack"
    AWAITING_RESPONSE = "awaiting_response"
    DONE = "done"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


class FrameHeader(NamedTuple):
    frame_type: int
    length: int
    size: int


def _compact_json(data: dict) -> bytes:
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def build_setup_frame(conversation_id: str) -> bytes:
    body = _compact_json(
        {
            "x-dgw-app-x-ecto-conversation-id": conversation_id,
            "x-dgw-app-client-payload-type": "PROTO_INSIDE_JSON",
        }
    )
    if len(body) > MAX_SETUP_BODY:
        raise ValueError(f"setup frame body too large ({len(body)} bytes)")
    header = bytes([SETUP_FRAME_TYPE, 0x00, 0x00, len(body), 0x00, 0x00])
    return header + body


def build_message_frame(request_id: str, payload: bytes) -> bytes:
    body = _compact_json(
        {
            "req-id": request_id,
            "payload": base64.b64encode(payload).decode("ascii"),
        }
    )
    if len(body) > MAX_MESSAGE_BODY:
        raise ValueError(f"message frame body too large ({len(body)} bytes)")
    length = len(body) + MESSAGE_LENGTH_OVERHEAD
    header = bytes([MESSAGE_FRAME_TYPE, 0x00, 0x00, length & 0xFF, (length >> 8) & 0xFF])
    return header + MESSAGE_FRAME_TRAILER + body


def max_payload_size(request_id_length: int = 36) -> int:
    """Largest binary payload a message frame can carry for a request id of
    the given length (a uuid4 string by default)."""
    envelope = len(_compact_json({"req-id": "0" * request_id_length, "payload": ""}))
    return (MAX_MESSAGE_BODY - envelope) // 4 * 3


def parse_frame_header(frame: bytes) -> FrameHeader:
    """Read the type tag and declared length of an outbound frame."""
    if not frame:
        raise ValueError("empty frame")
    if frame[0] == SETUP_FRAME_TYPE and len(frame) >= 6:
        return FrameHeader(SETUP_FRAME_TYPE, frame[3], 6)
    if frame[0] == MESSAGE_FRAME_TYPE and len(frame) >= 8:
        return FrameHeader(MESSAGE_FRAME_TYPE, frame[3] | (frame[4] << 8), 8)
    raise ValueError(f"unknown frame type 0x{frame[0]:02x}")


def is_setup_ack(frame: bytes) -> bool:
    return SETUP_ACK_MARKER in frame


def _read_string_literal(text: str, start: int) -> str:
    """Return the raw (still escaped) string body starting at ``start``."""
    position = start
    while position < len(text):
        char = text[position]
        if char == "\\":
            position += 2
            continue
        if char == '"':
            break
        position += 1
    return text[start:min(position, len(text))]


@dataclass
class FrameScan:
    text: Optional[str] = None
    side_channel_text: bool = False
    complete: bool = False
    fetch_id: Optional[str] = None


class FrameScanner:
    """Find the primary answer text in a raw inbound frame.

    Text that only shows up after the side-channel marker belongs to
    auxiliary content (reasoning previews and the like) and is ignored.
    """

    def __init__(
        self,
        primary_marker: str = PRIMARY_TEXT_MARKER,
        side_channel_marker: str = SIDE_CHANNEL_MARKER,
    ):
        self.primary_marker = primary_marker
        self.side_channel_marker = side_channel_marker

    def scan(self, frame: bytes) -> FrameScan:
        body = frame[INBOUND_HEADER_SIZE:] if frame[:1] == bytes([MESSAGE_FRAME_TYPE]) else frame
        result = FrameScan(complete=COMPLETION_MARKER in body)
        if not result.complete and COMPLETION_MARKER in frame:
            logger.debug("Completion marker bytes only found in the frame header, ignoring")
        text = frame.decode("utf-8", errors="replace")

        marker_index = text.find(self.primary_marker)
        if marker_index != -1:
            raw = _read_string_literal(text, marker_index + len(self.primary_marker))
            side_index = text.find(self.side_channel_marker)
            if side_index == -1 or marker_index < side_index:
                result.text = decode_escapes(raw)
            else:
                result.side_channel_text = True
                logger.debug(
                    "Ignoring %d chars of text found after the side-channel marker",
                    len(raw),
                )

        fetch_index = text.find(FETCH_ID_MARKER)
        if fetch_index != -1:
            fetch_id = _read_string_literal(text, fetch_index + len(FETCH_ID_MARKER))
            result.fetch_id = fetch_id or None

        return result


class ResponseAccumulator:
    """Best-known full answer for the current turn.

    The gateway resends the growing answer instead of deltas, so every update
    replaces the previous text.
    """

    def __init__(self):
        self.text = ""
        self.fetch_id: Optional[str] = None
        self.updates = 0

    @property
    def has_text(self) -> bool:
        return bool(self.text)

    def update(self, text: str) -> None:
        if self.text and text and not text.startswith(self.text[: min(len(text), 32)]):
            logger.debug("Primary text changed prefix between frames")
        self.text = text
        self.updates += 1


@dataclass
class TransportResult:
    text: str
    partial: bool = False
    fetch_id: Optional[str] = None


class TransportSession:
    """Run a single turn over a fresh gateway connection.

    Args:
        access_token (str): Token from the negotiator.
        conversation_id (str): Conversation the turn belongs to.
        timeout (float): Wall-clock bound for the whole exchange. Closing the
            socket afterwards waits at most ``CLOSE_TIMEOUT`` for the peer.
        user_agent (str): User agent sent on the websocket handshake.
        connect: Factory returning an async context manager yielding a
            websocket; ``websockets.asyncio.client.connect`` by default.
        scanner (FrameScanner): Marker scanner for inbound frames.
    """

    def __init__(
        self,
        access_token: str,
        conversation_id: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        user_agent: str = USER_AGENT,
        connect: Optional[Callable] = None,
        scanner: Optional[FrameScanner] = None,
    ):
        self.access_token = access_token
        self.conversation_id = conversation_id
        self.timeout = timeout
        self.user_agent = user_agent
        self._connect = connect or websocket_connect
        self.scanner = scanner or FrameScanner()
        self.state = TransportState.CONNECTING
        self.accumulator = ResponseAccumulator()

    def build_url(self) -> str:
        params = [
            ("x-dgw-appid", APP_ID),
            ("x-dgw-appversion", "1.0.0"),
            ("x-dgw-authtype", "15:0"),
            ("x-dgw-version", "5"),
            ("x-dgw-uuid", "0"),
            ("x-dgw-tier", "prod"),
            ("Authorization", self.access_token),
            ("x-dgw-app-origin", "meta.ai"),
            ("x-dgw-app-clippy-request-id", str(uuid.uuid4())),
        ]
        return f"{GATEWAY_URL}?{urlencode(params, quote_via=quote)}"

    async def run(self, request_id: str, payload_builder: Callable[[], bytes]) -> TransportResult:
        """Send one turn and wait for the full answer.

        ``payload_builder`` is called once the setup frame is acknowledged.

        Raises:
            TransportTimeout: Nothing was accumulated before the timeout.
            TransportClosedWithoutResponse: The socket closed with no answer.
            TransportError: The connection could not be used at all.
        """
        self.state = TransportState.CONNECTING
        self.accumulator = ResponseAccumulator()

        try:
            return await asyncio.wait_for(
                self._exchange(request_id, payload_builder), self.timeout
            )
        except asyncio.TimeoutError:
            self.state = TransportState.TIMED_OUT
            if self.accumulator.has_text:
                logger.warning(
                    "Gateway timed out after %gs, returning partial answer", self.timeout
                )
                return TransportResult(
                    self.accumulator.text, partial=True, fetch_id=self.accumulator.fetch_id
                )
            raise TransportTimeout(self.timeout) from None
        except ConnectionClosed as exc:
            close = exc.rcvd
            return self._on_closed(close.code if close else None, close.reason if close else "")
        except (OSError, WebSocketException) as exc:
            self.state = TransportState.FAILED
            raise TransportError(f"Gateway connection failed: {exc}") from exc

    async def _exchange(self, request_id: str, payload_builder: Callable[[], bytes]) -> TransportResult:
        async with self._connect(
            self.build_url(),
            additional_headers={"Origin": META_AI_ORIGIN},
            user_agent_header=self.user_agent,
            max_size=MAX_FRAME_SIZE,
            close_timeout=CLOSE_TIMEOUT,
        ) as websocket:
            await websocket.send(build_setup_frame(self.conversation_id))
            self.state = TransportState.AWAITING_SETUP_ACK

            async for frame in websocket:
                if isinstance(frame, str):
                    frame = frame.encode("utf-8")

                if self.state is TransportState.AWAITING_SETUP_ACK:
                    if is_setup_ack(frame):
                        logger.debug("Setup acknowledged for conversation %s", self.conversation_id)
                        await websocket.send(build_message_frame(request_id, payload_builder()))
                        self.state = TransportState.AWAITING_RESPONSE
                    continue

                scan = self.scanner.scan(frame)
                if scan.text is not None:
                    self.accumulator.update(scan.text)
                if scan.fetch_id:
                    self.accumulator.fetch_id = scan.fetch_id
                if scan.complete and self.accumulator.has_text:
                    self.state = TransportState.DONE
                    return TransportResult(
                        self.accumulator.text, fetch_id=self.accumulator.fetch_id
                    )

        return self._on_closed(None, "")

    def _on_closed(self, code: Optional[int], reason: str) -> TransportResult:
        if self.accumulator.has_text:
            self.state = TransportState.DONE
            return TransportResult(self.accumulator.text, fetch_id=self.accumulator.fetch_id)
        self.state = TransportState.FAILED
        raise TransportClosedWithoutResponse(code, reason)
