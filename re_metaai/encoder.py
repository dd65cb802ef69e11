"""Minimal length-delimited binary encoding for chat turn payloads.

The gateway expects a protobuf-compatible payload inside the JSON message
frame. Only the fixed set of shapes needed to send a user turn is encoded
here; there is no schema compiler behind it.
"""

from __future__ import annotations

import random
import struct
import time
import uuid
from typing import Iterator, NamedTuple, Optional

from .errors import MalformedPayload

VARINT = 0
FIXED64 = 1
LENGTH_DELIMITED = 2
FIXED32 = 5

ENTRY_POINT = "KADABRA__HOME__UNIFIED_INPUT_BAR"
APP_ID = "1522763855472543"
AGENT_TYPE = "HUMAN_AGENT"
CLIENT_NAME = "ECTO1"
USER_KEY_LABEL = "Abra Web Temp User Key"
PLATFORM = "Linux"
INPUT_SOURCE = "user_input"
SURFACE = "desktop_web"

CAPABILITIES = (
    "stocks",
    "weather",
    "meta_knowledge_search_carousel",
    "meta_catalog_search_carousel",
    "media_gallery",
)


class Field(NamedTuple):
    number: int
    wire_type: int
    value: object


def encode_varint(value: int) -> bytes:
    if value < 0:
        raise ValueError(f"varint values must be non-negative, got {value}")
    out = bytearray()
    while value > 0x7F:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def encode_tag(field_number: int, wire_type: int) -> bytes:
    return encode_varint((field_number << 3) | wire_type)


def encode_varint_field(field_number: int, value: int) -> bytes:
    return encode_tag(field_number, VARINT) + encode_varint(value)


def encode_bytes(field_number: int, data: bytes) -> bytes:
    return encode_tag(field_number, LENGTH_DELIMITED) + encode_varint(len(data)) + data


def encode_string(field_number: int, value: str) -> bytes:
    return encode_bytes(field_number, value.encode("utf-8"))


def encode_message(field_number: int, *parts: bytes) -> bytes:
    """Encode the concatenation of ``parts`` as a nested sub-message."""
    return encode_bytes(field_number, b"".join(parts))


def encode_float32(field_number: int, value: float) -> bytes:
    return encode_tag(field_number, FIXED32) + struct.pack("<f", value)


def decode_varint(data: bytes, offset: int = 0) -> tuple[int, int]:
    """Decode a varint starting at ``offset``.

    Returns:
        tuple[int, int]: The decoded value and the offset just past it.

    Raises:
        MalformedPayload: If the buffer ends before the last varint byte.
    """
    result = 0
    shift = 0
    position = offset
    while True:
        if position >= len(data):
            raise MalformedPayload(offset, "truncated varint")
        byte = data[position]
        result |= (byte & 0x7F) << shift
        position += 1
        if not byte & 0x80:
            return result, position
        shift += 7


def iter_fields(data: bytes) -> Iterator[Field]:
    """Walk the top-level fields of an encoded message.

    Length-delimited values are yielded as raw ``bytes``; nested messages are
    decoded by calling ``iter_fields`` again on them.
    """
    offset = 0
    while offset < len(data):
        start = offset
        key, offset = decode_varint(data, offset)
        number, wire_type = key >> 3, key & 0x07
        if wire_type == VARINT:
            value, offset = decode_varint(data, offset)
        elif wire_type == LENGTH_DELIMITED:
            length, offset = decode_varint(data, offset)
            if offset + length > len(data):
                raise MalformedPayload(
                    start,
                    f"field {number} declares {length} bytes, "
                    f"{len(data) - offset} available",
                )
            value = data[offset : offset + length]
            offset += length
        elif wire_type in (FIXED32, FIXED64):
            width = 4 if wire_type == FIXED32 else 8
            if offset + width > len(data):
                raise MalformedPayload(start, f"truncated fixed field {number}")
            value = data[offset : offset + width]
            offset += width
        else:
            raise MalformedPayload(start, f"unsupported wire type {wire_type}")
        yield Field(number, wire_type, value)


def _decoy_hash(rng) -> str:
    return "".join(rng.choice("0123456789abcdef") for _ in range(64))


def _request_context(
    conversation_id: str,
    offline_threading_id: str,
    user_id: str,
    user_agent: str,
    rng,
) -> bytes:
    return b"".join(
        [
            encode_string(1, ENTRY_POINT),
            encode_string(2, APP_ID),
            encode_string(4, offline_threading_id),
            encode_message(5, encode_string(1, conversation_id)),
            encode_varint_field(6, 5),
            encode_string(7, AGENT_TYPE),
            encode_message(8, encode_string(1, user_id), encode_string(2, user_id)),
            encode_string(10, CLIENT_NAME),
            encode_string(11, USER_KEY_LABEL),
            encode_message(
                12,
                encode_message(3, encode_varint_field(1, 5)),
                encode_message(4, encode_varint_field(1, 1)),
            ),
            encode_string(13, PLATFORM),
            encode_string(14, INPUT_SOURCE),
            encode_string(15, user_agent),
            encode_string(16, SURFACE),
            encode_message(19, encode_string(1, _decoy_hash(rng)), encode_float32(2, 1.0)),
        ]
    )


def encode_turn(
    conversation_id: str,
    request_id: str,
    offline_threading_id: str,
    user_id: str,
    message_text: str,
    user_agent: str,
    locale: str,
    timezone: str,
    *,
    now: Optional[int] = None,
    message_id: Optional[str] = None,
    rng: Optional[random.Random] = None,
) -> bytes:
    """Build the binary payload for one user turn.

    Args:
        conversation_id (str): External conversation id, reused across turns.
        request_id (str): Per-turn request id, also sent in the frame envelope.
        offline_threading_id (str): Per-turn threading id.
        user_id (str): User id returned by token negotiation, may be empty.
        message_text (str): The literal user message.
        user_agent (str): Browser user agent reported in the client metadata.
        locale (str): Locale such as ``en-US``.
        timezone (str): IANA timezone name.
        now (Optional[int]): Epoch seconds; defaults to the current time.
        message_id (Optional[str]): Message uuid; defaults to a fresh uuid4.
        rng (Optional[random.Random]): Source for the decoy hash and nonces.

    Returns:
        bytes: The encoded payload.
    """
    epoch_seconds = int(time.time()) if now is None else now
    message_id = message_id or str(uuid.uuid4())
    rng = rng or random

    capabilities = [
        encode_message(
            18,
            encode_string(1, capability),
            encode_message(2, encode_varint_field(1, 1)),
        )
        for capability in CAPABILITIES
    ]

    main_container = b"".join(
        [
            encode_message(
                1,
                _request_context(
                    conversation_id, offline_threading_id, user_id, user_agent, rng
                ),
            ),
            encode_message(
                2,
                encode_varint_field(1, epoch_seconds),
                encode_varint_field(2, epoch_seconds),
                encode_varint_field(3, 6),
            ),
            encode_message(3, encode_varint_field(4, 1)),
            encode_bytes(4, b""),
            encode_message(
                5,
                encode_varint_field(1, epoch_seconds),
                encode_varint_field(3, rng.randrange(65535)),
            ),
            encode_string(6, request_id),
            encode_bytes(7, b""),
            encode_message(9, encode_string(2, locale)),
            encode_message(10, encode_string(1, message_id), encode_string(2, conversation_id)),
            encode_message(15, encode_string(1, timezone)),
            *capabilities,
        ]
    )

    user_message = b"".join(
        [
            encode_message(
                1,
                encode_string(1, message_id),
                encode_message(
                    2,
                    encode_string(1, conversation_id),
                    encode_varint_field(2, epoch_seconds),
                    encode_varint_field(3, rng.randrange(0xFFFFFFFF)),
                ),
            ),
            encode_string(2, message_text),
            encode_bytes(4, b""),
        ]
    )

    return encode_message(1, main_container) + encode_message(2, user_message)
