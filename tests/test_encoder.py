import random
import unittest

import pytest

from re_metaai.encoder import (
    APP_ID,
    CAPABILITIES,
    ENTRY_POINT,
    FIXED32,
    LENGTH_DELIMITED,
    VARINT,
    decode_varint,
    encode_bytes,
    encode_float32,
    encode_message,
    encode_string,
    encode_tag,
    encode_turn,
    encode_varint,
    encode_varint_field,
    iter_fields,
)
from re_metaai.errors import MalformedPayload

USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64) TestAgent/1.0"
NOW = 1_700_000_000


class _ScriptedRandom:
    """Deterministic stand-in for the decoy hash and nonce generator."""

    def __init__(self, *values):
        self.values = list(values)
        self.stops = []

    def choice(self, sequence):
        return sequence[10]

    def randrange(self, stop):
        self.stops.append(stop)
        return self.values.pop(0)


# Hand-assembled from the wire layout: epoch 1700000000 is varint
# 80 e2 cf aa 06, nonce 300 is ac 02, nonce 70000 is f0 a2 04.
GOLDEN_TURN = (
    b"\x0a\xba\x03"
    b"\x0a\xf1\x01"
    b"\x0a\x20KADABRA__HOME__UNIFIED_INPUT_BAR"
    b"\x12\x101522763855472543"
    b"\x22\x04otid"
    b"\x2a\x06\x0a\x04conv"
    b"\x30\x05"
    b"\x3a\x0bHUMAN_AGENT"
    b"\x42\x06\x0a\x01u\x12\x01u"
    b"\x52\x05ECTO1"
    b"\x5a\x16Abra Web Temp User Key"
    b"\x62\x08\x1a\x02\x08\x05\x22\x02\x08\x01"
    b"\x6a\x05Linux"
    b"\x72\x0auser_input"
    b"\x7a\x02UA"
    b"\x82\x01\x0bdesktop_web"
    b"\x9a\x01\x47\x0a\x40" + b"a" * 64 + b"\x15\x00\x00\x80\x3f"
    b"\x12\x0e\x08\x80\xe2\xcf\xaa\x06\x10\x80\xe2\xcf\xaa\x06\x18\x06"
    b"\x1a\x02\x20\x01"
    b"\x22\x00"
    b"\x2a\x09\x08\x80\xe2\xcf\xaa\x06\x18\xac\x02"
    b"\x32\x03req"
    b"\x3a\x00"
    b"\x4a\x07\x12\x05en-US"
    b"\x52\x0b\x0a\x03mid\x12\x04conv"
    b"\x7a\x05\x0a\x03UTC"
    b"\x92\x01\x0c\x0a\x06stocks\x12\x02\x08\x01"
    b"\x92\x01\x0d\x0a\x07weather\x12\x02\x08\x01"
    b"\x92\x01\x24\x0a\x1emeta_knowledge_search_carousel\x12\x02\x08\x01"
    b"\x92\x01\x22\x0a\x1cmeta_catalog_search_carousel\x12\x02\x08\x01"
    b"\x92\x01\x13\x0a\x0dmedia_gallery\x12\x02\x08\x01"
    b"\x12\x1f"
    b"\x0a\x17\x0a\x03mid\x12\x10\x0a\x04conv\x10\x80\xe2\xcf\xaa\x06\x18\xf0\xa2\x04"
    b"\x12\x02hi"
    b"\x22\x00"
)



def _turn(message_text="Hello", seed=7, **overrides):
    arguments = dict(
        conversation_id="c0ffee00-0000-4000-8000-000000000001",
        request_id="req-1",
        offline_threading_id="abcd1234-threading",
        user_id="1000",
        message_text=message_text,
        user_agent=USER_AGENT,
        locale="en-US",
        timezone="Europe/Paris",
    )
    arguments.update(overrides)
    return encode_turn(
        **arguments,
        now=NOW,
        message_id="msg-1",
        rng=random.Random(seed),
    )


def _fields(data):
    return list(iter_fields(data))


def _numbers(data):
    return [field.number for field in iter_fields(data)]


class TestPrimitives(unittest.TestCase):
    def test_varint_golden_bytes(self):
        self.assertEqual(encode_varint(0), b"\x00")
        self.assertEqual(encode_varint(1), b"\x01")
        self.assertEqual(encode_varint(127), b"\x7f")
        self.assertEqual(encode_varint(128), b"\x80\x01")
        self.assertEqual(encode_varint(300), b"\xac\x02")
        self.assertEqual(encode_varint(16384), b"\x80\x80\x01")
        self.assertEqual(encode_varint(2**32 - 1), b"\xff\xff\xff\xff\x0f")

    def test_varint_rejects_negative_values(self):
        with self.assertRaises(ValueError):
            encode_varint(-1)

    def test_varint_decodes_what_it_encodes(self):
        samples = [0, 1, 127, 128, 255, 300, 16383, 16384, 2**21, 2**28 - 1, NOW, 2**63]
        for value in samples:
            encoded = encode_varint(value)
            self.assertEqual(decode_varint(encoded), (value, len(encoded)))

    def test_decode_varint_honours_offset(self):
        data = b"\xff" + encode_varint(300)
        self.assertEqual(decode_varint(data, 1), (300, 3))

    def test_tags(self):
        self.assertEqual(encode_tag(1, VARINT), b"\x08")
        self.assertEqual(encode_tag(1, LENGTH_DELIMITED), b"\x0a")
        self.assertEqual(encode_tag(2, FIXED32), b"\x15")
        self.assertEqual(encode_tag(18, LENGTH_DELIMITED), b"\x92\x01")
        self.assertEqual(encode_varint_field(6, 5), b"\x30\x05")

    def test_string_length_counts_utf8_bytes(self):
        self.assertEqual(encode_string(2, "hi"), b"\x12\x02hi")
        self.assertEqual(encode_string(2, "é"), b"\x12\x02\xc3\xa9")
        self.assertEqual(encode_bytes(4, b""), b"\x22\x00")

    def test_long_string_uses_multibyte_length(self):
        encoded = encode_string(1, "x" * 200)
        self.assertEqual(encoded[:3], b"\x0a\xc8\x01")
        self.assertEqual(len(encoded), 203)

    def test_nested_message(self):
        self.assertEqual(
            encode_message(8, encode_string(1, "u"), encode_string(2, "u")),
            b"\x42\x06\x0a\x01u\x12\x01u",
        )

    def test_float32_is_little_endian(self):
        self.assertEqual(encode_float32(2, 1.0), b"\x15\x00\x00\x80\x3f")


class TestDecoding(unittest.TestCase):
    def test_iter_fields_reports_every_wire_type(self):
        data = encode_varint_field(1, 150) + encode_string(2, "ok") + encode_float32(3, 1.0)
        self.assertEqual(
            [(field.number, field.wire_type, field.value) for field in iter_fields(data)],
            [(1, VARINT, 150), (2, LENGTH_DELIMITED, b"ok"), (3, FIXED32, b"\x00\x00\x80\x3f")],
        )

    def test_declared_length_past_the_end_is_malformed(self):
        with self.assertRaises(MalformedPayload) as context:
            _fields(b"\x0a\x05abc")
        self.assertEqual(context.exception.offset, 0)

    def test_truncated_varint_is_malformed(self):
        with self.assertRaises(MalformedPayload):
            decode_varint(b"\x80\x80")

    def test_unknown_wire_type_is_malformed(self):
        with self.assertRaises(MalformedPayload):
            _fields(b"\x0b\x00")

    def test_malformed_payload_is_a_value_error(self):
        self.assertTrue(issubclass(MalformedPayload, ValueError))


class TestEncodeTurn(unittest.TestCase):
    def test_full_payload_golden_bytes(self):
        rng = _ScriptedRandom(300, 70_000)
        payload = encode_turn(
            "conv",
            "req",
            "otid",
            "u",
            "hi",
            "UA",
            "en-US",
            "UTC",
            now=NOW,
            message_id="mid",
            rng=rng,
        )

        self.assertEqual(len(GOLDEN_TURN), 478)
        self.assertEqual(payload, GOLDEN_TURN)
        self.assertEqual(rng.stops, [65535, 0xFFFFFFFF])

    def test_same_inputs_give_identical_bytes(self):
        self.assertEqual(_turn(seed=3), _turn(seed=3))

    def test_random_fields_follow_the_generator(self):
        self.assertNotEqual(_turn(seed=3), _turn(seed=4))

    def test_top_level_layout(self):
        top = _fields(_turn())
        self.assertEqual([field.number for field in top], [1, 2])
        self.assertTrue(all(field.wire_type == LENGTH_DELIMITED for field in top))

    def test_main_container_layout(self):
        main = _fields(_fields(_turn())[0].value)
        self.assertEqual(
            [field.number for field in main],
            [1, 2, 3, 4, 5, 6, 7, 9, 10, 15] + [18] * len(CAPABILITIES),
        )
        by_number = {field.number: field.value for field in main}

        self.assertEqual(by_number[6], b"req-1")
        self.assertEqual(by_number[4], b"")
        self.assertEqual(by_number[7], b"")
        self.assertEqual(
            [(f.number, f.value) for f in iter_fields(by_number[2])],
            [(1, NOW), (2, NOW), (3, 6)],
        )
        self.assertEqual(_fields(by_number[9])[0].value, b"en-US")
        self.assertEqual(
            [f.value for f in iter_fields(by_number[10])],
            [b"msg-1", b"c0ffee00-0000-4000-8000-000000000001"],
        )
        self.assertEqual(_fields(by_number[15])[0].value, b"Europe/Paris")

        nonce = _fields(by_number[5])
        self.assertEqual([f.number for f in nonce], [1, 3])
        self.assertEqual(nonce[0].value, NOW)
        self.assertLess(nonce[1].value, 65535)

        capabilities = [
            _fields(field.value)[0].value.decode() for field in main if field.number == 18
        ]
        self.assertEqual(capabilities, list(CAPABILITIES))

    def test_request_context_layout(self):
        main = _fields(_fields(_turn())[0].value)
        context_bytes = main[0].value
        self.assertTrue(
            context_bytes.startswith(
                b"\x0a\x20" + ENTRY_POINT.encode() + b"\x12\x10" + APP_ID.encode()
            )
        )

        context = {field.number: field for field in iter_fields(context_bytes)}
        self.assertEqual(
            sorted(context),
            [1, 2, 4, 5, 6, 7, 8, 10, 11, 12, 13, 14, 15, 16, 19],
        )
        self.assertEqual(context[4].value, b"abcd1234-threading")
        self.assertEqual(
            _fields(context[5].value)[0].value, b"c0ffee00-0000-4000-8000-000000000001"
        )
        self.assertEqual(context[6].value, 5)
        self.assertEqual([f.value for f in iter_fields(context[8].value)], [b"1000", b"1000"])
        self.assertEqual(context[15].value, USER_AGENT.encode())

        decoy = _fields(context[19].value)
        self.assertEqual(len(decoy[0].value), 64)
        self.assertTrue(all(chr(byte) in "0123456789abcdef" for byte in decoy[0].value))
        self.assertEqual(decoy[1].value, b"\x00\x00\x80\x3f")

    def test_user_message_layout(self):
        user_message = _fields(_fields(_turn("Quelle heure est-il ?"))[1].value)
        self.assertEqual([field.number for field in user_message], [1, 2, 4])
        self.assertEqual(user_message[1].value, "Quelle heure est-il ?".encode())

        header = _fields(user_message[0].value)
        self.assertEqual(header[0].value, b"msg-1")
        thread = _fields(header[1].value)
        self.assertEqual(thread[0].value, b"c0ffee00-0000-4000-8000-000000000001")
        self.assertEqual(thread[1].value, NOW)
        self.assertLess(thread[2].value, 0xFFFFFFFF)

    def test_empty_user_id_is_encoded_as_empty_strings(self):
        main = _fields(_fields(_turn(user_id=""))[0].value)
        context = {field.number: field for field in iter_fields(main[0].value)}
        self.assertEqual([f.value for f in iter_fields(context[8].value)], [b"", b""])


@pytest.mark.parametrize(
    "message_text",
    ["a" * 127, "a" * 128, "ü" * 100, "日本語のテキスト" * 40, "emoji 😀 " * 300],
)
def test_long_messages_survive_length_prefixes(message_text):
    user_message = _fields(_fields(_turn(message_text))[1].value)
    assert user_message[1].value.decode("utf-8") == message_text
