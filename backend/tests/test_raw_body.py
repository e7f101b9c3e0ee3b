"""
Tests for raw body normalization.
"""

import io

import pytest

from app.services.raw_body import RawBodyKind, classify_raw_body, read_raw_body


class TestClassify:

    @pytest.mark.parametrize(
        "handle,kind",
        [
            (None, RawBodyKind.EMPTY),
            (b"abc", RawBodyKind.BUFFER),
            (bytearray(b"abc"), RawBodyKind.BUFFER),
            (memoryview(b"abc"), RawBodyKind.BUFFER),
            ("abc", RawBodyKind.TEXT),
            (io.BytesIO(b"abc"), RawBodyKind.STREAM),
            (iter([b"a", b"b"]), RawBodyKind.STREAM),
            (42, RawBodyKind.UNKNOWN),
        ],
    )
    def test_variants(self, handle, kind):
        assert classify_raw_body(handle) is kind


class TestReadRawBody:

    def test_missing_body_is_empty(self):
        assert read_raw_body(None) == b""

    def test_buffer_passes_through(self):
        assert read_raw_body(bytearray(b"From: a\r\n\r\nbody")) == b"From: a\r\n\r\nbody"

    def test_text_is_utf8_encoded(self):
        assert read_raw_body("Subject: café") == "Subject: café".encode("utf-8")

    def test_file_like_stream_is_drained(self):
        payload = b"x" * (200 * 1024 + 7)
        assert read_raw_body(io.BytesIO(payload)) == payload

    def test_chunk_iterator_is_concatenated_in_order(self):
        chunks = [b"From: a@example.com\r\n", b"\r\n", "hello ", b"world"]
        assert read_raw_body(iter(chunks)) == b"From: a@example.com\r\n\r\nhello world"

    def test_byte_iterator_is_byte_exact(self):
        assert read_raw_body(iter(b"hi")) == b"hi"

    def test_mixed_int_and_bytes_chunks(self):
        assert read_raw_body(iter([72, b"ello", 33])) == b"Hello!"

    def test_stream_with_unconvertible_chunk_is_empty(self):
        assert read_raw_body(iter([b"ok", 300])) == b""
        assert read_raw_body(iter([b"ok", object()])) == b""

    def test_empty_stream(self):
        assert read_raw_body(io.BytesIO(b"")) == b""

    def test_unknown_handle_that_bytes_accepts(self):
        # bytes(3) is three zero bytes
        assert read_raw_body(3) == b"\x00\x00\x00"

    def test_unreadable_handle_is_empty(self):
        assert read_raw_body(object()) == b""
