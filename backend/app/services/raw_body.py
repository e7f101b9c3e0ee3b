"""
Raw message body normalization.

Inbound providers expose the message body in different shapes. Every shape
is classified once into a RawBodyKind and read through read_raw_body(), which
always returns one contiguous bytes object.
"""

import logging
from enum import Enum
from typing import Any, Iterable

logger = logging.getLogger(__name__)

TEXT_ENCODING = "utf-8"
_READ_CHUNK = 64 * 1024


class RawBodyKind(str, Enum):
    EMPTY = "empty"
    BUFFER = "buffer"
    STREAM = "stream"
    TEXT = "text"
    UNKNOWN = "unknown"


def classify_raw_body(handle: Any) -> RawBodyKind:
    """Decide which variant a body handle belongs to."""
    if handle is None:
        return RawBodyKind.EMPTY
    if isinstance(handle, (bytes, bytearray, memoryview)):
        return RawBodyKind.BUFFER
    if isinstance(handle, str):
        return RawBodyKind.TEXT
    if callable(getattr(handle, "read", None)):
        return RawBodyKind.STREAM
    if hasattr(handle, "__iter__"):
        return RawBodyKind.STREAM
    return RawBodyKind.UNKNOWN


def _iter_chunks(handle: Any) -> Iterable[bytes]:
    read = getattr(handle, "read", None)
    if callable(read):
        while True:
            chunk = read(_READ_CHUNK)
            if not chunk:
                return
            yield chunk
    else:
        yield from handle


def _drain_stream(handle: Any) -> bytes:
    """Drain a stream into one buffer, tracking the total length."""
    chunks: list[bytes] = []
    total = 0
    for chunk in _iter_chunks(handle):
        if isinstance(chunk, str):
            chunk = chunk.encode(TEXT_ENCODING)
        elif isinstance(chunk, int):
            # Iterating a bytes object yields ints, one per byte
            chunk = bytes((chunk,))
        else:
            chunk = bytes(chunk)
        chunks.append(chunk)
        total += len(chunk)

    buffer = bytearray(total)
    offset = 0
    for chunk in chunks:
        buffer[offset:offset + len(chunk)] = chunk
        offset += len(chunk)
    return bytes(buffer)


def read_raw_body(handle: Any) -> bytes:
    """
    Return the message body as bytes.

    A missing body yields b"" rather than an error. Unrecognized handles are
    passed through bytes(); if that fails the body is treated as empty.
    """
    kind = classify_raw_body(handle)

    if kind is RawBodyKind.EMPTY:
        return b""
    if kind is RawBodyKind.BUFFER:
        return bytes(handle)
    if kind is RawBodyKind.TEXT:
        return handle.encode(TEXT_ENCODING)
    if kind is RawBodyKind.STREAM:
        try:
            return _drain_stream(handle)
        except (TypeError, ValueError) as e:
            logger.warning(f"Unreadable raw body stream of type {type(handle).__name__}: {e}")
            return b""

    try:
        return bytes(handle)
    except (TypeError, ValueError) as e:
        logger.warning(f"Unreadable raw body of type {type(handle).__name__}: {e}")
        return b""
