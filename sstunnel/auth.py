"""
One-time auth (OTA): HMAC-tagged chunk framing over one stream direction.

Chunk layout:

    length (2 bytes, big-endian) || tag (10 bytes) || payload (length bytes)

tag = HMAC-SHA1(key, iv || be32(chunk_counter) || payload)[:10]. The counter
starts at 0 for each direction and advances by one per chunk sent or accepted.

The length field itself is not authenticated before its payload arrives: a
tampered length within max_chunk_size leaves ChunkReader waiting for bytes
that never come, and the connection ends on its idle timeout rather than an
AuthError. A length above max_chunk_size is rejected at once.
"""

from __future__ import annotations

import struct
from hmac import compare_digest
from typing import List

from cryptography.hazmat.primitives import hashes, hmac

from sstunnel.exceptions import AuthError

TAG_LEN = 10
LENGTH_STRUCT = struct.Struct("!H")
COUNTER_STRUCT = struct.Struct("!I")
CHUNK_HEADER_LEN = LENGTH_STRUCT.size + TAG_LEN
MAX_CHUNK_SIZE = 0xFFFF
DEFAULT_CHUNK_SIZE = 0x3FFF

_COUNTER_MASK = 0xFFFFFFFF


class ChunkAuth:
    """Tags and verifies the chunks of one direction of one connection."""

    def __init__(self, key: bytes, iv: bytes, max_chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        if not key:
            raise ValueError("OTA key must not be empty")
        if not (1 <= max_chunk_size <= MAX_CHUNK_SIZE):
            raise ValueError(f"max_chunk_size must be 1..{MAX_CHUNK_SIZE}")
        self._key = key
        self._iv = bytes(iv)
        self.max_chunk_size = max_chunk_size
        self._counter = 0

    @property
    def chunk_counter(self) -> int:
        return self._counter

    def _hmac(self, counter: int, payload: bytes) -> hmac.HMAC:
        h = hmac.HMAC(self._key, hashes.SHA1())
        h.update(self._iv)
        h.update(COUNTER_STRUCT.pack(counter))
        h.update(payload)
        return h

    def _tag(self, counter: int, payload: bytes) -> bytes:
        return self._hmac(counter, payload).finalize()[:TAG_LEN]

    def _advance(self) -> None:
        self._counter = (self._counter + 1) & _COUNTER_MASK

    def header_tag(self, header: bytes) -> bytes:
        """Tag for the address header; counter fixed at 0, not advanced."""
        return self._tag(0, header)

    def verify_header(self, header: bytes, tag: bytes) -> None:
        if not compare_digest(self.header_tag(header), bytes(tag)):
            raise AuthError("address header tag mismatch")

    def wrap(self, payload: bytes) -> bytes:
        if len(payload) > self.max_chunk_size:
            raise ValueError(f"chunk payload too large: {len(payload)} > {self.max_chunk_size}")
        tag = self._tag(self._counter, payload)
        self._advance()
        return LENGTH_STRUCT.pack(len(payload)) + tag + payload

    def wrap_stream(self, data: bytes) -> bytes:
        """Split data into max_chunk_size pieces and wrap each."""
        step = self.max_chunk_size
        return b"".join(self.wrap(data[i:i + step]) for i in range(0, len(data), step))

    def unwrap(self, chunk: bytes) -> bytes:
        """Verify one complete chunk and return its payload."""
        if len(chunk) < CHUNK_HEADER_LEN:
            raise AuthError(f"chunk too short: {len(chunk)} bytes")
        (length,) = LENGTH_STRUCT.unpack_from(chunk)
        if length > self.max_chunk_size:
            raise AuthError(f"chunk length {length} exceeds maximum {self.max_chunk_size}")
        if len(chunk) != CHUNK_HEADER_LEN + length:
            raise AuthError(f"chunk length mismatch: header says {length}, got {len(chunk) - CHUNK_HEADER_LEN}")
        tag = bytes(chunk[LENGTH_STRUCT.size:CHUNK_HEADER_LEN])
        payload = bytes(chunk[CHUNK_HEADER_LEN:])
        if not compare_digest(self._tag(self._counter, payload), tag):
            raise AuthError(f"chunk tag mismatch at counter {self._counter}")
        self._advance()
        return payload


class ChunkReader:
    """Reassembles chunks split across reads and unwraps each complete one."""

    def __init__(self, auth: ChunkAuth) -> None:
        self.auth = auth
        self._buffer = bytearray()

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> bytes:
        self._buffer += data
        payloads: List[bytes] = []
        while len(self._buffer) >= CHUNK_HEADER_LEN:
            (length,) = LENGTH_STRUCT.unpack_from(self._buffer)
            if length > self.auth.max_chunk_size:
                raise AuthError(f"chunk length {length} exceeds maximum {self.auth.max_chunk_size}")
            end = CHUNK_HEADER_LEN + length
            if len(self._buffer) < end:
                break
            chunk = bytes(self._buffer[:end])
            del self._buffer[:end]
            payloads.append(self.auth.unwrap(chunk))
        return b"".join(payloads)

