"""Streaming Cipher Pipeline - Chunked AEAD over byte streams

Self-Explanatory: Encrypts a plaintext stream into self-describing frames and back.
Why: Uploads and downloads are streamed; whole files never sit in memory.
How: Plaintext is cut into 64 KiB payloads, each sealed with AES-256-GCM
(or ChaCha20-Poly1305) from `cryptography`.

Frame layout:
    header (16 bytes) | ciphertext (payload length) | tag (16 bytes)

Header layout:
    version (1) | suite (1) | flags (1) | reserved (1) |
    payload length (4, uint32 BE) | stream nonce (8)

The AEAD nonce is stream nonce || frame sequence (uint32 BE) and the header is
the associated data, so reordered, dropped, duplicated or truncated frames all
fail authentication. Only the last frame carries the final flag; every other
frame holds exactly MAX_PAYLOAD_SIZE bytes, which keeps the ciphertext length a
pure function of the plaintext length (see encrypted_size).
"""

import os
import struct
from enum import IntEnum
from typing import BinaryIO, Dict, Iterator, Optional

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from src.gateway.errors import CipherError, IntegrityError

logger = structlog.get_logger()

FORMAT_VERSION = 0x01
HEADER_SIZE = 16
TAG_SIZE = 16
FRAME_OVERHEAD = HEADER_SIZE + TAG_SIZE
MAX_PAYLOAD_SIZE = 64 * 1024
MAX_FRAME_SIZE = MAX_PAYLOAD_SIZE + FRAME_OVERHEAD
STREAM_NONCE_SIZE = 8
KEY_SIZE = 32

# uint32 sequence numbers
MAX_FRAMES = 2 ** 32
MAX_PLAINTEXT_SIZE = MAX_FRAMES * MAX_PAYLOAD_SIZE

FLAG_FINAL = 0x01

_HEADER = struct.Struct(">BBBBI8s")
_SEQUENCE = struct.Struct(">I")


class CipherSuite(IntEnum):
    AES_256_GCM = 0x00
    CHACHA20_POLY1305 = 0x01


SUITE_NAMES = {
    "AES-256-GCM": CipherSuite.AES_256_GCM,
    "CHACHA20-POLY1305": CipherSuite.CHACHA20_POLY1305,
}


def parse_cipher_suite(name: str) -> CipherSuite:
    """Look up a suite by its configuration name (case-insensitive)"""
    try:
        return SUITE_NAMES[name.strip().upper()]
    except KeyError:
        raise ValueError(f"Unsupported cipher suite: {name}. Use one of {sorted(SUITE_NAMES)}")


def _new_aead(suite: CipherSuite, key: bytes):
    if len(key) != KEY_SIZE:
        raise CipherError(f"key must be {KEY_SIZE} bytes")
    if suite == CipherSuite.CHACHA20_POLY1305:
        return ChaCha20Poly1305(key)
    return AESGCM(key)


def _frame_nonce(stream_nonce: bytes, sequence: int) -> bytes:
    return stream_nonce + _SEQUENCE.pack(sequence)


def _read_exact(source: BinaryIO, size: int) -> bytes:
    """Read up to `size` bytes, tolerating short reads from network streams"""
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = source.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def encrypted_size(plaintext_size: int) -> int:
    """Ciphertext length for a plaintext of `plaintext_size` bytes

    Needed before upload because the object store requires a declared size.
    An empty plaintext is a single empty final frame.
    """
    if plaintext_size < 0:
        raise ValueError("plaintext size must not be negative")
    if plaintext_size > MAX_PLAINTEXT_SIZE:
        raise ValueError("plaintext too large for one stream")
    if plaintext_size == 0:
        return FRAME_OVERHEAD

    full_frames, remainder = divmod(plaintext_size, MAX_PAYLOAD_SIZE)
    size = full_frames * MAX_FRAME_SIZE
    if remainder:
        size += remainder + FRAME_OVERHEAD
    return size


class EncryptingReader:
    """File-like reader producing ciphertext frames from a plaintext source

    Holds at most two plaintext payloads plus one frame in memory. One payload
    of look-ahead is needed to know whether the current frame is the last.
    The caller owns (and closes) the source.
    """

    def __init__(
        self,
        source: BinaryIO,
        key: bytes,
        suite: CipherSuite = CipherSuite.AES_256_GCM,
        stream_nonce: Optional[bytes] = None,
    ):
        self._source = source
        self._suite = CipherSuite(suite)
        self._aead = _new_aead(self._suite, key)
        self._stream_nonce = stream_nonce if stream_nonce is not None else os.urandom(STREAM_NONCE_SIZE)
        if len(self._stream_nonce) != STREAM_NONCE_SIZE:
            raise CipherError(f"stream nonce must be {STREAM_NONCE_SIZE} bytes")
        self._sequence = 0
        self._lookahead: Optional[bytes] = None
        self._buffer = bytearray()
        self._finished = False
        self.plaintext_bytes = 0
        self.ciphertext_bytes = 0

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False

    def _seal_next_frame(self) -> bytes:
        if self._lookahead is None:
            payload = _read_exact(self._source, MAX_PAYLOAD_SIZE)
        else:
            payload, self._lookahead = self._lookahead, None

        final = True
        if len(payload) == MAX_PAYLOAD_SIZE:
            following = _read_exact(self._source, MAX_PAYLOAD_SIZE)
            if following:
                self._lookahead = following
                final = False

        if self._sequence >= MAX_FRAMES:
            raise CipherError("plaintext too large for one stream")

        header = _HEADER.pack(
            FORMAT_VERSION,
            self._suite,
            FLAG_FINAL if final else 0,
            0,
            len(payload),
            self._stream_nonce,
        )
        sealed = self._aead.encrypt(_frame_nonce(self._stream_nonce, self._sequence), payload, header)

        self._sequence += 1
        self._finished = final
        self.plaintext_bytes += len(payload)
        return header + sealed

    def read(self, size: Optional[int] = -1) -> bytes:
        if size is None or size < 0:
            while not self._finished:
                self._buffer += self._seal_next_frame()
            data = bytes(self._buffer)
            self._buffer.clear()
        else:
            while len(self._buffer) < size and not self._finished:
                self._buffer += self._seal_next_frame()
            data = bytes(self._buffer[:size])
            del self._buffer[:size]
        self.ciphertext_bytes += len(data)
        return data

    def close(self) -> None:
        self._buffer.clear()
        self._lookahead = None


class DecryptingReader:
    """Verifies and decrypts frames one at a time

    Every frame is authenticated before its plaintext is released. A stream
    that ends without a final frame, or continues after one, is rejected.
    The caller owns (and closes) the source.
    """

    def __init__(self, source: BinaryIO, key: bytes):
        if len(key) != KEY_SIZE:
            raise CipherError(f"key must be {KEY_SIZE} bytes")
        self._source = source
        self._key = key
        self._aeads: Dict[CipherSuite, object] = {}
        self._stream_nonce: Optional[bytes] = None
        self._sequence = 0
        self._done = False
        self._buffer = bytearray()
        self.plaintext_bytes = 0

    def readable(self) -> bool:
        return True

    def _aead(self, suite: CipherSuite):
        if suite not in self._aeads:
            self._aeads[suite] = _new_aead(suite, self._key)
        return self._aeads[suite]

    def next_chunk(self) -> Optional[bytes]:
        """Return the plaintext of the next frame, or None after the final frame

        Raises:
            IntegrityError on any malformed, truncated or forged frame
        """
        if self._done:
            return None

        header = _read_exact(self._source, HEADER_SIZE)
        if len(header) < HEADER_SIZE:
            if not header and self._sequence == 0:
                raise IntegrityError("empty ciphertext stream")
            raise IntegrityError("stream truncated before final frame")

        version, suite_id, flags, reserved, length, stream_nonce = _HEADER.unpack(header)
        if version != FORMAT_VERSION:
            raise IntegrityError(f"unsupported frame version {version}")
        if reserved != 0 or flags & ~FLAG_FINAL:
            raise IntegrityError("malformed frame header")
        try:
            suite = CipherSuite(suite_id)
        except ValueError:
            raise IntegrityError(f"unknown cipher suite {suite_id}") from None

        final = bool(flags & FLAG_FINAL)
        if length > MAX_PAYLOAD_SIZE or (not final and length != MAX_PAYLOAD_SIZE):
            raise IntegrityError("invalid frame payload length")

        if self._stream_nonce is None:
            self._stream_nonce = stream_nonce
        elif stream_nonce != self._stream_nonce:
            raise IntegrityError("frame belongs to a different stream")

        if self._sequence >= MAX_FRAMES:
            raise IntegrityError("too many frames")

        sealed = _read_exact(self._source, length + TAG_SIZE)
        if len(sealed) < length + TAG_SIZE:
            raise IntegrityError("stream truncated inside a frame")

        try:
            payload = self._aead(suite).decrypt(_frame_nonce(stream_nonce, self._sequence), sealed, header)
        except InvalidTag:
            raise IntegrityError("frame authentication failed") from None

        self._sequence += 1
        if final:
            if self._source.read(1):
                raise IntegrityError("unexpected data after final frame")
            self._done = True

        self.plaintext_bytes += len(payload)
        return payload

    def __iter__(self) -> Iterator[bytes]:
        while True:
            chunk = self.next_chunk()
            if chunk is None:
                return
            yield chunk

    def read(self, size: Optional[int] = -1) -> bytes:
        if size is None or size < 0:
            for chunk in self:
                self._buffer += chunk
            data = bytes(self._buffer)
            self._buffer.clear()
            return data

        while len(self._buffer) < size:
            chunk = self.next_chunk()
            if chunk is None:
                break
            self._buffer += chunk
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data


def encrypt_stream(
    source: BinaryIO,
    key: bytes,
    suite: CipherSuite = CipherSuite.AES_256_GCM,
) -> EncryptingReader:
    """Wrap a plaintext reader into a ciphertext reader

    Raises:
        CipherError if the key or suite is unusable
    """
    return EncryptingReader(source, key, suite)


def decrypt_stream(output: BinaryIO, source: BinaryIO, key: bytes) -> int:
    """Decrypt `source` into `output`, frame by frame

    Frames are written as soon as they verify, so on IntegrityError the
    output may already hold a verified prefix; callers must discard it.

    Returns:
        Number of plaintext bytes written
    """
    written = 0
    for chunk in DecryptingReader(source, key):
        if chunk:
            output.write(chunk)
            written += len(chunk)
    return written
