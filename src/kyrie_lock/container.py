"""Container codec and body-layout detection.

Container Format (v1)
---------------------
Header::

    [10 B] magic "KYRIE_LOCK"
    [1 B]  format version 0x01
    [3 B]  reserved (zero)
    [1 B]  hint length          [0..32 B] hint (UTF-8)

Body, current chunked layout (zero or more records)::

    [12 B] nonce    [4 B] ciphertext length (BE)    [N B] ciphertext

Body, legacy single-block layout::

    [12 B] nonce    [rest] ciphertext

Ciphertext lengths include the 16 B authentication tag.  The body layout is
not recorded in the header; :func:`detect` infers it.
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO, Iterator

from kyrie_lock.errors import (MalformedContainerError, NotAContainerError,
                               UnsupportedVersionError)
from kyrie_lock.provider import NONCE_SIZE, TAG_SIZE

# ── Constants ────────────────────────────────────────────────────────────────

MAGIC = b"KYRIE_LOCK"
FORMAT_VERSION = 1
RESERVED_SIZE = 3
HEADER_SIZE = len(MAGIC) + 1 + RESERVED_SIZE  # 14
MAX_HINT_LENGTH = 32

LENGTH_SIZE = 4
FRAME_HEADER_SIZE = NONCE_SIZE + LENGTH_SIZE
FRAME_OVERHEAD = FRAME_HEADER_SIZE + TAG_SIZE

# No platform profile may use a smaller chunk; bodies below one such chunk plus
# framing cannot be chunked.
MIN_CHUNK_SIZE = 4 * 1024


# ── Header I/O ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class HeaderInfo:
    version: int
    hint_length: int
    hint: str | None
    body_offset: int


def encode_hint(hint: str | None) -> bytes:
    """UTF-8 encode *hint*, truncated to :data:`MAX_HINT_LENGTH` bytes.

    Truncation backs off to a character boundary so the stored hint always
    decodes.
    """
    if not hint:
        return b""
    raw = hint.encode("utf-8")
    if len(raw) <= MAX_HINT_LENGTH:
        return raw
    return raw[:MAX_HINT_LENGTH].decode("utf-8", errors="ignore").encode("utf-8")


def write_header(hint: str | None = None) -> bytes:
    """Serialize the fixed header plus the length-prefixed hint."""
    hint_bytes = encode_hint(hint)
    return (
        MAGIC
        + FORMAT_VERSION.to_bytes(1, "big")
        + bytes(RESERVED_SIZE)
        + len(hint_bytes).to_bytes(1, "big")
        + hint_bytes
    )


def parse_header(f: BinaryIO) -> HeaderInfo:
    """Read and validate the header at the current position of *f*.

    Raises
    ------
    NotAContainerError
        If the magic does not match.
    UnsupportedVersionError
        If the version byte is not :data:`FORMAT_VERSION`.
    MalformedContainerError
        If the header or the hint is truncated.
    """
    start = f.tell()
    fixed = f.read(HEADER_SIZE)
    if fixed[: len(MAGIC)] != MAGIC:
        raise NotAContainerError("Invalid file: missing magic, not a container.")
    if len(fixed) < HEADER_SIZE:
        raise MalformedContainerError(
            f"Truncated header: expected {HEADER_SIZE} bytes, got {len(fixed)}."
        )

    version = fixed[len(MAGIC)]
    if version != FORMAT_VERSION:
        raise UnsupportedVersionError(version, FORMAT_VERSION)

    length_byte = f.read(1)
    if len(length_byte) != 1:
        raise MalformedContainerError("Truncated header: missing hint length.")
    hint_length = length_byte[0]
    hint_bytes = f.read(hint_length)
    if len(hint_bytes) != hint_length:
        raise MalformedContainerError("Truncated header: incomplete hint.")

    hint: str | None = None
    if hint_length:
        try:
            hint = hint_bytes.decode("utf-8")
        except UnicodeDecodeError:
            hint = None

    return HeaderInfo(
        version=version,
        hint_length=hint_length,
        hint=hint,
        body_offset=start + HEADER_SIZE + 1 + hint_length,
    )


# ── Body framing ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Frame:
    nonce: bytes
    ciphertext: bytes


def encode_frame(nonce: bytes, ciphertext: bytes) -> bytes:
    """Return one chunk record: nonce, 4-byte BE length, ciphertext."""
    if len(nonce) != NONCE_SIZE:
        raise ValueError(f"Nonce must be {NONCE_SIZE} bytes, got {len(nonce)}.")
    return nonce + len(ciphertext).to_bytes(LENGTH_SIZE, "big") + ciphertext


def encode_single_block(nonce: bytes, ciphertext: bytes) -> bytes:
    """Return a legacy single-block body: nonce then the bare ciphertext."""
    if len(nonce) != NONCE_SIZE:
        raise ValueError(f"Nonce must be {NONCE_SIZE} bytes, got {len(nonce)}.")
    return nonce + ciphertext


class FrameState(Enum):
    READING_NONCE = "reading_nonce"
    READING_LENGTH = "reading_length"
    READING_BODY = "reading_body"


class FrameReader:
    """Incremental parser for chunk records.

    Bytes are fed in slices of any size (as they arrive from bounded reads);
    complete frames are returned as soon as their last byte is seen.  When
    *body_size* is known, declared lengths that run past it are rejected
    before the ciphertext is buffered.
    """

    def __init__(self, body_size: int | None = None) -> None:
        self.state = FrameState.READING_NONCE
        self._body_size = body_size
        self._need = NONCE_SIZE
        self._buf = bytearray()
        self._nonce = b""
        self.frames_read = 0
        self.bytes_consumed = 0

    def feed(self, data: bytes) -> list[Frame]:
        frames: list[Frame] = []
        view = memoryview(data)
        pos = 0
        while pos < len(view):
            take = min(self._need - len(self._buf), len(view) - pos)
            self._buf += view[pos : pos + take]
            pos += take
            self.bytes_consumed += take
            if len(self._buf) == self._need:
                frame = self._advance()
                if frame is not None:
                    frames.append(frame)
        return frames

    def _advance(self) -> Frame | None:
        field = bytes(self._buf)
        self._buf.clear()

        if self.state is FrameState.READING_NONCE:
            self._nonce = field
            self.state = FrameState.READING_LENGTH
            self._need = LENGTH_SIZE
            return None

        if self.state is FrameState.READING_LENGTH:
            length = int.from_bytes(field, "big")
            if length < TAG_SIZE:
                raise MalformedContainerError(
                    f"Chunk {self.frames_read}: length {length} is shorter "
                    f"than the {TAG_SIZE}-byte tag."
                )
            if self._body_size is not None:
                available = self._body_size - self.bytes_consumed
                if length > available:
                    raise MalformedContainerError(
                        f"Chunk {self.frames_read}: declared length {length} "
                        f"exceeds the {available} bytes remaining."
                    )
            self.state = FrameState.READING_BODY
            self._need = length
            return None

        frame = Frame(self._nonce, field)
        self.frames_read += 1
        self.state = FrameState.READING_NONCE
        self._need = NONCE_SIZE
        return frame

    def finish(self) -> None:
        """Assert the input ended on a frame boundary."""
        if self.state is not FrameState.READING_NONCE or self._buf:
            raise MalformedContainerError(
                f"Truncated chunk {self.frames_read}: input ended while "
                f"{self.state.value.replace('_', ' ')}."
            )


def iter_frames(
    f: BinaryIO,
    body_size: int,
    read_size: int = 1024 * 1024,
) -> Iterator[Frame]:
    """Yield frames from the next *body_size* bytes of *f*."""
    reader = FrameReader(body_size)
    remaining = body_size
    while remaining > 0:
        data = f.read(min(read_size, remaining))
        if not data:
            break
        remaining -= len(data)
        yield from reader.feed(data)
    reader.finish()


# ── Body layout detection ────────────────────────────────────────────────────

@dataclass(frozen=True)
class BodyLayout:
    is_chunked: bool
    chunk_count: int
    plaintext_size: int
    # Set when the frame chain broke after two or more full-size chunks,
    # i.e. the body is most likely a damaged chunked body.
    chain_error: str | None = None


def _single_block(body_size: int, chain_error: str | None = None) -> BodyLayout:
    return BodyLayout(
        False, 1, max(body_size - NONCE_SIZE - TAG_SIZE, 0), chain_error
    )


def _broken_chain(
    body_size: int, frames: int, first_length: int, uniform: bool, error: str
) -> BodyLayout:
    # Keep the error only when the walk had already passed at least two
    # equal, minimum-size chunks; shorter matches are legacy ciphertext.
    looks_chunked = (
        uniform and frames >= 2 and first_length >= MIN_CHUNK_SIZE + TAG_SIZE
    )
    return _single_block(body_size, error if looks_chunked else None)


def detect(f: BinaryIO, body_offset: int, body_size: int) -> BodyLayout:
    """Classify the body at *body_offset* as chunked or single-block.

    Bodies too small to hold one minimum-size chunk are single blocks.
    Otherwise the bytes where the first length field would sit are read; a
    nonzero length that fits in the body is confirmed by walking the frame
    headers, which must tile the body exactly.

    A chain that breaks after two or more full-size chunks is reported
    through ``chain_error`` so a truncated chunked body is not mistaken for
    a wrong password.

    This is a heuristic: a legacy single block whose ciphertext happens to
    form a valid frame chain is misread as chunked.
    """
    if body_size == 0:
        return BodyLayout(True, 0, 0)
    if body_size < MIN_CHUNK_SIZE + FRAME_OVERHEAD:
        return _single_block(body_size)

    f.seek(body_offset)
    window = f.read(FRAME_HEADER_SIZE)
    if len(window) < FRAME_HEADER_SIZE:
        raise MalformedContainerError("Truncated body: incomplete first frame.")
    length = int.from_bytes(window[NONCE_SIZE:], "big")
    if length == 0 or length > body_size - FRAME_HEADER_SIZE:
        return _single_block(body_size)

    first_length = length
    uniform = True
    count = 0
    plaintext = 0
    pos = 0
    while True:
        if length < TAG_SIZE:
            return _broken_chain(
                body_size, count, first_length, uniform,
                f"Chunk {count}: length {length} is shorter than the tag.",
            )
        count += 1
        plaintext += length - TAG_SIZE
        pos += FRAME_HEADER_SIZE + length
        if pos == body_size:
            return BodyLayout(True, count, plaintext)
        # Only the final chunk may differ in size.
        uniform = uniform and length == first_length
        if pos + FRAME_HEADER_SIZE > body_size:
            return _broken_chain(
                body_size, count, first_length, uniform,
                f"Truncated chunk {count}: incomplete frame header.",
            )
        f.seek(body_offset + pos)
        header = f.read(FRAME_HEADER_SIZE)
        if len(header) < FRAME_HEADER_SIZE:
            return _broken_chain(
                body_size, count, first_length, uniform,
                f"Truncated chunk {count}: incomplete frame header.",
            )
        length = int.from_bytes(header[NONCE_SIZE:], "big")
        if length > body_size - pos - FRAME_HEADER_SIZE:
            return _broken_chain(
                body_size, count, first_length, uniform,
                f"Chunk {count}: declared length {length} exceeds the "
                f"{body_size - pos - FRAME_HEADER_SIZE} bytes remaining.",
            )


def stream_size(f: BinaryIO) -> int:
    """Total size of a seekable stream, leaving its position unchanged."""
    pos = f.tell()
    end = f.seek(0, io.SEEK_END)
    f.seek(pos)
    return end
