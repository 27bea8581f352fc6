"""Parallel cipher dispatch and the chunked body pipelines.

The provider may run a batch on as many threads as it likes; this module only
relies on batches being all-or-nothing and on results coming back in input
order, and checks both.
"""

from __future__ import annotations

import secrets
from typing import BinaryIO, Callable, Sequence

from kyrie_lock.container import (BodyLayout, encode_frame, encode_single_block,
                                  iter_frames)
from kyrie_lock.errors import (ArityMismatchError, AuthenticationFailedError,
                               MalformedContainerError)
from kyrie_lock.planner import ChunkPlan, PlatformProfile, Strategy, split_chunks
from kyrie_lock.provider import NONCE_SIZE, TAG_SIZE, CryptoProvider

ProgressCallback = Callable[[int], None]


# ── Nonces ───────────────────────────────────────────────────────────────────

class NonceSource:
    """Random per-chunk nonces, never repeated within one container.

    Create one source per container.  Uniqueness across containers rests on
    the nonces being drawn from :mod:`secrets`.
    """

    def __init__(self, size: int = NONCE_SIZE) -> None:
        self._size = size
        self._issued: set[bytes] = set()

    def __len__(self) -> int:
        return len(self._issued)

    def next(self) -> bytes:
        while True:
            nonce = secrets.token_bytes(self._size)
            if nonce not in self._issued:
                self._issued.add(nonce)
                return nonce

    def take(self, count: int) -> list[bytes]:
        return [self.next() for _ in range(count)]


# ── Batches ──────────────────────────────────────────────────────────────────

def _check_arity(buffers: Sequence[bytes], nonces: Sequence[bytes]) -> None:
    if not buffers or len(buffers) != len(nonces):
        raise ArityMismatchError(
            f"Batch needs one nonce per chunk and at least one chunk "
            f"(got {len(buffers)} chunks, {len(nonces)} nonces)."
        )


def encrypt_batch(
    provider: CryptoProvider,
    chunks: Sequence[bytes],
    key: bytes,
    nonces: Sequence[bytes],
) -> list[bytes]:
    """Encrypt *chunks*; result ``i`` is the ciphertext of ``chunks[i]``."""
    _check_arity(chunks, nonces)
    ciphertexts = list(provider.encrypt_batch(chunks, key, nonces))
    if len(ciphertexts) != len(chunks):
        raise ArityMismatchError(
            f"Provider returned {len(ciphertexts)} ciphertexts for {len(chunks)} chunks."
        )
    for idx, (plain, ct) in enumerate(zip(chunks, ciphertexts)):
        if len(ct) != len(plain) + provider.tag_size:
            raise ArityMismatchError(
                f"Chunk {idx}: ciphertext is {len(ct)} bytes, expected "
                f"{len(plain) + provider.tag_size}."
            )
    return ciphertexts


def decrypt_batch(
    provider: CryptoProvider,
    ciphertexts: Sequence[bytes],
    key: bytes,
    nonces: Sequence[bytes],
) -> list[bytes]:
    """Decrypt *ciphertexts* as one unit.

    Any chunk failing authentication fails the whole batch with
    :class:`AuthenticationFailedError`; no partial plaintext is returned.
    """
    _check_arity(ciphertexts, nonces)
    try:
        plaintexts = list(provider.decrypt_batch(ciphertexts, key, nonces))
    except (AuthenticationFailedError, ArityMismatchError):
        raise
    except (ValueError, TypeError) as exc:
        raise AuthenticationFailedError() from exc
    if len(plaintexts) != len(ciphertexts):
        raise ArityMismatchError(
            f"Provider returned {len(plaintexts)} plaintexts for {len(ciphertexts)} chunks."
        )
    return plaintexts


# ── Encrypt pipeline ─────────────────────────────────────────────────────────

def _read_exact(src: BinaryIO, size: int) -> bytes:
    buf = bytearray()
    while len(buf) < size:
        data = src.read(size - len(buf))
        if not data:
            break
        buf += data
    return bytes(buf)


def encrypt_body(
    src: BinaryIO,
    dst: BinaryIO,
    size: int,
    plan: ChunkPlan,
    provider: CryptoProvider,
    key: bytes,
    *,
    progress: ProgressCallback | None = None,
) -> int:
    """Encrypt *size* bytes from *src* into a body written to *dst*.

    Returns the number of chunks written.  Reads are bounded to one batch
    (``plan.batch_chunks * plan.chunk_size`` bytes) at a time.
    """
    nonces = NonceSource(provider.nonce_size)

    if plan.strategy is Strategy.EMPTY:
        return 0

    if plan.strategy is Strategy.SINGLE_BLOCK:
        data = _read_exact(src, size)
        if len(data) != size:
            raise ValueError(f"Input ended after {len(data)} of {size} bytes.")
        nonce = nonces.next()
        dst.write(encode_single_block(nonce, provider.encrypt(data, key, nonce)))
        if progress:
            progress(len(data))
        return 1

    done = 0
    written = 0
    batch_bytes = plan.batch_chunks * plan.chunk_size
    while done < size:
        data = _read_exact(src, min(batch_bytes, size - done))
        if not data:
            break
        chunks = split_chunks(data, plan.chunk_size)
        batch_nonces = nonces.take(len(chunks))
        ciphertexts = encrypt_batch(provider, chunks, key, batch_nonces)
        for nonce, ct in zip(batch_nonces, ciphertexts):
            dst.write(encode_frame(nonce, ct))
        written += len(chunks)
        done += len(data)
        if progress:
            progress(done)

    if done != size:
        raise ValueError(f"Input ended after {done} of {size} bytes.")
    return written


# ── Decrypt pipeline ─────────────────────────────────────────────────────────

def decrypt_single_block(
    f: BinaryIO,
    body_offset: int,
    body_size: int,
    provider: CryptoProvider,
    key: bytes,
) -> bytes:
    """Decrypt a legacy single-block body with one provider call."""
    if body_size < NONCE_SIZE + TAG_SIZE:
        raise MalformedContainerError(
            f"Truncated body: {body_size} bytes cannot hold a nonce and tag."
        )
    f.seek(body_offset)
    nonce = f.read(NONCE_SIZE)
    ciphertext = f.read(body_size - NONCE_SIZE)
    if len(ciphertext) != body_size - NONCE_SIZE:
        raise MalformedContainerError("Truncated body: incomplete ciphertext.")
    try:
        return provider.decrypt(ciphertext, key, nonce)
    except AuthenticationFailedError:
        raise
    except (ValueError, TypeError) as exc:
        raise AuthenticationFailedError() from exc


def decrypt_body(
    f: BinaryIO,
    body_offset: int,
    layout: BodyLayout,
    body_size: int,
    provider: CryptoProvider,
    key: bytes,
    sink: Callable[[bytes], object],
    profile: PlatformProfile,
    *,
    progress: ProgressCallback | None = None,
) -> int:
    """Decrypt a chunked body batch by batch, passing plaintext to *sink*.

    Batches are cut once they hold ``profile.max_batch_chunks`` frames or
    ``profile.batch_threshold`` ciphertext bytes, so memory stays bounded no
    matter which profile wrote the container.  Returns plaintext bytes written.
    """
    if not layout.is_chunked:
        data = decrypt_single_block(f, body_offset, body_size, provider, key)
        sink(data)
        if progress:
            progress(len(data))
        return len(data)

    f.seek(body_offset)
    done = 0
    pending_ct: list[bytes] = []
    pending_nonces: list[bytes] = []
    pending_bytes = 0

    def flush() -> None:
        nonlocal done, pending_bytes
        for plain in decrypt_batch(provider, pending_ct, key, pending_nonces):
            sink(plain)
            done += len(plain)
        pending_ct.clear()
        pending_nonces.clear()
        pending_bytes = 0
        if progress:
            progress(done)

    for frame in iter_frames(f, body_size, read_size=profile.chunk_size):
        pending_ct.append(frame.ciphertext)
        pending_nonces.append(frame.nonce)
        pending_bytes += len(frame.ciphertext)
        if (
            len(pending_ct) >= profile.max_batch_chunks
            or pending_bytes >= profile.batch_threshold
        ):
            flush()
    if pending_ct:
        flush()
    return done
