"""Cryptographic primitive provider.

The engine only talks to the :class:`CryptoProvider` protocol; the bundled
:class:`AesGcmProvider` implements it with AES-256-GCM and
PBKDF2-HMAC-SHA256 from ``cryptography``.  Providers are plain objects that
are constructed and passed in explicitly, so tests can substitute a fake.
"""

from __future__ import annotations

import os
from concurrent.futures import ThreadPoolExecutor
from typing import Protocol, Sequence, runtime_checkable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from kyrie_lock.errors import AuthenticationFailedError

KEY_SIZE = 32      # AES-256
NONCE_SIZE = 12    # AES-GCM standard nonce size in bytes
TAG_SIZE = 16      # AES-GCM authentication tag size in bytes

DEFAULT_KDF_ITERATIONS = 600_000

# The container has no room for a per-file salt, so key derivation is
# domain-separated with a fixed application salt instead.
KDF_SALT = b"KYRIE_LOCK/kdf/v1"


@runtime_checkable
class CryptoProvider(Protocol):
    """Authenticated encryption of opaque buffers under a derived key."""

    key_size: int
    nonce_size: int
    tag_size: int

    def derive_key(self, password: bytes) -> bytes: ...

    def encrypt(self, plaintext: bytes, key: bytes, nonce: bytes) -> bytes: ...

    def decrypt(self, ciphertext: bytes, key: bytes, nonce: bytes) -> bytes: ...

    def encrypt_batch(
        self,
        plaintexts: Sequence[bytes],
        key: bytes,
        nonces: Sequence[bytes],
    ) -> list[bytes]: ...

    def decrypt_batch(
        self,
        ciphertexts: Sequence[bytes],
        key: bytes,
        nonces: Sequence[bytes],
    ) -> list[bytes]: ...


class AesGcmProvider:
    """AES-256-GCM provider with a thread pool for batched calls.

    ``cryptography`` releases the GIL while running AES-GCM, so batches are
    spread across *max_workers* threads.  Results always come back in input
    order; a failing chunk fails the whole batch.
    """

    key_size = KEY_SIZE
    nonce_size = NONCE_SIZE
    tag_size = TAG_SIZE

    def __init__(
        self,
        *,
        iterations: int = DEFAULT_KDF_ITERATIONS,
        max_workers: int | None = None,
    ) -> None:
        if iterations < 1:
            raise ValueError("iterations must be positive.")
        self.iterations = iterations
        self.max_workers = max_workers or os.cpu_count() or 1

    def derive_key(self, password: bytes) -> bytes:
        """Derive a 256-bit key from *password* using PBKDF2-HMAC-SHA256."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=KDF_SALT,
            iterations=self.iterations,
        )
        return kdf.derive(password)

    def encrypt(self, plaintext: bytes, key: bytes, nonce: bytes) -> bytes:
        return AESGCM(key).encrypt(nonce, plaintext, None)

    def decrypt(self, ciphertext: bytes, key: bytes, nonce: bytes) -> bytes:
        try:
            return AESGCM(key).decrypt(nonce, ciphertext, None)
        except InvalidTag as exc:
            raise AuthenticationFailedError() from exc

    def encrypt_batch(
        self,
        plaintexts: Sequence[bytes],
        key: bytes,
        nonces: Sequence[bytes],
    ) -> list[bytes]:
        aesgcm = AESGCM(key)
        return self._map(
            lambda data, nonce: aesgcm.encrypt(nonce, data, None),
            plaintexts,
            nonces,
        )

    def decrypt_batch(
        self,
        ciphertexts: Sequence[bytes],
        key: bytes,
        nonces: Sequence[bytes],
    ) -> list[bytes]:
        aesgcm = AESGCM(key)
        try:
            return self._map(
                lambda data, nonce: aesgcm.decrypt(nonce, data, None),
                ciphertexts,
                nonces,
            )
        except InvalidTag as exc:
            raise AuthenticationFailedError() from exc

    def _map(self, fn, buffers: Sequence[bytes], nonces: Sequence[bytes]) -> list[bytes]:
        if len(buffers) == 1 or self.max_workers == 1:
            return [fn(b, n) for b, n in zip(buffers, nonces)]
        workers = min(self.max_workers, len(buffers))
        with ThreadPoolExecutor(max_workers=workers) as ex:
            # ``map`` yields in submission order and re-raises the first error.
            return list(ex.map(fn, buffers, nonces))
