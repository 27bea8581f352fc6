"""Shared fixtures for the kyrie_lock test suite."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Sequence

import pytest

from kyrie_lock.planner import PlatformProfile
from kyrie_lock.provider import AesGcmProvider

# ── Reusable constants ───────────────────────────────────────────────────────

PASSWORD = "t3st-P@ssw0rd!#"
UNICODE_PASSWORD = "пароль_密码_κωδ_🔑"  # Cyrillic + CJK + Greek + emoji

# 4 KiB chunks, 4 chunks per batch → 16 KiB batch threshold, 64 KiB in memory.
TEST_PROFILE = PlatformProfile(
    name="test",
    chunk_size=4096,
    max_batch_chunks=4,
    memory_threshold=64 * 1024,
)


class ReversingProvider(AesGcmProvider):
    """Runs every batch back to front, as a parallel provider might."""

    def __init__(self) -> None:
        super().__init__(iterations=1000, max_workers=1)
        self.batch_calls = 0

    def _reversed(self, fn, buffers: Sequence[bytes], key: bytes, nonces: Sequence[bytes]) -> list[bytes]:
        self.batch_calls += 1
        results: list[bytes | None] = [None] * len(buffers)
        for i in reversed(range(len(buffers))):
            results[i] = fn(buffers[i], key, nonces[i])
        return results  # type: ignore[return-value]

    def encrypt_batch(self, plaintexts, key, nonces):
        return self._reversed(self.encrypt, plaintexts, key, nonces)

    def decrypt_batch(self, ciphertexts, key, nonces):
        return self._reversed(self.decrypt, ciphertexts, key, nonces)


@pytest.fixture()
def provider() -> AesGcmProvider:
    """AES-GCM provider with a cheap KDF so tests stay fast."""
    return AesGcmProvider(iterations=1000, max_workers=4)


@pytest.fixture()
def reversing_provider() -> ReversingProvider:
    return ReversingProvider()


@pytest.fixture()
def profile() -> PlatformProfile:
    return TEST_PROFILE


@pytest.fixture()
def sample_file(tmp_path: Path) -> Path:
    """Text file spanning several test-profile chunks (~14 KiB)."""
    p = tmp_path / "hello.txt"
    p.write_text("Hello, World!\n" * 1000)
    return p


@pytest.fixture()
def large_file(tmp_path: Path) -> Path:
    """A 100 KiB file: streamed batches and staged to a temp file."""
    p = tmp_path / "large.bin"
    p.write_bytes(os.urandom(100 * 1024))
    return p
