"""Integration tests: encrypt and decrypt round trips across every strategy."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import pytest

from kyrie_lock import (AesGcmProvider, InMemoryResult, TempFileResult,
                        add_encrypted_extension, decrypt_bytes, decrypt_file,
                        decrypt_file_to_path, encrypt_bytes, encrypt_file,
                        is_container, probe, read_hint,
                        remove_encrypted_extension)
from kyrie_lock.container import HEADER_SIZE, MAX_HINT_LENGTH
from kyrie_lock.core import encrypt_legacy_bytes
from kyrie_lock.errors import ErrorKind, NotAContainerError

from conftest import PASSWORD, TEST_PROFILE, UNICODE_PASSWORD, ReversingProvider

CHUNK = TEST_PROFILE.chunk_size
THRESHOLD = TEST_PROFILE.batch_threshold


# ── In-memory round-trips ────────────────────────────────────────────────────

class TestBytesRoundTrip:
    @pytest.mark.parametrize(
        "size",
        [0, 1, CHUNK - 1, CHUNK, CHUNK + 1, THRESHOLD, THRESHOLD + 1,
         2 * THRESHOLD, 3 * THRESHOLD + 17],
        ids=["empty", "one-byte", "chunk-1", "chunk", "chunk+1", "threshold",
             "threshold+1", "2x-threshold", "3x-threshold+17"],
    )
    def test_sizes(self, provider: AesGcmProvider, size: int) -> None:
        data = os.urandom(size)
        blob = encrypt_bytes(data, PASSWORD, profile=TEST_PROFILE, provider=provider)
        assert decrypt_bytes(blob, PASSWORD, profile=TEST_PROFILE, provider=provider) == data

    def test_empty_input_has_empty_body(self, provider: AesGcmProvider) -> None:
        blob = encrypt_bytes(b"", PASSWORD, profile=TEST_PROFILE, provider=provider)
        assert len(blob) == HEADER_SIZE + 1

    def test_ordering_with_reordering_provider(
        self, reversing_provider: ReversingProvider
    ) -> None:
        data = b"".join(bytes([65 + i]) * CHUNK for i in range(10))
        blob = encrypt_bytes(data, PASSWORD, profile=TEST_PROFILE, provider=reversing_provider)
        plain = decrypt_bytes(blob, PASSWORD, profile=TEST_PROFILE, provider=reversing_provider)
        assert plain == data

    def test_decrypt_with_other_profile(self, provider: AesGcmProvider) -> None:
        """Batch sizes on decrypt do not depend on the writer's profile."""
        data = os.urandom(5 * THRESHOLD)
        blob = encrypt_bytes(data, PASSWORD, profile=TEST_PROFILE, provider=provider)
        assert decrypt_bytes(blob, PASSWORD, profile="mobile", provider=provider) == data

    def test_unicode_password(self, provider: AesGcmProvider) -> None:
        data = os.urandom(THRESHOLD)
        blob = encrypt_bytes(data, UNICODE_PASSWORD, profile=TEST_PROFILE, provider=provider)
        assert decrypt_bytes(blob, UNICODE_PASSWORD, profile=TEST_PROFILE, provider=provider) == data


# ── File round-trips ─────────────────────────────────────────────────────────

class TestFileRoundTrip:
    def _roundtrip(self, src: Path, tmp_path: Path, provider: AesGcmProvider, **kw: Any) -> bytes:
        enc = str(tmp_path / "out.kyl")
        encrypt_file(str(src), enc, PASSWORD, profile=TEST_PROFILE, provider=provider, **kw)
        with decrypt_file(
            enc, PASSWORD, profile=TEST_PROFILE, provider=provider,
            temp_dir=str(tmp_path / "staging"),
        ) as result:
            if isinstance(result, TempFileResult):
                return result.read_bytes()
            return result.data

    def test_content_preserved(self, sample_file: Path, tmp_path: Path, provider: AesGcmProvider) -> None:
        assert self._roundtrip(sample_file, tmp_path, provider) == sample_file.read_bytes()

    def test_large_file_staged(self, large_file: Path, tmp_path: Path, provider: AesGcmProvider) -> None:
        assert self._roundtrip(large_file, tmp_path, provider) == large_file.read_bytes()
        assert list((tmp_path / "staging").iterdir()) == []

    def test_empty_file(self, tmp_path: Path, provider: AesGcmProvider) -> None:
        src = tmp_path / "empty"
        src.write_bytes(b"")
        assert self._roundtrip(src, tmp_path, provider) == b""

    @pytest.mark.parametrize("chunk", [4096, 8192, 65536])
    def test_chunk_size_override(
        self, large_file: Path, tmp_path: Path, provider: AesGcmProvider, chunk: int
    ) -> None:
        assert self._roundtrip(large_file, tmp_path, provider, chunk_size=chunk) == large_file.read_bytes()

    def test_small_file_in_memory(self, sample_file: Path, tmp_path: Path, provider: AesGcmProvider) -> None:
        enc = str(tmp_path / "out.kyl")
        encrypt_file(str(sample_file), enc, PASSWORD, profile=TEST_PROFILE, provider=provider)
        result = decrypt_file(enc, PASSWORD, profile=TEST_PROFILE, provider=provider)
        assert isinstance(result, InMemoryResult)

    def test_decrypt_to_path(self, large_file: Path, tmp_path: Path, provider: AesGcmProvider) -> None:
        enc = str(tmp_path / "large.bin.kyl")
        dec = str(tmp_path / "restored.bin")
        encrypt_file(str(large_file), enc, PASSWORD, profile=TEST_PROFILE, provider=provider)
        decrypt_file_to_path(enc, dec, PASSWORD, profile=TEST_PROFILE, provider=provider)
        assert Path(dec).read_bytes() == large_file.read_bytes()

    def test_cleanup_flags(self, sample_file: Path, tmp_path: Path, provider: AesGcmProvider) -> None:
        original = sample_file.read_bytes()
        enc = str(tmp_path / "c.kyl")
        dec = str(tmp_path / "c.txt")
        encrypt_file(str(sample_file), enc, PASSWORD, profile=TEST_PROFILE,
                     provider=provider, cleanup=True)
        assert not sample_file.exists()
        decrypt_file_to_path(enc, dec, PASSWORD, profile=TEST_PROFILE,
                             provider=provider, cleanup=True)
        assert not os.path.exists(enc)
        assert Path(dec).read_bytes() == original

    def test_wrong_password_leaves_no_output(
        self, large_file: Path, tmp_path: Path, provider: AesGcmProvider
    ) -> None:
        enc = str(tmp_path / "enc.kyl")
        dec = str(tmp_path / "dec.bin")
        encrypt_file(str(large_file), enc, PASSWORD, profile=TEST_PROFILE, provider=provider)
        with pytest.raises(ValueError, match="[Ww]rong password"):
            decrypt_file_to_path(enc, dec, "WRONG", profile=TEST_PROFILE, provider=provider)
        assert not os.path.exists(dec), "Partial output must be removed"

    def test_same_path_rejected_and_input_kept(
        self, sample_file: Path, tmp_path: Path, provider: AesGcmProvider
    ) -> None:
        original = sample_file.read_bytes()
        with pytest.raises(ValueError, match="input file"):
            encrypt_file(str(sample_file), str(sample_file), PASSWORD,
                         profile=TEST_PROFILE, provider=provider)
        assert sample_file.read_bytes() == original

        enc = tmp_path / "s.kyl"
        encrypt_file(str(sample_file), str(enc), PASSWORD, profile=TEST_PROFILE,
                     provider=provider)
        sealed = enc.read_bytes()
        alias = tmp_path / "sub" / ".." / "s.kyl"
        (tmp_path / "sub").mkdir()
        with pytest.raises(ValueError, match="input file"):
            decrypt_file_to_path(str(enc), str(alias), PASSWORD,
                                 profile=TEST_PROFILE, provider=provider)
        assert enc.read_bytes() == sealed

    def test_failed_decrypt_keeps_existing_output(
        self, tmp_path: Path, provider: AesGcmProvider
    ) -> None:
        not_container = tmp_path / "plain.kyl"
        not_container.write_bytes(b"just some text, no magic here")
        existing = tmp_path / "keep.txt"
        existing.write_bytes(b"precious")
        with pytest.raises(NotAContainerError):
            decrypt_file_to_path(str(not_container), str(existing), PASSWORD,
                                 profile=TEST_PROFILE, provider=provider)
        assert existing.read_bytes() == b"precious"

    def test_verbose_decrypt_reaches_full_progress(
        self, large_file: Path, tmp_path: Path, provider: AesGcmProvider,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        enc = str(tmp_path / "v.kyl")
        encrypt_file(str(large_file), enc, PASSWORD, profile=TEST_PROFILE, provider=provider)
        capsys.readouterr()
        with decrypt_file(enc, PASSWORD, profile=TEST_PROFILE, provider=provider,
                          temp_dir=str(tmp_path / "t"), verbose=True):
            pass
        decrypt_file_to_path(enc, str(tmp_path / "out.bin"), PASSWORD,
                             profile=TEST_PROFILE, provider=provider, verbose=True)
        err = capsys.readouterr().err
        assert err.count("100.0%") == 2

    def test_verbose_progress_to_stderr(
        self, sample_file: Path, tmp_path: Path, provider: AesGcmProvider,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        enc = str(tmp_path / "v.kyl")
        encrypt_file(str(sample_file), enc, PASSWORD, profile=TEST_PROFILE,
                     provider=provider, verbose=True)
        err = capsys.readouterr().err
        assert "Encrypting" in err
        assert "100.0%" in err

    def test_missing_input(self, tmp_path: Path, provider: AesGcmProvider) -> None:
        with pytest.raises(FileNotFoundError):
            encrypt_file(str(tmp_path / "nope"), str(tmp_path / "out"), PASSWORD, provider=provider)
        with pytest.raises(FileNotFoundError):
            decrypt_file_to_path(str(tmp_path / "nope"), str(tmp_path / "out"), PASSWORD,
                                 provider=provider)


# ── Legacy single-block containers ───────────────────────────────────────────

class TestLegacyFormat:
    @pytest.mark.parametrize("size", [0, 100, CHUNK * 3, THRESHOLD * 2])
    def test_legacy_container_decrypts(self, provider: AesGcmProvider, size: int) -> None:
        data = os.urandom(size)
        blob = encrypt_legacy_bytes(data, PASSWORD, hint="old", provider=provider)
        assert decrypt_bytes(blob, PASSWORD, profile=TEST_PROFILE, provider=provider) == data

    def test_legacy_file_staged(self, provider: AesGcmProvider, tmp_path: Path) -> None:
        data = os.urandom(TEST_PROFILE.memory_threshold + 5)
        src = tmp_path / "old.pdf.kyl"
        src.write_bytes(encrypt_legacy_bytes(data, PASSWORD, provider=provider))
        with decrypt_file(str(src), PASSWORD, profile=TEST_PROFILE, provider=provider,
                          temp_dir=str(tmp_path / "t")) as result:
            assert isinstance(result, TempFileResult)
            assert result.path.endswith(".pdf")
            assert result.read_bytes() == data


# ── Hints and inspection ─────────────────────────────────────────────────────

class TestHintsAndInspection:
    def _write(self, tmp_path: Path, provider: AesGcmProvider, hint: str | None) -> str:
        enc = tmp_path / "h.kyl"
        enc.write_bytes(encrypt_bytes(b"secret", PASSWORD, hint=hint,
                                      profile=TEST_PROFILE, provider=provider))
        return str(enc)

    @pytest.mark.parametrize("hint", ["first pet", "ä" * 16, "h" * MAX_HINT_LENGTH])
    def test_hint_round_trip(self, tmp_path: Path, provider: AesGcmProvider, hint: str) -> None:
        assert read_hint(self._write(tmp_path, provider, hint)) == hint

    def test_long_hint_truncated(self, tmp_path: Path, provider: AesGcmProvider) -> None:
        hint = "abcdefghij" * 5
        assert read_hint(self._write(tmp_path, provider, hint)) == hint[:MAX_HINT_LENGTH]

    def test_no_hint(self, tmp_path: Path, provider: AesGcmProvider) -> None:
        assert read_hint(self._write(tmp_path, provider, None)) is None

    def test_hint_does_not_affect_decryption(self, provider: AesGcmProvider) -> None:
        blob = encrypt_bytes(b"payload", PASSWORD, hint="x" * 100,
                             profile=TEST_PROFILE, provider=provider)
        assert decrypt_bytes(blob, PASSWORD, profile=TEST_PROFILE, provider=provider) == b"payload"

    def test_is_container(self, tmp_path: Path, provider: AesGcmProvider) -> None:
        enc = self._write(tmp_path, provider, None)
        other = tmp_path / "plain.txt"
        other.write_text("just text")
        assert is_container(enc)
        assert not is_container(str(other))
        assert not is_container(str(tmp_path / "missing"))

    @pytest.mark.parametrize("content", [b"K", b"KYRIE", b"KYRIE_LOC"])
    def test_magic_prefix_is_not_a_container(self, tmp_path: Path, content: bytes) -> None:
        p = tmp_path / "short.kyl"
        p.write_bytes(content)
        assert not is_container(str(p))
        assert probe(str(p)) is ErrorKind.NOT_A_CONTAINER

    def test_probe_kinds(self, tmp_path: Path, provider: AesGcmProvider) -> None:
        enc = Path(self._write(tmp_path, provider, None))
        assert probe(str(enc)) is None
        raw = bytearray(enc.read_bytes())
        raw[10] = 2
        enc.write_bytes(bytes(raw))
        assert probe(str(enc)) is ErrorKind.UNSUPPORTED_VERSION
        assert is_container(str(enc))
        assert read_hint(str(enc)) is None

    def test_read_hint_on_foreign_file(self, tmp_path: Path) -> None:
        p = tmp_path / "x.bin"
        p.write_bytes(os.urandom(64))
        assert read_hint(str(p)) is None


class TestNaming:
    def test_add_and_remove(self) -> None:
        assert add_encrypted_extension("a.jpg") == "a.jpg.kyl"
        assert remove_encrypted_extension("a.jpg.kyl") == "a.jpg"
        assert remove_encrypted_extension("a.jpg") == "a.jpg"
