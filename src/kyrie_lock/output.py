"""Decrypt-side orchestration and output placement.

Small results are returned as bytes; large ones are decrypted straight into a
temporary file that the caller releases when done with it.
"""

from __future__ import annotations

import os
import secrets
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import BinaryIO, Callable, Iterator, Union

from kyrie_lock.container import (BodyLayout, HeaderInfo, detect, parse_header,
                                  stream_size)
from kyrie_lock.dispatch import ProgressCallback, decrypt_body
from kyrie_lock.errors import (AuthenticationFailedError, KyrieLockError,
                               MalformedContainerError, NotAContainerError,
                               ResourceError, UnsupportedVersionError)
from kyrie_lock.planner import PlatformProfile
from kyrie_lock.provider import CryptoProvider

ENCRYPTED_EXTENSION = ".kyl"
TEMP_SUBDIR = "kyrie_lock"

CLEANUP_RETRY_DELAY = 2.0  # seconds
CLEANUP_MAX_RETRIES = 5


# ── Decrypt state machine ────────────────────────────────────────────────────

class DecryptState(Enum):
    HEADER_PENDING = "header_pending"
    HINT_PARSED = "hint_parsed"
    FORMAT_CLASSIFIED = "format_classified"
    SINGLE_BLOCK_DECRYPT = "single_block_decrypt"
    BATCH_DECRYPT = "batch_decrypt"
    ASSEMBLED = "assembled"
    RETURNED = "returned"
    STAGED = "staged"
    # terminal failures
    NOT_A_CONTAINER = "not_a_container"
    MALFORMED = "malformed"
    UNSUPPORTED_VERSION = "unsupported_version"
    AUTH_FAILED = "auth_failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({
    DecryptState.RETURNED,
    DecryptState.STAGED,
    DecryptState.NOT_A_CONTAINER,
    DecryptState.MALFORMED,
    DecryptState.UNSUPPORTED_VERSION,
    DecryptState.AUTH_FAILED,
})

_FAILURE_STATES: dict[type[KyrieLockError], DecryptState] = {
    NotAContainerError: DecryptState.NOT_A_CONTAINER,
    UnsupportedVersionError: DecryptState.UNSUPPORTED_VERSION,
    MalformedContainerError: DecryptState.MALFORMED,
    AuthenticationFailedError: DecryptState.AUTH_FAILED,
}


class ContainerDecryptor:
    """Walks one container through the decrypt states.

    ``prepare()`` parses the header and classifies the body without touching
    the password; ``run()`` derives the key and feeds plaintext to a sink.
    """

    def __init__(
        self,
        f: BinaryIO,
        *,
        provider: CryptoProvider,
        profile: PlatformProfile,
    ) -> None:
        self._f = f
        self._provider = provider
        self._profile = profile
        self.state = DecryptState.HEADER_PENDING
        self.header: HeaderInfo | None = None
        self.layout: BodyLayout | None = None
        self._body_size = 0

    @contextmanager
    def _step(self) -> Iterator[None]:
        try:
            yield
        except KyrieLockError as exc:
            for cls, state in _FAILURE_STATES.items():
                if isinstance(exc, cls):
                    self.state = state
                    break
            raise

    def prepare(self) -> BodyLayout:
        if self.layout is not None:
            return self.layout
        with self._step():
            total = stream_size(self._f)
            self._f.seek(0)
            self.header = parse_header(self._f)
            self.state = DecryptState.HINT_PARSED

            self._body_size = total - self.header.body_offset
            self.layout = detect(self._f, self.header.body_offset, self._body_size)
            self.state = DecryptState.FORMAT_CLASSIFIED
        return self.layout

    def run(
        self,
        password: str,
        sink: Callable[[bytes], object],
        *,
        progress: ProgressCallback | None = None,
    ) -> int:
        layout = self.prepare()
        assert self.header is not None
        with self._step():
            key = self._provider.derive_key(password.encode("utf-8"))
            self.state = (
                DecryptState.BATCH_DECRYPT
                if layout.is_chunked
                else DecryptState.SINGLE_BLOCK_DECRYPT
            )
            try:
                written = decrypt_body(
                    self._f,
                    self.header.body_offset,
                    layout,
                    self._body_size,
                    self._provider,
                    key,
                    sink,
                    self._profile,
                    progress=progress,
                )
            except AuthenticationFailedError as exc:
                # A broken frame chain that is not a valid legacy block either.
                if layout.chain_error:
                    raise MalformedContainerError(layout.chain_error) from exc
                raise
            self.state = DecryptState.ASSEMBLED
        return written


# ── Results ──────────────────────────────────────────────────────────────────

@dataclass
class InMemoryResult:
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    def release(self) -> None:
        self.data = b""

    def __enter__(self) -> InMemoryResult:
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()


@dataclass
class TempFileResult:
    """Decrypted plaintext staged in a temporary file owned by this object."""

    path: str
    size: int
    released: bool = field(default=False, init=False)

    def read_bytes(self) -> bytes:
        with open(self.path, "rb") as f:
            return f.read()

    def release(self) -> None:
        """Delete the temp file, deferring when another reader holds it open."""
        if self.released:
            return
        self.released = True
        remove_temp_file(self.path)

    def __enter__(self) -> TempFileResult:
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()


DecryptResult = Union[InMemoryResult, TempFileResult]


# ── Temp-file lifecycle ──────────────────────────────────────────────────────

def original_extension(source_name: str | None) -> str:
    """Return the plaintext extension hidden under ``.kyl``.

    ``"photo.jpg.kyl"`` → ``".jpg"``; names without one give ``""``.
    """
    if not source_name:
        return ""
    name = os.path.basename(source_name)
    if name.lower().endswith(ENCRYPTED_EXTENSION):
        name = name[: -len(ENCRYPTED_EXTENSION)]
    return os.path.splitext(name)[1]


def default_temp_dir() -> str:
    return os.path.join(tempfile.gettempdir(), TEMP_SUBDIR)


def create_temp_file(
    extension: str = "",
    temp_dir: str | None = None,
) -> tuple[str, BinaryIO]:
    """Create ``<UTC timestamp>_<random><extension>`` exclusively.

    The file is readable by its owner only, inside a directory that is
    created private (``0o700``) and must belong to the current user.

    Raises
    ------
    ResourceError
        If the directory or the file cannot be created, or the directory is
        owned by someone else.
    """
    directory = temp_dir or default_temp_dir()
    stamp = time.strftime("%Y%m%dT%H%M%S", time.gmtime())
    path = os.path.join(directory, f"{stamp}_{secrets.token_hex(6)}{extension}")
    try:
        os.makedirs(directory, mode=0o700, exist_ok=True)
        if hasattr(os, "getuid") and os.stat(directory).st_uid != os.getuid():
            raise ResourceError(
                f"Temporary directory {directory} is owned by another user."
            )
        flags = os.O_WRONLY | os.O_CREAT | os.O_EXCL | getattr(os, "O_BINARY", 0)
        fh = os.fdopen(os.open(path, flags, 0o600), "wb")
    except ResourceError:
        raise
    except OSError as exc:
        raise ResourceError(f"Cannot create temporary file {path}: {exc}") from exc
    return path, fh


def remove_temp_file(path: str, *, retries: int = CLEANUP_MAX_RETRIES) -> bool:
    """Delete *path*; on failure schedule delayed retries instead of raising.

    Returns ``True`` when the file is gone now.
    """
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return True
    except OSError:
        if retries > 0:
            _schedule_cleanup(path, retries - 1)
        return False


def _schedule_cleanup(path: str, retries: int) -> None:
    timer = threading.Timer(
        CLEANUP_RETRY_DELAY,
        remove_temp_file,
        args=(path,),
        kwargs={"retries": retries},
    )
    timer.daemon = True
    timer.start()


# ── Output strategy ──────────────────────────────────────────────────────────

def _decrypt_staged(
    decryptor: ContainerDecryptor,
    password: str,
    extension: str,
    temp_dir: str | None,
    progress: ProgressCallback | None,
) -> TempFileResult:
    path, fh = create_temp_file(extension, temp_dir)
    try:
        with fh:
            size = decryptor.run(password, fh.write, progress=progress)
    except BaseException:
        # No partial plaintext may outlive a failed decrypt.
        remove_temp_file(path)
        raise
    decryptor.state = DecryptState.STAGED
    return TempFileResult(path=path, size=size)


def decrypt_stream_to_result(
    f: BinaryIO,
    password: str,
    *,
    provider: CryptoProvider,
    profile: PlatformProfile,
    source_name: str | None = None,
    temp_dir: str | None = None,
    progress: ProgressCallback | None = None,
) -> DecryptResult:
    """Decrypt the container in seekable stream *f* into memory or a temp file.

    Plaintext smaller than ``profile.memory_threshold`` is returned as
    :class:`InMemoryResult`; anything larger goes to a temp file named with
    the original extension recovered from *source_name*.
    """
    decryptor = ContainerDecryptor(f, provider=provider, profile=profile)
    layout = decryptor.prepare()

    if layout.plaintext_size < profile.memory_threshold:
        parts: list[bytes] = []
        decryptor.run(password, parts.append, progress=progress)
        decryptor.state = DecryptState.RETURNED
        return InMemoryResult(b"".join(parts))

    return _decrypt_staged(
        decryptor, password, original_extension(source_name), temp_dir, progress
    )


def decrypt_to_result(
    source: str | os.PathLike[str],
    password: str,
    *,
    provider: CryptoProvider,
    profile: PlatformProfile,
    temp_dir: str | None = None,
    progress: ProgressCallback | None = None,
) -> DecryptResult:
    """Open the container at *source* and decrypt it; see
    :func:`decrypt_stream_to_result`."""
    path = os.fspath(source)
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Input file not found: {path}")
    with open(path, "rb") as f:
        return decrypt_stream_to_result(
            f,
            password,
            provider=provider,
            profile=profile,
            source_name=path,
            temp_dir=temp_dir,
            progress=progress,
        )
