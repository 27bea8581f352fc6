#!/usr/bin/env python3
"""Password-based file encryption into ``.kyl`` containers.

Encrypts files of any size with AES-256-GCM under a PBKDF2-HMAC-SHA256 key.
Small inputs are sealed as one block; larger inputs are split into chunks
that are encrypted in parallel batches, streaming very large files so memory
stays bounded.  Decryption returns small results in memory and stages large
ones in a temporary file.

File Format (v1)
----------------
::

    [10 B] magic "KYRIE_LOCK"   [1 B] version 0x01   [3 B] reserved
    [1 B]  hint length          [0..32 B] hint (UTF-8, readable without password)

    body, chunked:      { [12 B] nonce  [4 B] ciphertext length  [N B] ciphertext }*
    body, single block: [12 B] nonce  [rest] ciphertext

* Nonces are random per chunk and never repeated within a container.
* Ciphertext includes the 16 B GCM tag.

Examples
--------
Encrypt, with an optional password hint::

    $ kyl encrypt -i holiday.mp4 --hint "first pet" -v

Show the hint, then decrypt::

    $ kyl hint -i holiday.mp4.kyl
    $ kyl decrypt -i holiday.mp4.kyl -o restored.mp4 -v
"""

from __future__ import annotations

import argparse
import io
import os
import sys
from getpass import getpass
from typing import BinaryIO

from kyrie_lock.container import (encode_single_block, parse_header,
                                  write_header)
from kyrie_lock.dispatch import NonceSource, ProgressCallback, encrypt_body
from kyrie_lock.errors import ErrorKind, KyrieLockError
from kyrie_lock.output import (ENCRYPTED_EXTENSION, ContainerDecryptor,
                               DecryptResult, decrypt_to_result)
from kyrie_lock.planner import PROFILES, PlatformProfile, plan, resolve_profile
from kyrie_lock.provider import AesGcmProvider, CryptoProvider

# ── Progress reporting ───────────────────────────────────────────────────────

def _format_size(size_bytes: int | float) -> str:
    """Format *size_bytes* with an appropriate binary unit (B … TiB)."""
    for unit in ("B", "KiB", "MiB", "GiB", "TiB"):
        if abs(size_bytes) < 1024:
            return f"{size_bytes:.1f} {unit}" if unit != "B" else f"{int(size_bytes)} B"
        size_bytes /= 1024
    return f"{size_bytes:.1f} PiB"


def _progress_bar(current: int, total: int, label: str) -> None:
    """Print ``label: |████░░░░| pct% (cur/tot)`` to stderr."""
    if total <= 0:
        return
    pct = min(current / total, 1.0) * 100
    width = 40
    filled = int(width * min(current, total) // total)
    bar = "█" * filled + "░" * (width - filled)
    print(
        f"\r{label}: |{bar}| {pct:5.1f}% "
        f"({_format_size(current)}/{_format_size(total)})",
        end="",
        flush=True,
        file=sys.stderr,
    )


def _log(msg: str) -> None:
    """Print a status line to stderr."""
    print(msg, file=sys.stderr)


def _progress(verbose: bool, total: int, label: str) -> ProgressCallback | None:
    if not verbose:
        return None
    return lambda done: _progress_bar(done, total, label)


def _resolve(
    profile: PlatformProfile | str | None,
    provider: CryptoProvider | None,
) -> tuple[PlatformProfile, CryptoProvider]:
    if not isinstance(profile, PlatformProfile):
        profile = resolve_profile(profile)
    return profile, provider if provider is not None else AesGcmProvider()


def _check_distinct(input_filename: str, output_filename: str) -> None:
    if os.path.exists(output_filename) and os.path.samefile(
        input_filename, output_filename
    ):
        raise ValueError(
            f"Output {output_filename} is the input file; choose another path."
        )


# ── Naming ───────────────────────────────────────────────────────────────────

def add_encrypted_extension(filename: str) -> str:
    return f"{filename}{ENCRYPTED_EXTENSION}"


def remove_encrypted_extension(filename: str) -> str:
    if filename.endswith(ENCRYPTED_EXTENSION):
        return filename[: -len(ENCRYPTED_EXTENSION)]
    return filename


# ── Encryption ───────────────────────────────────────────────────────────────

def encrypt_stream(
    src: BinaryIO,
    dst: BinaryIO,
    size: int,
    password: str,
    *,
    hint: str | None = None,
    profile: PlatformProfile | str | None = None,
    provider: CryptoProvider | None = None,
    progress: ProgressCallback | None = None,
) -> int:
    """Encrypt *size* bytes read from *src* as a container written to *dst*.

    Returns the number of chunks in the body (0 for empty input).
    """
    profile, provider = _resolve(profile, provider)
    chunk_plan = plan(size, profile)
    key = provider.derive_key(password.encode("utf-8"))
    dst.write(write_header(hint))
    return encrypt_body(src, dst, size, chunk_plan, provider, key, progress=progress)


def encrypt_bytes(
    data: bytes,
    password: str,
    *,
    hint: str | None = None,
    profile: PlatformProfile | str | None = None,
    provider: CryptoProvider | None = None,
) -> bytes:
    """Return the container for *data*."""
    out = io.BytesIO()
    encrypt_stream(
        io.BytesIO(data),
        out,
        len(data),
        password,
        hint=hint,
        profile=profile,
        provider=provider,
    )
    return out.getvalue()


def encrypt_file(
    input_filename: str,
    output_filename: str,
    password: str,
    *,
    hint: str | None = None,
    profile: PlatformProfile | str | None = None,
    provider: CryptoProvider | None = None,
    chunk_size: int | None = None,
    cleanup: bool = False,
    verbose: bool = False,
) -> None:
    """Encrypt *input_filename* → *output_filename*.

    Parameters
    ----------
    input_filename : str
        Path to the plaintext file.
    output_filename : str
        Destination container path.
    password : str
        Encryption password.
    hint : str | None
        Password hint stored in clear, truncated to 32 bytes.
    profile : PlatformProfile | str | None
        Resource profile, or ``"mobile"``/``"desktop"``/``"auto"``.
    chunk_size : int | None
        Override the profile's plaintext chunk size.
    cleanup : bool
        Remove *input_filename* after successful encryption.
    verbose : bool
        Print encryption progress to stderr.
    """
    if not os.path.isfile(input_filename):
        raise FileNotFoundError(f"Input file not found: {input_filename}")

    _check_distinct(input_filename, output_filename)
    profile, provider = _resolve(profile, provider)
    if chunk_size is not None:
        profile = profile.with_chunk_size(chunk_size)

    total = os.path.getsize(input_filename)
    if verbose:
        chunk_plan = plan(total, profile)
        _log(
            f"Encrypting  {input_filename} ({_format_size(total)}, "
            f"{chunk_plan.strategy.value}, {chunk_plan.chunk_count} chunk(s))"
        )

    with open(input_filename, "rb") as src:
        dst = open(output_filename, "wb")
        try:
            with dst:
                encrypt_stream(
                    src,
                    dst,
                    total,
                    password,
                    hint=hint,
                    profile=profile,
                    provider=provider,
                    progress=_progress(verbose, total, "Encrypting"),
                )
        except BaseException:
            # Remove partial output on failure
            if os.path.isfile(output_filename):
                os.remove(output_filename)
            raise

    if verbose:
        print(file=sys.stderr)

    if cleanup:
        os.remove(input_filename)


def encrypt_legacy_bytes(
    data: bytes,
    password: str,
    *,
    hint: str | None = None,
    provider: CryptoProvider | None = None,
) -> bytes:
    """Seal *data* as one block regardless of size (pre-chunking layout).

    Kept for producing containers readable by older engines.
    """
    provider = provider if provider is not None else AesGcmProvider()
    key = provider.derive_key(password.encode("utf-8"))
    nonce = NonceSource(provider.nonce_size).next()
    body = encode_single_block(nonce, provider.encrypt(data, key, nonce))
    return write_header(hint) + body


# ── Inspection ───────────────────────────────────────────────────────────────

def probe(input_filename: str) -> ErrorKind | None:
    """Check the header of *input_filename* without a password.

    Returns ``None`` for a readable container, otherwise the
    :class:`ErrorKind` describing why not.
    """
    try:
        with open(input_filename, "rb") as f:
            parse_header(f)
    except KyrieLockError as exc:
        return exc.kind
    except OSError:
        return ErrorKind.NOT_A_CONTAINER
    return None


def is_container(input_filename: str) -> bool:
    """``True`` if *input_filename* starts with the container magic."""
    return probe(input_filename) is not ErrorKind.NOT_A_CONTAINER


def read_hint(input_filename: str) -> str | None:
    """Return the stored password hint, or ``None`` when absent or unreadable."""
    try:
        with open(input_filename, "rb") as f:
            return parse_header(f).hint
    except (KyrieLockError, OSError):
        return None


# ── Decryption ───────────────────────────────────────────────────────────────

def decrypt_file(
    input_filename: str,
    password: str,
    *,
    profile: PlatformProfile | str | None = None,
    provider: CryptoProvider | None = None,
    temp_dir: str | None = None,
    verbose: bool = False,
) -> DecryptResult:
    """Decrypt *input_filename* into memory or a temporary file.

    The caller owns the returned result and should ``release()`` it (or use
    it as a context manager) so staged temp files are deleted.

    Raises
    ------
    NotAContainerError, UnsupportedVersionError, MalformedContainerError
        If the header or framing is invalid.
    AuthenticationFailedError
        Wrong password or corrupted data.
    """
    profile, provider = _resolve(profile, provider)
    total = 0
    if verbose and os.path.isfile(input_filename):
        with open(input_filename, "rb") as f:
            total = ContainerDecryptor(
                f, provider=provider, profile=profile
            ).prepare().plaintext_size
    result = decrypt_to_result(
        input_filename,
        password,
        provider=provider,
        profile=profile,
        temp_dir=temp_dir,
        progress=_progress(verbose, total, "Decrypting"),
    )
    if verbose:
        print(file=sys.stderr)
    return result


def decrypt_bytes(
    container: bytes,
    password: str,
    *,
    profile: PlatformProfile | str | None = None,
    provider: CryptoProvider | None = None,
) -> bytes:
    """Decrypt an in-memory container and return the plaintext."""
    profile, provider = _resolve(profile, provider)
    parts: list[bytes] = []
    decryptor = ContainerDecryptor(
        io.BytesIO(container), provider=provider, profile=profile
    )
    decryptor.run(password, parts.append)
    return b"".join(parts)


def decrypt_file_to_path(
    input_filename: str,
    output_filename: str,
    password: str,
    *,
    profile: PlatformProfile | str | None = None,
    provider: CryptoProvider | None = None,
    cleanup: bool = False,
    verbose: bool = False,
) -> None:
    """Decrypt *input_filename* straight into *output_filename*.

    Partial output is removed if decryption fails.
    """
    if not os.path.isfile(input_filename):
        raise FileNotFoundError(f"Input file not found: {input_filename}")
    _check_distinct(input_filename, output_filename)
    profile, provider = _resolve(profile, provider)

    with open(input_filename, "rb") as f:
        decryptor = ContainerDecryptor(f, provider=provider, profile=profile)
        total = decryptor.prepare().plaintext_size
        out = open(output_filename, "wb")
        try:
            with out:
                decryptor.run(
                    password,
                    out.write,
                    progress=_progress(verbose, total, "Decrypting"),
                )
        except BaseException:
            # Remove partial output on failure
            if os.path.isfile(output_filename):
                os.remove(output_filename)
            raise

    if verbose:
        print(file=sys.stderr)

    if cleanup:
        os.remove(input_filename)


# ── CLI helpers ──────────────────────────────────────────────────────────────

def _parse_size(value: str) -> int:
    """Parse a human-readable byte size (e.g. ``512KiB``, ``4MiB``, ``65536``)."""
    value = value.strip()
    multipliers = {
        "TIB": 1024**4, "TB": 1000**4,
        "GIB": 1024**3, "GB": 1000**3,
        "MIB": 1024**2, "MB": 1000**2,
        "KIB": 1024,    "KB": 1000,
        "B": 1,
    }
    upper = value.upper()
    for suffix, mult in multipliers.items():
        if upper.endswith(suffix):
            num = value[: len(value) - len(suffix)].strip()
            return int(float(num) * mult)
    return int(value)


def _prompt_password(confirm: bool = False) -> str:
    """Prompt interactively for a password (hidden input)."""
    pw = getpass("Password: ")
    if not pw:
        print("Error: password cannot be empty.", file=sys.stderr)
        sys.exit(1)
    if confirm:
        if getpass("Confirm password: ") != pw:
            print("Error: passwords do not match.", file=sys.stderr)
            sys.exit(1)
    return pw


# ── Argument parser ──────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    """Construct the CLI argument parser."""

    shared = argparse.ArgumentParser(add_help=False)
    shared.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show progress bars and status messages.",
    )

    engine = argparse.ArgumentParser(add_help=False)
    engine.add_argument(
        "--password",
        default=None,
        help="Password (prompted securely if omitted).",
    )
    engine.add_argument(
        "--profile",
        choices=["auto", *PROFILES],
        default="auto",
        help="Memory profile for chunk and batch sizes (default: %(default)s).",
    )
    engine.add_argument(
        "--cleanup",
        action="store_true",
        help="Remove the input after a successful run.",
    )

    from kyrie_lock import __version__

    parser = argparse.ArgumentParser(
        prog="kyl",
        description=(
            "Encrypt and decrypt files into password-protected .kyl containers "
            "(AES-256-GCM, PBKDF2-HMAC-SHA256)."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "examples:\n"
            "  %(prog)s encrypt -i video.mp4 --hint 'first pet' -v\n"
            "  %(prog)s encrypt -i data.bin -o data.kyl --profile mobile\n"
            "  %(prog)s hint -i video.mp4.kyl\n"
            "  %(prog)s decrypt -i video.mp4.kyl -o restored.mp4 -v\n"
            "  %(prog)s check -i unknown.bin\n"
        ),
    )
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # ── encrypt ──────────────────────────────────────────────────────────
    enc = sub.add_parser(
        "encrypt",
        parents=[shared, engine],
        help="Encrypt a file.",
    )
    enc.add_argument("-i", "--input", required=True, help="File to encrypt.")
    enc.add_argument(
        "-o",
        "--output",
        default=None,
        help="Output container (default: INPUT.kyl).",
    )
    enc.add_argument(
        "--hint",
        default=None,
        help="Password hint stored unencrypted (max 32 bytes UTF-8).",
    )
    enc.add_argument(
        "--chunk-size",
        type=_parse_size,
        default=None,
        help="Override the profile's chunk size. Accepts: KiB, MiB.",
    )

    # ── decrypt ──────────────────────────────────────────────────────────
    dec = sub.add_parser(
        "decrypt",
        parents=[shared, engine],
        help="Decrypt a container.",
    )
    dec.add_argument("-i", "--input", required=True, help="Container to decrypt.")
    dec.add_argument(
        "-o",
        "--output",
        default=None,
        help="Output file (default: INPUT without .kyl).",
    )

    # ── hint / check ─────────────────────────────────────────────────────
    hint = sub.add_parser(
        "hint",
        parents=[shared],
        help="Print the password hint of a container.",
    )
    hint.add_argument("-i", "--input", required=True, help="Container file.")

    check = sub.add_parser(
        "check",
        parents=[shared],
        help="Exit 0 if the input is a container, 1 otherwise.",
    )
    check.add_argument("-i", "--input", required=True, help="File to inspect.")

    return parser


# ── Entry point ──────────────────────────────────────────────────────────────

def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    verbose: bool = args.verbose

    if args.command == "hint":
        text = read_hint(args.input)
        if text is None:
            if verbose:
                _log(f"No hint stored in {args.input}")
            sys.exit(1)
        print(text)
        return

    if args.command == "check":
        kind = probe(args.input)
        if verbose:
            _log(f"{args.input}: {'container' if kind is None else kind.value}")
        sys.exit(0 if kind is None else 1)

    password = args.password or _prompt_password(
        confirm=(args.command == "encrypt"),
    )

    try:
        if args.command == "encrypt":
            encrypt_file(
                args.input,
                args.output or add_encrypted_extension(args.input),
                password,
                hint=args.hint,
                profile=args.profile,
                chunk_size=args.chunk_size,
                cleanup=args.cleanup,
                verbose=verbose,
            )
        elif args.command == "decrypt":
            output = args.output or remove_encrypted_extension(args.input)
            if output == args.input:
                parser.error("cannot infer output name; pass -o/--output.")
            decrypt_file_to_path(
                args.input,
                output,
                password,
                profile=args.profile,
                cleanup=args.cleanup,
                verbose=verbose,
            )
    except (KyrieLockError, FileNotFoundError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    if verbose:
        _log("Done.")


if __name__ == "__main__":
    main()
