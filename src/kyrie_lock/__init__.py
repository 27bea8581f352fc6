"""Streaming password-based file encryption into ``.kyl`` containers."""

from kyrie_lock.core import (add_encrypted_extension, decrypt_bytes,
                             decrypt_file, decrypt_file_to_path,
                             encrypt_bytes, encrypt_file, encrypt_stream,
                             is_container, probe, read_hint,
                             remove_encrypted_extension)
from kyrie_lock.errors import (ArityMismatchError, AuthenticationFailedError,
                               DecryptionFailedError, ErrorKind, FormatError,
                               KyrieLockError, MalformedContainerError,
                               NotAContainerError, ResourceError,
                               UnsupportedVersionError)
from kyrie_lock.output import InMemoryResult, TempFileResult
from kyrie_lock.planner import DESKTOP, MOBILE, PlatformProfile
from kyrie_lock.provider import AesGcmProvider, CryptoProvider

__version__ = "1.0.0"

__all__ = [
    "AesGcmProvider",
    "ArityMismatchError",
    "AuthenticationFailedError",
    "CryptoProvider",
    "DESKTOP",
    "DecryptionFailedError",
    "ErrorKind",
    "FormatError",
    "InMemoryResult",
    "KyrieLockError",
    "MOBILE",
    "MalformedContainerError",
    "NotAContainerError",
    "PlatformProfile",
    "ResourceError",
    "TempFileResult",
    "UnsupportedVersionError",
    "add_encrypted_extension",
    "decrypt_bytes",
    "decrypt_file",
    "decrypt_file_to_path",
    "encrypt_bytes",
    "encrypt_file",
    "encrypt_stream",
    "is_container",
    "probe",
    "read_hint",
    "remove_encrypted_extension",
]
