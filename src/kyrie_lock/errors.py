"""Error taxonomy for the container engine.

Every error carries an :class:`ErrorKind` tag so callers can tell a benign
"not our format" condition apart from a corrupted container without matching
on message text.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(Enum):
    NOT_A_CONTAINER = "not_a_container"
    UNSUPPORTED_VERSION = "unsupported_version"
    MALFORMED = "malformed"
    AUTH_FAILED = "auth_failed"
    ARITY_MISMATCH = "arity_mismatch"
    RESOURCE = "resource"

    @property
    def is_fatal(self) -> bool:
        """``False`` only for inputs that are simply some other format."""
        return self is not ErrorKind.NOT_A_CONTAINER


class KyrieLockError(Exception):
    """Base class for all engine errors."""

    kind: ErrorKind


class NotAContainerError(KyrieLockError, ValueError):
    kind = ErrorKind.NOT_A_CONTAINER


class UnsupportedVersionError(KyrieLockError, ValueError):
    kind = ErrorKind.UNSUPPORTED_VERSION

    def __init__(self, version: int, supported: int) -> None:
        super().__init__(
            f"Unsupported format version {version} (expected {supported})."
        )
        self.version = version
        self.supported = supported


class MalformedContainerError(KyrieLockError, ValueError):
    kind = ErrorKind.MALFORMED


class AuthenticationFailedError(KyrieLockError, ValueError):
    kind = ErrorKind.AUTH_FAILED

    def __init__(self, message: str = "Wrong password or corrupted file.") -> None:
        super().__init__(message)


class ArityMismatchError(KyrieLockError, ValueError):
    kind = ErrorKind.ARITY_MISMATCH


class ResourceError(KyrieLockError, OSError):
    kind = ErrorKind.RESOURCE


# Names used by the codec and dispatcher contracts.
FormatError = MalformedContainerError
DecryptionFailedError = AuthenticationFailedError
