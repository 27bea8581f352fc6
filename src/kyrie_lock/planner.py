"""Platform profiles and the chunk planner.

A profile bounds how much plaintext is held in memory at once.  Mobile
profiles use smaller chunks and batches to stay clear of out-of-memory kills.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from enum import Enum

from kyrie_lock.container import MIN_CHUNK_SIZE

MIB = 1024 * 1024


@dataclass(frozen=True)
class PlatformProfile:
    name: str
    chunk_size: int
    max_batch_chunks: int
    memory_threshold: int

    def __post_init__(self) -> None:
        if self.chunk_size < MIN_CHUNK_SIZE:
            raise ValueError(
                f"chunk_size must be at least {MIN_CHUNK_SIZE} bytes, "
                f"got {self.chunk_size}."
            )
        if self.max_batch_chunks < 1:
            raise ValueError("max_batch_chunks must be at least 1.")
        if self.memory_threshold <= self.chunk_size:
            raise ValueError("memory_threshold must exceed chunk_size.")

    @property
    def batch_threshold(self) -> int:
        """Largest input encrypted as a single full-parallel batch."""
        return self.chunk_size * self.max_batch_chunks

    def with_chunk_size(self, chunk_size: int) -> PlatformProfile:
        return PlatformProfile(
            name=self.name,
            chunk_size=chunk_size,
            max_batch_chunks=self.max_batch_chunks,
            memory_threshold=max(self.memory_threshold, chunk_size + 1),
        )

    @staticmethod
    def detect() -> PlatformProfile:
        """Return :data:`MOBILE` on Android/iOS interpreters, else :data:`DESKTOP`."""
        if sys.platform in ("android", "ios") or hasattr(sys, "getandroidapilevel"):
            return MOBILE
        return DESKTOP


MOBILE = PlatformProfile(
    name="mobile",
    chunk_size=1 * MIB,
    max_batch_chunks=4,
    memory_threshold=32 * MIB,
)

DESKTOP = PlatformProfile(
    name="desktop",
    chunk_size=4 * MIB,
    max_batch_chunks=16,
    memory_threshold=128 * MIB,
)

PROFILES: dict[str, PlatformProfile] = {
    MOBILE.name: MOBILE,
    DESKTOP.name: DESKTOP,
}


def resolve_profile(name: str | None) -> PlatformProfile:
    """Map ``"mobile"``, ``"desktop"``, ``"auto"`` or ``None`` to a profile."""
    if name is None or name == "auto":
        return PlatformProfile.detect()
    try:
        return PROFILES[name]
    except KeyError:
        raise ValueError(f"Unknown platform profile '{name}'.") from None


class Strategy(Enum):
    EMPTY = "empty"
    SINGLE_BLOCK = "single_block"
    FULL_PARALLEL = "full_parallel"
    STREAMED_BATCH = "streamed_batch"


@dataclass(frozen=True)
class ChunkPlan:
    strategy: Strategy
    chunk_size: int
    batch_chunks: int
    chunk_count: int


def plan(file_size: int, profile: PlatformProfile) -> ChunkPlan:
    """Choose the execution strategy for a *file_size*-byte input."""
    if file_size < 0:
        raise ValueError(f"file_size must be non-negative, got {file_size}.")

    chunk = profile.chunk_size
    if file_size == 0:
        return ChunkPlan(Strategy.EMPTY, chunk, 0, 0)
    if file_size <= chunk:
        return ChunkPlan(Strategy.SINGLE_BLOCK, chunk, 1, 1)

    count = -(-file_size // chunk)
    if file_size <= profile.batch_threshold:
        return ChunkPlan(Strategy.FULL_PARALLEL, chunk, count, count)
    return ChunkPlan(Strategy.STREAMED_BATCH, chunk, profile.max_batch_chunks, count)


def split_chunks(data: bytes, chunk_size: int) -> list[bytes]:
    """Slice *data* into *chunk_size* pieces; the last may be shorter."""
    return [data[i : i + chunk_size] for i in range(0, len(data), chunk_size)]
