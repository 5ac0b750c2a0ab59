"""Multipart chunk planning under the S3 multipart upload limits."""

from dataclasses import dataclass
from typing import Iterator, Tuple

from ..utils.exceptions import ChunkCountExceededError, EmptyFileError

MIN_CHUNK_SIZE = 5_242_880  # 5 MiB
MAX_CHUNK_SIZE = 5_368_709_120  # 5 GiB
MAX_UPLOAD_SIZE = 5_497_558_138_880  # 5 TiB
MAX_CHUNKS = 10_000


@dataclass(frozen=True)
class ChunkPlan:
    size: int
    chunk_size: int
    chunk_count: int
    last_chunk_size: int

    def part_size(self, index: int) -> int:
        if not 0 <= index < self.chunk_count:
            raise IndexError(f"Chunk index {index} out of range 0..{self.chunk_count - 1}")
        if index == self.chunk_count - 1:
            return self.last_chunk_size
        return self.chunk_size

    def ranges(self) -> Iterator[Tuple[int, int, int]]:
        """Yield ``(part_number, offset, length)`` for every chunk in order.

        Part numbers start at 1, chunk indexes at 0.
        """
        for index in range(self.chunk_count):
            yield index + 1, index * self.chunk_size, self.part_size(index)


def plan_chunks(size: int) -> ChunkPlan:
    if size <= 0:
        raise EmptyFileError(f"Cannot plan chunks for a file of {size} bytes", size=size)

    chunk_size = MIN_CHUNK_SIZE
    # Ceiling division so a trailing partial chunk still fits the part limit.
    while -(-size // chunk_size) > MAX_CHUNKS:
        chunk_size *= 2
    chunk_size = min(chunk_size, MAX_CHUNK_SIZE)

    chunk_count = size // chunk_size + 1
    last_chunk_size = size % chunk_size
    if last_chunk_size == 0:
        last_chunk_size = chunk_size
        chunk_count -= 1

    if chunk_count > MAX_CHUNKS:
        raise ChunkCountExceededError(
            f"{size} bytes needs {chunk_count} chunks of {chunk_size} bytes "
            f"(maximum {MAX_CHUNKS})",
            size=size,
            chunk_count=chunk_count,
        )

    return ChunkPlan(
        size=size,
        chunk_size=chunk_size,
        chunk_count=chunk_count,
        last_chunk_size=last_chunk_size,
    )
