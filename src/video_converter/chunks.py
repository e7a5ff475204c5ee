"""Chunk discovery, ordering and reassembly.

Uploads arrive as numbered chunk files (``0.chunk``, ``1.chunk``, ...,
``10.chunk``) in a per-video directory. Chunks are ordered by the number
embedded in their name, never lexicographically, and concatenated into a
single input file for the transcoder.
"""

import logging
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Union

from .errors import MergeError

logger = logging.getLogger(__name__)

CHUNK_PATTERN = "*.chunk"

# Ordering key for chunk names without digits; sorts before every numbered chunk
UNKNOWN_CHUNK_INDEX = -1

_DIGITS = re.compile(r"\d+")

COPY_BUFFER_SIZE = 1024 * 1024


@dataclass
class ChunkMergeResult:
    """Outcome of a successful merge."""
    output_path: Path
    chunk_count: int
    bytes_written: int
    missing_indices: List[int] = field(default_factory=list)


def extract_chunk_index(file_name: Union[str, Path]) -> int:
    """Return the first run of digits in the base name, or UNKNOWN_CHUNK_INDEX."""
    match = _DIGITS.search(Path(file_name).name)
    if not match:
        return UNKNOWN_CHUNK_INDEX
    return int(match.group())


def discover_chunks(input_dir: Union[str, Path], pattern: str = CHUNK_PATTERN) -> List[Path]:
    """List chunk files in name order (the discovery order used for ties).

    Raises:
        MergeError: If input_dir does not exist or is not a directory
    """
    path = Path(input_dir)
    if not path.is_dir():
        raise MergeError("Failed to find chunks", details=f"not a directory: {input_dir}")

    # Deterministic discovery order
    return sorted(path.glob(pattern), key=lambda p: p.name)


def order_chunks(chunks: Iterable[Path]) -> List[Path]:
    """Sort chunks ascending by embedded index; stable, so ties keep their order."""
    return sorted(chunks, key=extract_chunk_index)


def find_missing_indices(chunks: Iterable[Path]) -> List[int]:
    """Indices absent between the lowest and highest numbered chunk."""
    indices = {extract_chunk_index(c) for c in chunks}
    indices.discard(UNKNOWN_CHUNK_INDEX)
    if not indices:
        return []
    return sorted(set(range(min(indices), max(indices) + 1)) - indices)


def merge_chunks(
    input_dir: Union[str, Path],
    output_file: Union[str, Path],
    pattern: str = CHUNK_PATTERN,
    require_contiguous: bool = False,
) -> ChunkMergeResult:
    """Concatenate every chunk of input_dir into output_file in index order.

    Args:
        input_dir: Upload directory of one video
        output_file: Merged artifact to create (truncated if present)
        pattern: Glob matching chunk files
        require_contiguous: Fail instead of warning when indices have gaps

    Returns:
        ChunkMergeResult with counts and any missing indices

    Raises:
        MergeError: No chunks, a gap (when required), or any read/write
            failure. A partially written output_file is left in place.
    """
    output_path = Path(output_file)
    chunks = order_chunks(discover_chunks(input_dir, pattern))

    if not chunks:
        raise MergeError("Failed to find chunks", details=f"no files matching {pattern} in {input_dir}")

    missing = find_missing_indices(chunks)
    if missing:
        if require_contiguous:
            raise MergeError(
                "Chunk sequence has gaps", details=f"missing indices {missing} in {input_dir}"
            )
        logger.warning("Chunk sequence in %s is missing indices %s", input_dir, missing)

    bytes_written = 0
    try:
        output = open(output_path, "wb")
    except OSError as e:
        raise MergeError("Failed to create merged file", details=str(e)) from e

    with output:
        for chunk in chunks:
            try:
                with open(chunk, "rb") as src:
                    shutil.copyfileobj(src, output, COPY_BUFFER_SIZE)
                    bytes_written += src.tell()
            except OSError as e:
                raise MergeError(
                    f"Failed to write chunk {chunk} to merged file", details=str(e), chunk=str(chunk)
                ) from e

    logger.debug("Merged %d chunks (%d bytes) into %s", len(chunks), bytes_written, output_path)
    return ChunkMergeResult(
        output_path=output_path,
        chunk_count=len(chunks),
        bytes_written=bytes_written,
        missing_indices=missing,
    )
