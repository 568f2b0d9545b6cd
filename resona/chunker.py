"""
Chunker - Split oversized text into overlapping windows.

Chunk ids are derivable: a single chunk keeps the item id unchanged, multiple
chunks get "<id>#<index>" with a 0-based numeric index.
"""

import re
from typing import List, Optional, Tuple

from .errors import ConfigurationError
from .models import Chunk, Item


CHUNK_SEPARATOR = "#"
_CHUNK_SUFFIX = re.compile(r"^(?P<base>.+)#(?P<index>\d+)$")


def validate_chunking(chunk_size: int, overlap: int) -> None:
    if chunk_size <= 0:
        raise ConfigurationError(f"chunk_size must be positive, got {chunk_size}")
    if overlap < 0 or overlap >= chunk_size:
        raise ConfigurationError(
            f"chunk_overlap must be in [0, chunk_size), got {overlap} for chunk_size {chunk_size}"
        )


def chunk_text(text: str, chunk_size: int, overlap: int) -> List[str]:
    """
    Split text into overlapping chunks.

    Uses a sliding window of chunk_size characters that advances by
    (chunk_size - overlap). The last window always runs to the end of the
    text, so every character is covered by at least one chunk.

    Args:
        text: Text to split
        chunk_size: Maximum window length in characters
        overlap: Characters shared by neighbouring windows

    Returns:
        [text] when it fits in one chunk, otherwise the ordered windows
    """
    validate_chunking(chunk_size, overlap)

    if len(text) <= chunk_size:
        return [text]

    step = chunk_size - overlap
    chunks = []
    pos = 0

    while True:
        if pos + chunk_size >= len(text):
            chunks.append(text[pos:])
            break
        chunks.append(text[pos:pos + chunk_size])
        pos += step

    return chunks


def chunk_id(base_id: str, index: int, count: int) -> str:
    """Id of chunk `index` out of `count` for an item."""
    if count == 1:
        return base_id
    return f"{base_id}{CHUNK_SEPARATOR}{index}"


def parse_chunk_id(value: str) -> Tuple[str, Optional[int]]:
    """
    Recover (base_id, index) from a chunk id.

    Only a strictly numeric "#<digits>" suffix is treated as a chunk index.
    Stored rows also carry an explicit base_id column, which callers should
    prefer; this is the fallback for rows that lack it.
    """
    match = _CHUNK_SUFFIX.match(value)
    if match is None:
        return value, None
    return match.group("base"), int(match.group("index"))


def chunk_item(item: Item, chunk_size: int, overlap: int) -> List[Chunk]:
    """Expand an item into its chunks."""
    pieces = chunk_text(item.embedded_text, chunk_size, overlap)
    count = len(pieces)
    return [
        Chunk(
            chunk_id=chunk_id(item.id, i, count),
            base_id=item.id,
            index=i,
            count=count,
            text=piece,
        )
        for i, piece in enumerate(pieces)
    ]
