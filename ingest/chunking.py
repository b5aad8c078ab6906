"""
Text chunking utilities for the index builder.
"""
from typing import TypedDict


class Chunk(TypedDict):
    text: str
    metadata: dict


def split_text(text: str, chunk_size: int = 800, chunk_overlap: int = 150) -> list[str]:
    """
    Split text into overlapping pieces of at most chunk_size characters.

    Breaks at the last space of the second half of a window when possible.
    Overlap is capped at half the chunk size so every step makes progress.
    """
    text = text.strip()
    if not text:
        return []

    chunk_overlap = min(chunk_overlap, chunk_size // 2)

    if len(text) <= chunk_size:
        return [text]

    pieces: list[str] = []
    start = 0

    while start < len(text):
        end = min(start + chunk_size, len(text))

        # Try to break at word boundary if not at the end
        if end < len(text):
            space_pos = text.rfind(" ", start + chunk_size // 2, end)
            if space_pos > start:
                end = space_pos

        piece = text[start:end].strip()
        if piece:
            pieces.append(piece)

        if end >= len(text):
            break

        new_start = end - chunk_overlap
        if new_start <= start:
            new_start = start + chunk_size // 2
        start = new_start

    return pieces


def chunk_text(
    text: str,
    metadata: dict | None = None,
    chunk_size: int = 800,
    chunk_overlap: int = 150,
) -> list[Chunk]:
    """
    Split a document into chunks carrying metadata + their chunk number.

    Args:
        text: Document text (LF line endings).
        metadata: Base metadata copied into every chunk (source, fullPath).
        chunk_size: Target size of each chunk in characters.
        chunk_overlap: Overlapping characters between consecutive chunks.

    Returns:
        Chunks numbered 0..n-1 in document order.
    """
    metadata = metadata or {}
    chunks: list[Chunk] = []
    for i, piece in enumerate(split_text(text, chunk_size, chunk_overlap)):
        chunks.append(Chunk(text=piece, metadata={**metadata, "chunk": i}))
    return chunks
