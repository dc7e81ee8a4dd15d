"""Note chunking into fixed-size character windows."""

from __future__ import annotations

from dataclasses import dataclass

# Chunking parameters
CHUNK_SIZE = 1000  # characters, no overlap
NOTE_PART_SEPARATOR = "\n\n"


@dataclass
class Chunk:
    """A slice of a note's text with position information."""

    index: int
    text: str
    char_start: int
    char_end: int

    def to_dict(self) -> dict:
        return {
            "chunk_index": self.index,
            "chunk_text": self.text,
            "char_start": self.char_start,
            "char_end": self.char_end,
        }


def chunk_text(text: str, chunk_size: int = CHUNK_SIZE) -> list[Chunk]:
    """Split text into consecutive, non-overlapping windows.

    Every window is exactly ``chunk_size`` characters except the last one,
    which may be shorter. Empty or whitespace-only text yields no chunks.

    Args:
        text: The note text to chunk
        chunk_size: Window size in characters

    Returns:
        List of Chunk objects, indices contiguous from 0
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")

    if not text or not text.strip():
        return []

    return [
        Chunk(
            index=i,
            text=text[start : start + chunk_size],
            char_start=start,
            char_end=min(start + chunk_size, len(text)),
        )
        for i, start in enumerate(range(0, len(text), chunk_size))
    ]


def join_note_parts(parts: list[str]) -> str:
    """Concatenate the text parts of one note (body + extracted attachments).

    Blank parts are dropped so they don't leave stray separators behind.
    """
    return NOTE_PART_SEPARATOR.join(p.strip() for p in parts if p and p.strip())


def get_chunking_info(chunk_size: int = CHUNK_SIZE) -> dict:
    """Get information about chunking parameters for status output."""
    return {
        "chunk_size": chunk_size,
        "chunk_overlap": 0,
        "separator": NOTE_PART_SEPARATOR,
    }
