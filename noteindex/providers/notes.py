"""Note content as handed over by the host's note store.

The engine never sees tags, location or other note metadata; only the
plaintext body (once enrichment has finished) and raw attachment bytes.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Attachment:
    """Raw attachment bytes with their declared MIME type."""

    data: bytes
    mime_type: str


@dataclass(frozen=True)
class NoteContent:
    """Decrypted, indexable content of a single note."""

    note_id: str
    text: str = ""
    attachments: tuple[Attachment, ...] = ()
    enriched: bool = True  # upstream enrichment finished without error

    @property
    def has_text(self) -> bool:
        return bool(self.text and self.text.strip())
