"""Attachment text extraction (PDF, plain text, OCR for images)."""

from __future__ import annotations

import asyncio
import io
import logging

logger = logging.getLogger(__name__)


class ExtractionError(Exception):
    """Attachment could not be turned into text."""

    def __init__(self, message: str, kind: str):
        super().__init__(message)
        self.kind = kind


def kind_for_mime(mime_type: str | None) -> str | None:
    """Map a declared MIME type to a queue item kind, or None if unsupported."""
    if not mime_type:
        return None
    mime = mime_type.split(";", 1)[0].strip().lower()
    if mime == "application/pdf" or mime.startswith("text/"):
        return "document"
    if mime.startswith("image/"):
        return "image"
    return None


def _extract_pdf(blob: bytes) -> str:
    from pypdf import PdfReader

    reader = PdfReader(io.BytesIO(blob))
    pages = [page.extract_text() or "" for page in reader.pages]
    return "\n".join(pages)


def _extract_image(blob: bytes, language: str) -> str:
    import pytesseract
    from PIL import Image

    with Image.open(io.BytesIO(blob)) as image:
        image.load()
        return pytesseract.image_to_string(image, lang=language)


class Extractor:
    """Converts attachment bytes to plain text.

    Library work is blocking, so it runs in the default executor. Any
    library failure is re-raised as ExtractionError so the queue's retry
    policy applies instead of the worker loop crashing.
    """

    def __init__(self, ocr_language: str = "eng"):
        self.ocr_language = ocr_language

    def extract_sync(self, kind: str, blob: bytes, mime_type: str | None) -> str:
        mime = (mime_type or "").split(";", 1)[0].strip().lower()

        if kind == "document":
            if mime == "application/pdf":
                try:
                    text = _extract_pdf(blob)
                except Exception as e:
                    raise ExtractionError(f"Could not read PDF: {e}", kind) from e
            elif mime.startswith("text/"):
                text = blob.decode("utf-8", errors="replace")
            else:
                raise ExtractionError(f"Unsupported document type: {mime_type}", kind)

        elif kind == "image":
            try:
                text = _extract_image(blob, self.ocr_language)
            except Exception as e:
                raise ExtractionError(f"OCR failed: {e}", kind) from e

        else:
            raise ExtractionError(f"Nothing to extract for kind '{kind}'", kind)

        return text.strip()

    async def extract(self, kind: str, blob: bytes, mime_type: str | None) -> str:
        """Extract text from an attachment.

        Args:
            kind: 'image' or 'document'
            blob: Raw attachment bytes
            mime_type: Declared MIME type

        Returns:
            Stripped plain text, possibly empty

        Raises:
            ExtractionError: Corrupt or unsupported input
        """
        loop = asyncio.get_running_loop()
        text = await loop.run_in_executor(None, self.extract_sync, kind, blob, mime_type)
        logger.debug(f"Extracted {len(text)} chars from {kind} ({mime_type})")
        return text
