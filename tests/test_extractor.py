"""Tests for attachment text extraction."""

import io
from unittest.mock import MagicMock, patch

import pytest
from PIL import Image

from noteindex.core.extractor import ExtractionError, Extractor, kind_for_mime


def png_bytes() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (40, 20), color="white").save(buf, format="PNG")
    return buf.getvalue()


class TestKindForMime:
    @pytest.mark.parametrize(
        "mime,kind",
        [
            ("application/pdf", "document"),
            ("text/plain", "document"),
            ("text/markdown; charset=utf-8", "document"),
            ("image/png", "image"),
            ("IMAGE/JPEG", "image"),
            ("application/zip", None),
            ("", None),
            (None, None),
        ],
    )
    def test_mapping(self, mime, kind):
        """Test MIME type to kind mapping."""
        assert kind_for_mime(mime) == kind


@pytest.mark.asyncio
class TestExtractor:
    @pytest.fixture
    def extractor(self):
        return Extractor(ocr_language="deu")

    async def test_plain_text_document(self, extractor):
        """Test text documents are decoded."""
        text = await extractor.extract("document", "  Grüße aus Berlin\n".encode("utf-8"), "text/plain")
        assert text == "Grüße aus Berlin"

    async def test_invalid_utf8_is_replaced(self, extractor):
        """Invalid UTF-8 is replaced, not fatal."""
        text = await extractor.extract("document", b"abc\xffdef", "text/plain")
        assert text == "abc" + chr(0xFFFD) + "def"

    async def test_pdf_pages_joined(self, extractor):
        """PDF page texts are joined by newlines."""
        page1, page2 = MagicMock(), MagicMock()
        page1.extract_text.return_value = "First page"
        page2.extract_text.return_value = "Second page"
        reader = MagicMock()
        reader.pages = [page1, page2]

        with patch("pypdf.PdfReader", return_value=reader) as mock_reader:
            text = await extractor.extract("document", b"%PDF-1.4 ...", "application/pdf")

        assert text == "First page\nSecond page"
        assert mock_reader.call_count == 1

    async def test_corrupt_pdf_raises_extraction_error(self, extractor):
        """Test an unreadable PDF."""
        with pytest.raises(ExtractionError) as exc_info:
            await extractor.extract("document", b"this is not a pdf", "application/pdf")
        assert exc_info.value.kind == "document"

    async def test_unsupported_document_type(self, extractor):
        """Test an unsupported document MIME type."""
        with pytest.raises(ExtractionError, match="Unsupported document type"):
            await extractor.extract("document", b"PK\x03\x04", "application/zip")

    async def test_image_ocr(self, extractor):
        """Test OCR with the configured language."""
        with patch("pytesseract.image_to_string", return_value="  receipt total 12.50 \n") as mock_ocr:
            text = await extractor.extract("image", png_bytes(), "image/png")

        assert text == "receipt total 12.50"
        assert mock_ocr.call_args.kwargs["lang"] == "deu"

    async def test_corrupt_image_raises_extraction_error(self, extractor):
        """Test an image Pillow cannot open."""
        with patch("pytesseract.image_to_string") as mock_ocr:
            with pytest.raises(ExtractionError, match="OCR failed") as exc_info:
                await extractor.extract("image", b"\x00\x01garbage", "image/png")

        assert exc_info.value.kind == "image"
        mock_ocr.assert_not_called()

    async def test_ocr_engine_failure(self, extractor):
        """A tesseract failure becomes an ExtractionError."""
        with patch("pytesseract.image_to_string", side_effect=RuntimeError("tesseract is not installed")):
            with pytest.raises(ExtractionError, match="tesseract is not installed"):
                await extractor.extract("image", png_bytes(), "image/png")

    async def test_text_kind_has_nothing_to_extract(self, extractor):
        """Test the text kind is rejected."""
        with pytest.raises(ExtractionError):
            await extractor.extract("text", b"hello", "text/plain")
