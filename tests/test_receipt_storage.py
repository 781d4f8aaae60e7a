"""
Tests for receipt data URI parsing and content-addressed storage
"""
import base64
import hashlib

import pytest

from splitledger.core.exceptions import ValidationException
from splitledger.domain.services.receipt_storage import ReceiptStorage, parse_data_uri

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-receipt"


def _data_uri(content: bytes, mime: str = "image/png") -> str:
    return f"data:{mime};base64,{base64.b64encode(content).decode()}"


class TestParseDataUri:
    @pytest.mark.unit
    def test_valid_png(self):
        mime, content = parse_data_uri(_data_uri(PNG_BYTES))

        assert mime == "image/png"
        assert content == PNG_BYTES

    @pytest.mark.unit
    @pytest.mark.parametrize("value", ["", "https://example.com/r.png", "data:image/png;base64"])
    def test_not_a_data_uri(self, value):
        with pytest.raises(ValidationException) as exc_info:
            parse_data_uri(value)
        assert exc_info.value.details["field"] == "receipt"

    @pytest.mark.unit
    def test_unsupported_type(self):
        with pytest.raises(ValidationException) as exc_info:
            parse_data_uri(_data_uri(b"<svg/>", mime="image/svg+xml"))
        assert "image/png" in exc_info.value.details["allowed"]

    @pytest.mark.unit
    def test_requires_base64(self):
        with pytest.raises(ValidationException):
            parse_data_uri("data:image/png,rawbytes")

    @pytest.mark.unit
    def test_invalid_base64(self):
        with pytest.raises(ValidationException, match="not valid base64"):
            parse_data_uri("data:image/png;base64,@@@not-base64@@@")

    @pytest.mark.unit
    def test_too_large(self, monkeypatch):
        from splitledger.core.config import settings
        monkeypatch.setattr(settings, "MAX_FILE_SIZE", 4)

        with pytest.raises(ValidationException, match="too large"):
            parse_data_uri(_data_uri(b"12345"))


class TestReceiptStorage:
    @pytest.mark.unit
    async def test_store_writes_content_addressed_file(self, tmp_path):
        storage = ReceiptStorage(upload_dir=str(tmp_path), base_url="https://cdn.test/receipts/")

        url = await storage.store(_data_uri(PNG_BYTES))

        digest = hashlib.sha256(PNG_BYTES).hexdigest()
        assert url == f"https://cdn.test/receipts/{digest}.png"
        assert (tmp_path / "receipts" / f"{digest}.png").read_bytes() == PNG_BYTES

    @pytest.mark.unit
    async def test_same_receipt_stored_once(self, tmp_path):
        storage = ReceiptStorage(upload_dir=str(tmp_path), base_url="/r")

        first = await storage.store(_data_uri(PNG_BYTES))
        second = await storage.store(_data_uri(PNG_BYTES))

        assert first == second
        assert len(list((tmp_path / "receipts").iterdir())) == 1

    @pytest.mark.unit
    async def test_pdf_extension(self, tmp_path):
        storage = ReceiptStorage(upload_dir=str(tmp_path), base_url="/r")

        url = await storage.store(_data_uri(b"%PDF-1.4", mime="application/pdf"))

        assert url.endswith(".pdf")
