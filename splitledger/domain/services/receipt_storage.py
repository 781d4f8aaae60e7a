"""
Receipt Storage - content-addressed files under UPLOAD_DIR

Receipts arrive as data URIs (``data:image/jpeg;base64,...``). The file name
is the sha256 of the content, so uploading the same receipt twice stores it
once and returns the same URL.
"""
import asyncio
import base64
import binascii
import hashlib
from pathlib import Path

from splitledger.core.config import settings
from splitledger.core.exceptions import ValidationException
from splitledger.core.logging import get_logger

logger = get_logger(__name__)

ALLOWED_MIME_TYPES = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/heic": "heic",
    "application/pdf": "pdf",
}


def parse_data_uri(data_uri: str) -> tuple[str, bytes]:
    """Returns (mime_type, content)"""
    if not data_uri or not data_uri.startswith("data:") or "," not in data_uri:
        raise ValidationException("Receipt must be a data URI", field="receipt")

    header, b64_data = data_uri.split(",", 1)
    mime_type = header[len("data:"):].split(";", 1)[0].strip().lower()
    if ";base64" not in header:
        raise ValidationException("Receipt data URI must be base64 encoded", field="receipt")
    if mime_type not in ALLOWED_MIME_TYPES:
        raise ValidationException(
            f"Unsupported receipt type '{mime_type}'",
            field="receipt",
            details={"allowed": sorted(ALLOWED_MIME_TYPES)},
        )

    try:
        content = base64.b64decode(b64_data, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationException("Receipt is not valid base64", field="receipt")

    if not content:
        raise ValidationException("Receipt is empty", field="receipt")
    if len(content) > settings.MAX_FILE_SIZE:
        raise ValidationException(
            "Receipt is too large",
            field="receipt",
            details={"max_bytes": settings.MAX_FILE_SIZE},
        )
    return mime_type, content


class ReceiptStorage:
    def __init__(self, upload_dir: str | None = None, base_url: str | None = None):
        self.root = Path(upload_dir or settings.UPLOAD_DIR) / "receipts"
        self.base_url = (base_url or settings.RECEIPT_BASE_URL).rstrip("/")

    async def store(self, data_uri: str) -> str:
        """Persist the receipt and return its public URL"""
        mime_type, content = parse_data_uri(data_uri)
        digest = hashlib.sha256(content).hexdigest()
        file_name = f"{digest}.{ALLOWED_MIME_TYPES[mime_type]}"
        path = self.root / file_name

        await asyncio.to_thread(self._write, path, content)

        logger.info(
            "Receipt stored",
            extra_data={"file": file_name, "bytes": len(content), "mime_type": mime_type},
        )
        return f"{self.base_url}/{file_name}"

    @staticmethod
    def _write(path: Path, content: bytes) -> None:
        if path.exists():
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_bytes(content)
        tmp.replace(path)
