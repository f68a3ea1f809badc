import os
from datetime import datetime
from typing import BinaryIO, Callable

from werkzeug.utils import secure_filename

from .errors import (
    FileTooLargeError,
    InternalError,
    UnsupportedTypeError,
    ValidationError,
)
from .logs import get_logger
from .storage import BYTES_PER_MB, CatalogueStore, FileRecord
from .summary import Summary, summarize

MAX_UPLOAD_SIZE_MB = 50
MAX_UPLOAD_SIZE_BYTES = MAX_UPLOAD_SIZE_MB * BYTES_PER_MB

ALLOWED_MIME_TYPES = frozenset(
    {
        "application/pdf",
        "application/vnd.ms-powerpoint",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
        "video/mp4",
        "video/avi",
        "video/mov",
        "video/wmv",
    }
)

Summarizer = Callable[[str, str, int], Summary]

logger = get_logger("takeaway.lifecycle")


def storage_name_for(original_name: str, now: datetime) -> str:
    stem, extension = os.path.splitext(original_name or "")
    safe_stem = secure_filename(stem)
    safe_extension = secure_filename(extension.lstrip("."))
    if not safe_stem and not safe_extension:
        raise ValidationError("Invalid filename")
    # secure_filename drops non-ASCII stems entirely; keep the extension anyway.
    safe_name = f"{safe_stem or 'file'}.{safe_extension}" if safe_extension else safe_stem
    return f"{int(now.timestamp() * 1000)}-{safe_name}"


class UploadPipeline:
    """Validates an upload, stores it and writes its sidecar record."""

    def __init__(self, catalogue: CatalogueStore, summarizer: Summarizer = summarize) -> None:
        self.catalogue = catalogue
        self.summarizer = summarizer

    def accept(
        self,
        stream: BinaryIO,
        declared_mime_type: str,
        original_name: str,
        size: int,
        uploader_id: str,
        now: datetime,
    ) -> FileRecord:
        if size > MAX_UPLOAD_SIZE_BYTES:
            logger.warning("upload_rejected reason=too_large size=%d", size)
            raise FileTooLargeError(
                f"File too large. Maximum size is {MAX_UPLOAD_SIZE_MB}MB."
            )
        mime_type = (declared_mime_type or "").strip().lower()
        if mime_type not in ALLOWED_MIME_TYPES:
            logger.warning("upload_rejected reason=unsupported_type mime_type=%s", mime_type)
            raise UnsupportedTypeError(
                "Invalid file type. Only PDF, PPT, and video files are allowed."
            )

        storage_name = storage_name_for(original_name, now)
        written = self.catalogue.write_binary(storage_name, stream)
        if written > MAX_UPLOAD_SIZE_BYTES:
            self.catalogue.discard_binary(storage_name)
            raise FileTooLargeError(
                f"File too large. Maximum size is {MAX_UPLOAD_SIZE_MB}MB."
            )

        try:
            summary = self.summarizer(storage_name, mime_type, written)
            record = FileRecord(
                id=str(int(now.timestamp() * 1000)),
                original_name=original_name,
                storage_name=storage_name,
                size_bytes=written,
                mime_type=mime_type,
                upload_date=now,
                uploader_id=uploader_id,
                summary_text=summary.text,
                estimated_duration=summary.estimated_duration,
                category=summary.category,
                topic=summary.topic,
            )
            self.catalogue.put(record)
        except Exception as error:
            self.catalogue.discard_binary(storage_name)
            logger.exception("upload_failed storage_name=%s", storage_name)
            raise InternalError("Upload failed") from error

        logger.info(
            "file_uploaded storage_name=%s size=%d mime_type=%s uploader_id=%s",
            storage_name,
            written,
            mime_type,
            uploader_id,
        )
        return record
