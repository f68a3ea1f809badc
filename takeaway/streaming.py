import enum
import re
import unicodedata
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import BinaryIO, Iterator, Optional, Tuple
from urllib.parse import quote

from flask import Response, send_file

from .errors import NotFoundError, RangeNotSatisfiableError, ValidationError
from .logs import get_logger
from .storage import (
    CHUNK_SIZE_BYTES,
    SLIDE_CONTENT_TYPES,
    CatalogueStore,
    FileRecord,
    is_safe_filename,
)

CACHE_MAX_AGE_SECONDS = 31_536_000  # one year; storage names never change content
CACHE_CONTROL = f"public, max-age={CACHE_MAX_AGE_SECONDS}, immutable"
DEFAULT_CONTENT_TYPE = "application/octet-stream"

EXTENSION_CONTENT_TYPES = {
    ".pdf": "application/pdf",
    ".ppt": "application/vnd.ms-powerpoint",
    ".pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    ".mp4": "video/mp4",
    ".avi": "video/x-msvideo",
    ".mov": "video/quicktime",
    ".wmv": "video/x-ms-wmv",
}

_RANGE_PATTERN = re.compile(r"^bytes=(\d+)-(\d*)$")

logger = get_logger("takeaway.lifecycle")


class MediaKind(enum.Enum):
    DOCUMENT = "document"
    SLIDES = "slides"
    VIDEO = "video"
    OTHER = "other"


@dataclass(frozen=True)
class ServingRule:
    inline: bool
    byte_ranges: bool


# PDFs preview inline but are always served whole, even when a Range header
# is present.
SERVING_RULES = {
    MediaKind.DOCUMENT: ServingRule(inline=True, byte_ranges=False),
    MediaKind.SLIDES: ServingRule(inline=False, byte_ranges=False),
    MediaKind.VIDEO: ServingRule(inline=True, byte_ranges=True),
    MediaKind.OTHER: ServingRule(inline=False, byte_ranges=False),
}


def media_kind(content_type: str) -> MediaKind:
    if content_type.startswith("video/"):
        return MediaKind.VIDEO
    if content_type == "application/pdf":
        return MediaKind.DOCUMENT
    if content_type in SLIDE_CONTENT_TYPES:
        return MediaKind.SLIDES
    return MediaKind.OTHER


def resolve_content_type(storage_name: str, recorded_type: Optional[str] = None) -> str:
    """Extension table first, then the sidecar's type, then a generic type."""

    extension = PurePosixPath(storage_name).suffix.lower()
    if extension in EXTENSION_CONTENT_TYPES:
        return EXTENSION_CONTENT_TYPES[extension]
    if recorded_type:
        return recorded_type
    return DEFAULT_CONTENT_TYPE


def disposition_type(kind: MediaKind, force_download: bool) -> str:
    if force_download or not SERVING_RULES[kind].inline:
        return "attachment"
    return "inline"


def content_disposition(disposition: str, filename: str) -> str:
    try:
        filename.encode("ascii")
    except UnicodeEncodeError:
        simple = unicodedata.normalize("NFKD", filename)
        simple = simple.encode("ascii", "ignore").decode("ascii")
        quoted = quote(filename, safe="!#$&+^`|~")
        return f"{disposition}; filename=\"{_escape_quoted(simple)}\"; filename*=UTF-8''{quoted}"
    return f"{disposition}; filename=\"{_escape_quoted(filename)}\""


def _escape_quoted(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def parse_range(header: str, size: int) -> Tuple[int, int]:
    """Parse ``bytes=start-end`` into inclusive offsets within *size*."""

    match = _RANGE_PATTERN.match(header.strip())
    if not match:
        raise RangeNotSatisfiableError(size)
    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else size - 1
    if start >= size or end >= size or start > end:
        raise RangeNotSatisfiableError(size)
    return start, end


def _iter_slice(handle: BinaryIO, start: int, length: int) -> Iterator[bytes]:
    handle.seek(start)
    remaining = length
    while remaining > 0:
        chunk = handle.read(min(CHUNK_SIZE_BYTES, remaining))
        if not chunk:
            break
        remaining -= len(chunk)
        yield chunk


class FileStreamer:
    """Serves stored binaries whole or as a single byte range."""

    def __init__(self, catalogue: CatalogueStore) -> None:
        self.catalogue = catalogue

    def _record_or_none(self, storage_name: str) -> Optional[FileRecord]:
        try:
            return self.catalogue.get(storage_name)
        except NotFoundError:
            return None

    def serve(
        self,
        storage_name: str,
        range_header: Optional[str] = None,
        force_download: bool = False,
    ) -> Response:
        if not is_safe_filename(storage_name):
            raise ValidationError("Invalid filename")

        size = self.catalogue.binary_size(storage_name)
        if size is None:
            raise NotFoundError("File not found")

        record = self._record_or_none(storage_name)
        content_type = resolve_content_type(
            storage_name, record.mime_type if record else None
        )
        kind = media_kind(content_type)
        download_name = record.original_name if record else storage_name
        disposition = content_disposition(
            disposition_type(kind, force_download), download_name
        )

        if range_header and SERVING_RULES[kind].byte_ranges:
            start, end = parse_range(range_header, size)
            return self._partial(storage_name, content_type, disposition, start, end, size)
        return self._full(storage_name, content_type, disposition, size)

    def _partial(
        self,
        storage_name: str,
        content_type: str,
        disposition: str,
        start: int,
        end: int,
        size: int,
    ) -> Response:
        length = end - start + 1
        handle = self.catalogue.open_binary(storage_name)
        response = Response(
            _iter_slice(handle, start, length),
            status=206,
            content_type=content_type,
            direct_passthrough=True,
        )
        response.call_on_close(handle.close)
        response.headers["Content-Range"] = f"bytes {start}-{end}/{size}"
        response.headers["Content-Length"] = str(length)
        response.headers["Accept-Ranges"] = "bytes"
        response.headers["Content-Disposition"] = disposition
        response.headers["Cache-Control"] = CACHE_CONTROL
        logger.info(
            "file_range_served storage_name=%s start=%d end=%d size=%d",
            storage_name,
            start,
            end,
            size,
        )
        return response

    def _full(self, storage_name: str, content_type: str, disposition: str, size: int) -> Response:
        handle = self.catalogue.open_binary(storage_name)
        response = send_file(
            handle,
            mimetype=content_type,
            conditional=False,
            etag=False,
            max_age=CACHE_MAX_AGE_SECONDS,
        )
        response.content_length = size
        response.headers["Accept-Ranges"] = "bytes"
        response.headers["Content-Disposition"] = disposition
        response.headers["Cache-Control"] = CACHE_CONTROL
        logger.info("file_served storage_name=%s size=%d", storage_name, size)
        return response
