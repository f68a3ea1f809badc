import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional

from .errors import NotFoundError, ValidationError
from .logs import get_logger

BASE_DIR = Path(__file__).resolve().parent


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


STORAGE_ROOT = _resolve_env_path("TAKEAWAY_STORAGE_ROOT", BASE_DIR)
DATA_DIR = _resolve_env_path("TAKEAWAY_DATA_DIR", STORAGE_ROOT / "data")
UPLOADS_DIR = _resolve_env_path("TAKEAWAY_UPLOADS_DIR", STORAGE_ROOT / "uploads")
LOGS_DIR = _resolve_env_path("TAKEAWAY_LOGS_DIR", STORAGE_ROOT / "logs")

BYTES_PER_MB = 1024 * 1024
CHUNK_SIZE_BYTES = BYTES_PER_MB  # 1 MB chunks for streaming
SIDECAR_SUFFIX = ".json"
CATEGORIES = {"document", "slides", "video"}
SLIDE_CONTENT_TYPES = frozenset(
    {
        "application/vnd.ms-powerpoint",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    }
)

logger = get_logger("takeaway.storage")


def ensure_directories(*directories: Path) -> None:
    for directory in directories or (DATA_DIR, UPLOADS_DIR, LOGS_DIR):
        directory.mkdir(parents=True, exist_ok=True)


def is_safe_filename(name: object) -> bool:
    """Return False for names that could escape the uploads directory."""

    if not isinstance(name, str) or not name:
        return False
    return not any(token in name for token in ("..", "/", "\\", "\x00"))


def isoformat_utc(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


def parse_instant(value: object) -> datetime:
    """Parse an ISO-8601 instant; naive values are taken as UTC."""

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as error:
            raise ValidationError(f"Invalid date: {value}") from error
    else:
        raise ValidationError(f"Invalid date: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class FileRecord:
    """Sidecar metadata describing one stored binary."""

    id: str
    original_name: str
    storage_name: str
    size_bytes: int
    mime_type: str
    upload_date: datetime
    uploader_id: str
    summary_text: str
    estimated_duration: str
    category: str
    topic: str

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "originalName": self.original_name,
            "storageName": self.storage_name,
            "sizeBytes": self.size_bytes,
            "mimeType": self.mime_type,
            "uploadDate": isoformat_utc(self.upload_date),
            "uploaderId": self.uploader_id,
            "summaryText": self.summary_text,
            "estimatedDuration": self.estimated_duration,
            "category": self.category,
            "topic": self.topic,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, object]) -> "FileRecord":
        """Build a record from sidecar JSON, raising ValueError on bad shape."""

        if not isinstance(payload, dict):
            raise ValueError("sidecar is not an object")
        try:
            size = payload["sizeBytes"]
            if isinstance(size, bool) or not isinstance(size, int) or size < 0:
                raise ValueError(f"invalid sizeBytes {size!r}")
            category = str(payload["category"])
            if category not in CATEGORIES:
                raise ValueError(f"invalid category {category!r}")
            try:
                upload_date = parse_instant(payload["uploadDate"])
            except ValidationError as error:
                raise ValueError(error.message) from error
            return cls(
                id=str(payload["id"]),
                original_name=str(payload["originalName"]),
                storage_name=str(payload["storageName"]),
                size_bytes=size,
                mime_type=str(payload["mimeType"]),
                upload_date=upload_date,
                uploader_id=str(payload["uploaderId"]),
                summary_text=str(payload.get("summaryText", "")),
                estimated_duration=str(payload.get("estimatedDuration", "")),
                category=category,
                topic=str(payload.get("topic", "")),
            )
        except KeyError as error:
            raise ValueError(f"missing field {error.args[0]}") from error


class CatalogueStore:
    """Interface owning the storageName -> (binary, FileRecord) mapping."""

    def put(self, record: FileRecord) -> None:
        raise NotImplementedError

    def list_all(self) -> List[FileRecord]:
        raise NotImplementedError

    def get(self, storage_name: str) -> FileRecord:
        raise NotImplementedError

    def write_binary(self, storage_name: str, stream: BinaryIO) -> int:
        raise NotImplementedError

    def binary_size(self, storage_name: str) -> Optional[int]:
        raise NotImplementedError

    def open_binary(self, storage_name: str) -> BinaryIO:
        raise NotImplementedError

    def discard_binary(self, storage_name: str) -> None:
        raise NotImplementedError


class DirectoryCatalogue(CatalogueStore):
    """Catalogue kept as binary + ``{name}.json`` sidecar pairs in one directory.

    Every listing is a full directory scan. Sidecars that fail to parse are
    logged and skipped so a single corrupt or half-written file never breaks
    the listing.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _binary_path(self, storage_name: str) -> Path:
        if not is_safe_filename(storage_name):
            raise ValidationError("Invalid filename")
        return self.root / storage_name

    def _sidecar_path(self, storage_name: str) -> Path:
        return self._binary_path(storage_name).with_name(storage_name + SIDECAR_SUFFIX)

    def _is_sidecar_name(self, storage_name: str) -> bool:
        if not storage_name.endswith(SIDECAR_SUFFIX):
            return False
        owner = storage_name[: -len(SIDECAR_SUFFIX)]
        return bool(owner) and (self.root / owner).is_file()

    def _read_sidecar(self, path: Path) -> FileRecord:
        with path.open("r", encoding="utf-8") as sidecar:
            return FileRecord.from_dict(json.load(sidecar))

    def put(self, record: FileRecord) -> None:
        ensure_directories(self.root)
        target = self._sidecar_path(record.storage_name)
        temp_path = target.with_name(f".{target.name}.tmp")
        try:
            with temp_path.open("w", encoding="utf-8") as sidecar:
                json.dump(record.to_dict(), sidecar, indent=2)
                sidecar.flush()
                os.fsync(sidecar.fileno())
            temp_path.replace(target)
        except Exception:
            if temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError:
                    pass
            raise

    def list_all(self) -> List[FileRecord]:
        if not self.root.is_dir():
            return []
        records: List[FileRecord] = []
        for entry in self.root.iterdir():
            if entry.name.startswith(".") or not entry.name.endswith(SIDECAR_SUFFIX):
                continue
            if not entry.is_file():
                continue
            try:
                record = self._read_sidecar(entry)
            except (OSError, ValueError) as error:
                logger.warning("sidecar_skipped path=%s error=%s", entry.name, error)
                continue
            if record.storage_name + SIDECAR_SUFFIX != entry.name:
                logger.warning(
                    "sidecar_skipped path=%s error=storage name mismatch", entry.name
                )
                continue
            if not (self.root / record.storage_name).is_file():
                logger.info("sidecar_without_binary storage_name=%s", record.storage_name)
                continue
            records.append(record)
        records.sort(key=lambda item: item.upload_date, reverse=True)
        return records

    def get(self, storage_name: str) -> FileRecord:
        path = self._sidecar_path(storage_name)
        if not path.is_file():
            raise NotFoundError("File metadata not found")
        try:
            return self._read_sidecar(path)
        except (OSError, ValueError) as error:
            logger.warning("sidecar_unreadable storage_name=%s error=%s", storage_name, error)
            raise NotFoundError("File metadata not found") from error

    def write_binary(self, storage_name: str, stream: BinaryIO) -> int:
        ensure_directories(self.root)
        target = self._binary_path(storage_name)
        temp_path = target.with_name(f".{target.name}.part")
        written = 0
        try:
            with temp_path.open("wb") as handle:
                while True:
                    chunk = stream.read(CHUNK_SIZE_BYTES)
                    if not chunk:
                        break
                    handle.write(chunk)
                    written += len(chunk)
                handle.flush()
                os.fsync(handle.fileno())
            temp_path.replace(target)
        except Exception:
            if temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError:
                    pass
            raise
        return written

    def binary_size(self, storage_name: str) -> Optional[int]:
        path = self._binary_path(storage_name)
        # Dot names are in-flight temp files, never catalogue binaries.
        if storage_name.startswith(".") or self._is_sidecar_name(storage_name):
            return None
        try:
            stat = path.stat()
        except FileNotFoundError:
            return None
        if not path.is_file():
            return None
        return stat.st_size

    def open_binary(self, storage_name: str) -> BinaryIO:
        return self._binary_path(storage_name).open("rb")

    def discard_binary(self, storage_name: str) -> None:
        self._binary_path(storage_name).unlink(missing_ok=True)
