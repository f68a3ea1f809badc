"""Event window configuration and its persistence.

The event config is a single record describing when attendees may browse
the catalogue. It is read on every access check, so stores keep it in
memory and write it through to disk after every mutation.
"""

import enum
import json
import os
import secrets
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .errors import InternalError, InvalidRangeError, ValidationError
from .logs import get_logger
from .storage import ensure_directories, isoformat_utc, parse_instant

DEFAULT_EVENT_NAME = "Conference Event"
DEFAULT_EVENT_DURATION = timedelta(days=7)
UPDATABLE_FIELDS = ("name", "startDate", "endDate", "isActive")

logger = get_logger("takeaway.events")


class EventStatus(str, enum.Enum):
    ACTIVE = "active"
    NOT_STARTED = "not-started"
    ENDED = "ended"
    INACTIVE = "inactive"


@dataclass(frozen=True)
class EventConfig:
    id: str
    name: str
    start_date: datetime
    end_date: datetime
    is_active: bool = True
    shareable_link_token: Optional[str] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def default(cls, now: datetime) -> "EventConfig":
        return cls(
            id=uuid.uuid4().hex,
            name=DEFAULT_EVENT_NAME,
            start_date=now,
            end_date=now + DEFAULT_EVENT_DURATION,
            is_active=True,
            updated_at=now,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "startDate": isoformat_utc(self.start_date),
            "endDate": isoformat_utc(self.end_date),
            "isActive": self.is_active,
            "shareableLinkToken": self.shareable_link_token,
            "updatedAt": isoformat_utc(self.updated_at) if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "EventConfig":
        """Build a config from its JSON form, raising ValueError on bad shape."""

        if not isinstance(payload, Mapping):
            raise ValueError("event config is not an object")
        is_active = payload.get("isActive", True)
        if not isinstance(is_active, bool):
            raise ValueError(f"invalid isActive {is_active!r}")
        token = payload.get("shareableLinkToken")
        updated_at = payload.get("updatedAt")
        config = cls(
            id=str(payload["id"]),
            name=str(payload["name"]),
            start_date=parse_instant(payload["startDate"]),
            end_date=parse_instant(payload["endDate"]),
            is_active=is_active,
            shareable_link_token=token if isinstance(token, str) and token else None,
            updated_at=parse_instant(updated_at) if updated_at else None,
        )
        _check_range(config)
        return config

    def public_dict(self, now: datetime) -> Dict[str, Any]:
        """Status view safe for unauthenticated callers (no link token)."""

        return {
            "id": self.id,
            "name": self.name,
            "startDate": isoformat_utc(self.start_date),
            "endDate": isoformat_utc(self.end_date),
            "isActive": self.is_active,
            "status": get_status(self, now).value,
            "hasShareableLink": self.shareable_link_token is not None,
        }


def get_status(config: EventConfig, now: datetime) -> EventStatus:
    """Compute the event status. Inactivity overrides the time window."""

    if not config.is_active:
        return EventStatus.INACTIVE
    if now < config.start_date:
        return EventStatus.NOT_STARTED
    if now > config.end_date:
        return EventStatus.ENDED
    return EventStatus.ACTIVE


def _check_range(config: EventConfig) -> None:
    if not config.start_date < config.end_date:
        raise InvalidRangeError("Invalid date range: startDate must be before endDate")


def apply_update(config: EventConfig, fields: Mapping[str, Any], now: datetime) -> EventConfig:
    """Return a validated copy of *config* with *fields* applied."""

    if not isinstance(fields, Mapping):
        raise ValidationError("Event configuration must be a JSON object")

    changes: Dict[str, Any] = {}
    if "name" in fields:
        name = fields["name"]
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Event name must be a non-empty string")
        changes["name"] = name.strip()
    if "startDate" in fields:
        changes["start_date"] = parse_instant(fields["startDate"])
    if "endDate" in fields:
        changes["end_date"] = parse_instant(fields["endDate"])
    if "isActive" in fields:
        is_active = fields["isActive"]
        if not isinstance(is_active, bool):
            raise ValidationError("isActive must be a boolean")
        changes["is_active"] = is_active

    updated = replace(config, updated_at=now, **changes)
    _check_range(updated)
    return updated


class EventConfigStore:
    """Holds the current event config and persists every mutation."""

    def __init__(self) -> None:
        self._config: Optional[EventConfig] = None

    @property
    def config(self) -> EventConfig:
        if self._config is None:
            raise InternalError("Event configuration has not been loaded")
        return self._config

    def load(self, now: datetime) -> EventConfig:
        raise NotImplementedError

    def save(self) -> None:
        raise NotImplementedError

    def _commit(self, candidate: EventConfig) -> EventConfig:
        previous = self._config
        self._config = candidate
        try:
            self.save()
        except OSError as error:
            self._config = previous
            logger.exception("event_config_save_failed error=%s", error)
            raise InternalError("Failed to save event configuration") from error
        return candidate

    def get_status(self, now: datetime) -> EventStatus:
        return get_status(self.config, now)

    def update(self, fields: Mapping[str, Any], now: datetime) -> EventConfig:
        candidate = apply_update(self.config, fields, now)
        config = self._commit(candidate)
        logger.info(
            "event_config_updated start=%s end=%s active=%s",
            isoformat_utc(config.start_date),
            isoformat_utc(config.end_date),
            config.is_active,
        )
        return config

    def generate_shareable_link(self, now: datetime) -> str:
        token = secrets.token_urlsafe(32)
        self._commit(replace(self.config, shareable_link_token=token, updated_at=now))
        logger.info("shareable_link_generated")
        return token


class MemoryEventConfigStore(EventConfigStore):
    def __init__(self, config: Optional[EventConfig] = None) -> None:
        super().__init__()
        self._config = config

    def load(self, now: datetime) -> EventConfig:
        if self._config is None:
            self._config = EventConfig.default(now)
        return self._config

    def save(self) -> None:
        return None


class JsonEventConfigStore(EventConfigStore):
    """Event config persisted as a JSON file, replaced atomically on save."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = Path(path)

    def load(self, now: datetime) -> EventConfig:
        ensure_directories(self.path.parent)
        config: Optional[EventConfig] = None
        if self.path.exists():
            try:
                with self.path.open("r", encoding="utf-8") as config_file:
                    config = EventConfig.from_dict(json.load(config_file))
            except (ValueError, KeyError, TypeError, ValidationError) as error:
                logger.warning(
                    "event_config_unreadable path=%s error=%s; using defaults",
                    self.path,
                    error,
                )
        if config is None:
            self._config = EventConfig.default(now)
            self.save()
        else:
            self._config = config
        return self._config

    def save(self) -> None:
        ensure_directories(self.path.parent)
        temp_path = self.path.with_suffix(".tmp")
        try:
            with temp_path.open("w", encoding="utf-8") as config_file:
                json.dump(self.config.to_dict(), config_file, indent=2)
                config_file.flush()
                os.fsync(config_file.fileno())
            temp_path.replace(self.path)
        except Exception:
            if temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError:
                    pass
            raise
