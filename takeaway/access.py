"""Read-access decisions for attendee-facing endpoints.

Two credentials can open the catalogue: a speaker bearer token or the
event's shareable link token. Whichever one matched, the event window check
is applied afterwards in the same place, so a link never bypasses the
schedule.
"""

import enum
from dataclasses import dataclass
from datetime import datetime
from secrets import compare_digest
from typing import Callable, Optional, Union

from .auth import Principal
from .errors import (
    AccessDeniedError,
    AuthError,
    InvalidLinkError,
    InvalidTokenError,
    TakeawayError,
)
from .events import EventConfig, EventStatus, get_status
from .storage import isoformat_utc


@dataclass(frozen=True)
class BearerCredential:
    token: str


@dataclass(frozen=True)
class LinkCredential:
    token: str


class _NoCredential:
    def __repr__(self) -> str:
        return "NO_CREDENTIAL"


NO_CREDENTIAL = _NoCredential()

Credential = Union[BearerCredential, LinkCredential, _NoCredential]


class DenialReason(str, enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    INVALID_LINK = "invalid-link"
    INVALID_TOKEN = "invalid-token"
    EVENT_INACTIVE = "inactive"
    EVENT_NOT_STARTED = "not-started"
    EVENT_ENDED = "ended"


_STATUS_DENIALS = {
    EventStatus.INACTIVE: DenialReason.EVENT_INACTIVE,
    EventStatus.NOT_STARTED: DenialReason.EVENT_NOT_STARTED,
    EventStatus.ENDED: DenialReason.EVENT_ENDED,
}


@dataclass(frozen=True)
class Allow:
    principal: Optional[Principal] = None
    via_link: bool = False


@dataclass(frozen=True)
class Deny:
    reason: DenialReason
    boundary: Optional[datetime] = None
    config: Optional[EventConfig] = None

    def to_error(self) -> TakeawayError:
        if self.reason is DenialReason.UNAUTHENTICATED:
            return AuthError("Authentication required")
        if self.reason is DenialReason.INVALID_LINK:
            return InvalidLinkError()
        if self.reason is DenialReason.INVALID_TOKEN:
            return InvalidTokenError()

        start = isoformat_utc(self.config.start_date) if self.config else None
        end = isoformat_utc(self.config.end_date) if self.config else None
        if self.reason is DenialReason.EVENT_NOT_STARTED:
            message = f"This event will begin on {isoformat_utc(self.boundary)}."
        elif self.reason is DenialReason.EVENT_ENDED:
            message = f"This event ended on {isoformat_utc(self.boundary)}."
        else:
            message = "This event is currently inactive."
        return AccessDeniedError(
            message, event_status=self.reason.value, start_date=start, end_date=end
        )


Decision = Union[Allow, Deny]


def resolve_credential(link: Optional[str], authorization: Optional[str]) -> Credential:
    """Pick the credential a request carries. A ``link`` parameter wins."""

    if link is not None:
        return LinkCredential(link.strip())
    authorization = (authorization or "").strip()
    if authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
        if token:
            return BearerCredential(token)
    return NO_CREDENTIAL


def authorize_read(
    credential: Credential,
    config: EventConfig,
    now: datetime,
    verify_token: Callable[[str], Principal],
) -> Decision:
    principal: Optional[Principal] = None
    via_link = False

    if isinstance(credential, LinkCredential):
        stored = config.shareable_link_token
        if not stored or not credential.token or not compare_digest(
            credential.token.encode(), stored.encode()
        ):
            return Deny(DenialReason.INVALID_LINK)
        via_link = True
    elif isinstance(credential, BearerCredential):
        try:
            principal = verify_token(credential.token)
        except InvalidTokenError:
            return Deny(DenialReason.INVALID_TOKEN)
    else:
        return Deny(DenialReason.UNAUTHENTICATED)

    status = get_status(config, now)
    if status is not EventStatus.ACTIVE:
        boundary = None
        if status is EventStatus.NOT_STARTED:
            boundary = config.start_date
        elif status is EventStatus.ENDED:
            boundary = config.end_date
        return Deny(_STATUS_DENIALS[status], boundary=boundary, config=config)

    return Allow(principal=principal, via_link=via_link)
