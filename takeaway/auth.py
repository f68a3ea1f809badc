import json
import os
from dataclasses import dataclass
from pathlib import Path
from secrets import compare_digest
from typing import Dict, Iterable, List, Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from werkzeug.security import check_password_hash, generate_password_hash

from .errors import InvalidCredentialsError, InvalidTokenError
from .logs import get_logger

TOKEN_MAX_AGE_SECONDS = 24 * 60 * 60
TOKEN_SALT = "takeaway.auth-token"

security_logger = get_logger("takeaway.security")


@dataclass(frozen=True)
class Principal:
    id: str
    username: str
    display_name: str
    password_hash: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "username": self.username, "displayName": self.display_name}


def default_speakers() -> List[Principal]:
    password = os.environ.get("TAKEAWAY_SPEAKER_PASSWORD") or "takeaway"
    return [
        Principal("1", "speaker", "Demo Speaker", generate_password_hash(password)),
        Principal("2", "organizer", "Event Organizer", generate_password_hash(password)),
    ]


def load_speakers(path: Path) -> List[Principal]:
    """Read speakers from *path*, or return the built-in list when absent."""

    if not path.exists():
        return default_speakers()
    with path.open("r", encoding="utf-8") as speakers_file:
        raw = json.load(speakers_file)
    speakers = []
    for entry in raw:
        speakers.append(
            Principal(
                id=str(entry["id"]),
                username=str(entry["username"]),
                display_name=str(entry.get("displayName") or entry["username"]),
                password_hash=str(entry["passwordHash"]),
            )
        )
    return speakers


class CredentialService:
    """Checks speaker passwords and issues signed, time-limited tokens."""

    def __init__(
        self,
        speakers: Iterable[Principal],
        secret_key: str,
        max_age: int = TOKEN_MAX_AGE_SECONDS,
    ) -> None:
        self._speakers: Dict[str, Principal] = {}
        for speaker in speakers:
            if speaker.username in self._speakers:
                raise ValueError(f"Duplicate speaker username: {speaker.username}")
            self._speakers[speaker.username] = speaker
        self._serializer = URLSafeTimedSerializer(secret_key, salt=TOKEN_SALT)
        self.max_age = max_age
        # Checked on unknown usernames so both failure paths do the same work.
        self._dummy_hash = generate_password_hash("takeaway-unknown-user")

    def _find(self, username: str) -> Optional[Principal]:
        found = None
        for candidate in self._speakers.values():
            if compare_digest(candidate.username.encode(), username.encode()):
                found = candidate
        return found

    def login(self, username: str, password: str) -> str:
        principal = self._find(username)
        if principal is None:
            check_password_hash(self._dummy_hash, password)
            security_logger.warning("login_failed reason=credentials")
            raise InvalidCredentialsError()
        if not check_password_hash(principal.password_hash, password):
            security_logger.warning("login_failed reason=credentials")
            raise InvalidCredentialsError()
        security_logger.info("login_succeeded principal_id=%s", principal.id)
        return self.issue_token(principal)

    def issue_token(self, principal: Principal) -> str:
        return self._serializer.dumps(principal.to_dict())

    def verify(self, token: str) -> Principal:
        if not token:
            raise InvalidTokenError()
        try:
            payload = self._serializer.loads(token, max_age=self.max_age)
        except SignatureExpired as error:
            raise InvalidTokenError("Token expired") from error
        except BadSignature as error:
            raise InvalidTokenError() from error
        if not isinstance(payload, dict):
            raise InvalidTokenError()
        try:
            return Principal(
                id=str(payload["id"]),
                username=str(payload["username"]),
                display_name=str(payload["displayName"]),
            )
        except KeyError as error:
            raise InvalidTokenError() from error
