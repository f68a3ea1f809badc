import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from itsdangerous import TimestampSigner
from werkzeug.security import check_password_hash, generate_password_hash

from takeaway.auth import (
    TOKEN_MAX_AGE_SECONDS,
    CredentialService,
    Principal,
    default_speakers,
    load_speakers,
)
from takeaway.errors import InvalidCredentialsError, InvalidTokenError


class CredentialServiceTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.speaker = Principal("7", "ada", "Ada Lovelace", generate_password_hash("analytical"))

    def setUp(self):
        self.service = CredentialService([self.speaker], "unit-test-secret")

    def test_login_issues_verifiable_token(self):
        token = self.service.login("ada", "analytical")
        principal = self.service.verify(token)
        self.assertEqual(principal.id, "7")
        self.assertEqual(principal.display_name, "Ada Lovelace")
        self.assertEqual(principal.password_hash, "")

    def test_unknown_user_and_wrong_password_fail_identically(self):
        with self.assertRaises(InvalidCredentialsError) as unknown:
            self.service.login("grace", "analytical")
        with self.assertRaises(InvalidCredentialsError) as wrong:
            self.service.login("ada", "difference")
        self.assertEqual(unknown.exception.to_dict(), wrong.exception.to_dict())
        self.assertEqual(unknown.exception.status_code, 401)

    def test_username_match_is_exact(self):
        with self.assertRaises(InvalidCredentialsError):
            self.service.login("ADA", "analytical")

    def test_unknown_user_still_checks_a_hash(self):
        with mock.patch("takeaway.auth.check_password_hash", return_value=False) as checker:
            with self.assertRaises(InvalidCredentialsError):
                self.service.login("nobody", "whatever")
        checker.assert_called_once()

    def test_tampered_token_is_rejected(self):
        token = self.service.login("ada", "analytical")
        with self.assertRaises(InvalidTokenError):
            self.service.verify(token[:5] + ("a" if token[5] != "a" else "b") + token[6:])

    def test_token_from_other_secret_is_rejected(self):
        other = CredentialService([self.speaker], "different-secret")
        with self.assertRaises(InvalidTokenError):
            self.service.verify(other.issue_token(self.speaker))

    def test_empty_token_is_rejected(self):
        with self.assertRaises(InvalidTokenError):
            self.service.verify("")

    def test_token_expires_after_24_hours(self):
        issued_at = 1_800_000_000
        with mock.patch.object(TimestampSigner, "get_timestamp", return_value=issued_at):
            token = self.service.issue_token(self.speaker)
        with mock.patch.object(
            TimestampSigner, "get_timestamp", return_value=issued_at + TOKEN_MAX_AGE_SECONDS - 1
        ):
            self.assertEqual(self.service.verify(token).username, "ada")
        with mock.patch.object(
            TimestampSigner, "get_timestamp", return_value=issued_at + TOKEN_MAX_AGE_SECONDS + 1
        ):
            with self.assertRaises(InvalidTokenError) as expired:
                self.service.verify(token)
        self.assertEqual(expired.exception.message, "Token expired")
        self.assertEqual(expired.exception.status_code, 403)

    def test_duplicate_usernames_are_refused(self):
        with self.assertRaises(ValueError):
            CredentialService([self.speaker, self.speaker], "secret")


class SpeakerLoadingTests(unittest.TestCase):
    def tearDown(self):
        os.environ.pop("TAKEAWAY_SPEAKER_PASSWORD", None)

    def test_default_speakers_use_configured_password(self):
        os.environ["TAKEAWAY_SPEAKER_PASSWORD"] = "from-env"
        speakers = default_speakers()
        self.assertEqual([s.username for s in speakers], ["speaker", "organizer"])
        self.assertTrue(check_password_hash(speakers[0].password_hash, "from-env"))

    def test_speakers_file_replaces_defaults(self):
        with tempfile.TemporaryDirectory() as root:
            path = Path(root) / "speakers.json"
            path.write_text(
                json.dumps(
                    [
                        {
                            "id": "s1",
                            "username": "lin",
                            "displayName": "Lin",
                            "passwordHash": generate_password_hash("pw"),
                        }
                    ]
                ),
                encoding="utf-8",
            )
            speakers = load_speakers(path)
        self.assertEqual([s.username for s in speakers], ["lin"])

    def test_missing_file_falls_back_to_defaults(self):
        speakers = load_speakers(Path("/nonexistent/speakers.json"))
        self.assertEqual(len(speakers), 2)


if __name__ == "__main__":
    unittest.main()
