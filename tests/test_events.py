import json
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from takeaway.errors import InternalError, InvalidRangeError, ValidationError
from takeaway.events import (
    EventConfig,
    EventStatus,
    JsonEventConfigStore,
    MemoryEventConfigStore,
    get_status,
)

NOW = datetime(2026, 5, 10, 12, 0, tzinfo=timezone.utc)


def window(start_offset_hours: float, end_offset_hours: float, active: bool = True) -> EventConfig:
    return EventConfig(
        id="evt",
        name="Summit",
        start_date=NOW + timedelta(hours=start_offset_hours),
        end_date=NOW + timedelta(hours=end_offset_hours),
        is_active=active,
    )


class EventStatusTests(unittest.TestCase):
    def test_active_inside_window(self):
        self.assertIs(get_status(window(-1, 1), NOW), EventStatus.ACTIVE)

    def test_not_started_before_window(self):
        self.assertIs(get_status(window(1, 2), NOW), EventStatus.NOT_STARTED)

    def test_ended_after_window(self):
        self.assertIs(get_status(window(-2, -1), NOW), EventStatus.ENDED)

    def test_inactive_overrides_every_timing(self):
        for start, end in [(-1, 1), (1, 2), (-2, -1)]:
            with self.subTest(start=start, end=end):
                self.assertIs(
                    get_status(window(start, end, active=False), NOW), EventStatus.INACTIVE
                )

    def test_window_boundaries_are_inclusive(self):
        config = window(0, 1)
        self.assertIs(get_status(config, config.start_date), EventStatus.ACTIVE)
        self.assertIs(get_status(config, config.end_date), EventStatus.ACTIVE)


class EventConfigStoreTests(unittest.TestCase):
    def setUp(self):
        self.store = MemoryEventConfigStore(window(0, 1))

    def test_defaults_when_nothing_loaded(self):
        store = MemoryEventConfigStore()
        config = store.load(NOW)
        self.assertTrue(config.is_active)
        self.assertEqual(config.start_date, NOW)
        self.assertEqual(config.end_date, NOW + timedelta(days=7))
        self.assertIsNone(config.shareable_link_token)

    def test_update_applies_fields(self):
        config = self.store.update(
            {
                "name": "  Autumn Summit ",
                "startDate": "2026-05-11T09:00:00Z",
                "endDate": "2026-05-12T18:00:00Z",
                "isActive": False,
            },
            NOW,
        )
        self.assertEqual(config.name, "Autumn Summit")
        self.assertFalse(config.is_active)
        self.assertEqual(config.start_date, datetime(2026, 5, 11, 9, tzinfo=timezone.utc))
        self.assertEqual(config.updated_at, NOW)
        self.assertIs(self.store.config, config)

    def test_invalid_range_is_rejected_and_config_unchanged(self):
        before = self.store.config
        with self.assertRaises(InvalidRangeError):
            self.store.update({"startDate": (before.end_date + timedelta(hours=1)).isoformat()}, NOW)
        self.assertIs(self.store.config, before)

    def test_equal_start_and_end_is_rejected(self):
        before = self.store.config
        with self.assertRaises(InvalidRangeError):
            self.store.update({"endDate": before.start_date.isoformat()}, NOW)

    def test_field_type_errors(self):
        for fields in [{"name": ""}, {"isActive": "yes"}, {"startDate": "soon"}]:
            with self.subTest(fields=fields):
                with self.assertRaises(ValidationError):
                    self.store.update(fields, NOW)

    def test_generate_shareable_link_overwrites_previous(self):
        first = self.store.generate_shareable_link(NOW)
        second = self.store.generate_shareable_link(NOW)
        self.assertNotEqual(first, second)
        self.assertGreaterEqual(len(second), 32)
        self.assertEqual(self.store.config.shareable_link_token, second)

    def test_save_failure_keeps_previous_config(self):
        before = self.store.config
        with mock.patch.object(self.store, "save", side_effect=OSError("disk full")):
            with self.assertRaises(InternalError):
                self.store.update({"name": "Renamed"}, NOW)
        self.assertIs(self.store.config, before)


class JsonEventConfigStoreTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "data" / "event.json"

    def tearDown(self):
        self.tmp.cleanup()

    def test_first_load_persists_defaults(self):
        store = JsonEventConfigStore(self.path)
        config = store.load(NOW)
        self.assertTrue(self.path.exists())
        payload = json.loads(self.path.read_text(encoding="utf-8"))
        self.assertEqual(payload["id"], config.id)
        self.assertEqual(payload["startDate"], "2026-05-10T12:00:00.000Z")

    def test_mutations_survive_reload(self):
        store = JsonEventConfigStore(self.path)
        store.load(NOW)
        store.update({"name": "Persisted"}, NOW)
        token = store.generate_shareable_link(NOW)

        reloaded = JsonEventConfigStore(self.path)
        config = reloaded.load(NOW + timedelta(days=1))
        self.assertEqual(config.name, "Persisted")
        self.assertEqual(config.shareable_link_token, token)
        self.assertEqual(config.start_date, NOW)

    def test_rejected_update_leaves_file_untouched(self):
        store = JsonEventConfigStore(self.path)
        store.load(NOW)
        original = self.path.read_text(encoding="utf-8")
        with self.assertRaises(InvalidRangeError):
            store.update({"startDate": "2030-01-01T00:00:00Z"}, NOW)
        self.assertEqual(self.path.read_text(encoding="utf-8"), original)

    def test_corrupt_file_is_replaced_with_defaults(self):
        self.path.parent.mkdir(parents=True)
        self.path.write_text("{broken", encoding="utf-8")
        store = JsonEventConfigStore(self.path)
        with self.assertLogs("takeaway.events", level="WARNING"):
            config = store.load(NOW)
        self.assertEqual(config.start_date, NOW)
        self.assertEqual(json.loads(self.path.read_text(encoding="utf-8"))["id"], config.id)

    def test_non_object_json_is_replaced_with_defaults(self):
        self.path.parent.mkdir(parents=True)
        for text in ("null", "[]", "\"x\"", "5"):
            with self.subTest(text=text):
                self.path.write_text(text, encoding="utf-8")
                store = JsonEventConfigStore(self.path)
                with self.assertLogs("takeaway.events", level="WARNING"):
                    config = store.load(NOW)
                self.assertEqual(config.start_date, NOW)
                self.assertIsInstance(json.loads(self.path.read_text(encoding="utf-8")), dict)

    def test_string_is_active_is_treated_as_corrupt(self):
        self.path.parent.mkdir(parents=True)
        payload = EventConfig.default(NOW - timedelta(days=1)).to_dict()
        payload["isActive"] = "false"
        self.path.write_text(json.dumps(payload), encoding="utf-8")
        store = JsonEventConfigStore(self.path)
        with self.assertLogs("takeaway.events", level="WARNING"):
            config = store.load(NOW)
        self.assertNotEqual(config.id, payload["id"])
        self.assertIs(config.is_active, True)
        self.assertEqual(config.start_date, NOW)

    def test_public_view_hides_link_token(self):
        store = JsonEventConfigStore(self.path)
        store.load(NOW)
        store.generate_shareable_link(NOW)
        view = store.config.public_dict(NOW)
        self.assertNotIn("shareableLinkToken", view)
        self.assertTrue(view["hasShareableLink"])
        self.assertEqual(view["status"], "active")


if __name__ == "__main__":
    unittest.main()
