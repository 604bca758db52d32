import unittest

from firekit.core.actions import (
    Action,
    Create,
    CreateWithGeneratedId,
    Delete,
    Get,
    Subscribe,
    Update,
    build_request,
)
from firekit.core.sanitizer import MISSING
from firekit.errors import UnsupportedActionError, ValidationError


class ActionTests(unittest.TestCase):
    def test_parse_accepts_wire_values_and_names(self):
        self.assertIs(Action.parse("createWithId"), Action.CREATE_WITH_ID)
        self.assertIs(Action.parse("CREATE_WITH_ID"), Action.CREATE_WITH_ID)
        self.assertIs(Action.parse("onValue"), Action.SUBSCRIBE)
        self.assertIs(Action.parse("subscribe"), Action.SUBSCRIBE)
        self.assertIs(Action.parse(Action.GET), Action.GET)

    def test_parse_rejects_unknown(self):
        for value in ("upsert", "", None, 3):
            with self.subTest(value=value):
                with self.assertRaises(UnsupportedActionError):
                    Action.parse(value)

    def test_build_request_picks_variant(self):
        self.assertEqual(build_request("create", "a", {"x": 1}, "u"), Create("a", {"x": 1}, "u"))
        self.assertEqual(build_request("update", "a", {"x": 1}), Update("a", {"x": 1}))
        self.assertEqual(build_request("createWithId", "a", {}), CreateWithGeneratedId("a", {}))
        self.assertIsInstance(build_request("get", "a"), Get)

    def test_reads_and_deletes_drop_payload(self):
        self.assertEqual(build_request("delete", "a", {"ignored": True}), Delete("a"))
        self.assertFalse(hasattr(build_request("get", "a", {"x": 1}), "payload"))

    def test_write_payload_defaults_to_missing(self):
        self.assertIs(build_request("create", "a").payload, MISSING)

    def test_subscribe_needs_callback(self):
        callback = print
        request = build_request("onValue", "a", on_change=callback)
        self.assertEqual(request, Subscribe("a", callback))
        with self.assertRaises(ValidationError):
            build_request("onValue", "a")


if __name__ == "__main__":
    unittest.main()
